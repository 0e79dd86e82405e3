"""
Store adapters for the hot tier, the cold tier and the cache.

Interfaces:
    - HotStore: get / put / delete / scan_older_than
    - ColdStore: put / get / verify
    - Cache: get / set with TTL

Reference implementations:
    - InMemoryHotStore, InMemoryColdStore, InMemoryCache
"""

from ledgertier.adapters.in_memory import InMemoryCache, InMemoryColdStore, InMemoryHotStore
from ledgertier.adapters.interface import Cache, ColdStore, HotStore, ScanPage, call_adapter

__all__ = [
    "ScanPage",
    "HotStore",
    "ColdStore",
    "Cache",
    "call_adapter",
    "InMemoryHotStore",
    "InMemoryColdStore",
    "InMemoryCache",
]
