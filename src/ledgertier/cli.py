"""
Command-line driver for ledgertier.

Schedulers (cron, systemd timers, Kubernetes CronJobs) run the archival
passes through this tool; operators use it to inspect and release records.

Commands:
    - migrate: run one scan-and-migrate pass
    - cleanup: run one deferred-delete pass
    - status: show a record's state and history, or list records in a state
    - stuck: list records stuck in an in-flight state
    - release: clear a stuck or stale record

Usage:
    ledgertier migrate --factory myapp.archival:build_service
    ledgertier cleanup --factory myapp.archival:build_service
    ledgertier status inv-1001 --log /var/lib/ledgertier/log.db
    ledgertier status --state pending_delete --log /var/lib/ledgertier/log.db
    ledgertier stuck --log /var/lib/ledgertier/log.db --older-than 3600
    ledgertier release inv-1001 --log /var/lib/ledgertier/log.db

Output is JSON on stdout. The passes exit non-zero when any record failed;
``stuck`` exits non-zero when anything is stuck.

Invariants:
    - status and stuck open the consistency log read-only and never
      create it
    - the factory is called once per invocation and must return an
      ArchivalService (or an awaitable resolving to one)
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import inspect
import json
import logging
import sys
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from ledgertier.models import MigrationState
from ledgertier.serialization import LedgerTierJSONEncoder
from ledgertier.service import ArchivalService
from ledgertier.tracker import MigrationStateTracker

logger = logging.getLogger(__name__)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, cls=LedgerTierJSONEncoder))


async def _load_service(factory_path: str) -> ArchivalService:
    """Import ``module:callable`` and call it to build the service."""
    module_name, sep, attr = factory_path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Factory must look like 'module:callable', got {factory_path!r}")

    factory = getattr(importlib.import_module(module_name), attr)
    service = factory()
    if inspect.isawaitable(service):
        service = await service
    if not isinstance(service, ArchivalService):
        raise TypeError(
            f"Factory {factory_path} returned {type(service).__name__}, expected ArchivalService"
        )
    return service


@asynccontextmanager
async def _open_tracker(
    log_path: str,
    *,
    read_only: bool = True,
) -> AsyncIterator[MigrationStateTracker]:
    """
    Rebuild a tracker from an existing SQLite log.

    A read-only open neither runs the schema script nor creates the file.
    """
    import aiosqlite

    from ledgertier.log.sqlite import SQLiteConsistencyLog

    try:
        async with SQLiteConsistencyLog(
            log_path, read_only=read_only, enable_tracing=False
        ) as log:
            if not read_only:
                await log.initialize()
            tracker = MigrationStateTracker(log, enable_tracing=False)
            await tracker.recover(revert_in_flight=False)
            yield tracker
    except aiosqlite.Error as e:
        raise ValueError(f"Cannot use consistency log {log_path}: {e}") from e


async def _run_pass(args: argparse.Namespace) -> int:
    service = await _load_service(args.factory)
    async with service:
        if args.command == "migrate":
            migration = await service.run_migration_pass()
            _print_json(migration.to_dict())
            return 1 if migration.failed else 0

        cleanup = await service.run_cleanup_pass()
        _print_json(cleanup.to_dict())
        return 1 if cleanup.failed else 0


async def _status(args: argparse.Namespace) -> int:
    async with _open_tracker(args.log) as tracker:
        if args.state is not None:
            state = MigrationState(args.state)
            _print_json({"state": state.value, "records": tracker.list(state)})
            return 0

        tracked = tracker.status(args.record_id)
        history = await tracker.history(args.record_id)
        _print_json(
            {
                "record_id": args.record_id,
                "state": tracker.get(args.record_id).value,
                "tracked": tracked.to_dict() if tracked else None,
                "history": [entry.to_dict() for entry in history],
            }
        )
        return 0


async def _stuck(args: argparse.Namespace) -> int:
    async with _open_tracker(args.log) as tracker:
        stuck = tracker.find_stuck(timedelta(seconds=args.older_than))
        _print_json([s.to_dict() for s in stuck])
        return 1 if stuck else 0


async def _release(args: argparse.Namespace) -> int:
    async with _open_tracker(args.log, read_only=False) as tracker:
        released = await tracker.release(args.record_id)
        if released is None:
            _print_json({"record_id": args.record_id, "released": False, "state": "none"})
            return 1
        _print_json({"record_id": args.record_id, "released": True, **released.to_dict()})
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledgertier",
        description="Tiered billing-record storage: archival passes and operator tools",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # migrate / cleanup
    for name, help_text in (
        ("migrate", "Run one scan-and-migrate pass"),
        ("cleanup", "Run one deferred-delete pass"),
    ):
        pass_parser = subparsers.add_parser(name, help=help_text)
        pass_parser.add_argument(
            "--factory",
            required=True,
            help="'module:callable' returning an ArchivalService",
        )

    # status
    status_parser = subparsers.add_parser("status", help="Show record state and history")
    status_parser.add_argument("record_id", nargs="?", help="Record to inspect")
    status_parser.add_argument(
        "--state",
        choices=[s.value for s in MigrationState if s.tracked],
        help="List all records in this state instead",
    )
    status_parser.add_argument("--log", required=True, help="Path to the SQLite consistency log")

    # stuck
    stuck_parser = subparsers.add_parser("stuck", help="List stuck migrations")
    stuck_parser.add_argument("--log", required=True, help="Path to the SQLite consistency log")
    stuck_parser.add_argument(
        "--older-than",
        type=float,
        default=3600.0,
        help="Seconds in an in-flight state before a record counts as stuck (default: 3600)",
    )

    # release
    release_parser = subparsers.add_parser("release", help="Release a stuck or stale record")
    release_parser.add_argument("record_id", help="Record to release")
    release_parser.add_argument("--log", required=True, help="Path to the SQLite consistency log")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "status" and (args.record_id is None) == (args.state is None):
        parser.error("status needs exactly one of RECORD_ID or --state")

    if args.command in ("migrate", "cleanup"):
        handler = _run_pass
    elif args.command == "status":
        handler = _status
    elif args.command == "stuck":
        handler = _stuck
    else:
        handler = _release

    try:
        return asyncio.run(handler(args))
    except (ValueError, TypeError, ImportError, AttributeError) as e:
        logger.error("%s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
