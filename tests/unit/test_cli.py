"""
Unit tests for the ledgertier command-line driver.

Tests cover:
- migrate and cleanup through a service factory
- Factory errors and argument errors
- status, stuck and release against a SQLite consistency log
"""

import asyncio
import json
import sqlite3
from contextlib import closing
from datetime import timedelta

import pytest

from ledgertier.cli import build_parser, main
from ledgertier.models import ConsistencyLogEntry, MigrationState, utcnow
from ledgertier.tracker import RELEASE_REASON
from tests.conftest import skip_if_no_aiosqlite

S = MigrationState

FACTORIES = "tests.fixtures.services"


def output(capsys):
    return json.loads(capsys.readouterr().out)


def entry(record_id, from_state, to_state, *, ago, attempt_id="a1"):
    return ConsistencyLogEntry(
        record_id=record_id,
        from_state=from_state,
        to_state=to_state,
        timestamp=utcnow() - ago,
        attempt_id=attempt_id,
    )


def write_log(path, entries):
    from ledgertier.log.sqlite import SQLiteConsistencyLog

    async def _write():
        async with SQLiteConsistencyLog(str(path), enable_tracing=False) as log:
            await log.initialize()
            for e in entries:
                await log.append(e)

    asyncio.run(_write())


def read_log(path):
    from ledgertier.log.sqlite import SQLiteConsistencyLog

    async def _read():
        async with SQLiteConsistencyLog(str(path), enable_tracing=False) as log:
            await log.initialize()
            return [e async for e in log.replay()]

    return asyncio.run(_read())


class TestParser:
    def test_pass_commands_need_factory(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["migrate"])

    def test_status_needs_record_or_state(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["status", "--log", str(tmp_path / "log.db")])
        assert exc_info.value.code == 2

    def test_status_rejects_record_and_state(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["status", "inv-1", "--state", "failed", "--log", str(tmp_path / "log.db")])
        assert exc_info.value.code == 2

    def test_stuck_default_window(self):
        args = build_parser().parse_args(["stuck", "--log", "log.db"])
        assert args.older_than == 3600.0


class TestPasses:
    def test_migrate(self, capsys):
        code = main(["migrate", "--factory", f"{FACTORIES}:seeded_service"])

        assert code == 0
        report = output(capsys)
        assert report["outcomes"]["archived"] == 1
        assert report["failures"] == []

    def test_migrate_with_async_factory(self, capsys):
        code = main(["migrate", "--factory", f"{FACTORIES}:seeded_service_async"])

        assert code == 0
        assert output(capsys)["outcomes"]["archived"] == 1

    def test_migrate_reports_failures(self, capsys):
        code = main(["migrate", "--factory", f"{FACTORIES}:corrupting_service"])

        assert code == 1
        failures = output(capsys)["failures"]
        assert [f["record_id"] for f in failures] == ["inv-old"]
        assert failures[0]["outcome"] == "verification_failed"

    def test_cleanup_with_nothing_to_do(self, capsys):
        code = main(["cleanup", "--factory", f"{FACTORIES}:seeded_service"])

        assert code == 0
        report = output(capsys)
        assert report["deleted"] == []
        assert report["failed"] == []

    @pytest.mark.parametrize(
        "factory",
        [
            "no-colon",
            "tests.fixtures.no_such_module:build",
            f"{FACTORIES}:no_such_factory",
            f"{FACTORIES}:not_a_service",
        ],
    )
    def test_bad_factory(self, factory, capsys):
        assert main(["cleanup", "--factory", factory]) == 2
        assert capsys.readouterr().out == ""


@pytest.mark.sqlite
@skip_if_no_aiosqlite
class TestOperatorCommands:
    @pytest.fixture
    def log_path(self, tmp_path):
        path = tmp_path / "log.db"
        write_log(
            path,
            [
                entry("inv-1", S.NONE, S.COPY_PENDING, ago=timedelta(hours=2)),
                entry("inv-2", S.NONE, S.COPY_PENDING, ago=timedelta(minutes=1), attempt_id="b1"),
                entry(
                    "inv-2", S.COPY_PENDING, S.VERIFIED, ago=timedelta(minutes=1), attempt_id="b1"
                ),
                entry(
                    "inv-2",
                    S.VERIFIED,
                    S.ARCHIVED_SOFT_FLAGGED,
                    ago=timedelta(minutes=1),
                    attempt_id="b1",
                ),
            ],
        )
        return path

    def test_status_of_record(self, log_path, capsys):
        assert main(["status", "inv-2", "--log", str(log_path)]) == 0

        status = output(capsys)
        assert status["state"] == "archived_soft_flagged"
        assert status["tracked"]["attempt_id"] == "b1"
        assert [e["to_state"] for e in status["history"]] == [
            "copy_pending",
            "verified",
            "archived_soft_flagged",
        ]

    def test_status_of_unknown_record(self, log_path, capsys):
        assert main(["status", "inv-9", "--log", str(log_path)]) == 0

        status = output(capsys)
        assert status["state"] == "none"
        assert status["tracked"] is None

    def test_status_by_state(self, log_path, capsys):
        assert main(["status", "--state", "copy_pending", "--log", str(log_path)]) == 0

        assert output(capsys) == {"state": "copy_pending", "records": ["inv-1"]}

    def test_status_does_not_write(self, log_path, capsys):
        main(["status", "inv-1", "--log", str(log_path)])

        assert len(read_log(log_path)) == 4

    def test_stuck(self, log_path, capsys):
        assert main(["stuck", "--log", str(log_path), "--older-than", "3600"]) == 1

        stuck = output(capsys)
        assert [s["record_id"] for s in stuck] == ["inv-1"]
        assert stuck[0]["state"] == "copy_pending"
        assert len(read_log(log_path)) == 4

    def test_nothing_stuck(self, log_path, capsys):
        assert main(["stuck", "--log", str(log_path), "--older-than", "86400"]) == 0
        assert output(capsys) == []

    def test_release(self, log_path, capsys):
        assert main(["release", "inv-1", "--log", str(log_path)]) == 0

        released = output(capsys)
        assert released["released"] is True
        assert released["state"] == "failed"
        last = read_log(log_path)[-1]
        assert last.record_id == "inv-1"
        assert last.to_state == S.FAILED
        assert last.reason == RELEASE_REASON

    def test_release_untracked(self, log_path, capsys):
        assert main(["release", "inv-9", "--log", str(log_path)]) == 1
        assert output(capsys)["released"] is False

    def test_status_does_not_create_missing_log(self, tmp_path, capsys):
        path = tmp_path / "missing.db"

        assert main(["status", "inv-1", "--log", str(path)]) == 2
        assert not path.exists()
        assert capsys.readouterr().out == ""

    @pytest.mark.parametrize("command", [["status", "--state", "failed"], ["stuck"]])
    def test_read_only_commands_do_not_run_schema(self, tmp_path, command):
        path = tmp_path / "foreign.db"
        with closing(sqlite3.connect(path)) as conn:
            conn.execute("CREATE TABLE unrelated (x INTEGER)")
            conn.commit()

        assert main([*command, "--log", str(path)]) == 2

        with closing(sqlite3.connect(path)) as conn:
            tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master")}
        assert tables == {"unrelated"}
