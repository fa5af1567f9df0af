"""Tests for the bulk loader against the in-memory database."""

from __future__ import annotations

import asyncpg
import pytest

from fakes import COMPLETED_MS, SAMPLE_TIMERS, FakeDatabase, make_group
from keystone_etl.errors import DeadlineExceeded, LeaseLostError
from keystone_etl.loader import BulkLoader, LoaderConfig, dedupe_member_rows, member_rows
from keystone_etl.normalize import normalize_group, normalize_groups, parse_shard_name
from keystone_etl.resilience import Deadline, RetryPolicy
from keystone_etl.staging import AsyncShardStore, LocalShardStore

STRATEGIES = ["batched", "copy"]


def _runs(name, groups):
    runs, _ = normalize_groups(groups, timers=SAMPLE_TIMERS, **parse_shard_name(name))
    return runs


def _store(tmp_path) -> AsyncShardStore:
    return AsyncShardStore(LocalShardStore(str(tmp_path / "shards")))


def _loader(db, store, **cfg) -> BulkLoader:
    return BulkLoader(
        db,
        store,
        LoaderConfig(**cfg),
        policy=RetryPolicy(max_attempts=2, base_delay_seconds=0.001, jitter=0),
    )


def _state(db: FakeDatabase):
    runs = sorted(
        (tuple(sorted((k, v) for k, v in row.items() if k not in ("id", "ord"))) for row in db.runs.values()),
        key=str,
    )
    members = sorted(
        ((key, {k: v for k, v in row.items() if k != "ord"}) for key, row in db.members.items()),
        key=lambda kv: str(kv[0]),
    )
    return runs, members


class TestMerge:
    @pytest.mark.parametrize("strategy", STRATEGIES)
    async def test_same_run_in_two_shards_is_stored_once(self, tmp_path, strategy):
        store = _store(tmp_path)
        group = make_group(level=20, duration=1_500_000)
        await store.put_runs("us-s13-p977-d505-r11", _runs("us-s13-p977-d505-r11", [group]))
        await store.put_runs("us-s13-p977-d505-r12", _runs("us-s13-p977-d505-r12", [group]))
        db = FakeDatabase()

        summary = await _loader(db, store, strategy=strategy).load_all()

        assert summary.shards_loaded == 2
        assert len(db.runs) == 1
        assert len(db.members) == 5

    @pytest.mark.parametrize("strategy", STRATEGIES)
    async def test_reload_is_idempotent_and_updates_score(self, tmp_path, strategy):
        store = _store(tmp_path)
        name = "us-s13-p977-d505-r11"
        db = FakeDatabase()
        loader = _loader(db, store, strategy=strategy)

        await store.put_runs(name, _runs(name, [make_group(rating=200.0), make_group(ranking=2, level=18)]))
        await loader.load_all()
        before = {row["run_guid"]: row["id"] for row in db.runs.values()}

        await store.put_runs(name, _runs(name, [make_group(rating=201.5), make_group(ranking=2, level=18)]))
        await loader.load_all()

        assert {row["run_guid"]: row["id"] for row in db.runs.values()} == before
        assert len(db.members) == 10
        scores = sorted(row["score"] for row in db.runs.values())
        assert 201.5 in scores
        assert 200.0 not in scores

    @pytest.mark.parametrize("strategy", STRATEGIES)
    async def test_duplicates_within_a_shard_last_wins(self, tmp_path, strategy):
        store = _store(tmp_path)
        name = "us-s13-p977-d505-r11"
        first = make_group(rating=190.0, members=[("Ann", 73), ("Bob", 65), ("Cid", 62)])
        second = make_group(rating=195.0, members=[("Ann", 62), ("Bob", 65), ("Dee", 253)])
        await store.put_runs(name, _runs(name, [first, second]))
        db = FakeDatabase()

        result = await _loader(db, store, strategy=strategy).load_shard(name)

        assert result.ok, result.error
        assert result.runs == 1
        assert result.members == 4
        (row,) = db.runs.values()
        assert row["score"] == 195.0
        ann = db.members[(row["run_guid"], "Ann")]
        assert ann["role"] == "dps"
        assert ann["spec_id"] == 62

    async def test_both_strategies_produce_identical_state(self, tmp_path):
        store = _store(tmp_path)
        names = ["us-s13-p977-d505-r11", "eu-s13-p977-d505-r1305"]
        groups = [
            make_group(ranking=1, level=22, duration=1_600_000, rating=245.5),
            make_group(ranking=2, level=20, duration=1_500_000),
            make_group(ranking=2, level=20, duration=1_500_000, members=[("Tanky", 66), ("Solo", 577)]),
            make_group(ranking=3, level=18, duration=2_000_000, completed=COMPLETED_MS + 60_000),
        ]
        for name in names:
            await store.put_runs(name, _runs(name, groups))

        batched, copied = FakeDatabase(), FakeDatabase()
        await _loader(batched, store, strategy="batched", batch_size=2).load_all()
        await _loader(copied, store, strategy="copy").load_all()

        assert _state(batched) == _state(copied)
        assert len(batched.runs) == 6


class TestBatching:
    async def test_statements_respect_batch_size(self, tmp_path):
        store = _store(tmp_path)
        name = "us-s13-p977-d505-r11"
        groups = [make_group(ranking=i, duration=1_500_000 + i) for i in range(5)]
        await store.put_runs(name, _runs(name, groups))
        db = FakeDatabase()

        await _loader(db, store, strategy="batched", batch_size=2).load_all()

        run_statements = [s for s in db.statements if s.startswith("INSERT INTO leaderboard_run")]
        member_statements = [s for s in db.statements if s.startswith("INSERT INTO run_group_member")]
        assert len(run_statements) == 3
        assert len(member_statements) == 13
        assert len(db.runs) == 5
        assert len(db.members) == 25

    @pytest.mark.parametrize("key", ["progress_every", "batch_size", "max_concurrent_loads"])
    def test_zero_counts_rejected(self, key):
        with pytest.raises(ValueError, match=key):
            LoaderConfig(**{key: 0})

    async def test_progress_every_one_logs_each_shard(self, tmp_path, caplog):
        store = _store(tmp_path)
        for realm in (11, 12):
            name = f"us-s13-p977-d505-r{realm}"
            await store.put_runs(name, _runs(name, [make_group()]))

        with caplog.at_level("INFO"):
            await _loader(FakeDatabase(), store, progress_every=1).load_all()

        assert sum(1 for r in caplog.records if r.getMessage() == "load_progress") == 2

    def test_member_dedup_helper(self):
        run = normalize_group(
            make_group(members=[("A", 73), ("B", 65), ("A", 62)]),
            region="us",
            season_id=13,
            period_id=977,
            dungeon_id=505,
            realm_id=11,
        )
        rows = dedupe_member_rows(member_rows([run, run]))
        assert [(r[1], r[3]) for r in rows] == [("A", 62), ("B", 65)]


class TestFailures:
    async def test_failed_shard_rolls_back_and_others_commit(self, tmp_path):
        store = _store(tmp_path)
        good, bad = "us-s13-p977-d505-r11", "eu-s13-p977-d505-r1305"
        await store.put_runs(good, _runs(good, [make_group()]))
        await store.put_runs(bad, _runs(bad, [make_group()]))
        db = FakeDatabase()

        bad_guid = _runs(bad, [make_group()])[0].run_guid
        db.fail_on = lambda sql, args: (
            asyncpg.exceptions.ForeignKeyViolationError("violates foreign key constraint")
            if sql.startswith("INSERT INTO run_group_member") and bad_guid in args
            else None
        )

        summary = await _loader(db, store).load_all()

        assert summary.shards_loaded == 1
        assert summary.shards_failed == 1
        failed = [r for r in summary.results if not r.ok][0]
        assert failed.shard == bad
        assert failed.error_type == "ConstraintViolation"
        assert [row["region"] for row in db.runs.values()] == ["us"]
        assert all(guid != bad_guid for guid, _ in db.members)

    async def test_transient_error_is_retried(self, tmp_path):
        store = _store(tmp_path)
        name = "us-s13-p977-d505-r11"
        await store.put_runs(name, _runs(name, [make_group()]))
        db = FakeDatabase()
        failures = [asyncpg.exceptions.DeadlockDetectedError("deadlock detected")]
        db.fail_on = lambda sql, args: failures.pop() if failures and sql.startswith("INSERT INTO run_group_member") else None

        result = await _loader(db, store).load_shard(name)

        assert result.ok
        assert len(db.members) == 5

    async def test_unreadable_shard_is_reported(self, tmp_path):
        store = _store(tmp_path)
        summary = await _loader(FakeDatabase(), store).load_all(["us-s13-p977-d505-r11"])
        assert summary.shards_failed == 1
        assert summary.results[0].error_type == "FileNotFoundError"

    async def test_deadline_aborts_the_load(self, tmp_path):
        store = _store(tmp_path)
        name = "us-s13-p977-d505-r11"
        await store.put_runs(name, _runs(name, [make_group()]))
        now = [0.0]
        deadline = Deadline(1.0, safety_margin_seconds=0.5, clock=lambda: now[0])
        now[0] = 0.9
        db = FakeDatabase()
        loader = BulkLoader(db, store, LoaderConfig(), deadline=deadline)

        with pytest.raises(DeadlineExceeded):
            await loader.load_all()
        assert db.runs == {}

    async def test_lost_lease_stops_the_load(self, tmp_path):
        store = _store(tmp_path)
        for realm in (11, 12, 13):
            name = f"us-s13-p977-d505-r{realm}"
            await store.put_runs(name, _runs(name, [make_group(duration=1_500_000 + realm)]))

        async def guard():
            raise LeaseLostError("lease taken over")

        loader = _loader(FakeDatabase(), store, progress_every=1, max_concurrent_loads=1)
        loader.guard = guard
        with pytest.raises(LeaseLostError):
            await loader.load_all()

    async def test_delete_after_load_removes_only_loaded_shards(self, tmp_path):
        store = _store(tmp_path)
        good = "us-s13-p977-d505-r11"
        await store.put_runs(good, _runs(good, [make_group()]))
        summary = await _loader(FakeDatabase(), store, delete_after_load=True).load_all([good, "us-s13-p977-d505-r99"])
        assert summary.shards_loaded == 1
        assert await store.list_names() == []
