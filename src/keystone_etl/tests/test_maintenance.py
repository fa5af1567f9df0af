"""Tests for leaderboard retention and the season dungeon map."""

from __future__ import annotations

import pytest

from fakes import SAMPLE_TIMERS, make_group
from keystone_etl.loader import BulkLoader, LoaderConfig
from keystone_etl.maintenance import cleanup_leaderboard
from keystone_etl.normalize import normalize_groups, parse_shard_name
from keystone_etl.reference import SeasonDungeonMap
from keystone_etl.staging import AsyncShardStore, LocalShardStore


async def _seed(db, tmp_path, shards):
    store = AsyncShardStore(LocalShardStore(str(tmp_path / "shards")))
    for name, groups in shards.items():
        runs, _ = normalize_groups(groups, timers=SAMPLE_TIMERS, **parse_shard_name(name))
        await store.put_runs(name, runs)
    await BulkLoader(db, store, LoaderConfig()).load_all()


class TestCleanup:
    async def test_keeps_best_runs_per_dungeon(self, fake_db, tmp_path):
        await _seed(
            fake_db,
            tmp_path,
            {
                "us-s13-p977-d505-r11": [
                    make_group(ranking=1, level=22, duration=1_600_000),
                    make_group(ranking=2, level=20, duration=1_500_000),
                    make_group(ranking=3, level=18, duration=1_400_000),
                ],
                "us-s13-p977-d506-r11": [make_group(ranking=1, level=15, duration=1_700_000)],
            },
        )
        deleted = await cleanup_leaderboard(fake_db, keep_top=1)

        assert deleted == 2
        levels = sorted((row["dungeon_id"], row["keystone_level"]) for row in fake_db.runs.values())
        assert levels == [(505, 22), (506, 15)]
        assert len(fake_db.members) == 10

    async def test_scoped_to_season(self, fake_db, tmp_path):
        await _seed(
            fake_db,
            tmp_path,
            {
                "us-s12-p900-d505-r11": [make_group(level=20), make_group(level=19, duration=1_400_000)],
                "us-s13-p977-d505-r11": [make_group(level=20), make_group(level=19, duration=1_400_000)],
            },
        )
        assert await cleanup_leaderboard(fake_db, season_id=13, keep_top=1) == 1
        assert sorted(row["season_id"] for row in fake_db.runs.values()) == [12, 12, 13]

    async def test_keep_must_be_positive(self, fake_db):
        with pytest.raises(ValueError):
            await cleanup_leaderboard(fake_db, keep_top=0)


class TestSeasonDungeonMap:
    async def test_unknown_season(self, fake_db):
        assert await SeasonDungeonMap(fake_db).get(13) is None

    async def test_replace_bumps_version_and_rewrites_set(self, fake_db):
        mapping = SeasonDungeonMap(fake_db)
        assert await mapping.replace(13, [505, 501, 505]) == 1
        first = await mapping.get(13)
        assert first.version == 1
        assert first.dungeon_ids == [501, 505]

        assert await mapping.replace(13, [501, 507]) == 2
        second = await mapping.get(13)
        assert second.version == 2
        assert second.dungeon_ids == [501, 507]

    async def test_failed_replace_leaves_previous_set(self, fake_db):
        mapping = SeasonDungeonMap(fake_db)
        await mapping.replace(13, [501, 505])
        fake_db.fail_on = lambda sql, args: RuntimeError("boom") if args == (13, 507, 2) else None

        with pytest.raises(RuntimeError):
            await mapping.replace(13, [501, 507])

        fake_db.fail_on = None
        current = await mapping.get(13)
        assert current.version == 1
        assert current.dungeon_ids == [501, 505]

    async def test_seasons_are_independent(self, fake_db):
        mapping = SeasonDungeonMap(fake_db)
        await mapping.replace(12, [400])
        await mapping.replace(13, [505])
        assert (await mapping.get(12)).dungeon_ids == [400]
        assert (await mapping.get(13)).version == 1
