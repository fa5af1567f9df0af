"""Tests for run normalization and the fallback scorer."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from fakes import COMPLETED_MS, SAMPLE_TIMERS, make_group
from keystone_etl.normalize import (
    UNKNOWN_CHARACTER,
    DungeonTimers,
    fallback_score,
    normalize_group,
    normalize_groups,
    parse_shard_name,
    runs_from_json,
    runs_to_json,
    shard_name,
)

SHARD = {"region": "us", "season_id": 13, "period_id": 977, "dungeon_id": 505, "realm_id": 11}


class TestFallbackScore:
    def test_between_tier2_and_tier1(self):
        """Level 20, 1,500,000ms sits between tier2 and tier1."""
        score = fallback_score(20, 1_500_000, SAMPLE_TIMERS)
        assert 210 < score < 217.5
        assert score == pytest.approx(216.25)

    def test_over_time_scales_down(self):
        assert fallback_score(20, 2_000_000, SAMPLE_TIMERS) == pytest.approx(189)

    def test_full_bonus_at_or_under_tier3(self):
        assert fallback_score(20, 1_000_000, SAMPLE_TIMERS) == pytest.approx(225)
        assert fallback_score(20, 1_080_000, SAMPLE_TIMERS) == pytest.approx(225)

    def test_between_tier3_and_tier2(self):
        assert fallback_score(20, 1_200_000, SAMPLE_TIMERS) == pytest.approx(222.5)

    def test_exactly_on_tier1(self):
        assert fallback_score(20, 1_800_000, SAMPLE_TIMERS) == pytest.approx(210)

    def test_missing_tier1_has_no_score(self):
        assert fallback_score(20, 1_500_000, DungeonTimers(None)) is None
        assert fallback_score(20, 1_500_000, None) is None

    def test_missing_tier3_stays_continuous_at_tier2(self):
        timers = DungeonTimers(1_800_000, 1_440_000, None)
        just_under = fallback_score(20, 1_439_999, timers)
        just_over = fallback_score(20, 1_440_001, timers)
        assert just_under == pytest.approx(217.5, abs=0.01)
        assert just_over == pytest.approx(217.5, abs=0.01)
        assert fallback_score(20, 1_200_000, timers) == pytest.approx(218.75)

    def test_floor_is_positive(self):
        assert fallback_score(2, 10**13, SAMPLE_TIMERS) == 0.01

    def test_faster_never_scores_lower(self):
        durations = range(900_000, 2_400_000, 20_000)
        scores = [fallback_score(18, d, SAMPLE_TIMERS) for d in durations]
        assert scores == sorted(scores, reverse=True)

    def test_timers_from_upgrades(self):
        timers = DungeonTimers.from_upgrades(
            [
                {"upgrade_level": 1, "qualifying_duration": 1_800_000},
                {"upgrade_level": 2, "qualifying_duration": 1_440_000},
                {"upgrade_level": 3, "qualifying_duration": 1_080_000},
            ]
        )
        assert timers == SAMPLE_TIMERS
        assert DungeonTimers.from_upgrades([]) == DungeonTimers(None)


class TestNormalizeGroup:
    def test_official_rating_used_verbatim(self):
        run = normalize_group(make_group(rating=245.5), timers=SAMPLE_TIMERS, **SHARD)
        assert run.score == 245.5

    def test_zero_rating_falls_back(self):
        run = normalize_group(make_group(rating=0, duration=1_500_000), timers=SAMPLE_TIMERS, **SHARD)
        assert run.score == pytest.approx(216.25)

    def test_no_rating_and_no_timers_has_no_score(self):
        run = normalize_group(make_group(), **SHARD)
        assert run.score is None

    def test_fields(self):
        run = normalize_group(make_group(ranking=4, level=19), timers=SAMPLE_TIMERS, **SHARD)
        assert run.rank == 4
        assert run.keystone_level == 19
        assert run.completed_at == datetime.fromtimestamp(COMPLETED_MS / 1000, tz=timezone.utc)
        assert [m.role for m in run.members] == ["tank", "healer", "dps", "dps", "dps"]
        assert run.members[0].class_id == 1

    def test_blank_name_becomes_unknown(self):
        group = make_group(members=[("  ", 73), ("Healz", 9999)])
        run = normalize_group(group, **SHARD)
        assert run.members[0].character_name == UNKNOWN_CHARACTER
        assert run.members[1].class_id is None
        assert run.members[1].role is None

    @pytest.mark.parametrize("missing", ["completed_timestamp", "duration", "keystone_level"])
    def test_group_without_natural_key_is_skipped(self, missing):
        group = make_group()
        del group[missing]
        assert normalize_group(group, **SHARD) is None
        runs, skipped = normalize_groups([group, make_group()], **SHARD)
        assert len(runs) == 1
        assert skipped == 1


class TestIdentity:
    def test_guid_ignores_mutable_fields(self):
        first = normalize_group(make_group(ranking=1, rating=200), **SHARD)
        second = normalize_group(make_group(ranking=9, rating=250), **dict(SHARD, realm_id=99))
        assert first.run_guid == second.run_guid

    def test_guid_changes_with_natural_key(self):
        first = normalize_group(make_group(), **SHARD)
        second = normalize_group(make_group(duration=1_500_001), **SHARD)
        assert first.run_guid != second.run_guid

    def test_json_preserves_identity(self, sample_groups):
        runs, _ = normalize_groups(sample_groups, timers=SAMPLE_TIMERS, **SHARD)
        restored = runs_from_json(runs_to_json(runs))
        assert [r.run_guid for r in restored] == [r.run_guid for r in runs]
        assert restored[0].members == runs[0].members


class TestShardName:
    def test_name_parses_back(self):
        name = shard_name("eu", 13, 977, 505, 1305)
        assert name == "eu-s13-p977-d505-r1305"
        assert parse_shard_name(name) == {
            "region": "eu",
            "season_id": 13,
            "period_id": 977,
            "dungeon_id": 505,
            "realm_id": 1305,
        }

    def test_bad_name_rejected(self):
        with pytest.raises(ValueError):
            parse_shard_name("eu-13-977")
