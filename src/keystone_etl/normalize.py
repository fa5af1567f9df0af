"""Turn raw leaderboard groups into Run/Member records.

Everything here is pure: no I/O, no clock, no random ids. ``run_guid`` is a
UUIDv5 of the natural key so that the same run normalizes to the same guid
wherever and whenever it is fetched.
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

RUN_GUID_NAMESPACE = uuid.UUID("5b0b6c0e-4d0f-4f53-9a57-6b3c1f0e2a71")
UNKNOWN_CHARACTER = "unknown"

# specialization id -> (class id, role)
SPECIALIZATIONS: Dict[int, Tuple[int, str]] = {
    71: (1, "dps"), 72: (1, "dps"), 73: (1, "tank"),
    65: (2, "healer"), 66: (2, "tank"), 70: (2, "dps"),
    253: (3, "dps"), 254: (3, "dps"), 255: (3, "dps"),
    259: (4, "dps"), 260: (4, "dps"), 261: (4, "dps"),
    256: (5, "healer"), 257: (5, "healer"), 258: (5, "dps"),
    250: (6, "tank"), 251: (6, "dps"), 252: (6, "dps"),
    262: (7, "dps"), 263: (7, "dps"), 264: (7, "healer"),
    62: (8, "dps"), 63: (8, "dps"), 64: (8, "dps"),
    265: (9, "dps"), 266: (9, "dps"), 267: (9, "dps"),
    268: (10, "tank"), 269: (10, "dps"), 270: (10, "healer"),
    102: (11, "dps"), 103: (11, "dps"), 104: (11, "tank"), 105: (11, "healer"),
    577: (12, "dps"), 581: (12, "tank"),
    1467: (13, "dps"), 1468: (13, "healer"), 1473: (13, "dps"),
}

_SHARD_RE = re.compile(r"^(?P<region>[a-z]+)-s(?P<season>\d+)-p(?P<period>\d+)-d(?P<dungeon>\d+)-r(?P<realm>\d+)$")


@dataclass
class Member:
    character_name: str
    class_id: Optional[int]
    spec_id: Optional[int]
    role: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Member":
        return cls(
            character_name=raw["character_name"],
            class_id=raw.get("class_id"),
            spec_id=raw.get("spec_id"),
            role=raw.get("role"),
        )


@dataclass
class Run:
    region: str
    season_id: int
    period_id: int
    dungeon_id: int
    realm_id: int
    completed_at: datetime
    duration_ms: int
    keystone_level: int
    score: Optional[float]
    rank: Optional[int]
    members: List[Member] = field(default_factory=list)

    @property
    def natural_key(self) -> Tuple[Any, ...]:
        return natural_key(
            self.dungeon_id,
            self.period_id,
            self.season_id,
            self.region,
            self.completed_at,
            self.duration_ms,
            self.keystone_level,
        )

    @property
    def run_guid(self) -> uuid.UUID:
        return run_guid_for(self.natural_key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "region": self.region,
            "season_id": self.season_id,
            "period_id": self.period_id,
            "dungeon_id": self.dungeon_id,
            "realm_id": self.realm_id,
            "completed_at": self.completed_at.isoformat(),
            "duration_ms": self.duration_ms,
            "keystone_level": self.keystone_level,
            "score": self.score,
            "rank": self.rank,
            "run_guid": str(self.run_guid),
            "members": [m.to_dict() for m in self.members],
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Run":
        completed_at = datetime.fromisoformat(raw["completed_at"])
        if completed_at.tzinfo is None:
            completed_at = completed_at.replace(tzinfo=timezone.utc)
        return cls(
            region=raw["region"],
            season_id=int(raw["season_id"]),
            period_id=int(raw["period_id"]),
            dungeon_id=int(raw["dungeon_id"]),
            realm_id=int(raw["realm_id"]),
            completed_at=completed_at,
            duration_ms=int(raw["duration_ms"]),
            keystone_level=int(raw["keystone_level"]),
            score=raw.get("score"),
            rank=raw.get("rank"),
            members=[Member.from_dict(m) for m in raw.get("members", [])],
        )


@dataclass(frozen=True)
class DungeonTimers:
    """Maximum qualifying durations in ms for +1, +2 and +3 upgrades."""

    tier1_ms: Optional[int]
    tier2_ms: Optional[int] = None
    tier3_ms: Optional[int] = None

    @classmethod
    def from_upgrades(cls, upgrades: Iterable[Dict[str, Any]]) -> "DungeonTimers":
        by_level = {}
        for upgrade in upgrades or []:
            level = upgrade.get("upgrade_level")
            duration = upgrade.get("qualifying_duration")
            if level in (1, 2, 3) and duration:
                by_level[level] = int(duration)
        return cls(by_level.get(1), by_level.get(2), by_level.get(3))


def natural_key(
    dungeon_id: int,
    period_id: int,
    season_id: int,
    region: str,
    completed_at: datetime,
    duration_ms: int,
    keystone_level: int,
) -> Tuple[Any, ...]:
    completed_ms = int(completed_at.timestamp() * 1000)
    return (dungeon_id, period_id, season_id, region, completed_ms, duration_ms, keystone_level)


def run_guid_for(key: Tuple[Any, ...]) -> uuid.UUID:
    return uuid.uuid5(RUN_GUID_NAMESPACE, "|".join(str(part) for part in key))


def fallback_score(level: int, duration_ms: int, timers: Optional[DungeonTimers]) -> Optional[float]:
    if timers is None or not timers.tier1_ms:
        return None
    tier1 = timers.tier1_ms
    # A missing lower tier acts as a 0ms threshold so the curve stays continuous.
    tier2 = timers.tier2_ms or 0
    tier3 = timers.tier3_ms or 0
    base = 60 + level * 7.5

    if duration_ms <= tier1:
        if duration_ms <= tier2 and duration_ms <= tier3:
            score = base + 15
        elif duration_ms <= tier2:
            score = base + 7.5 + ((tier2 - duration_ms) / (tier2 - tier3)) * 7.5
        else:
            score = base + ((tier1 - duration_ms) / (tier1 - tier2)) * 7.5
    else:
        score = base * (tier1 / duration_ms)

    return round(max(0.01, score), 5)


def member_from_group(raw: Dict[str, Any]) -> Member:
    profile = raw.get("profile") or {}
    name = (profile.get("name") or "").strip() or UNKNOWN_CHARACTER
    spec_id = (raw.get("specialization") or {}).get("id")
    class_id, role = SPECIALIZATIONS.get(spec_id, (None, None))
    return Member(character_name=name, class_id=class_id, spec_id=spec_id, role=role)


def normalize_group(
    group: Dict[str, Any],
    *,
    region: str,
    season_id: int,
    period_id: int,
    dungeon_id: int,
    realm_id: int,
    timers: Optional[DungeonTimers] = None,
) -> Optional[Run]:
    """Return the Run for one leading group, or None if it has no natural key."""
    completed_ts = group.get("completed_timestamp")
    duration = group.get("duration")
    level = group.get("keystone_level")
    if completed_ts is None or duration is None or level is None:
        return None

    rating = (group.get("mythic_rating") or {}).get("rating")
    if rating is not None and rating > 0:
        score: Optional[float] = rating
    else:
        score = fallback_score(int(level), int(duration), timers)

    return Run(
        region=region,
        season_id=season_id,
        period_id=period_id,
        dungeon_id=dungeon_id,
        realm_id=realm_id,
        completed_at=datetime.fromtimestamp(int(completed_ts) / 1000, tz=timezone.utc),
        duration_ms=int(duration),
        keystone_level=int(level),
        score=score,
        rank=group.get("ranking"),
        members=[member_from_group(m) for m in group.get("members") or []],
    )


def normalize_groups(groups: Iterable[Dict[str, Any]], **shard: Any) -> Tuple[List[Run], int]:
    runs = []
    skipped = 0
    for group in groups:
        run = normalize_group(group, **shard)
        if run is None:
            skipped += 1
        else:
            runs.append(run)
    return runs, skipped


def shard_name(region: str, season_id: int, period_id: int, dungeon_id: int, realm_id: int) -> str:
    return f"{region}-s{season_id}-p{period_id}-d{dungeon_id}-r{realm_id}"


def parse_shard_name(name: str) -> Dict[str, Any]:
    match = _SHARD_RE.match(name)
    if not match:
        raise ValueError(f"not a shard name: {name!r}")
    return {
        "region": match["region"],
        "season_id": int(match["season"]),
        "period_id": int(match["period"]),
        "dungeon_id": int(match["dungeon"]),
        "realm_id": int(match["realm"]),
    }


def runs_to_json(runs: Iterable[Run]) -> bytes:
    return json.dumps([r.to_dict() for r in runs], default=str).encode("utf-8")


def runs_from_json(body: bytes) -> List[Run]:
    return [Run.from_dict(raw) for raw in json.loads(body)]
