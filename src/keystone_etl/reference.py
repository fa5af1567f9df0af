"""Versioned season -> dungeon mapping.

Each ``replace`` bumps the season's version and rewrites its dungeon set in
one transaction; readers never see a half-applied set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from .logging_utils import log_json

VERSION_SQL = "SELECT version FROM season_dungeon_set WHERE season_id = $1"
DUNGEONS_SQL = "SELECT dungeon_id FROM season_dungeon WHERE season_id = $1 ORDER BY dungeon_id"
BUMP_VERSION_SQL = """
INSERT INTO season_dungeon_set (season_id, version, updated_at)
VALUES ($1, 1, now())
ON CONFLICT (season_id) DO UPDATE
SET version = season_dungeon_set.version + 1, updated_at = now()
RETURNING version
"""
PRUNE_SQL = "DELETE FROM season_dungeon WHERE season_id = $1 AND NOT (dungeon_id = ANY($2::integer[]))"
UPSERT_SQL = """
INSERT INTO season_dungeon (season_id, dungeon_id, version)
VALUES ($1, $2, $3)
ON CONFLICT (season_id, dungeon_id) DO UPDATE SET version = EXCLUDED.version
"""


@dataclass(frozen=True)
class SeasonDungeons:
    season_id: int
    version: int
    dungeon_ids: List[int]


class SeasonDungeonMap:
    def __init__(self, pool: Any, logger: Optional[logging.Logger] = None) -> None:
        self.pool = pool
        self.logger = logger or logging.getLogger(__name__)

    async def get(self, season_id: int) -> Optional[SeasonDungeons]:
        async with self.pool.acquire() as conn:
            version = await conn.fetchval(VERSION_SQL, season_id)
            if version is None:
                return None
            rows = await conn.fetch(DUNGEONS_SQL, season_id)
        return SeasonDungeons(season_id, version, [r["dungeon_id"] for r in rows])

    async def replace(self, season_id: int, dungeon_ids: Iterable[int]) -> int:
        ids = sorted({int(d) for d in dungeon_ids})
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                version = await conn.fetchval(BUMP_VERSION_SQL, season_id)
                await conn.execute(PRUNE_SQL, season_id, ids)
                await conn.executemany(UPSERT_SQL, [(season_id, d, version) for d in ids])
        log_json(self.logger, "season_dungeons_replaced", season_id=season_id, version=version, dungeons=ids)
        return version
