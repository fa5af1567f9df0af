from __future__ import annotations

import logging
from typing import Any, Optional

from .logging_utils import log_json
from .schema import TOP_N

CLEANUP_SQL = """
WITH ranked AS (
    SELECT id,
           row_number() OVER (
               PARTITION BY season_id, period_id, dungeon_id
               ORDER BY keystone_level DESC, score DESC NULLS LAST
           ) AS rn
    FROM leaderboard_run
    WHERE $1::integer IS NULL OR season_id = $1::integer
)
DELETE FROM leaderboard_run lr
USING ranked r
WHERE lr.id = r.id AND r.rn > $2
"""


async def cleanup_leaderboard(
    pool: Any,
    season_id: Optional[int] = None,
    keep_top: int = TOP_N,
    timeout: Optional[float] = None,
    logger: Optional[logging.Logger] = None,
) -> int:
    """Keep the best ``keep_top`` runs per (season, period, dungeon); members cascade."""
    if keep_top <= 0:
        raise ValueError("keep_top must be positive")
    logger = logger or logging.getLogger(__name__)
    async with pool.acquire() as conn:
        async with conn.transaction():
            status = await conn.execute(CLEANUP_SQL, season_id, keep_top, timeout=timeout)
    deleted = int(status.rsplit(" ", 1)[-1])
    log_json(logger, "leaderboard_cleanup", season_id=season_id, keep_top=keep_top, deleted=deleted)
    return deleted
