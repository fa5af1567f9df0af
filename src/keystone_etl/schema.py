"""Idempotent DDL for the leaderboard store."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .logging_utils import log_json

TOP_N = 1000

TABLES_DDL = [
    """
    CREATE TABLE IF NOT EXISTS leaderboard_run (
        id bigserial PRIMARY KEY,
        run_guid uuid NOT NULL UNIQUE,
        region varchar(8) NOT NULL,
        season_id integer NOT NULL,
        period_id integer NOT NULL,
        dungeon_id integer NOT NULL,
        realm_id integer NOT NULL,
        completed_at timestamptz NOT NULL,
        duration_ms integer NOT NULL,
        keystone_level integer NOT NULL,
        score double precision,
        rank integer,
        CONSTRAINT leaderboard_run_natural_key UNIQUE
            (dungeon_id, period_id, season_id, region, completed_at, duration_ms, keystone_level)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS run_group_member (
        run_guid uuid NOT NULL REFERENCES leaderboard_run(run_guid) ON DELETE CASCADE,
        character_name varchar(64) NOT NULL,
        class_id integer,
        spec_id integer,
        role varchar(16),
        PRIMARY KEY (run_guid, character_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS job_lock (
        lock_name text PRIMARY KEY,
        owner text NOT NULL,
        acquired_at timestamptz NOT NULL DEFAULT now(),
        expires_at timestamptz NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS season_dungeon_set (
        season_id integer PRIMARY KEY,
        version integer NOT NULL,
        updated_at timestamptz NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS season_dungeon (
        season_id integer NOT NULL REFERENCES season_dungeon_set(season_id) ON DELETE CASCADE,
        dungeon_id integer NOT NULL,
        version integer NOT NULL,
        PRIMARY KEY (season_id, dungeon_id)
    )
    """,
]

INDEXES_DDL = [
    "CREATE INDEX IF NOT EXISTS idx_run_group_member_character_name ON run_group_member(character_name)",
    "CREATE INDEX IF NOT EXISTS idx_leaderboard_run_dungeon_period_region ON leaderboard_run(dungeon_id, period_id, region)",
    "CREATE INDEX IF NOT EXISTS idx_leaderboard_run_season_period_dungeon_rank "
    "ON leaderboard_run(season_id, period_id, dungeon_id, keystone_level DESC, score DESC)",
    "CREATE INDEX IF NOT EXISTS idx_leaderboard_run_season ON leaderboard_run(season_id)",
]

# view name -> partition columns of the top-N window
VIEW_PARTITIONS: Dict[str, Tuple[str, ...]] = {
    "top_keys_per_group": ("season_id", "period_id", "dungeon_id"),
    "top_keys_global": ("season_id",),
    "top_keys_per_period": ("season_id", "period_id"),
    "top_keys_per_dungeon": ("season_id", "dungeon_id"),
}

VIEW_NAMES: List[str] = list(VIEW_PARTITIONS)


def view_ddl(name: str, partition: Tuple[str, ...], top_n: int = TOP_N) -> List[str]:
    cols = ", ".join(f"lr.{c}" for c in partition)
    create = f"""
    CREATE MATERIALIZED VIEW IF NOT EXISTS {name} AS
    WITH ranked_runs AS (
        SELECT lr.*,
               row_number() OVER (PARTITION BY {cols} ORDER BY lr.keystone_level DESC, lr.score DESC NULLS LAST) AS rn
        FROM leaderboard_run lr
    )
    SELECT r.id, r.run_guid, r.region, r.season_id, r.period_id, r.dungeon_id, r.realm_id,
           r.completed_at, r.duration_ms, r.keystone_level, r.score, r.rank, r.rn,
           COALESCE(
               json_agg(
                   json_build_object(
                       'character_name', m.character_name,
                       'class_id', m.class_id,
                       'spec_id', m.spec_id,
                       'role', m.role
                   ) ORDER BY m.character_name
               ) FILTER (WHERE m.run_guid IS NOT NULL),
               '[]'::json
           ) AS members
    FROM ranked_runs r
    LEFT JOIN run_group_member m ON m.run_guid = r.run_guid
    WHERE r.rn <= {int(top_n)}
    GROUP BY r.id, r.run_guid, r.region, r.season_id, r.period_id, r.dungeon_id, r.realm_id,
             r.completed_at, r.duration_ms, r.keystone_level, r.score, r.rank, r.rn
    WITH NO DATA
    """
    # REFRESH ... CONCURRENTLY needs a unique index on the view.
    unique = f"CREATE UNIQUE INDEX IF NOT EXISTS {name}_id_idx ON {name}(id)"
    keys = ", ".join(partition)
    lookup = (
        f"CREATE INDEX IF NOT EXISTS idx_{name}_lookup ON {name} "
        f"({keys}, keystone_level DESC, score DESC) INCLUDE (id, run_guid, completed_at)"
    )
    statements = [create, unique, lookup]
    if "period_id" in partition:
        statements.append(
            f"CREATE INDEX IF NOT EXISTS idx_{name}_time ON {name} "
            f"(completed_at DESC) INCLUDE ({keys}, keystone_level, score)"
        )
    return statements


def all_statements() -> List[str]:
    statements = list(TABLES_DDL) + list(INDEXES_DDL)
    for name, partition in VIEW_PARTITIONS.items():
        statements.extend(view_ddl(name, partition))
    return statements


async def ensure_schema(pool, logger: Optional[logging.Logger] = None) -> None:
    logger = logger or logging.getLogger(__name__)
    async with pool.acquire() as conn:
        async with conn.transaction():
            for stmt in all_statements():
                await conn.execute(stmt)
    log_json(logger, "schema_ensured", tables=5, views=len(VIEW_NAMES))
