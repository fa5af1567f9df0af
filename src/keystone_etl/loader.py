"""Apply staged shards to Postgres with idempotent upserts.

Each shard is loaded in its own transaction so that a failure only rolls back
that shard. Runs merge on their natural key; a conflict overwrites score, rank
and realm and never the key columns. Within one shard duplicates collapse
before they reach ``ON CONFLICT`` (which refuses to touch the same row twice in
one statement), and the last occurrence wins in both strategies:

* ``batched``: multi-row ``INSERT ... VALUES`` statements of at most
  ``batch_size`` rows, deduplicated in Python.
* ``copy``: ``COPY`` into ``ON COMMIT DROP`` temp tables carrying an ordinal,
  then one ``DISTINCT ON ... ORDER BY ord DESC`` merge per table.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import asyncpg

from .errors import RUN_FATAL_ERRORS, ConstraintViolation
from .logging_utils import log_json
from .normalize import Run
from .resilience import Deadline, RetryPolicy, call_with_retry
from .staging import AsyncShardStore
from .utils import chunked

RUN_COLUMNS: Tuple[str, ...] = (
    "run_guid",
    "region",
    "season_id",
    "period_id",
    "dungeon_id",
    "realm_id",
    "completed_at",
    "duration_ms",
    "keystone_level",
    "score",
    "rank",
)
MEMBER_COLUMNS: Tuple[str, ...] = ("run_guid", "character_name", "class_id", "spec_id", "role")
NATURAL_KEY_COLUMNS: Tuple[str, ...] = (
    "dungeon_id",
    "period_id",
    "season_id",
    "region",
    "completed_at",
    "duration_ms",
    "keystone_level",
)
MUTABLE_RUN_COLUMNS: Tuple[str, ...] = ("score", "rank", "realm_id")
MUTABLE_MEMBER_COLUMNS: Tuple[str, ...] = ("class_id", "spec_id", "role")

TMP_RUNS = "tmp_leaderboard_run"
TMP_MEMBERS = "tmp_run_group_member"

RUN_CONFLICT = (
    "ON CONFLICT ON CONSTRAINT leaderboard_run_natural_key DO UPDATE SET "
    + ", ".join(f"{c} = EXCLUDED.{c}" for c in MUTABLE_RUN_COLUMNS)
)
MEMBER_CONFLICT = (
    "ON CONFLICT (run_guid, character_name) DO UPDATE SET "
    + ", ".join(f"{c} = EXCLUDED.{c}" for c in MUTABLE_MEMBER_COLUMNS)
)

CREATE_TMP_RUNS_SQL = f"""
CREATE TEMP TABLE {TMP_RUNS} (
    ord integer NOT NULL,
    run_guid uuid,
    region varchar(8),
    season_id integer,
    period_id integer,
    dungeon_id integer,
    realm_id integer,
    completed_at timestamptz,
    duration_ms integer,
    keystone_level integer,
    score double precision,
    rank integer
) ON COMMIT DROP
"""
CREATE_TMP_MEMBERS_SQL = f"""
CREATE TEMP TABLE {TMP_MEMBERS} (
    ord integer NOT NULL,
    run_guid uuid,
    character_name varchar(64),
    class_id integer,
    spec_id integer,
    role varchar(16)
) ON COMMIT DROP
"""
MERGE_RUNS_SQL = f"""
INSERT INTO leaderboard_run ({", ".join(RUN_COLUMNS)})
SELECT DISTINCT ON ({", ".join(NATURAL_KEY_COLUMNS)}) {", ".join(RUN_COLUMNS)}
FROM {TMP_RUNS}
ORDER BY {", ".join(NATURAL_KEY_COLUMNS)}, ord DESC
{RUN_CONFLICT}
"""
MERGE_MEMBERS_SQL = f"""
INSERT INTO run_group_member ({", ".join(MEMBER_COLUMNS)})
SELECT DISTINCT ON (run_guid, character_name) {", ".join(MEMBER_COLUMNS)}
FROM {TMP_MEMBERS}
ORDER BY run_guid, character_name, ord DESC
{MEMBER_CONFLICT}
"""


def _values_clause(n_rows: int, n_cols: int) -> str:
    rows = []
    for r in range(n_rows):
        start = r * n_cols
        rows.append("(" + ", ".join(f"${start + c + 1}" for c in range(n_cols)) + ")")
    return ", ".join(rows)


def upsert_runs_sql(n_rows: int) -> str:
    return (
        f"INSERT INTO leaderboard_run ({', '.join(RUN_COLUMNS)}) VALUES "
        f"{_values_clause(n_rows, len(RUN_COLUMNS))} {RUN_CONFLICT}"
    )


def upsert_members_sql(n_rows: int) -> str:
    return (
        f"INSERT INTO run_group_member ({', '.join(MEMBER_COLUMNS)}) VALUES "
        f"{_values_clause(n_rows, len(MEMBER_COLUMNS))} {MEMBER_CONFLICT}"
    )


def run_row(run: Run) -> Tuple[Any, ...]:
    return (
        run.run_guid,
        run.region,
        run.season_id,
        run.period_id,
        run.dungeon_id,
        run.realm_id,
        run.completed_at,
        run.duration_ms,
        run.keystone_level,
        run.score,
        run.rank,
    )


def member_rows(runs: Iterable[Run]) -> List[Tuple[Any, ...]]:
    rows = []
    for run in runs:
        guid = run.run_guid
        for m in run.members:
            rows.append((guid, m.character_name, m.class_id, m.spec_id, m.role))
    return rows


def dedupe_runs(runs: Iterable[Run]) -> List[Run]:
    """Collapse runs sharing a natural key; the last occurrence wins."""
    by_key: Dict[Tuple[Any, ...], Run] = {}
    for run in runs:
        by_key[run.natural_key] = run
    return list(by_key.values())


def dedupe_member_rows(rows: Iterable[Tuple[Any, ...]]) -> List[Tuple[Any, ...]]:
    """Collapse member rows sharing (run_guid, character_name); the last occurrence wins."""
    by_key: Dict[Tuple[Any, Any], Tuple[Any, ...]] = {}
    for row in rows:
        by_key[(row[0], row[1])] = row
    return list(by_key.values())


def _affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "INSERT 0 42".
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


@dataclass
class LoaderConfig:
    strategy: str = "batched"
    batch_size: int = 500
    max_concurrent_loads: int = 4
    progress_every: int = 50
    delete_after_load: bool = False
    statement_timeout_seconds: float = 120
    shard_timeout_seconds: float = 600

    def __post_init__(self) -> None:
        for key in ("batch_size", "max_concurrent_loads", "progress_every"):
            if int(getattr(self, key)) <= 0:
                raise ValueError(f"{key} must be positive, got {getattr(self, key)!r}")

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]], **overrides: Any) -> "LoaderConfig":
        merged = dict(raw or {})
        merged.update({k: v for k, v in overrides.items() if v is not None})
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in merged.items() if k in known})


@dataclass
class ShardLoadResult:
    shard: str
    runs: int = 0
    members: int = 0
    runs_in: int = 0
    members_in: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class LoadSummary:
    results: List[ShardLoadResult] = field(default_factory=list)

    @property
    def shards_total(self) -> int:
        return len(self.results)

    @property
    def shards_loaded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def shards_failed(self) -> int:
        return self.shards_total - self.shards_loaded

    @property
    def runs_applied(self) -> int:
        return sum(r.runs for r in self.results)

    @property
    def members_applied(self) -> int:
        return sum(r.members for r in self.results)

    @property
    def failures(self) -> List[Tuple[str, str]]:
        return [(r.shard, r.error) for r in self.results if not r.ok]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "shards_total": self.shards_total,
            "shards_loaded": self.shards_loaded,
            "shards_failed": self.shards_failed,
            "runs_applied": self.runs_applied,
            "members_applied": self.members_applied,
        }


class BulkLoader:
    def __init__(
        self,
        pool: Any,
        store: AsyncShardStore,
        cfg: LoaderConfig,
        deadline: Optional[Deadline] = None,
        policy: Optional[RetryPolicy] = None,
        logger: Optional[logging.Logger] = None,
        guard: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self.pool = pool
        self.store = store
        self.cfg = cfg
        self.deadline = deadline or Deadline.unbounded()
        self.policy = policy or RetryPolicy(max_attempts=3)
        self.logger = logger or logging.getLogger(__name__)
        self.guard = guard

    def _timeout(self) -> float:
        return self.deadline.effective_timeout(self.cfg.statement_timeout_seconds)

    async def load_all(self, names: Optional[Sequence[str]] = None) -> LoadSummary:
        if names is None:
            names = await self.store.list_names()
        names = list(names)
        total = len(names)
        log_json(self.logger, "load_start", shards=total, strategy=self.cfg.strategy)
        summary = LoadSummary()
        if not names:
            return summary

        semaphore = asyncio.Semaphore(self.cfg.max_concurrent_loads)

        async def bounded(name: str) -> ShardLoadResult:
            async with semaphore:
                self.deadline.check()
                return await self.load_shard(name)

        tasks = [asyncio.create_task(bounded(name)) for name in names]
        processed = 0
        try:
            for fut in asyncio.as_completed(tasks):
                result = await fut
                summary.results.append(result)
                processed += 1
                if processed % self.cfg.progress_every == 0 or processed == total:
                    log_json(
                        self.logger,
                        "load_progress",
                        processed=processed,
                        total=total,
                        failed=summary.shards_failed,
                        runs=summary.runs_applied,
                    )
                    if self.guard is not None and processed < total:
                        await self.guard()
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        summary.results.sort(key=lambda r: r.shard)
        if self.cfg.delete_after_load:
            loaded = [r.shard for r in summary.results if r.ok]
            await self.store.delete(loaded)
            log_json(self.logger, "shards_deleted", count=len(loaded))
        log_json(self.logger, "load_done", **summary.as_dict())
        return summary

    async def load_shard(self, name: str) -> ShardLoadResult:
        result = ShardLoadResult(shard=name)
        try:
            runs = await self.store.get_runs(name)
            result.runs_in = len(runs)
            result.members_in = sum(len(r.members) for r in runs)
            result.runs, result.members = await call_with_retry(
                lambda timeout: self._apply_in_transaction(runs, timeout),
                policy=self.policy,
                deadline=self.deadline,
                timeout=self.cfg.shard_timeout_seconds,
                label=f"load {name}",
                logger=self.logger,
            )
        except RUN_FATAL_ERRORS:
            raise
        except asyncpg.exceptions.IntegrityConstraintViolationError as exc:
            violation = ConstraintViolation(str(exc))
            result.error = str(violation)
            result.error_type = type(violation).__name__
            log_json(self.logger, "shard_constraint_violation", level=logging.ERROR, shard=name, error=str(exc))
        except Exception as exc:
            result.error = str(exc) or type(exc).__name__
            result.error_type = type(exc).__name__
            log_json(self.logger, "shard_load_failed", level=logging.WARNING, shard=name, error=result.error)
        return result

    async def _apply_in_transaction(self, runs: List[Run], timeout: float) -> Tuple[int, int]:
        async with self.pool.acquire(timeout=timeout) as conn:
            async with conn.transaction():
                return await self.apply_runs(conn, runs)

    async def apply_runs(self, conn: Any, runs: List[Run]) -> Tuple[int, int]:
        if self.cfg.strategy == "copy":
            return await self._apply_copy(conn, runs)
        return await self._apply_batched(conn, runs)

    async def _apply_batched(self, conn: Any, runs: List[Run]) -> Tuple[int, int]:
        unique_runs = dedupe_runs(runs)
        members = dedupe_member_rows(member_rows(runs))
        run_count = 0
        for batch in chunked([run_row(r) for r in unique_runs], self.cfg.batch_size):
            args = [value for row in batch for value in row]
            status = await conn.execute(upsert_runs_sql(len(batch)), *args, timeout=self._timeout())
            run_count += _affected(status)
        member_count = 0
        for batch in chunked(members, self.cfg.batch_size):
            args = [value for row in batch for value in row]
            status = await conn.execute(upsert_members_sql(len(batch)), *args, timeout=self._timeout())
            member_count += _affected(status)
        return run_count, member_count

    async def _apply_copy(self, conn: Any, runs: List[Run]) -> Tuple[int, int]:
        await conn.execute(CREATE_TMP_RUNS_SQL, timeout=self._timeout())
        await conn.execute(CREATE_TMP_MEMBERS_SQL, timeout=self._timeout())
        await conn.copy_records_to_table(
            TMP_RUNS,
            records=[(i,) + run_row(r) for i, r in enumerate(runs)],
            columns=("ord",) + RUN_COLUMNS,
            timeout=self._timeout(),
        )
        await conn.copy_records_to_table(
            TMP_MEMBERS,
            records=[(i,) + row for i, row in enumerate(member_rows(runs))],
            columns=("ord",) + MEMBER_COLUMNS,
            timeout=self._timeout(),
        )
        run_count = _affected(await conn.execute(MERGE_RUNS_SQL, timeout=self._timeout()))
        member_count = _affected(await conn.execute(MERGE_MEMBERS_SQL, timeout=self._timeout()))
        return run_count, member_count
