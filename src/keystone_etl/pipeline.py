"""Ingestion run: lease -> fetch/stage -> load -> retention -> refresh -> release."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .blizzard import BlizzardSource
from .errors import RUN_FATAL_ERRORS, PlanningError, UpstreamNotFoundError
from .lease import LeaseCoordinator, LeaseHandle
from .loader import BulkLoader, LoadSummary
from .logging_utils import log_json
from .maintenance import cleanup_leaderboard
from .normalize import DungeonTimers, normalize_groups, parse_shard_name, shard_name
from .reference import SeasonDungeonMap
from .resilience import Deadline
from .staging import AsyncShardStore
from .views import AggregateRefresher

PeriodMode = Union[str, int]


@dataclass
class JobConfig:
    lock_name: str = "leaderboard-ingest"
    lease_ttl_seconds: float = 3600
    steal_grace_seconds: float = 60
    runtime_budget_seconds: Optional[float] = None
    deadline_buffer_seconds: float = 120
    safety_margin_seconds: float = 5
    release_timeout_seconds: float = 5
    release_attempts: int = 3
    regions: List[str] = field(default_factory=lambda: ["us", "eu", "kr", "tw"])
    refresh: str = "sync"
    retention_keep_top: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "JobConfig":
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in (raw or {}).items() if k in known})

    def make_deadline(self, clock: Callable[[], float] = time.monotonic) -> Deadline:
        if self.runtime_budget_seconds is not None:
            return Deadline(self.runtime_budget_seconds, self.safety_margin_seconds, clock=clock)
        return Deadline.from_lease_ttl(
            self.lease_ttl_seconds,
            self.deadline_buffer_seconds,
            safety_margin_seconds=self.safety_margin_seconds,
            clock=clock,
        )


@dataclass
class ShardSelection:
    season_id: Optional[int] = None
    period: PeriodMode = "latest"
    regions: Optional[List[str]] = None
    dungeon_ids: Optional[List[int]] = None
    realm_ids: Optional[List[int]] = None


@dataclass(frozen=True)
class ShardTarget:
    region: str
    season_id: int
    period_id: int
    dungeon_id: int
    realm_id: int
    timers: Optional[DungeonTimers] = None

    @property
    def name(self) -> str:
        return shard_name(self.region, self.season_id, self.period_id, self.dungeon_id, self.realm_id)


@dataclass
class ShardOutcome:
    shard: str
    # fetched | empty | not_found | fetch_failed | loaded | load_failed
    status: str
    runs: int = 0
    members: int = 0
    skipped_groups: int = 0
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status in ("fetch_failed", "load_failed")


@dataclass
class RunOutcome:
    status: str
    lock_name: str
    owner: str
    holder: Optional[str] = None
    holder_expires_at: Optional[datetime] = None
    shards: List[ShardOutcome] = field(default_factory=list)
    load: Optional[LoadSummary] = None
    retention_deleted: Optional[int] = None
    refresh: Optional[str] = None
    error: Optional[str] = None

    @property
    def runs_applied(self) -> int:
        return self.load.runs_applied if self.load else 0

    @property
    def members_applied(self) -> int:
        return self.load.members_applied if self.load else 0

    @property
    def failures(self) -> List[Tuple[str, str]]:
        return [(s.shard, s.error or s.status) for s in self.shards if s.failed]

    @property
    def exit_code(self) -> int:
        return 1 if self.status == "error" else 0

    def as_dict(self, include_shards: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status": self.status,
            "lock_name": self.lock_name,
            "owner": self.owner,
            "shards": len(self.shards),
            "runs_applied": self.runs_applied,
            "members_applied": self.members_applied,
            "failures": [{"shard": s, "error": e} for s, e in self.failures],
        }
        if self.holder is not None:
            payload["holder"] = self.holder
            payload["holder_expires_at"] = self.holder_expires_at
        if self.retention_deleted is not None:
            payload["retention_deleted"] = self.retention_deleted
        if self.refresh is not None:
            payload["refresh"] = self.refresh
        if self.error is not None:
            payload["error"] = self.error
        if include_shards:
            payload["shard_outcomes"] = [asdict(s) for s in self.shards]
        return payload


class IngestionJob:
    def __init__(
        self,
        *,
        pool: Any,
        source: Optional[BlizzardSource],
        store: AsyncShardStore,
        lease: LeaseCoordinator,
        loader: BulkLoader,
        refresher: AggregateRefresher,
        season_map: SeasonDungeonMap,
        cfg: JobConfig,
        deadline: Deadline,
        owner: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.pool = pool
        self.source = source
        self.store = store
        self.lease = lease
        self.loader = loader
        self.refresher = refresher
        self.season_map = season_map
        self.cfg = cfg
        self.deadline = deadline
        self.owner = owner
        self.logger = logger or logging.getLogger(__name__)

    async def run(
        self,
        selection: ShardSelection,
        steal: bool = False,
        load_only: bool = False,
        refresh: Optional[str] = None,
    ) -> RunOutcome:
        acquired = await self.lease.acquire(
            self.cfg.lock_name,
            self.owner,
            self.cfg.lease_ttl_seconds,
            steal=steal,
            grace_seconds=self.cfg.steal_grace_seconds,
        )
        if not acquired.acquired:
            outcome = RunOutcome(
                status="skipped",
                lock_name=self.cfg.lock_name,
                owner=self.owner,
                holder=acquired.current_owner,
                holder_expires_at=acquired.expires_at,
            )
            log_json(self.logger, "ingest_skipped", holder=acquired.current_owner, expires_at=acquired.expires_at)
            return outcome

        handle = acquired.lease
        outcome = RunOutcome(status="success", lock_name=self.cfg.lock_name, owner=self.owner)
        try:
            await self._run_locked(handle, selection, outcome, load_only, refresh or self.cfg.refresh)
        except RUN_FATAL_ERRORS as exc:
            outcome.status = "error"
            outcome.error = f"{type(exc).__name__}: {exc}"
            log_json(self.logger, "ingest_aborted", level=logging.ERROR, error=outcome.error)
        except Exception as exc:
            outcome.status = "error"
            outcome.error = f"{type(exc).__name__}: {exc}"
            log_json(self.logger, "ingest_failed", level=logging.ERROR, exc_info=exc, error=outcome.error)
        finally:
            await self.lease.release_quietly(
                handle,
                attempts=self.cfg.release_attempts,
                timeout=self.cfg.release_timeout_seconds,
            )
        log_json(self.logger, "ingest_done", **outcome.as_dict())
        return outcome

    async def _run_locked(
        self,
        handle: LeaseHandle,
        selection: ShardSelection,
        outcome: RunOutcome,
        load_only: bool,
        refresh: str,
    ) -> None:
        names: Optional[List[str]] = None
        if not load_only:
            targets = await self.plan(selection)
            outcome.shards = await self.fetch_and_stage(targets)
            names = [s.shard for s in outcome.shards if s.status == "fetched"]

        self.deadline.check()
        await self.lease.verify(handle)

        async def guard() -> None:
            await self.lease.verify(handle)

        self.loader.guard = guard
        summary = await self.loader.load_all(names)
        outcome.load = summary
        _merge_load_results(outcome, summary)

        if self.cfg.retention_keep_top:
            seasons = sorted({parse_shard_name(r.shard)["season_id"] for r in summary.results if r.ok})
            deleted = 0
            for season_id in seasons:
                deleted += await cleanup_leaderboard(
                    self.pool,
                    season_id=season_id,
                    keep_top=self.cfg.retention_keep_top,
                    timeout=self.deadline.effective_timeout(600),
                    logger=self.logger,
                )
            outcome.retention_deleted = deleted

        outcome.refresh = refresh
        if refresh == "sync":
            await self.lease.verify(handle)
            await self.refresher.refresh()
        elif refresh == "async":
            self.refresher.trigger_refresh()

    async def plan(self, selection: ShardSelection) -> List[ShardTarget]:
        targets: List[ShardTarget] = []
        for region in selection.regions or self.cfg.regions:
            season_id = selection.season_id or await self.source.current_season_id(region)
            periods = await self.resolve_periods(region, season_id, selection.period)
            realms = list(selection.realm_ids or await self.source.connected_realm_ids(region))
            if not realms:
                log_json(self.logger, "no_realms", level=logging.WARNING, region=region)
                continue
            by_season: Dict[int, List[int]] = {}
            for s, p in periods:
                by_season.setdefault(s, []).append(p)
            for s, period_ids in by_season.items():
                dungeons = list(selection.dungeon_ids or await self.season_dungeons(region, s, realms))
                timers = await self._timers(region, dungeons)
                for period_id in period_ids:
                    for dungeon_id in dungeons:
                        for realm_id in realms:
                            targets.append(ShardTarget(region, s, period_id, dungeon_id, realm_id, timers.get(dungeon_id)))
        log_json(self.logger, "ingest_planned", shards=len(targets))
        return targets

    async def resolve_periods(self, region: str, season_id: int, mode: PeriodMode) -> List[Tuple[int, int]]:
        if isinstance(mode, int) or (isinstance(mode, str) and mode.isdigit()):
            return [(season_id, int(mode))]
        periods = sorted(await self.source.season_period_ids(region, season_id))
        if mode == "all":
            return [(season_id, p) for p in periods]
        if not periods:
            raise UpstreamNotFoundError(f"season {season_id} lists no periods in {region}")
        if mode == "latest":
            return [(season_id, periods[-1])]
        if mode == "previous":
            if len(periods) >= 2:
                return [(season_id, periods[-2])]
            previous = sorted(await self.source.season_period_ids(region, season_id - 1))
            if not previous:
                raise UpstreamNotFoundError(f"no previous period before season {season_id} in {region}")
            return [(season_id - 1, previous[-1])]
        raise ValueError(f"unknown period selector {mode!r}")

    async def season_dungeons(self, region: str, season_id: int, realms: Sequence[int]) -> List[int]:
        mapping = await self.season_map.get(season_id)
        if mapping is not None and mapping.dungeon_ids:
            return mapping.dungeon_ids
        # The leaderboard index only ever lists the current season's dungeons.
        current = await self.source.current_season_id(region)
        if season_id != current:
            raise PlanningError(
                f"season {season_id} has no recorded dungeon set and the {region} index only lists "
                f"season {current}; pass --dungeons or record it with `season-dungeons --set`"
            )
        dungeons = await self.source.leaderboard_dungeon_ids(region, realms[0])
        if dungeons:
            await self.season_map.replace(season_id, dungeons)
        log_json(self.logger, "season_dungeons_discovered", region=region, season_id=season_id, dungeons=dungeons)
        return dungeons

    async def _timers(self, region: str, dungeons: Iterable[int]) -> Dict[int, DungeonTimers]:
        async def one(dungeon_id: int) -> Tuple[int, DungeonTimers]:
            try:
                return dungeon_id, await self.source.dungeon_timers(region, dungeon_id)
            except UpstreamNotFoundError:
                return dungeon_id, DungeonTimers(None)

        return dict(await asyncio.gather(*(one(d) for d in dungeons)))

    async def fetch_and_stage(self, targets: Sequence[ShardTarget]) -> List[ShardOutcome]:
        log_json(self.logger, "fetch_start", shards=len(targets))
        tasks = [asyncio.create_task(self.fetch_shard(t)) for t in targets]
        outcomes: List[ShardOutcome] = []
        try:
            for fut in asyncio.as_completed(tasks):
                outcomes.append(await fut)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        outcomes.sort(key=lambda o: o.shard)
        log_json(
            self.logger,
            "fetch_done",
            shards=len(outcomes),
            fetched=sum(1 for o in outcomes if o.status == "fetched"),
            failed=sum(1 for o in outcomes if o.failed),
        )
        return outcomes

    async def fetch_shard(self, target: ShardTarget) -> ShardOutcome:
        name = target.name
        try:
            groups = await self.source.leading_groups(target.region, target.realm_id, target.dungeon_id, target.period_id)
            runs, skipped = normalize_groups(
                groups,
                region=target.region,
                season_id=target.season_id,
                period_id=target.period_id,
                dungeon_id=target.dungeon_id,
                realm_id=target.realm_id,
                timers=target.timers,
            )
            if not runs:
                return ShardOutcome(name, "empty", skipped_groups=skipped)
            await self.store.put_runs(name, runs)
        except RUN_FATAL_ERRORS:
            raise
        except UpstreamNotFoundError:
            return ShardOutcome(name, "not_found")
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            log_json(self.logger, "shard_fetch_failed", level=logging.WARNING, shard=name, error=error)
            return ShardOutcome(name, "fetch_failed", error=error)
        log_json(self.logger, "shard_staged", level=logging.DEBUG, shard=name, runs=len(runs), skipped_groups=skipped)
        return ShardOutcome(
            name,
            "fetched",
            runs=len(runs),
            members=sum(len(r.members) for r in runs),
            skipped_groups=skipped,
        )


def _merge_load_results(outcome: RunOutcome, summary: LoadSummary) -> None:
    by_name = {s.shard: s for s in outcome.shards}
    for result in summary.results:
        shard = by_name.get(result.shard)
        if shard is None:
            shard = ShardOutcome(result.shard, "fetched")
            outcome.shards.append(shard)
        if result.ok:
            shard.status = "loaded"
            shard.runs, shard.members = result.runs, result.members
        else:
            shard.status = "load_failed"
            shard.error = result.error
