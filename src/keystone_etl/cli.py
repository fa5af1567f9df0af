from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .api_client import ApiClient, ApiConfig
from .blizzard import BlizzardSource
from .config import Config, get_client_credentials, get_database_url, get_raiderio_key, load_config
from .cutoffs import fetch_season_cutoffs, resolve_cutoff
from .db import connect, create_pool
from .lease import LeaseCoordinator
from .loader import BulkLoader, LoaderConfig
from .logging_utils import log_json, setup_logging
from .maintenance import cleanup_leaderboard
from .pipeline import IngestionJob, JobConfig, ShardSelection
from .reference import SeasonDungeonMap
from .resilience import Deadline, RetryPolicy
from .schema import ensure_schema
from .staging import build_shard_store
from .utils import default_owner
from .views import AggregateRefresher


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="keystone-etl")
    parser.add_argument("--config", default="config.yaml")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest")
    ingest.add_argument("--season", type=int, help="Season id (default: current season)")
    ingest.add_argument("--period", default="latest", help="latest, previous, all, or a period id")
    ingest.add_argument("--regions", help="Comma-separated regions")
    ingest.add_argument("--dungeons", help="Comma-separated dungeon ids")
    ingest.add_argument("--realms", help="Comma-separated connected realm ids")
    ingest.add_argument("--owner")
    ingest.add_argument("--steal", action="store_true", help="Take over a lease within the steal grace window")
    ingest.add_argument("--refresh", choices=["sync", "async", "skip"])
    ingest.add_argument("--strategy", choices=["batched", "copy"])
    ingest.add_argument("--load-only", action="store_true", help="Skip fetching; load whatever is staged")
    ingest.add_argument("--show-shards", action="store_true")

    load = sub.add_parser("load")
    load.add_argument("--owner")
    load.add_argument("--steal", action="store_true")
    load.add_argument("--strategy", choices=["batched", "copy"])
    load.add_argument("--batch-size", type=int)
    load.add_argument("--delete-after-load", action="store_true", default=None)
    load.add_argument("--refresh", choices=["sync", "async", "skip"])

    refresh = sub.add_parser("refresh-views")
    refresh.add_argument("--async", dest="background", action="store_true", help="Trigger and return")
    refresh.add_argument("--blocking", action="store_true", help="Refresh without CONCURRENTLY")
    refresh.add_argument("--wait", type=float, default=None, help="With --async, seconds to keep the process alive")
    refresh.add_argument("--status", action="store_true", help="Show in-flight refreshes")

    lease = sub.add_parser("lease")
    lease_sub = lease.add_subparsers(dest="lease_command", required=True)
    acquire = lease_sub.add_parser("acquire")
    acquire.add_argument("--lock")
    acquire.add_argument("--owner")
    acquire.add_argument("--ttl", type=float)
    acquire.add_argument("--steal", action="store_true")
    release = lease_sub.add_parser("release")
    release.add_argument("--lock")
    release.add_argument("--owner", required=True)
    status = lease_sub.add_parser("status")
    status.add_argument("--lock")

    cleanup = sub.add_parser("cleanup")
    cleanup.add_argument("--season", type=int)
    cleanup.add_argument("--keep", type=int, default=1000)

    season_map = sub.add_parser("season-dungeons", help="Show or record a season's dungeon set")
    season_map.add_argument("--season", type=int, required=True)
    season_map.add_argument("--set", dest="dungeons", help="Comma-separated dungeon ids to record")

    sub.add_parser("init-db")

    cutoff = sub.add_parser("cutoff")
    cutoff.add_argument("--season", required=True, help="Raider.IO season slug, e.g. season-tww-2")
    cutoff.add_argument("--region", default="us")

    return parser.parse_args(argv)


def _csv(raw: Optional[str], cast: Callable[[str], Any] = str) -> Optional[List[Any]]:
    if not raw:
        return None
    return [cast(x.strip()) for x in raw.split(",") if x.strip()]


def _emit(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, default=str))


class Runtime:
    """Wires the components for one process."""

    def __init__(self, cfg: Config, deadline: Deadline, logger) -> None:
        self.cfg = cfg
        self.deadline = deadline
        self.logger = logger
        self.job_cfg = JobConfig.from_dict(cfg.job)
        self.pool = None
        self.api: Optional[ApiClient] = None
        self._refresher: Optional[AggregateRefresher] = None

    async def open_db(self) -> None:
        self.pool = await create_pool(get_database_url(), self.cfg.database, self.logger)

    async def connect_db(self) -> Any:
        return await connect(get_database_url(), self.cfg.database)

    def open_api(self) -> ApiClient:
        api_raw = dict(self.cfg.api)
        api_cfg = ApiConfig(**{k: v for k, v in api_raw.items() if k in ApiConfig.__dataclass_fields__})
        self.api = ApiClient(api_cfg, deadline=self.deadline)
        self.api.set_logger(self.logger)
        return self.api

    def lease(self) -> LeaseCoordinator:
        return LeaseCoordinator(self.pool, default_ttl_seconds=self.job_cfg.lease_ttl_seconds, logger=self.logger)

    def refresher(self) -> AggregateRefresher:
        if self._refresher is None:
            self._refresher = AggregateRefresher(
                self.pool, deadline=self.deadline, connect=self.connect_db, logger=self.logger
            )
        return self._refresher

    def job(self, owner: Optional[str], with_source: bool, **loader_overrides: Any) -> IngestionJob:
        source = None
        if with_source:
            client_id, client_secret = get_client_credentials()
            source = BlizzardSource(self.open_api(), client_id, client_secret)
        policy = RetryPolicy.from_dict(self.cfg.api.get("retry"))
        store = build_shard_store(self.cfg.staging, deadline=self.deadline, policy=policy)
        loader_cfg = LoaderConfig.from_dict(
            {"delete_after_load": self.cfg.staging.get("delete_after_load", False), **self.cfg.loader},
            **loader_overrides,
        )
        loader = BulkLoader(
            self.pool,
            store,
            loader_cfg,
            deadline=self.deadline,
            policy=policy,
            logger=self.logger,
        )
        return IngestionJob(
            pool=self.pool,
            source=source,
            store=store,
            lease=self.lease(),
            loader=loader,
            refresher=self.refresher(),
            season_map=SeasonDungeonMap(self.pool, self.logger),
            cfg=self.job_cfg,
            deadline=self.deadline,
            owner=owner or default_owner("ingest"),
            logger=self.logger,
        )

    async def close(self) -> None:
        if self.api is not None:
            await self.api.close()
        if self._refresher is not None:
            await self._refresher.detach()
        if self.pool is not None:
            try:
                await asyncio.wait_for(self.pool.close(), timeout=self.job_cfg.release_timeout_seconds)
            except asyncio.TimeoutError:
                log_json(self.logger, "db_pool_close_timeout", level=logging.WARNING)
                self.pool.terminate()


async def _dispatch(args: argparse.Namespace, rt: Runtime) -> int:
    if args.command == "cutoff":
        api = rt.open_api()
        payload = await fetch_season_cutoffs(api, rt.cfg.raiderio["base_url"], args.season, args.region, get_raiderio_key())
        resolution = resolve_cutoff(payload, args.region)
        _emit({"season": args.season, "region": args.region, **asdict(resolution)})
        return 0 if resolution.resolved else 1

    await rt.open_db()
    if args.command == "init-db":
        await ensure_schema(rt.pool, rt.logger)
        return 0

    if args.command in ("ingest", "load"):
        ingest = args.command == "ingest"
        overrides = {"strategy": args.strategy}
        if not ingest:
            overrides.update(batch_size=args.batch_size, delete_after_load=args.delete_after_load)
        job = rt.job(args.owner, with_source=ingest and not args.load_only, **overrides)
        selection = ShardSelection()
        if ingest:
            selection = ShardSelection(
                season_id=args.season,
                period=args.period,
                regions=_csv(args.regions),
                dungeon_ids=_csv(args.dungeons, int),
                realm_ids=_csv(args.realms, int),
            )
        outcome = await job.run(
            selection,
            steal=args.steal,
            load_only=not ingest or args.load_only,
            refresh=args.refresh,
        )
        _emit(outcome.as_dict(include_shards=ingest and args.show_shards))
        if outcome.refresh == "async":
            await job.refresher.wait_pending(rt.deadline.remaining())
        return outcome.exit_code

    if args.command == "refresh-views":
        refresher = rt.refresher()
        if args.status:
            _emit({"activity": await refresher.refresh_activity()})
            return 0
        if args.background:
            refresher.trigger_refresh(concurrently=not args.blocking)
            issued = await refresher.wait_issued(rt.deadline.remaining())
            if not issued and not refresher.pending:
                _emit({"status": "failed", "views": refresher.views})
                return 1
            _emit({"status": "triggered", "views": refresher.views})
            if args.wait:
                remaining = rt.deadline.remaining()
                bound = args.wait if remaining is None else min(args.wait, remaining)
                if not await refresher.wait_pending(bound):
                    log_json(rt.logger, "views_refresh_still_running", views=refresher.views)
            return 0
        durations = await refresher.refresh(concurrently=not args.blocking)
        _emit({"status": "refreshed", "seconds": durations})
        return 0

    if args.command == "lease":
        coordinator = rt.lease()
        lock = args.lock or rt.job_cfg.lock_name
        if args.lease_command == "acquire":
            result = await coordinator.acquire(
                lock,
                args.owner or default_owner("cli"),
                args.ttl,
                steal=args.steal,
                grace_seconds=rt.job_cfg.steal_grace_seconds,
            )
            _emit(result.as_dict())
            return 0 if result.acquired else 2
        if args.lease_command == "release":
            released = await coordinator.release(lock, args.owner)
            _emit({"status": "released" if released else "not_held", "lock_name": lock})
            return 0
        _emit({"lock_name": lock, "current": await coordinator.current(lock)})
        return 0

    if args.command == "cleanup":
        deleted = await cleanup_leaderboard(rt.pool, season_id=args.season, keep_top=args.keep, logger=rt.logger)
        _emit({"deleted": deleted, "season_id": args.season, "keep": args.keep})
        return 0

    if args.command == "season-dungeons":
        season_map = SeasonDungeonMap(rt.pool, rt.logger)
        if args.dungeons:
            await season_map.replace(args.season, _csv(args.dungeons, int))
        mapping = await season_map.get(args.season)
        if mapping is None:
            _emit({"season_id": args.season, "version": None, "dungeon_ids": []})
            return 1
        _emit(asdict(mapping))
        return 0

    raise ValueError(f"unknown command {args.command!r}")


def run_with_signals(main: Callable[[], Awaitable[int]]) -> int:
    """Run ``main`` and turn SIGINT/SIGTERM into a cancellation of it.

    Cancellation unwinds through the pipeline's ``finally`` blocks, which
    release the lease, and the process exits with 128 + signal number.
    """
    received: Dict[str, int] = {}

    async def runner() -> int:
        loop = asyncio.get_running_loop()
        task = asyncio.current_task()

        def on_signal(sig: int) -> None:
            received.setdefault("signal", sig)
            task.cancel()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, on_signal, sig)
            except NotImplementedError:
                pass
        return await main()

    try:
        return asyncio.run(runner())
    except (asyncio.CancelledError, KeyboardInterrupt):
        if "signal" not in received:
            received["signal"] = signal.SIGINT
    return 128 + int(received["signal"])


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    logger = setup_logging(args.log_level, command=args.command, owner=getattr(args, "owner", None))
    cfg = load_config(args.config)
    # One deadline per process, fixed before any I/O.
    deadline = JobConfig.from_dict(cfg.job).make_deadline()

    async def _run() -> int:
        rt = Runtime(cfg, deadline, logger)
        try:
            return await _dispatch(args, rt)
        finally:
            await rt.close()

    sys.exit(run_with_signals(_run))


if __name__ == "__main__":
    main()
