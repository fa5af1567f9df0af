from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import asyncpg

from .logging_utils import log_json


async def create_pool(dsn: str, cfg: Optional[Dict[str, Any]] = None, logger: Optional[logging.Logger] = None) -> asyncpg.Pool:
    cfg = cfg or {}
    pool = await asyncpg.create_pool(
        dsn=dsn,
        min_size=int(cfg.get("min_pool_size", 1)),
        max_size=int(cfg.get("max_pool_size", 10)),
        command_timeout=float(cfg.get("command_timeout_seconds", 120)),
    )
    log_json(
        logger or logging.getLogger(__name__),
        "db_pool_created",
        min_size=cfg.get("min_pool_size", 1),
        max_size=cfg.get("max_pool_size", 10),
    )
    return pool


async def connect(dsn: str, cfg: Optional[Dict[str, Any]] = None) -> asyncpg.Connection:
    """A connection outside the pool, for work the process may leave running."""
    cfg = cfg or {}
    return await asyncpg.connect(dsn=dsn, command_timeout=float(cfg.get("command_timeout_seconds", 120)))
