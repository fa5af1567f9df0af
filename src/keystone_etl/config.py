from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import yaml

STAGING_BACKENDS = ("s3", "local")
LOADER_STRATEGIES = ("batched", "copy")
REFRESH_MODES = ("sync", "async", "skip")
# Postgres caps a statement at 32767 bind parameters; a run row binds 11.
MAX_BATCH_SIZE = 2500


@dataclass
class Config:
    raw: Dict[str, Any]

    @property
    def database(self) -> Dict[str, Any]:
        return self.raw.get("database", {})

    @property
    def staging(self) -> Dict[str, Any]:
        return self.raw["staging"]

    @property
    def api(self) -> Dict[str, Any]:
        return self.raw["api"]

    @property
    def loader(self) -> Dict[str, Any]:
        return self.raw.get("loader", {})

    @property
    def job(self) -> Dict[str, Any]:
        return self.raw.get("job", {})

    @property
    def regions(self) -> List[str]:
        return list(self.job.get("regions", ["us", "eu", "kr", "tw"]))

    @property
    def raiderio(self) -> Dict[str, Any]:
        return self.raw.get("raiderio", {"base_url": "https://raider.io/api/v1"})


def load_config(path: str = "config.yaml") -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    for section in ("staging", "api"):
        if section not in raw:
            raise ValueError(f"config is missing required section '{section}'")
    backend = raw["staging"].get("backend", "s3")
    if backend not in STAGING_BACKENDS:
        raise ValueError(f"staging.backend must be one of {STAGING_BACKENDS}, got {backend!r}")
    if backend == "s3" and not raw["staging"].get("bucket"):
        raise ValueError("staging.bucket is required for the s3 backend")
    loader = raw.get("loader", {})
    strategy = loader.get("strategy", "batched")
    if strategy not in LOADER_STRATEGIES:
        raise ValueError(f"loader.strategy must be one of {LOADER_STRATEGIES}, got {strategy!r}")
    batch_size = loader.get("batch_size", 500)
    if not isinstance(batch_size, int) or batch_size <= 0 or batch_size > MAX_BATCH_SIZE:
        raise ValueError(f"loader.batch_size must be an integer in 1..{MAX_BATCH_SIZE}")
    for key, default in (("progress_every", 50), ("max_concurrent_loads", 4)):
        value = loader.get(key, default)
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise ValueError(f"loader.{key} must be a positive integer, got {value!r}")
    refresh = raw.get("job", {}).get("refresh", "sync")
    if refresh not in REFRESH_MODES:
        raise ValueError(f"job.refresh must be one of {REFRESH_MODES}, got {refresh!r}")
    return Config(raw)


def get_database_url() -> str:
    url = os.getenv("KEYSTONE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("Missing database URL; set KEYSTONE_DATABASE_URL or DATABASE_URL")
    return url


def get_client_credentials() -> tuple[str, str]:
    client_id = os.getenv("BLIZZARD_CLIENT_ID")
    client_secret = os.getenv("BLIZZARD_CLIENT_SECRET")
    if not client_id or not client_secret:
        raise RuntimeError("Missing API credentials; set BLIZZARD_CLIENT_ID and BLIZZARD_CLIENT_SECRET")
    return client_id, client_secret


def get_raiderio_key() -> Optional[str]:
    return os.getenv("RAIDERIO_API_KEY") or None
