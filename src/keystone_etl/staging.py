"""Shard staging between the fetch and load phases.

A shard is stored as ``<name>.json``. Writes are all-or-nothing: an S3
``PutObject`` only becomes visible once complete, and the local backend
writes a temp file and renames it into place. Only complete ``.json``
objects are ever listed.

Every call made through :class:`AsyncShardStore` goes through the job-wide
deadline and retry policy; the S3 client itself makes one attempt per call.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, TypeVar

import boto3
from botocore.config import Config as BotoConfig

from .normalize import Run, runs_from_json, runs_to_json
from .resilience import Deadline, RetryPolicy, call_with_retry

T = TypeVar("T")

SHARD_SUFFIX = ".json"


class ShardStore(Protocol):
    def put(self, name: str, body: bytes) -> None: ...

    def get(self, name: str) -> bytes: ...

    def list_names(self) -> List[str]: ...

    def delete(self, names: Iterable[str]) -> None: ...


def s3_client(region: str, connect_timeout: float = 5, read_timeout: float = 30) -> Any:
    # Retries happen in call_with_retry, under the job deadline.
    config = BotoConfig(
        connect_timeout=connect_timeout,
        read_timeout=read_timeout,
        retries={"total_max_attempts": 1, "mode": "standard"},
    )
    return boto3.client("s3", region_name=region, config=config)


class S3ShardStore:
    def __init__(self, bucket: str, region: str, prefix: str = "shards/", client: Any = None) -> None:
        self.bucket = bucket
        self.region = region
        self.prefix = prefix.strip("/") + "/" if prefix.strip("/") else ""
        self._client = client or s3_client(region)

    def _key(self, name: str) -> str:
        return f"{self.prefix}{name}{SHARD_SUFFIX}"

    def put(self, name: str, body: bytes) -> None:
        self._client.put_object(Bucket=self.bucket, Key=self._key(name), Body=body, ContentType="application/json")

    def get(self, name: str) -> bytes:
        obj = self._client.get_object(Bucket=self.bucket, Key=self._key(name))
        return obj["Body"].read()

    def list_names(self) -> List[str]:
        names = []
        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix):
            for obj in page.get("Contents", []):
                key = obj["Key"]
                if key.endswith(SHARD_SUFFIX):
                    names.append(key[len(self.prefix) : -len(SHARD_SUFFIX)])
        return sorted(names)

    def delete(self, names: Iterable[str]) -> None:
        keys = [self._key(n) for n in names]
        for i in range(0, len(keys), 1000):
            batch = keys[i : i + 1000]
            payload = {"Objects": [{"Key": key} for key in batch]}
            self._client.delete_objects(Bucket=self.bucket, Delete=payload)


class LocalShardStore:
    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, name: str) -> Path:
        return self.directory / f"{name}{SHARD_SUFFIX}"

    def put(self, name: str, body: bytes) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(body)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path(name))
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, name: str) -> bytes:
        return self._path(name).read_bytes()

    def list_names(self) -> List[str]:
        return sorted(p.name[: -len(SHARD_SUFFIX)] for p in self.directory.glob(f"*{SHARD_SUFFIX}") if not p.name.startswith("."))

    def delete(self, names: Iterable[str]) -> None:
        for name in names:
            self._path(name).unlink(missing_ok=True)


class AsyncShardStore:
    """Runs the blocking store calls in worker threads, under the deadline."""

    def __init__(
        self,
        store: ShardStore,
        deadline: Optional[Deadline] = None,
        policy: Optional[RetryPolicy] = None,
        timeout_seconds: float = 60,
    ) -> None:
        self.store = store
        self.deadline = deadline or Deadline.unbounded()
        self.policy = policy or RetryPolicy()
        self.timeout_seconds = timeout_seconds

    async def _call(self, label: str, fn: Callable[..., T], *args: Any) -> T:
        async def attempt(timeout: float) -> T:
            return await asyncio.to_thread(fn, *args)

        return await call_with_retry(
            attempt,
            policy=self.policy,
            deadline=self.deadline,
            timeout=self.timeout_seconds,
            label=label,
        )

    async def put_runs(self, name: str, runs: List[Run]) -> None:
        await self._call(f"put {name}", self.store.put, name, runs_to_json(runs))

    async def get_runs(self, name: str) -> List[Run]:
        body = await self._call(f"get {name}", self.store.get, name)
        return runs_from_json(body)

    async def list_names(self) -> List[str]:
        return await self._call("list", self.store.list_names)

    async def delete(self, names: Iterable[str]) -> None:
        await self._call("delete", self.store.delete, list(names))


def build_shard_store(
    cfg: Dict[str, Any],
    client: Optional[Any] = None,
    deadline: Optional[Deadline] = None,
    policy: Optional[RetryPolicy] = None,
) -> AsyncShardStore:
    backend = cfg.get("backend", "s3")
    timeout = float(cfg.get("timeout_seconds", 60))
    if backend == "local":
        store: ShardStore = LocalShardStore(cfg.get("local_dir", "./shards"))
    else:
        region = cfg.get("region", "us-east-1")
        client = client or s3_client(
            region,
            connect_timeout=float(cfg.get("connect_timeout_seconds", 5)),
            read_timeout=float(cfg.get("read_timeout_seconds", 30)),
        )
        store = S3ShardStore(cfg["bucket"], region, cfg.get("prefix", "shards/"), client=client)
    return AsyncShardStore(store, deadline=deadline, policy=policy, timeout_seconds=timeout)
