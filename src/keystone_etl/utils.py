import os
import socket
from typing import Iterable, Iterator, List, Optional, TypeVar

T = TypeVar("T")


def chunked(items: Iterable[T], size: int) -> Iterator[List[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    batch: List[T] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def default_owner(job: str = "job", env: Optional[dict] = None) -> str:
    """Lease owner identity: ``JOB_LOCK_OWNER`` or ``<instance>:<job>:<pid>``."""
    env = os.environ if env is None else env
    if env.get("JOB_LOCK_OWNER"):
        return env["JOB_LOCK_OWNER"]
    instance = env.get("RENDER_INSTANCE_ID") or env.get("HOSTNAME") or socket.gethostname() or "local"
    return f"{instance}:{job}:{os.getpid()}"
