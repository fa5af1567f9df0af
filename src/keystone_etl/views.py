from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from .logging_utils import log_json
from .resilience import Deadline
from .schema import VIEW_NAMES

POPULATED_SQL = "SELECT ispopulated FROM pg_matviews WHERE matviewname = $1"

ACTIVITY_SQL = """
SELECT pid, state, query_start, now() - query_start AS running_for, query
FROM pg_stat_activity
WHERE query ILIKE 'REFRESH MATERIALIZED VIEW%'
  AND pid <> pg_backend_pid()
ORDER BY query_start
"""


def refresh_sql(view: str, concurrently: bool) -> str:
    mode = "CONCURRENTLY " if concurrently else ""
    return f"REFRESH MATERIALIZED VIEW {mode}{view}"


class AggregateRefresher:
    """Rebuilds the top-keys materialized views.

    ``refresh`` blocks until every view is rebuilt. ``trigger_refresh`` starts
    the same work on a background task and returns at once; progress is only
    visible through ``pg_stat_activity`` (see ``refresh_activity``).

    With ``connect`` set, background refreshes run on their own connection
    rather than a pooled one, so the pool can close underneath them and
    ``detach`` can leave the statement running on the server.
    """

    def __init__(
        self,
        pool: Any,
        views: Sequence[str] = VIEW_NAMES,
        deadline: Optional[Deadline] = None,
        timeout_seconds: float = 1800,
        connect: Optional[Callable[[], Awaitable[Any]]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.pool = pool
        self.views = list(views)
        self.deadline = deadline or Deadline.unbounded()
        self.timeout_seconds = timeout_seconds
        self.connect = connect
        self.logger = logger or logging.getLogger(__name__)
        self._pending: Set[asyncio.Task] = set()
        self._connections: Set[Any] = set()
        self._detaching = False
        self._issued: Optional[asyncio.Event] = None

    async def refresh(self, concurrently: bool = True) -> Dict[str, float]:
        async with self.pool.acquire() as conn:
            return await self._refresh_on(conn, concurrently)

    async def _refresh_on(
        self, conn: Any, concurrently: bool, issued: Optional[asyncio.Event] = None
    ) -> Dict[str, float]:
        durations: Dict[str, float] = {}
        for view in self.views:
            timeout = self.deadline.effective_timeout(self.timeout_seconds)
            populated = await conn.fetchval(POPULATED_SQL, view, timeout=timeout)
            # CONCURRENTLY is rejected until the view has been populated once.
            use_concurrently = concurrently and bool(populated)
            started = time.monotonic()
            statement = asyncio.ensure_future(conn.execute(refresh_sql(view, use_concurrently), timeout=timeout))
            if issued is not None and not issued.is_set():
                # One step of the statement task puts the query on the socket.
                await asyncio.sleep(0)
                issued.set()
            await statement
            durations[view] = round(time.monotonic() - started, 3)
            log_json(
                self.logger,
                "view_refreshed",
                view=view,
                concurrently=use_concurrently,
                seconds=durations[view],
            )
        log_json(self.logger, "views_refreshed", views=len(durations))
        return durations

    async def _refresh_detached(self, concurrently: bool) -> Dict[str, float]:
        if self.connect is None:
            async with self.pool.acquire() as conn:
                return await self._refresh_on(conn, concurrently, self._issued)
        conn = await self.connect()
        self._connections.add(conn)
        try:
            return await self._refresh_on(conn, concurrently, self._issued)
        finally:
            self._connections.discard(conn)
            if not conn.is_closed():
                await conn.close()

    def trigger_refresh(self, concurrently: bool = True) -> asyncio.Task:
        self._issued = asyncio.Event()
        task = asyncio.create_task(self._refresh_detached(concurrently))
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        log_json(self.logger, "views_refresh_triggered", views=self.views)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            log_json(self.logger, "views_refresh_cancelled", level=logging.WARNING)
            return
        exc = task.exception()
        if exc is None:
            return
        if self._detaching:
            log_json(self.logger, "views_refresh_detached", level=logging.WARNING, error=str(exc) or type(exc).__name__)
            return
        log_json(self.logger, "views_refresh_failed", level=logging.ERROR, error=str(exc) or type(exc).__name__)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def wait_pending(self, timeout: Optional[float] = None) -> bool:
        """Wait for background refreshes. Returns False if some are still running."""
        if not self._pending:
            return True
        done, not_done = await asyncio.wait(set(self._pending), timeout=timeout)
        return not not_done

    async def wait_issued(self, timeout: Optional[float] = None) -> bool:
        """Wait until the latest background refresh has sent its first REFRESH."""
        if self._issued is None:
            return False
        waiter = asyncio.ensure_future(self._issued.wait())
        done, _ = await asyncio.wait({waiter, *self._pending}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        if waiter not in done:
            waiter.cancel()
        return self._issued.is_set()

    async def detach(self, grace_seconds: float = 1.0) -> int:
        """Drop the connections of unfinished background refreshes without cancelling them.

        ``terminate`` closes the socket without a cancel request, so the
        server completes the REFRESH already running; views the task had not
        reached yet wait for the next refresh. Returns how many were left.
        """
        if not self._pending:
            return 0
        left = len(self._pending)
        self._detaching = True
        for conn in list(self._connections):
            conn.terminate()
        # Cancelling a task mid-query makes asyncpg send a cancel request, so
        # wait for them to fail on the closed socket instead.
        await asyncio.wait(set(self._pending), timeout=grace_seconds)
        log_json(self.logger, "views_refresh_left_running", level=logging.WARNING, refreshes=left)
        return left

    async def refresh_activity(self) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(ACTIVITY_SQL)
        return [dict(r) for r in rows]
