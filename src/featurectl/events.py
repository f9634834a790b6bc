"""Session event publishing over a Redis Stream.

The controller only ever fires events; it never waits on delivery. Inside the
event loop ``RedisEventSink`` buffers payloads and a single drain task writes
them with the asyncio client, so a slow or unreachable Redis never stalls a
run. Publishing is best-effort: a Redis outage is logged and otherwise ignored.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
import uuid
from datetime import UTC, datetime
from typing import Any, Protocol

from redis import ConnectionPool, Redis
from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import RedisError

log = logging.getLogger(__name__)

REDIS_URL = os.environ.get("FEATURECTL_REDIS_URL", "redis://localhost:6379/0")

EVENTS_STREAM = "featurectl:events:stream"
# ~1000 entries covers a busy afternoon of several projects
EVENTS_STREAM_MAXLEN = int(os.environ.get("FEATURECTL_EVENTS_STREAM_MAXLEN", "1000"))
EVENT_VERSION = 1
# Events beyond this many undelivered payloads are dropped.
EVENT_BUFFER_SIZE = 1000

STAGE_CHANGED = "stage.changed"
QUESTIONS_BATCH = "questions.batch"
QUESTION_ANSWERED = "question.answered"
PLAN_UPDATED = "plan.updated"
PLAN_APPROVED = "plan.approved"
EXECUTION_STATUS = "execution.status"
STEP_STARTED = "step.started"
STEP_COMPLETED = "step.completed"
AGENT_OUTPUT = "agent.output"
SESSION_QUEUED = "session.queued"
SESSION_PROMOTED = "session.promoted"

_pool: ConnectionPool | None = None


def get_redis() -> Redis:
    global _pool
    if _pool is None:
        _pool = ConnectionPool.from_url(REDIS_URL)
    return Redis(connection_pool=_pool)


def get_async_redis() -> AsyncRedis:
    return AsyncRedis.from_url(REDIS_URL)


class EventSink(Protocol):
    def publish(
        self,
        event_type: str,
        session_id: str,
        *,
        project: str,
        data: dict[str, Any] | None = None,
    ) -> None: ...


def build_event(
    event_type: str,
    session_id: str,
    *,
    project: str,
    data: dict[str, Any] | None = None,
    source: str = "controller",
) -> str:
    """JSON payload for one stream entry. *data* is merged into the envelope."""
    event: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "type": event_type,
        "id": session_id,
        "project": project,
        "source": source,
        "v": EVENT_VERSION,
        "ts": datetime.now(UTC).isoformat(),
    }
    if data:
        event.update(data)
    return json.dumps(event, default=str)


def publish_event(
    event_type: str,
    session_id: str,
    *,
    project: str,
    data: dict[str, Any] | None = None,
    source: str = "controller",
) -> None:
    """Publish a session event to the Redis Stream. Best-effort, never raises RedisError.

    *session_id* is ``{project_id}/{feature_id}``. Blocks on Redis, so only for
    callers outside the event loop.
    """
    payload = build_event(event_type, session_id, project=project, data=data, source=source)
    try:
        r = get_redis()
        r.xadd(EVENTS_STREAM, {"data": payload}, maxlen=EVENTS_STREAM_MAXLEN, approximate=True)
    except RedisError:
        log.warning("Event publish failed (Redis unavailable): %s %s", event_type, session_id)


class RedisEventSink:
    """EventSink that never blocks the event loop.

    ``publish`` only enqueues; the drain task is started on first use and
    stopped by :meth:`aclose`. Outside a running loop it falls back to the
    blocking :func:`publish_event`.
    """

    def __init__(self, *, source: str = "controller", maxsize: int = EVENT_BUFFER_SIZE) -> None:
        self.source = source
        self.maxsize = maxsize
        self._queue: asyncio.Queue[str] | None = None
        self._drainer: asyncio.Task | None = None

    def publish(
        self,
        event_type: str,
        session_id: str,
        *,
        project: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            publish_event(event_type, session_id, project=project, data=data, source=self.source)
            return
        if self._queue is None or self._drainer is None or self._drainer.done():
            self._queue = asyncio.Queue(maxsize=self.maxsize)
            self._drainer = loop.create_task(self._drain(self._queue), name="event-drain")
        payload = build_event(
            event_type, session_id, project=project, data=data, source=self.source
        )
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            log.warning("Event buffer full, dropping %s %s", event_type, session_id)

    async def _drain(self, queue: asyncio.Queue[str]) -> None:
        redis = get_async_redis()
        try:
            while True:
                payload = await queue.get()
                try:
                    await redis.xadd(
                        EVENTS_STREAM,
                        {"data": payload},
                        maxlen=EVENTS_STREAM_MAXLEN,
                        approximate=True,
                    )
                except RedisError:
                    log.warning("Event publish failed (Redis unavailable)")
                finally:
                    queue.task_done()
        finally:
            await redis.aclose()

    async def aclose(self, timeout: float = 5.0) -> None:
        """Deliver what is buffered (up to *timeout* seconds), then stop draining."""
        if self._drainer is None:
            return
        if self._queue is not None and not self._drainer.done():
            try:
                await asyncio.wait_for(self._queue.join(), timeout)
            except TimeoutError:
                log.warning(
                    "Event delivery timed out with %d event(s) buffered", self._queue.qsize()
                )
        self._drainer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._drainer
        self._drainer = None
        self._queue = None


class EventSubscriber:
    """Iterator over stream events, optionally filtered to one project or session.

    ``__next__`` blocks up to ``timeout`` seconds and returns ``None`` on
    timeout. Without Redis it sleeps for ``timeout`` and returns ``None``.
    """

    def __init__(
        self,
        *,
        project: str | None = None,
        session_id: str | None = None,
        timeout: float = 30.0,
        cursor: str = "$",
    ) -> None:
        self.project = project
        self.session_id = session_id
        self.timeout = timeout
        self._cursor = cursor
        self._redis: Redis | None
        try:
            self._redis = get_redis()
            self._redis.ping()
        except RedisError:
            self._redis = None

    def __iter__(self) -> EventSubscriber:
        return self

    @staticmethod
    def _decode(entry_id: Any, fields: dict) -> dict | None:
        data = fields.get("data") or fields.get(b"data")
        if not data:
            return None
        if isinstance(data, bytes):
            data = data.decode()
        try:
            event = json.loads(data)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(event, dict):
            return None
        event["_stream_id"] = entry_id.decode() if isinstance(entry_id, bytes) else entry_id
        return event

    def _matches(self, event: dict) -> bool:
        if self.session_id and event.get("id") != self.session_id:
            return False
        return not (self.project and event.get("project") != self.project)

    def __next__(self) -> dict | None:
        if self._redis is None:
            time.sleep(self.timeout)
            return None
        while True:
            result = self._redis.xread(
                {EVENTS_STREAM: self._cursor}, block=int(self.timeout * 1000), count=10
            )
            if not result:
                return None
            for _stream, entries in result:  # type: ignore[union-attr]
                for entry_id, fields in entries:
                    self._cursor = entry_id
                    event = self._decode(entry_id, fields)
                    if event is not None and self._matches(event):
                        return event
