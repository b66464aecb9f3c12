"""Progress events for pipeline runs.

The orchestrator writes ``ProgressEvent``s to a ``ProgressSink``; callers
choose how to consume them (drain a channel, receive callbacks, or read
the latest state back from Redis).
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Protocol

import redis.asyncio as redis

logger = logging.getLogger(__name__)

TERMINAL_STAGES = frozenset({"completed", "failed", "cancelled"})


@dataclass
class PipelineCounters:
    """Running totals carried on every progress event."""
    website_id: str | None = None
    session_id: str | None = None
    pages_discovered: int = 0
    pages_processed: int = 0
    pages_failed: int = 0
    pages_skipped: int = 0  # Non-HTML responses
    chunks_created: int = 0
    embeddings_generated: int = 0
    total_cost: float = 0.0
    errors: list[str] = field(default_factory=list)


@dataclass
class ProgressEvent:
    """One progress update from a pipeline run."""
    stage: str  # discovery, extraction, chunking, embedding, completed, failed, cancelled
    message: str
    percent: float
    counters: PipelineCounters
    current_url: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["percent"] = round(self.percent, 1)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class ProgressSink(Protocol):
    """Receiver of progress events."""

    async def emit(self, event: ProgressEvent) -> None:
        ...


class NullSink:
    """Discards every event."""

    async def emit(self, event: ProgressEvent) -> None:
        return None


class CallbackSink:
    """Forwards events to a plain callable."""

    def __init__(self, callback: Callable[[ProgressEvent], Any]):
        self.callback = callback

    async def emit(self, event: ProgressEvent) -> None:
        result = self.callback(event)
        if asyncio.iscoroutine(result):
            await result


class ProgressChannel:
    """Queue of events that the caller drains with ``async for``.

    Iteration ends after a terminal event (completed, failed, cancelled).
    Unbounded by default, so awaiting a run before draining never stalls it.
    With ``maxsize`` set, a full queue makes the producer wait; only use that
    when a consumer drains concurrently with the run.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=maxsize)

    async def emit(self, event: ProgressEvent) -> None:
        await self._queue.put(event)

    async def get(self) -> ProgressEvent:
        return await self._queue.get()

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.is_terminal:
                return


class MultiSink:
    """Fans events out to several sinks in order."""

    def __init__(self, *sinks: ProgressSink):
        self.sinks = sinks

    async def emit(self, event: ProgressEvent) -> None:
        for sink in self.sinks:
            await sink.emit(event)


class RedisProgressSink:
    """Stores the latest progress event per crawl session in Redis."""

    def __init__(self, client: redis.Redis, ttl: int = 3600):
        self.redis = client
        self.ttl = ttl  # Progress expires after 1 hour by default

    @classmethod
    def from_url(cls, redis_url: str, ttl: int = 3600) -> "RedisProgressSink":
        return cls(redis.from_url(redis_url), ttl=ttl)

    def _key(self, session_id: str) -> str:
        """Generate Redis key for session progress."""
        return f"crawl_progress:{session_id}"

    async def emit(self, event: ProgressEvent) -> None:
        if not event.counters.session_id:
            return
        await self.redis.setex(
            self._key(event.counters.session_id),
            self.ttl,
            json.dumps(event.to_dict()),
        )

    async def get(self, session_id: str) -> dict[str, Any] | None:
        """Get current progress for a session.

        Returns:
            Progress dict or None if no progress stored.
        """
        data = await self.redis.get(self._key(session_id))
        if data:
            return json.loads(data)
        return None

    async def clear(self, session_id: str) -> None:
        """Clear progress for a session."""
        await self.redis.delete(self._key(session_id))

    async def close(self) -> None:
        await self.redis.aclose()
