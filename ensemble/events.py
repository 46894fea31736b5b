"""
Progress events for orchestration sessions.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from .capabilities import ProgressSink
from .config import settings

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SESSION_STARTED = "session.started"
    SESSION_COMPLETED = "session.completed"
    SESSION_FAILED = "session.failed"
    SESSION_PAUSED = "session.paused"

    ITERATION_STARTED = "iteration.started"
    ITERATION_COMPLETED = "iteration.completed"

    AGENT_STARTED = "agent.started"
    AGENT_COMPLETED = "agent.completed"
    AGENT_FAILED = "agent.failed"

    GUARD_DENIED = "guard.denied"
    ROLES_REASSIGNED = "roles.reassigned"
    COORDINATOR_DECIDED = "coordinator.decided"
    FALLBACK_COMPLETED = "fallback.completed"


@dataclass
class SessionEventRecord:
    """One progress event of a session."""

    id: UUID = field(default_factory=uuid4)
    type: EventType = EventType.SESSION_STARTED
    session_id: str | None = None
    project_id: str | None = None
    iteration: int | None = None
    phase: str | None = None
    agent: str | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "session_id": self.session_id,
            "project_id": self.project_id,
            "iteration": self.iteration,
            "phase": self.phase,
            "agent": self.agent,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": self.duration_ms,
        }


EventHandler = Callable[[SessionEventRecord], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers. Handler errors never propagate."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def emit(self, event: SessionEventRecord) -> None:
        for handler in self._handlers:
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception:
                logger.exception("Event handler error for %s", event.type.value)


def persist_event_handler(session_factory: Any = None) -> EventHandler:
    """Handler that writes events to the session_events table."""

    async def handler(event: SessionEventRecord) -> None:
        if not event.session_id:
            return
        from .db import get_agent_session, get_session, log_event

        async with get_session(session_factory) as session:
            if await get_agent_session(session, event.session_id) is None:
                return
            await log_event(
                session,
                event.session_id,
                event.phase or "unknown",
                event.type.value,
                agent=event.agent,
                message=event.message,
                details=json.loads(json.dumps(event.data, default=str)),
                duration_ms=event.duration_ms,
            )

    return handler


async def publish_event_handler(event: SessionEventRecord) -> None:
    """Handler that publishes events to Redis Pub/Sub."""
    if not event.session_id:
        return

    from .redis_client import get_redis_client

    redis = get_redis_client()
    channel = f"channel:session:{event.session_id}"
    await redis.publish(channel, json.dumps(event.to_dict(), default=str))


def progress_sink_handler(sink: ProgressSink) -> EventHandler:
    """Forward agent-level events to a host ProgressSink."""

    async def handler(event: SessionEventRecord) -> None:
        if not event.session_id or not event.agent:
            return
        await sink.emit(
            event.project_id or "",
            event.session_id,
            event.agent,
            event.message,
            event.phase or event.type.value,
        )

    return handler


def build_event_bus(
    session_factory: Any = None,
    *,
    persist: bool = True,
    publish: bool | None = None,
    sink: ProgressSink | None = None,
) -> EventEmitter:
    bus = EventEmitter()
    if persist:
        bus.on_event(persist_event_handler(session_factory))
    if settings.redis_publish_enabled if publish is None else publish:
        bus.on_event(publish_event_handler)
    if sink is not None:
        bus.on_event(progress_sink_handler(sink))
    return bus
