"""Redis Streams queue for session runs."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, cast
from uuid import uuid4

from .config import settings
from .redis_client import get_redis_client

STREAM_SESSIONS = "stream:jobs:sessions"
STREAM_PRIORITY = "stream:jobs:priority"
STREAM_DLQ = "stream:dlq:sessions"


class QueueFullError(RuntimeError):
    """Raised when a Redis job stream reaches capacity."""


@dataclass(frozen=True)
class SessionRunPayload:
    session_id: str
    owner_id: str
    run_id: str = field(default_factory=lambda: str(uuid4()))
    retry_count: int = 0
    schema_version: str = "1.0"

    def to_dict(self) -> dict[str, str]:
        return {
            "schema_version": str(self.schema_version),
            "job_type": "session_run",
            "session_id": str(self.session_id),
            "owner_id": str(self.owner_id),
            "run_id": str(self.run_id),
            "retry_count": str(self.retry_count),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRunPayload:
        return cls(
            session_id=str(data["session_id"]),
            owner_id=str(data.get("owner_id", "")),
            run_id=str(data.get("run_id") or uuid4()),
            retry_count=int(data.get("retry_count", 0)),
            schema_version=str(data.get("schema_version", "1.0")),
        )


async def _ensure_capacity(stream: str) -> None:
    redis = get_redis_client()
    length = await redis.xlen(stream)
    if length >= settings.redis_queue_max_depth:
        raise QueueFullError(f"Stream {stream} at capacity ({length})")


async def enqueue_session_run(payload: SessionRunPayload, *, priority: bool = False) -> str:
    """Enqueue a session run to Redis Streams."""
    stream = STREAM_PRIORITY if priority else STREAM_SESSIONS
    await _ensure_capacity(stream)

    redis = get_redis_client()
    msg_id = await redis.xadd(stream, cast(dict[Any, Any], payload.to_dict()))
    return msg_id


async def wait_for_session_status(
    session_id: str,
    *,
    timeout_seconds: int,
    poll_seconds: float = 2.0,
) -> str | None:
    """Poll the database until the session leaves ``running``.

    Returns the status reached, or None on timeout or unknown session.
    """
    from . import db

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_seconds
    while loop.time() < deadline:
        async with db.get_session() as session:
            agent_session = await db.get_agent_session(session, session_id)
            if agent_session is None:
                return None
            if agent_session.status != "running":
                return agent_session.status
        await asyncio.sleep(poll_seconds)
    return None
