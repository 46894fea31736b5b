"""Redis stream worker base class."""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from typing import Any

from redis.exceptions import ResponseError

from ..queue import STREAM_DLQ, STREAM_PRIORITY, STREAM_SESSIONS
from ..redis_client import get_redis_client

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
IDEMPOTENCY_TTL_SECONDS = 3600


@dataclass
class JobMessage:
    msg_id: str
    stream: str
    payload: dict[str, Any]


class RedisWorker:
    """Base worker consuming session runs from Redis Streams."""

    streams: tuple[str, ...] = (STREAM_PRIORITY, STREAM_SESSIONS)

    def __init__(self, *, name: str, group: str) -> None:
        self.name = name
        self.group = group
        self.consumer = f"{name}-{int(time.time())}"
        self.shutdown_requested = False

    async def setup(self) -> None:
        redis = get_redis_client()
        for stream in self.streams:
            try:
                await redis.xgroup_create(stream, self.group, id="$", mkstream=True)
            except ResponseError as e:
                # BUSYGROUP: the group already exists
                if "BUSYGROUP" not in str(e):
                    raise

    def _install_signal_handlers(self) -> None:
        def _handle_signal(signum: int, frame: object) -> None:
            logger.info("Worker %s received signal %d; shutting down", self.consumer, signum)
            self.shutdown_requested = True

        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

    async def _next_job(self) -> JobMessage | None:
        redis = get_redis_client()
        for stream in self.streams:
            result = await redis.xreadgroup(
                groupname=self.group,
                consumername=self.consumer,
                streams={stream: ">"},
                count=1,
                block=1000,
            )
            if result:
                stream_name, messages = result[0]
                msg_id, payload = messages[0]
                return JobMessage(msg_id=msg_id, stream=stream_name, payload=payload)
        return None

    async def _ack(self, job: JobMessage) -> None:
        redis = get_redis_client()
        await redis.xack(job.stream, self.group, job.msg_id)

    async def _to_dlq(self, job: JobMessage, error: str) -> None:
        redis = get_redis_client()
        payload = dict(job.payload)
        payload["error"] = error
        await redis.xadd(STREAM_DLQ, payload)
        await self._ack(job)

    async def _requeue(self, job: JobMessage, retry_count: int) -> None:
        redis = get_redis_client()
        payload = dict(job.payload)
        payload["retry_count"] = str(retry_count)
        await redis.delete(self.idempotency_key(job.payload))
        await redis.xadd(job.stream, payload)
        await self._ack(job)

    @staticmethod
    def idempotency_key(payload: dict[str, Any]) -> str:
        return f"idempotency:{payload.get('session_id')}:{payload.get('run_id')}"

    async def _should_process(self, payload: dict[str, Any]) -> bool:
        if not payload.get("session_id") or not payload.get("run_id"):
            return False

        redis = get_redis_client()
        claimed = await redis.set(
            self.idempotency_key(payload), self.consumer, nx=True, ex=IDEMPOTENCY_TTL_SECONDS
        )
        return claimed is True

    async def process(self, payload: dict[str, Any]) -> None:
        """Override in subclasses to execute a job."""
        raise NotImplementedError

    async def handle(self, job: JobMessage) -> None:
        if not await self._should_process(job.payload):
            logger.debug("Skipping duplicate job %s", job.msg_id)
            await self._ack(job)
            return

        try:
            await self.process(job.payload)
            await self._ack(job)
        except Exception as exc:
            retry_count = int(job.payload.get("retry_count", "0")) + 1
            logger.warning("Job %s failed (attempt %d): %s", job.msg_id, retry_count, exc)
            if retry_count >= MAX_ATTEMPTS:
                await self._to_dlq(job, str(exc))
            else:
                await self._requeue(job, retry_count)

    async def run_forever(self) -> None:
        await self.setup()
        self._install_signal_handlers()
        logger.info("Worker %s listening on %s", self.consumer, ", ".join(self.streams))

        while not self.shutdown_requested:
            job = await self._next_job()
            if not job:
                continue
            await self.handle(job)

        await asyncio.sleep(0.1)
