"""Session-run Redis worker."""

import asyncio
import logging

from ..capabilities import EnvCredentialStore
from ..events import build_event_bus
from ..invoker import AgentInvoker
from ..llm_client import GatewayLLMClient
from ..queue import SessionRunPayload
from ..scheduler import SessionScheduler
from .base import RedisWorker

logger = logging.getLogger(__name__)


class SessionWorker(RedisWorker):
    def __init__(
        self,
        *,
        name: str = "session",
        group: str = "session-workers",
        scheduler: SessionScheduler | None = None,
    ) -> None:
        super().__init__(name=name, group=group)
        self._scheduler = scheduler

    def scheduler(self) -> SessionScheduler:
        if self._scheduler is None:
            events = build_event_bus()
            invoker = AgentInvoker(GatewayLLMClient(), EnvCredentialStore(), events=events)
            # The worker is the run loop; it must not enqueue again on resume.
            self._scheduler = SessionScheduler(invoker, events=events, queue_enabled=False)
        return self._scheduler

    async def process(self, payload: dict[str, str]) -> None:
        job = SessionRunPayload.from_dict(payload)
        logger.info("Running session %s (run %s)", job.session_id, job.run_id)
        status = await self.scheduler().run_session(job.session_id)
        logger.info("Session %s finished run with status %s", job.session_id, status)


def main() -> None:
    worker = SessionWorker()
    asyncio.run(worker.run_forever())


if __name__ == "__main__":
    main()
