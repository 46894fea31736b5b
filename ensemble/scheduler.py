"""
Session scheduler - runs a team's agent pipeline over bounded iterations.

A session moves ``running -> {paused, completed, failed}`` and
``paused -> {running, completed}``. The loop reads the persisted status at
every iteration boundary, so pause/stop requests written by another
process take effect before the next iteration starts. In-flight agent
calls are never interrupted. A run lease on the session row keeps a
second dispatch from driving the same session concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any

from . import db
from .config import settings
from .costs import record_agent_cost
from .errors import ErrorCode, ValidationError
from .events import EventEmitter, EventType, SessionEventRecord
from .invoker import AgentInvoker, AgentResult
from .models import Agent, AgentMessage, AgentRole, AgentSession, MessageType, RoleTrigger, SessionStatus
from .rate_limit import UsageGuard
from .requirements import RequirementsAnalyzer
from .role_assignment import RoleAssignment, trigger_reassignment
from .teams import get_owned_team

logger = logging.getLogger(__name__)

INPUT_EXCERPT_CHARS = 500


class ControlAction(StrEnum):
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"


_CONTROL_TARGETS = {
    ControlAction.PAUSE: SessionStatus.PAUSED,
    ControlAction.RESUME: SessionStatus.RUNNING,
    ControlAction.STOP: SessionStatus.COMPLETED,
}


@dataclass
class MessageView:
    id: str
    agent_id: str
    agent_name: str
    agent_role: str
    iteration: int
    message_type: str
    content: str
    metadata: dict[str, Any]
    cost: Decimal


@dataclass
class SessionSnapshot:
    """Status of a session plus its ordered message log."""

    session_id: str
    status: str
    current_iteration: int
    max_iterations: int
    total_cost: Decimal
    error_message: str | None = None
    messages: list[MessageView] = field(default_factory=list)


def placeholder_output(agent_name: str, error: str | None) -> str:
    return f"Agent {agent_name} encountered an error: {error}. Continuing with previous output."


class SessionScheduler:
    """Owns the iteration loop of orchestration sessions."""

    def __init__(
        self,
        invoker: AgentInvoker,
        *,
        guard: UsageGuard | None = None,
        session_factory: db.SessionFactory | None = None,
        events: EventEmitter | None = None,
        auto_role_triggers: bool | None = None,
        queue_enabled: bool | None = None,
        analyzer: RequirementsAnalyzer | None = None,
    ) -> None:
        self.invoker = invoker
        self.guard = guard or UsageGuard()
        self.session_factory = session_factory
        self.events = events or EventEmitter()
        self.auto_role_triggers = (
            settings.auto_role_triggers if auto_role_triggers is None else auto_role_triggers
        )
        self.queue_enabled = settings.redis_queue_enabled if queue_enabled is None else queue_enabled
        self.analyzer = analyzer or RequirementsAnalyzer()
        self._tasks: set[asyncio.Task[Any]] = set()

    async def _emit(self, agent_session: AgentSession, event_type: EventType, message: str, **kwargs: Any) -> None:
        await self.events.emit(
            SessionEventRecord(
                type=event_type,
                session_id=agent_session.id,
                project_id=agent_session.project_id,
                message=message,
                **kwargs,
            )
        )

    # =========================================================================
    # Starting and controlling sessions
    # =========================================================================

    async def start_session(
        self,
        team_id: str,
        project_id: str,
        prompt: str,
        owner_id: str,
        max_iterations: int | None = None,
        *,
        background: bool = True,
    ) -> AgentSession:
        """Create a running session for an active team and dispatch it.

        With ``background=False`` the pipeline runs to its end before this
        returns; otherwise it runs as an asyncio task or on a queue worker.
        """
        if not prompt.strip():
            raise ValidationError("prompt is required")
        iterations = settings.default_max_iterations if max_iterations is None else max_iterations
        if iterations < 1:
            raise ValidationError("max_iterations must be at least 1")

        async with db.get_session(self.session_factory) as session:
            team = await get_owned_team(session, team_id, owner_id)
            if not team.is_active:
                raise ValidationError("active team not found")
            if not await db.get_enabled_agents(session, team.id):
                raise ValidationError("team has no enabled agents")
            agent_session = await db.create_agent_session(
                session, team, project_id, owner_id, prompt, iterations
            )

        logger.info("Started session %s for team %s", agent_session.id, team_id)
        await self._emit(agent_session, EventType.SESSION_STARTED, prompt[:200], phase="session")
        await self._dispatch(agent_session, background=background)
        return agent_session

    async def _dispatch(self, agent_session: AgentSession, *, background: bool) -> None:
        if self.queue_enabled:
            from .queue import QueueFullError, SessionRunPayload, enqueue_session_run

            try:
                await enqueue_session_run(
                    SessionRunPayload(session_id=agent_session.id, owner_id=agent_session.owner_id)
                )
            except QueueFullError as e:
                await db.transition_status(
                    self.session_factory, agent_session.id, SessionStatus.FAILED, error_message=str(e)
                )
                raise
            return

        if not background:
            await self.run_session(agent_session.id)
            return

        task = asyncio.create_task(self.run_session(agent_session.id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def control_session(
        self,
        session_id: str,
        owner_id: str,
        action: ControlAction | str,
        *,
        background: bool = True,
    ) -> str:
        """Pause, resume or stop a session. Resuming re-dispatches the run."""
        action = ControlAction(action)
        async with db.get_session(self.session_factory) as session:
            agent_session = await db.get_agent_session(session, session_id)
            if agent_session is None or agent_session.owner_id != owner_id:
                raise ValidationError("session not found")

        current = SessionStatus(agent_session.status)
        target = _CONTROL_TARGETS[action]
        if current != target and not current.can_transition(target):
            raise ValidationError(f"cannot {action.value} a {current.value} session")

        if current == target:
            return current.value

        status = await db.transition_status(self.session_factory, session_id, target)
        if action is ControlAction.RESUME and status == SessionStatus.RUNNING.value:
            await self._dispatch(agent_session, background=background)
        return status or current.value

    async def wait_for_tasks(self) -> None:
        """Wait for background session runs started by this scheduler."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # The pipeline loop
    # =========================================================================

    async def run_session(self, session_id: str) -> str | None:
        """Run a session from its next iteration. Never raises.

        The run lease makes a second dispatch of a session that is already
        being driven return ``None`` without touching it.
        """
        token = uuid.uuid4().hex
        try:
            if not await db.claim_run(self.session_factory, session_id, token):
                logger.info("Session %s is missing or already being run", session_id)
                return None
            while True:
                status = await self._run_claimed(session_id)
                if await db.release_run(self.session_factory, session_id, token):
                    return status
                logger.info("Session %s was resumed while its loop was exiting", session_id)
        except Exception:
            logger.exception("Could not manage the run lease of session %s", session_id)
            return None

    async def _run_claimed(self, session_id: str) -> str | None:
        try:
            return await self._run(session_id)
        except Exception as e:
            logger.exception("Session %s crashed", session_id)
            try:
                status = await db.transition_status(
                    self.session_factory, session_id, SessionStatus.FAILED, error_message=str(e)
                )
                await self.events.emit(
                    SessionEventRecord(
                        type=EventType.SESSION_FAILED,
                        session_id=session_id,
                        phase="session",
                        message=str(e),
                    )
                )
                return status
            except Exception:
                logger.exception("Could not record failure of session %s", session_id)
                return None

    async def _load(self, session_id: str) -> tuple[AgentSession | None, list[Agent]]:
        async with db.get_session(self.session_factory) as session:
            agent_session = await db.get_agent_session(session, session_id)
            if agent_session is None:
                return None, []
            agents = await db.get_enabled_agents(session, agent_session.team_id)
        return agent_session, agents

    async def _run(self, session_id: str) -> str | None:
        agent_session, _ = await self._load(session_id)
        if agent_session is None:
            logger.warning("Session %s not found", session_id)
            return None

        context = agent_session.context or agent_session.initial_prompt
        requirements = self.analyzer.analyze(agent_session.initial_prompt)
        started = time.monotonic()

        for iteration in range(agent_session.current_iteration + 1, agent_session.max_iterations + 1):
            agent_session, agents = await self._load(session_id)
            if agent_session is None:
                return None
            if agent_session.status != SessionStatus.RUNNING.value:
                logger.info("Session %s is %s; leaving loop", session_id, agent_session.status)
                return agent_session.status
            if not agents:
                raise ValidationError("team has no enabled agents")

            await self._emit(
                agent_session,
                EventType.ITERATION_STARTED,
                f"Iteration {iteration} of {agent_session.max_iterations}",
                iteration=iteration,
                phase="iteration",
            )

            errors = 0
            for agent in agents:
                denial = await self._guard(agent_session, agent, iteration, context)
                if denial is not None:
                    return denial

                result = await self.invoker.invoke(agent, context, agent_session, iteration)
                if result.success:
                    await self._record_success(agent_session, agent, iteration, context, result)
                    context = result.output
                    continue

                if result.critical:
                    return await self._record_critical(agent_session, agent, iteration, context, result)

                errors += 1
                await self._record_recoverable(agent_session, agent, iteration, context, result)

            await db.save_progress(self.session_factory, session_id, iteration=iteration, context=context)
            await self._emit(
                agent_session,
                EventType.ITERATION_COMPLETED,
                f"Iteration {iteration} finished with {errors} error(s)",
                iteration=iteration,
                phase="iteration",
            )

            if self.auto_role_triggers:
                await self._fire_role_triggers(
                    agent_session,
                    {
                        "iteration": iteration,
                        "error_count": errors,
                        "error_rate": errors / len(agents),
                        "elapsed_seconds": int(time.monotonic() - started),
                        "complexity": requirements.complexity.value,
                        "project_type": requirements.project_type,
                    },
                    had_errors=errors > 0,
                )

            if iteration >= agent_session.max_iterations:
                break

            coordinator = await self._coordinator(session_id)
            if coordinator is not None:
                should_continue = await self.invoker.ask_coordinator(
                    coordinator, context, agent_session, iteration
                )
                if not should_continue:
                    logger.info("Coordinator %s stopped session %s", coordinator.name, session_id)
                    break

        status = await db.transition_status(self.session_factory, session_id, SessionStatus.COMPLETED)
        if status == SessionStatus.COMPLETED.value:
            await self._emit(agent_session, EventType.SESSION_COMPLETED, "Session completed", phase="session")
        return status

    async def _coordinator(self, session_id: str) -> Agent | None:
        _, agents = await self._load(session_id)
        for agent in agents:
            if agent.current_role == AgentRole.COORDINATOR.value:
                return agent
        return None

    async def _guard(
        self, agent_session: AgentSession, agent: Agent, iteration: int, context: str
    ) -> str | None:
        """Run the rate and budget pre-checks; on denial pause the session."""
        async with db.get_session(self.session_factory) as session:
            decision = await self.guard.check_rate(
                session, agent_session.owner_id, settings.rate_check_estimated_cost
            )
            code = ErrorCode.RATE_LIMIT
            if decision.allowed:
                decision = await self.guard.check_budget(
                    session, agent_session.team_id, settings.budget_check_estimated_cost
                )
                code = ErrorCode.BUDGET
            if decision.allowed:
                return None

            await db.add_message(
                session,
                agent_session.id,
                agent.id,
                iteration,
                MessageType.ERROR.value,
                decision.reason or "Usage limit reached",
                metadata={
                    "error_code": code.value,
                    "input": context[:INPUT_EXCERPT_CHARS],
                    "agent_name": agent.name,
                    "reset_time": decision.reset_time.isoformat() if decision.reset_time else None,
                },
            )

        logger.info("Session %s paused: %s", agent_session.id, decision.reason)
        await db.save_progress(
            self.session_factory, agent_session.id, iteration=iteration, context=context
        )
        status = await db.transition_status(
            self.session_factory,
            agent_session.id,
            SessionStatus.PAUSED,
            error_message=decision.reason,
        )
        await self._emit(
            agent_session,
            EventType.GUARD_DENIED,
            decision.reason or "",
            iteration=iteration,
            agent=agent.name,
            phase="guard",
            data={"error_code": code.value},
        )
        return status or SessionStatus.PAUSED.value

    async def _record_success(
        self,
        agent_session: AgentSession,
        agent: Agent,
        iteration: int,
        context: str,
        result: AgentResult,
    ) -> AgentMessage:
        async with db.get_session(self.session_factory) as session:
            message = await db.add_message(
                session,
                agent_session.id,
                agent.id,
                iteration,
                MessageType.OUTPUT.value,
                result.output,
                metadata={
                    "input": context[:INPUT_EXCERPT_CHARS],
                    "reasoning": result.reasoning,
                    "tokens": result.tokens,
                    "role": agent.current_role,
                    "tool_results": [r.to_dict() for r in result.tool_results],
                },
                cost=result.cost,
            )
            await record_agent_cost(
                session,
                message,
                team_id=agent_session.team_id,
                user_id=agent_session.owner_id,
                provider=agent.provider,
                tokens=result.tokens,
            )
        return message

    async def _record_recoverable(
        self,
        agent_session: AgentSession,
        agent: Agent,
        iteration: int,
        context: str,
        result: AgentResult,
    ) -> None:
        async with db.get_session(self.session_factory) as session:
            await db.add_message(
                session,
                agent_session.id,
                agent.id,
                iteration,
                MessageType.OUTPUT.value,
                placeholder_output(agent.name, result.error),
                metadata={
                    "input": context[:INPUT_EXCERPT_CHARS],
                    "reasoning": "Fallback due to agent error",
                    "is_fallback": True,
                    "error": result.error,
                    "error_code": result.error_code.value if result.error_code else None,
                },
            )

    async def _record_critical(
        self,
        agent_session: AgentSession,
        agent: Agent,
        iteration: int,
        context: str,
        result: AgentResult,
    ) -> str:
        async with db.get_session(self.session_factory) as session:
            await db.add_message(
                session,
                agent_session.id,
                agent.id,
                iteration,
                MessageType.ERROR.value,
                result.error or "Agent failed",
                metadata={
                    "input": context[:INPUT_EXCERPT_CHARS],
                    "agent_name": agent.name,
                    "agent_role": agent.current_role,
                    "error_code": result.error_code.value if result.error_code else None,
                    "critical": True,
                },
            )

        error_message = f"Agent {agent.name} failed: {result.error}"
        status = await db.transition_status(
            self.session_factory,
            agent_session.id,
            SessionStatus.FAILED,
            error_message=error_message,
        )
        await self._emit(
            agent_session,
            EventType.SESSION_FAILED,
            error_message,
            iteration=iteration,
            agent=agent.name,
            phase="session",
        )
        return status or SessionStatus.FAILED.value

    async def _fire_role_triggers(
        self, agent_session: AgentSession, context: dict[str, Any], *, had_errors: bool
    ) -> None:
        triggers = [RoleTrigger.TASK_COMPLETION]
        if had_errors:
            triggers.append(RoleTrigger.ERROR_THRESHOLD)
        triggers.append(RoleTrigger.TIME_BASED)

        fired: list[tuple[RoleTrigger, list[RoleAssignment]]] = []
        async with db.get_session(self.session_factory) as session:
            for trigger in triggers:
                changes = await trigger_reassignment(
                    session, agent_session.team_id, trigger, context, session_id=agent_session.id
                )
                if changes:
                    fired.append((trigger, changes))

        for trigger, changes in fired:
            await self._emit(
                agent_session,
                EventType.ROLES_REASSIGNED,
                f"{len(changes)} role change(s) on {trigger.value}",
                iteration=context.get("iteration"),
                phase="roles",
                data={"changes": [c.to_dict() for c in changes]},
            )

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_session_status(self, session_id: str, owner_id: str) -> SessionSnapshot:
        async with db.get_session(self.session_factory) as session:
            agent_session = await db.get_agent_session(session, session_id)
            if agent_session is None or agent_session.owner_id != owner_id:
                raise ValidationError("session not found")
            rows = await db.get_session_messages(session, session_id)

        return SessionSnapshot(
            session_id=agent_session.id,
            status=agent_session.status,
            current_iteration=agent_session.current_iteration,
            max_iterations=agent_session.max_iterations,
            total_cost=Decimal(agent_session.total_cost or 0),
            error_message=agent_session.error_message,
            messages=[
                MessageView(
                    id=message.id,
                    agent_id=agent.id,
                    agent_name=agent.name,
                    agent_role=(message.metadata_ or {}).get("role") or agent.role,
                    iteration=message.iteration,
                    message_type=message.message_type,
                    content=message.content,
                    metadata=message.metadata_ or {},
                    cost=Decimal(message.cost or 0),
                )
                for message, agent in rows
            ],
        )

    async def list_sessions(
        self,
        owner_id: str,
        *,
        team_id: str | None = None,
        project_id: str | None = None,
    ) -> list[AgentSession]:
        async with db.get_session(self.session_factory) as session:
            return await db.list_sessions(session, owner_id, team_id=team_id, project_id=project_id)

    async def find_stalled_sessions(self, older_than: timedelta | None = None) -> list[AgentSession]:
        async with db.get_session(self.session_factory) as session:
            return await db.find_stalled_sessions(session, older_than)
