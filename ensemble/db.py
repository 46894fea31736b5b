"""Async database connection and operations for orchestration sessions."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm.exc import StaleDataError

from .config import settings
from .errors import SchemaNotInitializedError, is_schema_missing_error, schema_not_initialized_message
from .models import (
    Agent,
    AgentMessage,
    AgentSession,
    Base,
    SessionEvent,
    SessionStatus,
    Team,
)

logger = logging.getLogger(__name__)

# Create async engine and session factory
engine = create_async_engine(settings.async_database_url, echo=False, pool_pre_ping=True)
async_session_factory = async_sessionmaker(engine, expire_on_commit=False)

SessionFactory = async_sessionmaker[AsyncSession]


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create all tables (for development/testing)."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session(factory: SessionFactory | None = None) -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions."""
    async with (factory or async_session_factory)() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(
                    schema_not_initialized_message(exc)
                ) from exc
            raise


# =============================================================================
# Team Lookups
# =============================================================================


async def get_enabled_agents(session: AsyncSession, team_id: str) -> list[Agent]:
    """Enabled agents of a team in pipeline order."""
    result = await session.execute(
        select(Agent)
        .where(Agent.team_id == team_id, Agent.is_enabled.is_(True))
        .order_by(Agent.execution_order, Agent.created_at)
    )
    return list(result.scalars().all())


async def charge_team(session: AsyncSession, team_id: str, cost: Decimal) -> None:
    """Atomically add ``cost`` to a team's budget ledger."""
    await session.execute(
        update(Team)
        .where(Team.id == team_id)
        .values(budget_used=Team.budget_used + cost)
        .execution_options(synchronize_session=False)
    )


# =============================================================================
# Session Operations
# =============================================================================


async def get_agent_session(session: AsyncSession, session_id: str) -> AgentSession | None:
    """Get an orchestration session by its ID."""
    result = await session.execute(select(AgentSession).where(AgentSession.id == session_id))
    return result.scalar_one_or_none()


async def create_agent_session(
    session: AsyncSession,
    team: Team,
    project_id: str,
    owner_id: str,
    prompt: str,
    max_iterations: int,
) -> AgentSession:
    """Create a new session in the running state."""
    agent_session = AgentSession(
        team_id=team.id,
        project_id=project_id,
        owner_id=owner_id,
        initial_prompt=prompt,
        status=SessionStatus.RUNNING.value,
        current_iteration=0,
        max_iterations=max_iterations,
        total_cost=Decimal("0"),
        context=prompt,
    )
    session.add(agent_session)
    await session.flush()
    return agent_session


async def charge_session(session: AsyncSession, session_id: str, cost: Decimal) -> None:
    """Atomically add ``cost`` to a session total, bumping its version."""
    await session.execute(
        update(AgentSession)
        .where(AgentSession.id == session_id)
        .values(
            total_cost=AgentSession.total_cost + cost,
            version=AgentSession.version + 1,
            updated_at=datetime.now(UTC),
        )
        .execution_options(synchronize_session=False)
    )


async def claim_run(factory: SessionFactory | None, session_id: str, token: str) -> bool:
    """Take the run lease of a session so only one loop drives it.

    A lease older than ``run_lease_minutes`` is treated as abandoned.
    """
    now = datetime.now(UTC)
    expired = now - timedelta(minutes=settings.run_lease_minutes)
    async with get_session(factory) as session:
        result = await session.execute(
            update(AgentSession)
            .where(
                AgentSession.id == session_id,
                or_(AgentSession.run_token.is_(None), AgentSession.run_claimed_at < expired),
            )
            .values(run_token=token, run_claimed_at=now, version=AgentSession.version + 1)
            .execution_options(synchronize_session=False)
        )
    return result.rowcount == 1


async def release_run(factory: SessionFactory | None, session_id: str, token: str) -> bool:
    """Drop the run lease unless the session is running again.

    Returns ``False`` when a resume landed after the loop saw a paused
    status; the holder must then carry on driving the session.
    """
    async with get_session(factory) as session:
        result = await session.execute(
            update(AgentSession)
            .where(
                AgentSession.id == session_id,
                AgentSession.run_token == token,
                AgentSession.status != SessionStatus.RUNNING.value,
            )
            .values(run_token=None, run_claimed_at=None, version=AgentSession.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return True
        agent_session = await get_agent_session(session, session_id)
        return agent_session is None or agent_session.run_token != token


async def save_progress(
    factory: SessionFactory | None,
    session_id: str,
    *,
    iteration: int,
    context: str,
    attempts: int = 3,
) -> None:
    """Persist the iteration counter and running context.

    Retries on concurrent version bumps; never touches a terminal session.
    Also renews the run lease held by the loop.
    """
    for attempt in range(1, attempts + 1):
        try:
            async with get_session(factory) as session:
                agent_session = await get_agent_session(session, session_id)
                if agent_session is None or SessionStatus(agent_session.status).is_terminal:
                    return
                agent_session.current_iteration = iteration
                agent_session.context = context
                if agent_session.run_token is not None:
                    agent_session.run_claimed_at = datetime.now(UTC)
            return
        except StaleDataError:
            logger.debug("Stale session %s on progress write (attempt %d)", session_id, attempt)
    logger.warning("Could not persist progress for session %s", session_id)


async def transition_status(
    factory: SessionFactory | None,
    session_id: str,
    target: SessionStatus,
    *,
    error_message: str | None = None,
    force: bool = False,
    attempts: int = 3,
) -> str | None:
    """Move a session to ``target`` if the state machine allows it.

    ``force`` allows any move out of a non-terminal status (fallback
    escalation). Returns the status the session ends up in (``None`` if it
    does not exist). A terminal status is never overwritten.
    """
    for attempt in range(1, attempts + 1):
        try:
            async with get_session(factory) as session:
                agent_session = await get_agent_session(session, session_id)
                if agent_session is None:
                    return None
                current = SessionStatus(agent_session.status)
                allowed = current.can_transition(target) or (force and not current.is_terminal)
                if current == target or not allowed:
                    return current.value
                agent_session.status = target.value
                if error_message:
                    agent_session.error_message = error_message
                session.add(
                    SessionEvent(
                        session_id=session_id,
                        phase="status_change",
                        event="status_updated",
                        message=f"Status changed from {current.value} to {target.value}",
                        details={"old_status": current.value, "new_status": target.value},
                    )
                )
            return target.value
        except StaleDataError:
            logger.debug("Stale session %s on status write (attempt %d)", session_id, attempt)
    logger.warning("Could not move session %s to %s", session_id, target.value)
    return None


async def list_sessions(
    session: AsyncSession,
    owner_id: str,
    *,
    team_id: str | None = None,
    project_id: str | None = None,
    limit: int = 50,
) -> list[AgentSession]:
    """Sessions of an owner, newest first."""
    query = select(AgentSession).where(AgentSession.owner_id == owner_id)
    if team_id:
        query = query.where(AgentSession.team_id == team_id)
    if project_id:
        query = query.where(AgentSession.project_id == project_id)
    result = await session.execute(query.order_by(AgentSession.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def find_stalled_sessions(
    session: AsyncSession, older_than: timedelta | None = None
) -> list[AgentSession]:
    """Running sessions that have not been updated recently."""
    cutoff = datetime.now(UTC) - (older_than or timedelta(minutes=settings.stalled_session_minutes))
    result = await session.execute(
        select(AgentSession)
        .where(
            AgentSession.status == SessionStatus.RUNNING.value,
            AgentSession.updated_at < cutoff,
        )
        .order_by(AgentSession.updated_at)
    )
    return list(result.scalars().all())


# =============================================================================
# Message Operations
# =============================================================================


async def add_message(
    session: AsyncSession,
    session_id: str,
    agent_id: str,
    iteration: int,
    message_type: str,
    content: str,
    *,
    metadata: dict[str, Any] | None = None,
    cost: Decimal = Decimal("0"),
) -> AgentMessage:
    """Append a message to a session's audit trail."""
    message = AgentMessage(
        session_id=session_id,
        agent_id=agent_id,
        iteration=iteration,
        message_type=message_type,
        content=content,
        metadata_=metadata or {},
        cost=cost,
    )
    session.add(message)
    await session.flush()
    return message


async def get_session_messages(
    session: AsyncSession, session_id: str
) -> list[tuple[AgentMessage, Agent]]:
    """Messages of a session with their agent, in pipeline order."""
    result = await session.execute(
        select(AgentMessage, Agent)
        .join(Agent, AgentMessage.agent_id == Agent.id)
        .where(AgentMessage.session_id == session_id)
        .order_by(AgentMessage.iteration, Agent.execution_order, AgentMessage.created_at)
    )
    return [(row[0], row[1]) for row in result.all()]


# =============================================================================
# Event Log Operations
# =============================================================================


async def log_event(
    session: AsyncSession,
    session_id: str,
    phase: str,
    event: str,
    *,
    agent: str | None = None,
    message: str | None = None,
    details: dict[str, Any] | None = None,
    duration_ms: int | None = None,
) -> SessionEvent:
    """Log a session event."""
    log = SessionEvent(
        session_id=session_id,
        phase=phase,
        event=event,
        agent=agent,
        message=message,
        details=details,
        duration_ms=duration_ms,
    )
    session.add(log)
    await session.flush()
    return log


async def get_session_events(session: AsyncSession, session_id: str) -> list[SessionEvent]:
    """Event log of a session, oldest first."""
    result = await session.execute(
        select(SessionEvent)
        .where(SessionEvent.session_id == session_id)
        .order_by(SessionEvent.created_at)
    )
    return list(result.scalars().all())
