"""
Single-agent fallback for sessions the pipeline could not complete.

The original prompt is replayed through one LLM call on the chosen provider.
No pipeline, no tool actions, and no attempt to reconcile whatever the
agents produced before the session was abandoned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .capabilities import CredentialStore, LLMClient
from .errors import CredentialError, ValidationError
from .events import EventEmitter, EventType, SessionEventRecord
from .model_config import resolve_model
from .models import AgentSession, FallbackRecord, LLMProvider, SessionStatus

logger = logging.getLogger(__name__)

FALLBACK_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. The user's request was originally intended for a "
    "multi-agent system, but we're providing a single-agent response as a fallback. "
    "Please provide a comprehensive and helpful response."
)


@dataclass
class FallbackResult:
    session_id: str
    response: str
    provider: str
    model: str


@dataclass
class SessionWithFallback:
    session: AgentSession
    fallback_response: str | None = None

    @property
    def has_fallback(self) -> bool:
        return self.fallback_response is not None


async def _owned_session(session: AsyncSession, session_id: str, owner_id: str) -> AgentSession:
    agent_session = await db.get_agent_session(session, session_id)
    if agent_session is None or agent_session.owner_id != owner_id:
        raise ValidationError("session not found")
    return agent_session


async def save_fallback_response(
    session: AsyncSession, session_id: str, response: str, provider: str, model: str | None
) -> None:
    """Insert or overwrite the fallback reply of a session in one statement."""
    dialect = session.get_bind().dialect.name
    insert = sqlite_insert if dialect == "sqlite" else postgresql_insert
    stmt = insert(FallbackRecord).values(
        session_id=session_id,
        response=response,
        provider=provider,
        model=model,
        created_at=datetime.now(UTC),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["session_id"],
        set_={
            "response": stmt.excluded.response,
            "provider": stmt.excluded.provider,
            "model": stmt.excluded.model,
            "created_at": stmt.excluded.created_at,
        },
    )
    await session.execute(stmt)


async def fallback_to_single_agent(
    session_id: str,
    provider: str,
    owner_id: str,
    model: str | None = None,
    *,
    llm: LLMClient,
    credentials: CredentialStore,
    session_factory: db.SessionFactory | None = None,
    events: EventEmitter | None = None,
) -> FallbackResult:
    """Replay a session's prompt through a single agent and store the reply.

    Reruns overwrite the stored reply. Provider failures propagate.
    """
    try:
        provider = LLMProvider(provider).value
    except ValueError as e:
        raise ValidationError(f"Unsupported provider: {provider}") from e

    async with db.get_session(session_factory) as session:
        agent_session = await _owned_session(session, session_id, owner_id)
        if agent_session.status == SessionStatus.COMPLETED.value:
            raise ValidationError("session already completed")
        prompt = agent_session.initial_prompt
        project_id = agent_session.project_id

    credential = await credentials.get(owner_id, provider)
    if not credential:
        raise CredentialError(f"no API key found for provider: {provider}")

    await db.transition_status(
        session_factory,
        session_id,
        SessionStatus.FAILED,
        error_message="Escalated to single-agent fallback",
        force=True,
    )

    model_name = resolve_model(provider, model)
    logger.info("Running %s/%s fallback for session %s", provider, model_name, session_id)
    response = await llm.call(
        provider,
        credential,
        [
            {"role": "system", "content": FALLBACK_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        model_name,
    )

    async with db.get_session(session_factory) as session:
        await save_fallback_response(session, session_id, response, provider, model_name)

    if events is not None:
        await events.emit(
            SessionEventRecord(
                type=EventType.FALLBACK_COMPLETED,
                session_id=session_id,
                project_id=project_id,
                phase="fallback",
                message=response[:500],
                data={"provider": provider, "model": model_name},
            )
        )

    return FallbackResult(session_id=session_id, response=response, provider=provider, model=model_name)


async def get_session_with_fallback(
    session_id: str,
    owner_id: str,
    *,
    session_factory: db.SessionFactory | None = None,
) -> SessionWithFallback:
    async with db.get_session(session_factory) as session:
        agent_session = await _owned_session(session, session_id, owner_id)
        response = await session.scalar(
            select(FallbackRecord.response).where(FallbackRecord.session_id == session_id)
        )
    return SessionWithFallback(session=agent_session, fallback_response=response)
