"""Reusable system-prompt personas."""

from __future__ import annotations

from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ValidationError
from .models import Agent, AgentRole, Persona
from .role_config import DEFAULT_TEAM_AGENTS
from .teams import get_owned_agent

_PERSONA_FIELDS = ("name", "description", "system_prompt", "suggested_role", "tags", "is_public")


def default_system_prompt(role: str) -> str:
    for template in DEFAULT_TEAM_AGENTS:
        if template["role"] == role:
            return template["system_prompt"]
    return f"You are a helpful {role} agent."


def _check_suggested_role(role: str | None) -> str | None:
    if role is None:
        return None
    try:
        return AgentRole(role).value
    except ValueError as e:
        raise ValidationError(f"Unknown role: {role}") from e


def _with_tags(personas: list[Persona], tags: list[str] | None) -> list[Persona]:
    if not tags:
        return personas
    wanted = {t.lower() for t in tags}
    return [p for p in personas if wanted & {t.lower() for t in p.tags or []}]


async def create_persona(
    session: AsyncSession,
    owner_id: str,
    *,
    name: str,
    system_prompt: str,
    description: str | None = None,
    suggested_role: str | None = None,
    tags: list[str] | None = None,
    is_public: bool = False,
) -> Persona:
    if not name.strip() or not system_prompt.strip():
        raise ValidationError("persona name and system prompt are required")
    persona = Persona(
        owner_id=owner_id,
        name=name.strip(),
        description=description,
        system_prompt=system_prompt,
        suggested_role=_check_suggested_role(suggested_role),
        tags=list(tags or []),
        is_public=is_public,
        usage_count=0,
    )
    session.add(persona)
    await session.flush()
    return persona


async def list_personas(
    session: AsyncSession,
    owner_id: str,
    *,
    include_public: bool = False,
    tags: list[str] | None = None,
) -> list[Persona]:
    visible = Persona.owner_id == owner_id
    if include_public:
        visible = or_(visible, Persona.is_public.is_(True))
    result = await session.execute(
        select(Persona).where(visible).order_by(Persona.usage_count.desc(), Persona.created_at.desc())
    )
    return _with_tags(list(result.scalars().all()), tags)


async def get_persona(session: AsyncSession, persona_id: str, owner_id: str) -> Persona:
    """A persona the owner created or one that is public."""
    result = await session.execute(
        select(Persona).where(
            Persona.id == persona_id,
            or_(Persona.owner_id == owner_id, Persona.is_public.is_(True)),
        )
    )
    persona = result.scalar_one_or_none()
    if persona is None:
        raise ValidationError("persona not found")
    return persona


async def _owned_persona(session: AsyncSession, persona_id: str, owner_id: str) -> Persona:
    result = await session.execute(
        select(Persona).where(Persona.id == persona_id, Persona.owner_id == owner_id)
    )
    persona = result.scalar_one_or_none()
    if persona is None:
        raise ValidationError("persona not found or not authorized")
    return persona


async def update_persona(
    session: AsyncSession, persona_id: str, owner_id: str, **changes: Any
) -> Persona:
    persona = await _owned_persona(session, persona_id, owner_id)
    updates = {k: v for k, v in changes.items() if k in _PERSONA_FIELDS and v is not None}
    if not updates:
        raise ValidationError("no fields to update")
    if "suggested_role" in updates:
        updates["suggested_role"] = _check_suggested_role(updates["suggested_role"])
    if "tags" in updates:
        updates["tags"] = list(updates["tags"])
    for key, value in updates.items():
        setattr(persona, key, value)
    await session.flush()
    return persona


async def delete_persona(session: AsyncSession, persona_id: str, owner_id: str) -> None:
    persona = await _owned_persona(session, persona_id, owner_id)
    in_use = await session.scalar(
        select(func.count(Agent.id)).where(Agent.persona_id == persona_id)
    )
    if in_use:
        raise ValidationError("cannot delete persona that is being used by agents")
    await session.delete(persona)
    await session.flush()


async def apply_persona_to_agent(
    session: AsyncSession, agent_id: str, persona_id: str, owner_id: str
) -> Agent:
    """Copy a persona's prompt onto an agent and count the use."""
    agent = await get_owned_agent(session, agent_id, owner_id)
    persona = await get_persona(session, persona_id, owner_id)

    agent.persona_id = persona.id
    agent.system_prompt = persona.system_prompt
    await session.execute(
        update(Persona)
        .where(Persona.id == persona.id)
        .values(usage_count=Persona.usage_count + 1)
        .execution_options(synchronize_session=False)
    )
    await session.flush()
    await session.refresh(persona)
    return agent


async def remove_persona_from_agent(session: AsyncSession, agent_id: str, owner_id: str) -> Agent:
    """Detach the persona and revert to the default prompt of the agent's base role."""
    agent = await get_owned_agent(session, agent_id, owner_id)
    agent.persona_id = None
    agent.system_prompt = default_system_prompt(agent.role)
    await session.flush()
    return agent


async def get_popular_personas(session: AsyncSession, limit: int = 10) -> list[Persona]:
    result = await session.execute(
        select(Persona)
        .where(Persona.is_public.is_(True))
        .order_by(Persona.usage_count.desc(), Persona.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def search_personas(
    session: AsyncSession,
    owner_id: str,
    query: str,
    *,
    tags: list[str] | None = None,
) -> list[Persona]:
    pattern = f"%{query.lower()}%"
    result = await session.execute(
        select(Persona)
        .where(
            or_(Persona.owner_id == owner_id, Persona.is_public.is_(True)),
            or_(
                func.lower(Persona.name).like(pattern),
                func.lower(func.coalesce(Persona.description, "")).like(pattern),
            ),
        )
        .order_by(Persona.usage_count.desc(), Persona.created_at.desc())
    )
    return _with_tags(list(result.scalars().all()), tags)
