"""Team and agent management."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .errors import ValidationError
from .model_config import resolve_model
from .models import ALL_ROLES, Agent, AgentRole, LLMProvider, Team
from .role_config import DEFAULT_TEAM_AGENTS

logger = logging.getLogger(__name__)

_AGENT_FIELDS = (
    "name",
    "role",
    "provider",
    "model",
    "system_prompt",
    "execution_order",
    "can_adapt_role",
    "available_roles",
)


def _check_role(role: str) -> str:
    try:
        return AgentRole(role).value
    except ValueError as e:
        raise ValidationError(f"Unknown role: {role}") from e


def _check_provider(provider: str) -> str:
    try:
        return LLMProvider(provider).value
    except ValueError as e:
        raise ValidationError(f"Unknown provider: {provider}") from e


def _check_roles(roles: list[str]) -> list[str]:
    return [_check_role(r) for r in roles]


# =============================================================================
# Team Operations
# =============================================================================


async def get_owned_team(session: AsyncSession, team_id: str, owner_id: str) -> Team:
    """Load a team or raise ValidationError if it is missing or not owned."""
    result = await session.execute(
        select(Team).where(Team.id == team_id, Team.owner_id == owner_id)
    )
    team = result.scalar_one_or_none()
    if team is None:
        raise ValidationError("team not found")
    return team


async def create_team(
    session: AsyncSession,
    owner_id: str,
    name: str,
    *,
    description: str | None = None,
    project_id: str | None = None,
    budget_limit: Decimal | None = None,
    with_default_agents: bool = True,
) -> Team:
    """Create a team, seeded with the default five-agent pipeline unless disabled."""
    if not name.strip():
        raise ValidationError("team name is required")
    limit = settings.default_budget_limit if budget_limit is None else Decimal(budget_limit)
    if limit < 0:
        raise ValidationError("budget limit must be non-negative")

    team = Team(
        owner_id=owner_id,
        project_id=project_id,
        name=name.strip(),
        description=description,
        is_active=False,
        budget_limit=limit,
        budget_used=Decimal("0"),
    )
    session.add(team)
    await session.flush()

    if with_default_agents:
        for template in DEFAULT_TEAM_AGENTS:
            session.add(
                Agent(
                    team_id=team.id,
                    name=template["name"],
                    role=template["role"],
                    provider=template["provider"],
                    model=template["model"],
                    system_prompt=template["system_prompt"],
                    execution_order=template["execution_order"],
                    can_adapt_role=template["can_adapt_role"],
                    available_roles=list(template["available_roles"]),
                    current_role=template["role"],
                )
            )
        await session.flush()

    logger.info("Created team %s (%s) for %s", team.id, team.name, owner_id)
    return team


async def list_teams(
    session: AsyncSession, owner_id: str, *, project_id: str | None = None
) -> list[Team]:
    query = select(Team).where(Team.owner_id == owner_id)
    if project_id:
        query = query.where(Team.project_id == project_id)
    result = await session.execute(query.order_by(Team.created_at.desc()))
    return list(result.scalars().all())


async def toggle_team(session: AsyncSession, team_id: str, owner_id: str, active: bool) -> Team:
    """Activate or deactivate a team. Activating deactivates the owner's other teams."""
    team = await get_owned_team(session, team_id, owner_id)
    if active:
        await session.execute(
            update(Team)
            .where(Team.owner_id == owner_id, Team.id != team_id)
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
    team.is_active = active
    await session.flush()
    return team


async def delete_team(session: AsyncSession, team_id: str, owner_id: str) -> None:
    team = await get_owned_team(session, team_id, owner_id)
    await session.delete(team)
    await session.flush()


async def get_active_team(session: AsyncSession, owner_id: str) -> Team | None:
    result = await session.execute(
        select(Team).where(Team.owner_id == owner_id, Team.is_active.is_(True))
    )
    return result.scalars().first()


# =============================================================================
# Agent Operations
# =============================================================================


async def get_owned_agent(session: AsyncSession, agent_id: str, owner_id: str) -> Agent:
    result = await session.execute(
        select(Agent)
        .join(Team, Agent.team_id == Team.id)
        .where(Agent.id == agent_id, Team.owner_id == owner_id)
    )
    agent = result.scalar_one_or_none()
    if agent is None:
        raise ValidationError("agent not found")
    return agent


async def list_agents(session: AsyncSession, team_id: str, owner_id: str) -> list[Agent]:
    await get_owned_team(session, team_id, owner_id)
    result = await session.execute(
        select(Agent).where(Agent.team_id == team_id).order_by(Agent.execution_order)
    )
    return list(result.scalars().all())


async def create_agent(
    session: AsyncSession,
    team_id: str,
    owner_id: str,
    *,
    name: str,
    role: str,
    provider: str,
    model: str | None = None,
    system_prompt: str = "",
    execution_order: int | None = None,
    can_adapt_role: bool = False,
    available_roles: list[str] | None = None,
    is_enabled: bool = True,
) -> Agent:
    """Add an agent to a team; order defaults to the end of the pipeline."""
    await get_owned_team(session, team_id, owner_id)
    role = _check_role(role)
    provider = _check_provider(provider)
    roles = _check_roles(available_roles) if available_roles else list(ALL_ROLES)
    if role not in roles:
        roles.append(role)

    if execution_order is None:
        result = await session.execute(
            select(Agent.execution_order)
            .where(Agent.team_id == team_id)
            .order_by(Agent.execution_order.desc())
            .limit(1)
        )
        last = result.scalar_one_or_none()
        execution_order = (last or 0) + 1

    agent = Agent(
        team_id=team_id,
        name=name,
        role=role,
        provider=provider,
        model=resolve_model(provider, model),
        system_prompt=system_prompt,
        execution_order=execution_order,
        is_enabled=is_enabled,
        can_adapt_role=can_adapt_role,
        available_roles=roles,
        current_role=role,
    )
    session.add(agent)
    await session.flush()
    return agent


async def update_agent(
    session: AsyncSession, agent_id: str, owner_id: str, **changes: Any
) -> Agent:
    agent = await get_owned_agent(session, agent_id, owner_id)
    updates = {k: v for k, v in changes.items() if k in _AGENT_FIELDS and v is not None}
    if not updates:
        raise ValidationError("no fields to update")

    if "role" in updates:
        updates["role"] = _check_role(updates["role"])
    if "provider" in updates:
        updates["provider"] = _check_provider(updates["provider"])
    if "available_roles" in updates:
        updates["available_roles"] = _check_roles(list(updates["available_roles"]))

    for key, value in updates.items():
        setattr(agent, key, value)
    if "role" in updates and not agent.can_adapt_role:
        agent.current_role = agent.role
    await session.flush()
    return agent


async def toggle_agent(session: AsyncSession, agent_id: str, owner_id: str, enabled: bool) -> Agent:
    agent = await get_owned_agent(session, agent_id, owner_id)
    agent.is_enabled = enabled
    await session.flush()
    return agent


async def delete_agent(session: AsyncSession, agent_id: str, owner_id: str) -> None:
    agent = await get_owned_agent(session, agent_id, owner_id)
    await session.delete(agent)
    await session.flush()
