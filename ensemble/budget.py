"""Team budget administration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import charge_team
from .errors import ValidationError
from .models import AgentSession, Team
from .teams import get_owned_team

__all__ = [
    "BudgetInfo",
    "BudgetUsageEntry",
    "charge_team",
    "get_budget",
    "get_budget_overview",
    "get_budget_usage",
    "reset_budget_usage",
    "update_budget_limit",
]


@dataclass
class BudgetInfo:
    team_id: str
    team_name: str
    budget_limit: Decimal
    budget_used: Decimal

    @property
    def budget_remaining(self) -> Decimal:
        return self.budget_limit - self.budget_used

    @property
    def utilization_percent(self) -> float:
        if self.budget_limit <= 0:
            return 0.0
        return float(self.budget_used / self.budget_limit * 100)

    def to_dict(self) -> dict[str, Any]:
        return {
            "team_id": self.team_id,
            "team_name": self.team_name,
            "budget_limit": str(self.budget_limit),
            "budget_used": str(self.budget_used),
            "budget_remaining": str(self.budget_remaining),
            "utilization_percent": round(self.utilization_percent, 2),
        }


@dataclass
class BudgetUsageEntry:
    session_id: str
    date: datetime
    cost: Decimal
    iterations: int
    status: str


def _info(team: Team) -> BudgetInfo:
    return BudgetInfo(
        team_id=team.id,
        team_name=team.name,
        budget_limit=Decimal(team.budget_limit or 0),
        budget_used=Decimal(team.budget_used or 0),
    )


async def get_budget(session: AsyncSession, team_id: str, owner_id: str) -> BudgetInfo:
    team = await get_owned_team(session, team_id, owner_id)
    return _info(team)


async def update_budget_limit(
    session: AsyncSession, team_id: str, owner_id: str, budget_limit: Decimal
) -> BudgetInfo:
    if budget_limit < 0:
        raise ValidationError("budget limit must be non-negative")
    team = await get_owned_team(session, team_id, owner_id)
    team.budget_limit = budget_limit
    await session.flush()
    return _info(team)


async def get_budget_usage(
    session: AsyncSession, team_id: str, owner_id: str, *, limit: int = 50
) -> list[BudgetUsageEntry]:
    """Per-session cost history of a team, newest first."""
    await get_owned_team(session, team_id, owner_id)
    result = await session.execute(
        select(AgentSession)
        .where(AgentSession.team_id == team_id)
        .order_by(AgentSession.created_at.desc())
        .limit(limit)
    )
    return [
        BudgetUsageEntry(
            session_id=s.id,
            date=s.created_at,
            cost=Decimal(s.total_cost or 0),
            iterations=s.current_iteration,
            status=s.status,
        )
        for s in result.scalars().all()
    ]


async def reset_budget_usage(session: AsyncSession, team_id: str, owner_id: str) -> BudgetInfo:
    team = await get_owned_team(session, team_id, owner_id)
    team.budget_used = Decimal("0")
    await session.flush()
    return _info(team)


async def get_budget_overview(session: AsyncSession, owner_id: str) -> list[BudgetInfo]:
    result = await session.execute(
        select(Team).where(Team.owner_id == owner_id).order_by(Team.created_at.desc())
    )
    return [_info(team) for team in result.scalars().all()]
