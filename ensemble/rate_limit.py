"""Per-user rate windows and per-team budget checks.

Both checks are advisory: they read the current counters and decide, they
do not reserve anything. Costs are charged after an agent succeeds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .models import AgentMessage, AgentSession, ApiUsageLog, Team

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    reason: str | None = None
    reset_time: datetime | None = None


@dataclass(frozen=True)
class RateLimits:
    max_requests_per_minute: int = field(default_factory=lambda: settings.rate_max_requests_per_minute)
    max_requests_per_hour: int = field(default_factory=lambda: settings.rate_max_requests_per_hour)
    max_cost_per_hour: Decimal = field(default_factory=lambda: settings.rate_max_cost_per_hour)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_requests_per_minute": self.max_requests_per_minute,
            "max_requests_per_hour": self.max_requests_per_hour,
            "max_cost_per_hour": str(self.max_cost_per_hour),
        }


@dataclass(frozen=True)
class RateLimitStatus:
    requests_per_minute: int
    requests_per_hour: int
    cost_per_hour: Decimal
    limits: RateLimits


def _user_messages(user_id: str, since: datetime) -> Any:
    return (
        select(func.count(AgentMessage.id), func.coalesce(func.sum(AgentMessage.cost), 0))
        .join(AgentSession, AgentMessage.session_id == AgentSession.id)
        .where(AgentSession.owner_id == user_id, AgentMessage.created_at >= since)
    )


async def _window(session: AsyncSession, user_id: str, since: datetime) -> tuple[int, Decimal]:
    count, cost = (await session.execute(_user_messages(user_id, since))).one()
    return int(count or 0), Decimal(str(cost or 0))


class UsageGuard:
    """Sliding one-minute and one-hour windows over a user's session messages."""

    def __init__(self, limits: RateLimits | None = None) -> None:
        self.limits = limits or RateLimits()

    async def check_rate(
        self,
        session: AsyncSession,
        user_id: str,
        estimated_cost: Decimal = Decimal("0"),
    ) -> GuardDecision:
        now = datetime.now(UTC)
        try:
            minute_count, _ = await _window(session, user_id, now - timedelta(minutes=1))
            if minute_count >= self.limits.max_requests_per_minute:
                return GuardDecision(
                    allowed=False,
                    reason="Rate limit exceeded: too many requests per minute",
                    reset_time=now + timedelta(minutes=1),
                )

            hour_count, hour_cost = await _window(session, user_id, now - timedelta(hours=1))
            if hour_count >= self.limits.max_requests_per_hour:
                return GuardDecision(
                    allowed=False,
                    reason="Rate limit exceeded: too many requests per hour",
                    reset_time=now + timedelta(hours=1),
                )

            if hour_cost + estimated_cost > self.limits.max_cost_per_hour:
                return GuardDecision(
                    allowed=False,
                    reason=(
                        "Rate limit exceeded: hourly cost limit "
                        f"(${self.limits.max_cost_per_hour:.2f})"
                    ),
                    reset_time=now + timedelta(hours=1),
                )
        except SQLAlchemyError:
            # A monitoring outage must not block usage.
            logger.exception("Rate limit check failed for user %s; allowing", user_id)
            return GuardDecision(allowed=True)

        return GuardDecision(allowed=True)

    async def check_budget(
        self,
        session: AsyncSession,
        team_id: str,
        estimated_cost: Decimal = Decimal("0"),
    ) -> GuardDecision:
        try:
            result = await session.execute(
                select(Team.budget_limit, Team.budget_used).where(Team.id == team_id)
            )
            row = result.one_or_none()
        except SQLAlchemyError:
            logger.exception("Budget check failed for team %s", team_id)
            return GuardDecision(allowed=False, reason="Budget check failed")

        if row is None:
            return GuardDecision(allowed=False, reason="Team not found")

        limit = Decimal(str(row[0] or 0))
        used = Decimal(str(row[1] or 0))
        if used + estimated_cost > limit:
            return GuardDecision(
                allowed=False,
                reason=(
                    f"Budget limit exceeded: ${used:.2f} + ${estimated_cost:.2f} > ${limit:.2f}"
                ),
            )
        return GuardDecision(allowed=True)

    async def get_rate_limit_status(self, session: AsyncSession, user_id: str) -> RateLimitStatus:
        now = datetime.now(UTC)
        try:
            minute_count, _ = await _window(session, user_id, now - timedelta(minutes=1))
            hour_count, hour_cost = await _window(session, user_id, now - timedelta(hours=1))
        except SQLAlchemyError:
            logger.exception("Failed to get rate limit status for user %s", user_id)
            minute_count, hour_count, hour_cost = 0, 0, Decimal("0")
        return RateLimitStatus(
            requests_per_minute=minute_count,
            requests_per_hour=hour_count,
            cost_per_hour=hour_cost,
            limits=self.limits,
        )


async def log_usage(
    session: AsyncSession,
    user_id: str,
    provider: str,
    tokens: int,
    cost: Decimal,
) -> None:
    """Record provider usage for monitoring. Never raises."""
    try:
        async with session.begin_nested():
            session.add(ApiUsageLog(user_id=user_id, provider=provider, tokens=tokens, cost=cost))
    except SQLAlchemyError:
        logger.exception("Failed to log API usage for user %s", user_id)
