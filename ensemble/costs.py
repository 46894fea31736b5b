"""
API cost estimation and ledger updates.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .models import AgentMessage, LLMProvider
from .rate_limit import log_usage

COST_QUANTUM = Decimal("0.000001")
CHARS_PER_TOKEN = 4


@dataclass
class ProviderPricing:
    """Flat pricing per thousand tokens, input and output alike."""

    per_thousand: Decimal

    def calculate_cost(self, tokens: int) -> Decimal:
        cost = (Decimal(tokens) / Decimal(1000)) * self.per_thousand
        return cost.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


PROVIDER_PRICING: dict[str, ProviderPricing] = {
    LLMProvider.OPENAI.value: ProviderPricing(per_thousand=Decimal("0.01")),
    LLMProvider.ANTHROPIC.value: ProviderPricing(per_thousand=Decimal("0.015")),
    LLMProvider.GOOGLE.value: ProviderPricing(per_thousand=Decimal("0.001")),
    LLMProvider.XAI.value: ProviderPricing(per_thousand=Decimal("0.01")),
}

DEFAULT_PRICING = ProviderPricing(per_thousand=Decimal("0.01"))


def get_pricing(provider: str) -> ProviderPricing:
    return PROVIDER_PRICING.get(provider.lower(), DEFAULT_PRICING)


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass
class TokenUsage:
    """Estimated token usage of one agent call."""

    input_tokens: int
    output_tokens: int
    provider: str

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def cost(self) -> Decimal:
        return get_pricing(self.provider).calculate_cost(self.total_tokens)


def estimate_usage(provider: str, input_text: str, output_text: str) -> TokenUsage:
    return TokenUsage(
        input_tokens=estimate_tokens(input_text),
        output_tokens=estimate_tokens(output_text),
        provider=provider,
    )


async def record_agent_cost(
    session: AsyncSession,
    message: AgentMessage,
    *,
    team_id: str,
    user_id: str,
    provider: str,
    tokens: int,
) -> None:
    """Charge a persisted message's cost to its session and team.

    Must run in the same transaction as the message insert so the team
    ledger always equals the sum of its message costs.
    """
    cost = message.cost or Decimal("0")
    await db.charge_session(session, message.session_id, cost)
    await db.charge_team(session, team_id, cost)
    await log_usage(session, user_id, provider, tokens, cost)
