"""
Dynamic role adaptation for team agents.

Two ways to change an agent's current role:

- ``assign_roles`` scores every adaptable agent against project
  requirements, workload and free-text context.
- ``trigger_reassignment`` applies the team's rules for a session event
  (task completion, error threshold, ...) whose condition matches.

A change is applied only when the target role is in the agent's allowed
set, and every change is appended to the role history.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ValidationError
from .models import (
    Agent,
    AgentRole,
    RoleAssignmentHistory,
    RoleAssignmentRule,
    RoleTrigger,
)
from .requirements import Complexity, ProjectRequirements, RequirementsAnalyzer, enrich_domains
from .teams import get_owned_team

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100
OVERLOAD_THRESHOLD = 0.8


@dataclass(frozen=True)
class RoleAssignment:
    agent_id: str
    new_role: str
    reason: str
    from_role: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "from_role": self.from_role,
            "new_role": self.new_role,
            "reason": self.reason,
        }


# =============================================================================
# Condition grammar
# =============================================================================

_ALWAYS = {"", "true", "always"}
_CONDITION_RE = re.compile(
    r"^\s*(?P<metric>[A-Za-z_][A-Za-z0-9_]*)\s*(?P<op>>=|<=|==|!=|>|<)\s*(?P<value>.+?)\s*$"
)
_QUOTED_RE = re.compile(r"""^(['"])(?P<text>.*)\1$""")
_BARE_WORD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")

_NUMERIC_OPS = {
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
}


@dataclass(frozen=True)
class Condition:
    metric: str
    op: str
    value: float | str


def parse_condition(text: str | None) -> Condition | bool | None:
    """Parse a rule condition.

    Returns ``True`` for an unconditional rule, a Condition for
    ``metric OP value`` and ``None`` when the text cannot be parsed.
    """
    stripped = (text or "").strip()
    if stripped.lower() in _ALWAYS:
        return True

    match = _CONDITION_RE.match(stripped)
    if not match:
        return None

    op = match.group("op")
    raw = match.group("value")
    quoted = _QUOTED_RE.match(raw)
    if quoted:
        value: float | str = quoted.group("text")
    else:
        try:
            value = float(raw)
        except ValueError:
            if not _BARE_WORD_RE.match(raw):
                return None
            value = raw

    if isinstance(value, str) and op not in ("==", "!="):
        return None
    return Condition(metric=match.group("metric"), op=op, value=value)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _lookup(context: dict[str, Any], metric: str) -> Any:
    for key in (metric, _snake(metric), _camel(metric)):
        if key in context:
            return context[key]
    return None


def evaluate_condition(text: str | None, context: dict[str, Any]) -> bool:
    condition = parse_condition(text)
    if condition is True:
        return True
    if not isinstance(condition, Condition):
        logger.warning("Unparseable role rule condition: %r", text)
        return False

    actual = _lookup(context, condition.metric)
    if actual is None:
        return False

    if isinstance(condition.value, str):
        matches = str(actual).lower() == condition.value.lower()
        return matches if condition.op == "==" else not matches

    try:
        number = float(actual)
    except (TypeError, ValueError):
        return False
    return _NUMERIC_OPS[condition.op](number, condition.value)


# =============================================================================
# Requirement-based assignment
# =============================================================================

_CHANGE_REASONS = {
    ("planner", "coder"): "Project requires immediate implementation",
    ("coder", "tester"): "Implementation phase complete, moving to testing",
    ("tester", "reviewer"): "Testing complete, conducting final review",
    ("reviewer", "coordinator"): "Managing team coordination and workflow",
    ("coordinator", "planner"): "New planning phase required",
}


def determine_optimal_role(
    agent: Agent,
    requirements: ProjectRequirements,
    workload: dict[str, float],
    context: str,
) -> str | None:
    allowed = set(agent.available_roles or [])

    if workload.get(agent.id, 0.0) > OVERLOAD_THRESHOLD:
        return AgentRole.COORDINATOR.value if AgentRole.COORDINATOR.value in allowed else None

    if requirements.complexity == Complexity.HIGH:
        if "backend" in requirements.domains and AgentRole.CODER.value in allowed:
            return AgentRole.CODER.value
        if "testing" in requirements.domains and AgentRole.TESTER.value in allowed:
            return AgentRole.TESTER.value
    elif requirements.complexity == Complexity.MEDIUM:
        if agent.current_role == AgentRole.PLANNER.value and AgentRole.REVIEWER.value in allowed:
            return AgentRole.REVIEWER.value
    elif requirements.complexity == Complexity.LOW:
        if agent.current_role == AgentRole.CODER.value and AgentRole.TESTER.value in allowed:
            return AgentRole.TESTER.value

    lowered = context.lower()
    if "bug" in lowered and AgentRole.TESTER.value in allowed:
        return AgentRole.TESTER.value
    if "review" in lowered and AgentRole.REVIEWER.value in allowed:
        return AgentRole.REVIEWER.value
    if "plan" in lowered and AgentRole.PLANNER.value in allowed:
        return AgentRole.PLANNER.value

    return None


def _reason(from_role: str, to_role: str, requirements: ProjectRequirements) -> str:
    return _CHANGE_REASONS.get(
        (from_role, to_role),
        f"Role adapted based on {requirements.complexity.value} complexity project requirements",
    )


def _jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


async def _adaptable_agents(session: AsyncSession, team_id: str) -> list[Agent]:
    result = await session.execute(
        select(Agent)
        .where(
            Agent.team_id == team_id,
            Agent.can_adapt_role.is_(True),
            Agent.is_enabled.is_(True),
        )
        .order_by(Agent.execution_order)
    )
    return list(result.scalars().all())


def _apply_role(
    session: AsyncSession,
    agent: Agent,
    to_role: str,
    trigger: RoleTrigger,
    trigger_context: dict[str, Any],
    session_id: str | None,
) -> str:
    from_role = agent.current_role
    agent.current_role = to_role
    session.add(
        RoleAssignmentHistory(
            agent_id=agent.id,
            session_id=session_id,
            from_role=from_role,
            to_role=to_role,
            trigger=trigger.value,
            trigger_context=_jsonable(trigger_context),
        )
    )
    return from_role


async def assign_roles(
    session: AsyncSession,
    team_id: str,
    owner_id: str,
    *,
    requirements: ProjectRequirements | None = None,
    workload: dict[str, float] | None = None,
    context: str = "",
    analyzer: RequirementsAnalyzer | None = None,
) -> list[RoleAssignment]:
    """Re-score every adaptable agent and apply the winning role."""
    await get_owned_team(session, team_id, owner_id)
    if requirements is None:
        requirements = (analyzer or RequirementsAnalyzer()).analyze(context)
    requirements = enrich_domains(requirements)
    workload = workload or {}

    assignments: list[RoleAssignment] = []
    for agent in await _adaptable_agents(session, team_id):
        optimal = determine_optimal_role(agent, requirements, workload, context)
        if not optimal or optimal == agent.current_role or optimal not in (agent.available_roles or []):
            continue

        from_role = _apply_role(
            session,
            agent,
            optimal,
            RoleTrigger.MANUAL,
            {"project_requirements": requirements.to_dict(), "session_context": context},
            None,
        )
        assignments.append(
            RoleAssignment(
                agent_id=agent.id,
                from_role=from_role,
                new_role=optimal,
                reason=_reason(from_role, optimal, requirements),
            )
        )

    await session.flush()
    if assignments:
        logger.info("Reassigned %d agent(s) in team %s", len(assignments), team_id)
    return assignments


# =============================================================================
# Rule-triggered reassignment
# =============================================================================


async def trigger_reassignment(
    session: AsyncSession,
    team_id: str,
    trigger: RoleTrigger | str,
    context: dict[str, Any],
    session_id: str | None = None,
) -> list[RoleAssignment]:
    """Apply the team's enabled rules for ``trigger``, highest priority first.

    Each agent changes role at most once per call.
    """
    trigger = RoleTrigger(trigger)
    result = await session.execute(
        select(RoleAssignmentRule)
        .where(
            RoleAssignmentRule.team_id == team_id,
            RoleAssignmentRule.trigger == trigger.value,
            RoleAssignmentRule.is_enabled.is_(True),
        )
        .order_by(RoleAssignmentRule.priority.desc(), RoleAssignmentRule.created_at)
    )
    rules = list(result.scalars().all())
    if not rules:
        return []

    agents = await _adaptable_agents(session, team_id)
    project_type = _lookup(context, "project_type")
    changed: set[str] = set()
    reassignments: list[RoleAssignment] = []

    for rule in rules:
        if rule.project_type and project_type and rule.project_type != project_type:
            continue
        if not evaluate_condition(rule.condition, context):
            continue

        for agent in agents:
            if agent.id in changed or agent.current_role != rule.from_role:
                continue
            if rule.to_role not in (agent.available_roles or []):
                continue

            _apply_role(session, agent, rule.to_role, trigger, context, session_id)
            changed.add(agent.id)
            reassignments.append(
                RoleAssignment(
                    agent_id=agent.id,
                    from_role=rule.from_role,
                    new_role=rule.to_role,
                    reason=f"{trigger.value} triggered role change: {rule.condition}",
                )
            )

    await session.flush()
    return reassignments


# =============================================================================
# Rule management
# =============================================================================


async def create_rule(
    session: AsyncSession,
    team_id: str,
    owner_id: str,
    *,
    trigger: str,
    from_role: str,
    to_role: str,
    condition: str = "true",
    priority: int = 0,
    project_type: str | None = None,
) -> RoleAssignmentRule:
    await get_owned_team(session, team_id, owner_id)
    try:
        trigger_value = RoleTrigger(trigger).value
        from_value = AgentRole(from_role).value
        to_value = AgentRole(to_role).value
    except ValueError as e:
        raise ValidationError(str(e)) from e
    if parse_condition(condition) is None:
        raise ValidationError(f"Unparseable condition: {condition}")

    rule = RoleAssignmentRule(
        team_id=team_id,
        project_type=project_type,
        trigger=trigger_value,
        from_role=from_value,
        to_role=to_value,
        condition=condition,
        priority=priority,
        is_enabled=True,
    )
    session.add(rule)
    await session.flush()
    return rule


async def list_rules(session: AsyncSession, team_id: str, owner_id: str) -> list[RoleAssignmentRule]:
    await get_owned_team(session, team_id, owner_id)
    result = await session.execute(
        select(RoleAssignmentRule)
        .where(RoleAssignmentRule.team_id == team_id)
        .order_by(RoleAssignmentRule.priority.desc(), RoleAssignmentRule.created_at)
    )
    return list(result.scalars().all())


async def _owned_rule(session: AsyncSession, rule_id: str, owner_id: str) -> RoleAssignmentRule:
    rule = await session.get(RoleAssignmentRule, rule_id)
    if rule is None:
        raise ValidationError("rule not found")
    await get_owned_team(session, rule.team_id, owner_id)
    return rule


async def set_rule_enabled(
    session: AsyncSession, rule_id: str, owner_id: str, enabled: bool
) -> RoleAssignmentRule:
    rule = await _owned_rule(session, rule_id, owner_id)
    rule.is_enabled = enabled
    await session.flush()
    return rule


async def delete_rule(session: AsyncSession, rule_id: str, owner_id: str) -> None:
    rule = await _owned_rule(session, rule_id, owner_id)
    await session.delete(rule)
    await session.flush()


async def get_role_history(
    session: AsyncSession, team_id: str, owner_id: str
) -> list[tuple[RoleAssignmentHistory, str]]:
    """Latest role changes of a team's agents with the agent name."""
    await get_owned_team(session, team_id, owner_id)
    result = await session.execute(
        select(RoleAssignmentHistory, Agent.name)
        .join(Agent, RoleAssignmentHistory.agent_id == Agent.id)
        .where(Agent.team_id == team_id)
        .order_by(RoleAssignmentHistory.assigned_at.desc())
        .limit(HISTORY_LIMIT)
    )
    return [(row[0], row[1]) for row in result.all()]
