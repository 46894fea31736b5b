import pytest

from ensemble import db
from ensemble.errors import ValidationError
from ensemble.models import Agent, AgentRole, RoleTrigger
from ensemble.requirements import Complexity, ProjectRequirements, RequirementsAnalyzer
from ensemble.role_assignment import (
    Condition,
    assign_roles,
    create_rule,
    delete_rule,
    evaluate_condition,
    get_role_history,
    list_rules,
    parse_condition,
    set_rule_enabled,
    trigger_reassignment,
)
from ensemble.teams import create_agent, create_team

from .conftest import OWNER


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("", True),
        ("always", True),
        ("error_rate > 0.3", Condition("error_rate", ">", 0.3)),
        ("iteration>=2", Condition("iteration", ">=", 2.0)),
        ('complexity == "high"', Condition("complexity", "==", "high")),
        ("project_type != api", Condition("project_type", "!=", "api")),
        ("complexity > high", None),
        ("error_rate >", None),
        ("drop table agents", None),
    ],
)
def test_parse_condition(text: str, expected) -> None:
    assert parse_condition(text) == expected


def test_evaluate_condition() -> None:
    context = {"errorRate": 0.5, "iteration": 3, "complexity": "HIGH"}

    assert evaluate_condition("error_rate > 0.3", context)
    assert not evaluate_condition("error_rate > 0.6", context)
    assert evaluate_condition("iteration == 3", context)
    assert evaluate_condition('complexity == "high"', context)
    assert not evaluate_condition("complexity != high", context)
    assert not evaluate_condition("elapsed_seconds > 10", context)
    assert not evaluate_condition("nonsense ~~ 1", context)
    assert evaluate_condition("true", {})


def test_requirements_analyzer() -> None:
    analyzer = RequirementsAnalyzer()

    high = analyzer.analyze("Distributed payment API with FastAPI, React UI and pytest coverage")
    assert high.complexity == Complexity.HIGH
    assert {"backend", "frontend", "testing"} <= set(high.domains)
    assert high.tech_stack == ["fastapi", "pytest", "react"]
    assert high.project_type == "api"

    low = analyzer.analyze("Fix a typo on the static landing page")
    assert low.complexity == Complexity.LOW
    assert low.project_type == "website"

    assert analyzer.analyze("build a todo app").complexity == Complexity.MEDIUM
    assert analyzer.analyze("build a todo app").project_type == "web_app"


async def _adaptive_team(factory, roles: list[tuple[str, list[str]]]) -> tuple[str, list[Agent]]:
    async with db.get_session(factory) as session:
        team = await create_team(session, OWNER, "Adaptive", with_default_agents=False)
        agents = [
            await create_agent(
                session,
                team.id,
                OWNER,
                name=f"{role}-{i}",
                role=role,
                provider="openai",
                can_adapt_role=True,
                available_roles=allowed,
            )
            for i, (role, allowed) in enumerate(roles)
        ]
    return team.id, agents


async def _roles(factory, team_id: str) -> list[str]:
    async with db.get_session(factory) as session:
        return [a.current_role for a in await db.get_enabled_agents(session, team_id)]


@pytest.mark.asyncio
async def test_assign_roles_follows_requirements(factory) -> None:
    team_id, agents = await _adaptive_team(
        factory,
        [("planner", ["planner", "reviewer"]), ("coder", ["coder", "tester"]), ("tester", ["tester"])],
    )

    async with db.get_session(factory) as session:
        changes = await assign_roles(
            session,
            team_id,
            OWNER,
            requirements=ProjectRequirements(complexity=Complexity.LOW),
        )

    assert [(c.from_role, c.new_role) for c in changes] == [("coder", "tester")]
    assert changes[0].reason == "Implementation phase complete, moving to testing"
    assert await _roles(factory, team_id) == ["planner", "tester", "tester"]


@pytest.mark.asyncio
async def test_assign_roles_moves_overloaded_agent_to_coordinator(factory) -> None:
    team_id, agents = await _adaptive_team(
        factory, [("coder", ["coder", "coordinator"]), ("planner", ["planner"])]
    )

    async with db.get_session(factory) as session:
        changes = await assign_roles(
            session,
            team_id,
            OWNER,
            requirements=ProjectRequirements(),
            workload={agents[0].id: 0.95, agents[1].id: 0.95},
        )

    assert [(c.agent_id, c.new_role) for c in changes] == [(agents[0].id, "coordinator")]


@pytest.mark.asyncio
async def test_assign_roles_requires_ownership(factory) -> None:
    team_id, _ = await _adaptive_team(factory, [("coder", ["coder"])])
    async with db.get_session(factory) as session:
        with pytest.raises(ValidationError):
            await assign_roles(session, team_id, "intruder")


@pytest.mark.asyncio
async def test_trigger_reassignment_respects_allowed_roles_and_priority(factory) -> None:
    team_id, agents = await _adaptive_team(
        factory,
        [
            ("coder", ["coder", "tester", "reviewer"]),
            ("coder", ["coder"]),
            ("planner", ["planner", "reviewer"]),
        ],
    )

    async with db.get_session(factory) as session:
        await create_rule(
            session,
            team_id,
            OWNER,
            trigger="error_threshold",
            from_role="coder",
            to_role="reviewer",
            condition="error_rate > 0.1",
            priority=1,
        )
        await create_rule(
            session,
            team_id,
            OWNER,
            trigger="error_threshold",
            from_role="coder",
            to_role="tester",
            condition="error_rate > 0.3",
            priority=5,
        )

    async with db.get_session(factory) as session:
        changes = await trigger_reassignment(
            session, team_id, RoleTrigger.ERROR_THRESHOLD, {"errorRate": 0.5}, session_id=None
        )

    # highest priority first, each agent changes once, the restricted coder never moves
    assert [(c.agent_id, c.new_role) for c in changes] == [(agents[0].id, "tester")]
    roles = await _roles(factory, team_id)
    assert roles == ["tester", "coder", "planner"]

    async with db.get_session(factory) as session:
        for agent in await db.get_enabled_agents(session, team_id):
            assert agent.current_role in agent.available_roles

        history = await get_role_history(session, team_id, OWNER)
    assert [(h.from_role, h.to_role, h.trigger, name) for h, name in history] == [
        ("coder", "tester", "error_threshold", agents[0].name)
    ]
    assert history[0][0].trigger_context == {"errorRate": 0.5}


@pytest.mark.asyncio
async def test_trigger_reassignment_skips_false_conditions_disabled_rules_and_other_project_types(
    factory,
) -> None:
    team_id, _ = await _adaptive_team(factory, [("planner", ["planner", "coder"])])

    async with db.get_session(factory) as session:
        cli_rule = await create_rule(
            session,
            team_id,
            OWNER,
            trigger="task_completion",
            from_role="planner",
            to_role="coder",
            project_type="cli",
        )
        await create_rule(
            session,
            team_id,
            OWNER,
            trigger="task_completion",
            from_role="planner",
            to_role="coder",
            condition="iteration >= 3",
        )

    async with db.get_session(factory) as session:
        assert await trigger_reassignment(
            session, team_id, "task_completion", {"iteration": 1, "project_type": "api"}
        ) == []
        await set_rule_enabled(session, cli_rule.id, OWNER, False)
        assert await trigger_reassignment(
            session, team_id, "task_completion", {"iteration": 1, "project_type": "cli"}
        ) == []
        changes = await trigger_reassignment(
            session, team_id, "task_completion", {"iteration": 3, "project_type": "cli"}
        )

    assert [c.new_role for c in changes] == [AgentRole.CODER.value]


@pytest.mark.asyncio
async def test_create_rule_validates(factory) -> None:
    team_id, _ = await _adaptive_team(factory, [("planner", ["planner"])])

    async with db.get_session(factory) as session:
        with pytest.raises(ValidationError):
            await create_rule(session, team_id, OWNER, trigger="sometimes", from_role="coder", to_role="tester")
        with pytest.raises(ValidationError):
            await create_rule(session, team_id, OWNER, trigger="manual", from_role="chef", to_role="tester")
        with pytest.raises(ValidationError):
            await create_rule(
                session,
                team_id,
                OWNER,
                trigger="manual",
                from_role="coder",
                to_role="tester",
                condition="errors are high",
            )
        assert await list_rules(session, team_id, OWNER) == []


@pytest.mark.asyncio
async def test_rules_are_listed_by_priority_and_owner_scoped(factory) -> None:
    team_id, _ = await _adaptive_team(factory, [("planner", ["planner"])])

    async with db.get_session(factory) as session:
        low = await create_rule(session, team_id, OWNER, trigger="manual", from_role="coder", to_role="tester")
        high = await create_rule(
            session, team_id, OWNER, trigger="time_based", from_role="tester", to_role="reviewer", priority=9
        )
        assert [r.id for r in await list_rules(session, team_id, OWNER)] == [high.id, low.id]

        with pytest.raises(ValidationError):
            await delete_rule(session, high.id, "someone-else")
        await delete_rule(session, high.id, OWNER)
        assert [r.id for r in await list_rules(session, team_id, OWNER)] == [low.id]
