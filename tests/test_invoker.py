import json
from decimal import Decimal

import pytest

from ensemble.actions import BuildProject, CreateFile
from ensemble.capabilities import StaticCredentialStore
from ensemble.errors import ErrorCode, ProviderError
from ensemble.invoker import (
    TOOL_RESULTS_HEADER,
    AgentInvoker,
    ToolResult,
    build_system_prompt,
    format_tool_results,
    parse_continue_decision,
)
from ensemble.models import Agent, AgentSession

from .conftest import OWNER, RecordingWorkspace


def _agent(role: str = "coder", provider: str = "openai") -> Agent:
    return Agent(
        id=f"agent-{role}",
        team_id="team",
        name=role.title(),
        role=role,
        current_role=role,
        provider=provider,
        model=role,
        system_prompt=f"You are the {role}.",
        execution_order=1,
    )


def _session(max_iterations: int = 3) -> AgentSession:
    return AgentSession(
        id="session-1",
        team_id="team",
        project_id="proj",
        owner_id=OWNER,
        initial_prompt="build a todo app",
        max_iterations=max_iterations,
    )


CODER_REPLY = "Created the files.\n\n```json\n" + json.dumps(
    {
        "files": [{"path": "index.html", "content": "<ul></ul>\n"}],
        "actions": [{"type": "build"}, {"type": "preview", "framework": "react"}],
    }
) + "\n```"


def test_system_prompt_combines_agent_role_and_action_format() -> None:
    prompt = build_system_prompt(_agent("tester"))
    assert prompt.startswith("You are the tester.")
    assert '"files"' in prompt


@pytest.mark.parametrize(
    ("reply", "expected"),
    [
        ('{"continue": true}', True),
        ('Looks good. {"continue": false}', False),
        ("CONTINUE - the tests are still failing", True),
        ("stop", False),
        ("**STOP**", False),
        ("We should probably keep going", False),
        ("", False),
    ],
)
def test_parse_continue_decision(reply: str, expected: bool) -> None:
    assert parse_continue_decision(reply) is expected


def test_format_tool_results() -> None:
    text = format_tool_results(
        [
            ToolResult(action="apply_files", success=True, output="wrote 1"),
            ToolResult(action="build_project", success=False, error="exit 1"),
            ToolResult(action="create_preview", success=True, preview_url="https://p"),
        ]
    )
    assert text.splitlines()[0] == TOOL_RESULTS_HEADER
    assert "apply_files: SUCCESS" in text
    assert "build_project: FAILED" in text
    assert "Error: exit 1" in text
    assert "Preview URL: https://p" in text


@pytest.mark.asyncio
async def test_invoke_success_applies_actions_and_estimates_cost(invoker, llm, workspace, events) -> None:
    llm.replies["coder"] = CODER_REPLY

    result = await invoker.invoke(_agent(), "plan: a todo list", _session(), iteration=1)

    assert result.success
    assert result.actions[0] == CreateFile(path="index.html", content="<ul></ul>\n")
    assert result.actions[1] == BuildProject()
    assert [op.path for op in workspace.applied[0]] == ["index.html"]
    assert workspace.builds == 1
    assert workspace.previews == ["react"]
    assert [r.action for r in result.tool_results] == ["apply_files", "build_project", "create_preview"]
    assert result.output.startswith(CODER_REPLY)
    assert TOOL_RESULTS_HEADER in result.output
    assert result.tokens > 0
    assert result.cost == Decimal(result.tokens) / 1000 * Decimal("0.01")
    assert events.types() == ["agent.started", "agent.completed"]

    provider, model, messages = llm.calls[0]
    assert (provider, model) == ("openai", "coder")
    assert "plan: a todo list" in messages[1]["content"]
    assert "Iteration: 1" in messages[1]["content"]


@pytest.mark.asyncio
async def test_invoke_without_actions_returns_reply_verbatim(invoker, llm, workspace) -> None:
    llm.replies["planner"] = "1. model\n2. views"
    result = await invoker.invoke(_agent("planner"), "build a todo app", _session(), iteration=1)

    assert result.success
    assert result.output == "1. model\n2. views"
    assert result.tool_results == []
    assert workspace.applied == []


@pytest.mark.asyncio
async def test_failed_build_is_reported_not_raised(llm, credentials, events) -> None:
    workspace = RecordingWorkspace(fail_build=True)
    invoker = AgentInvoker(llm, credentials, workspace, events)
    llm.replies["coder"] = CODER_REPLY

    result = await invoker.invoke(_agent(), "ctx", _session(), iteration=1)

    assert result.success
    build = result.tool_results[1]
    assert not build.success
    assert "exited with 1" in build.error
    assert "build_project: FAILED" in result.output


@pytest.mark.asyncio
async def test_missing_credential_is_critical(llm, workspace, events) -> None:
    invoker = AgentInvoker(llm, StaticCredentialStore({"openai": "sk"}), workspace, events)

    result = await invoker.invoke(_agent("coder", provider="anthropic"), "ctx", _session(), iteration=1)

    assert not result.success
    assert result.critical
    assert result.error_code == ErrorCode.AUTH
    assert result.output == "ctx"
    assert llm.calls == []
    assert events.types() == ["agent.started", "agent.failed"]


@pytest.mark.asyncio
async def test_transient_provider_error_is_recoverable(invoker, llm) -> None:
    llm.replies["coder"] = ProviderError("gateway 503", ErrorCode.TRANSIENT)

    result = await invoker.invoke(_agent(), "ctx", _session(), iteration=2)

    assert not result.success
    assert not result.critical
    assert result.error_code == ErrorCode.TRANSIENT
    assert result.error == "gateway 503"


@pytest.mark.asyncio
async def test_plain_exception_is_classified_from_its_message(invoker, llm) -> None:
    llm.replies["coder"] = RuntimeError("429 Too Many Requests")
    result = await invoker.invoke(_agent(), "ctx", _session(), iteration=1)
    assert result.critical
    assert result.error_code == ErrorCode.RATE_LIMIT


@pytest.mark.asyncio
async def test_ask_coordinator(invoker, llm, events) -> None:
    coordinator = _agent("coordinator")

    llm.replies["coordinator"] = '{"continue": true}'
    assert await invoker.ask_coordinator(coordinator, "output", _session(), iteration=1)

    llm.replies["coordinator"] = "STOP"
    assert not await invoker.ask_coordinator(coordinator, "output", _session(), iteration=1)
    assert events.types().count("coordinator.decided") == 2


@pytest.mark.asyncio
async def test_ask_coordinator_stops_at_cap_on_failure_and_without_key(llm, workspace, events) -> None:
    llm.replies["coordinator"] = '{"continue": true}'
    invoker = AgentInvoker(llm, StaticCredentialStore({"openai": "sk"}), workspace, events)

    assert not await invoker.ask_coordinator(_agent("coordinator"), "o", _session(2), iteration=2)
    assert not await invoker.ask_coordinator(
        _agent("coordinator", provider="xai"), "o", _session(), iteration=1
    )
    assert llm.calls == []

    llm.replies["coordinator"] = ProviderError("down", ErrorCode.TRANSIENT)
    assert not await invoker.ask_coordinator(_agent("coordinator"), "o", _session(), iteration=1)

