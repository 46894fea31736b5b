"""Agent invoker - runs one agent turn and captures its output."""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from .actions import (
    ACTION_FORMAT_INSTRUCTIONS,
    ActionRequest,
    BuildProject,
    CreateFile,
    CreatePreview,
    DeleteFile,
    UpdateFile,
    extract,
)
from .capabilities import CredentialStore, FileOperation, LLMClient, NullWorkspace, Workspace
from .costs import estimate_usage
from .errors import CredentialError, ErrorCode, error_code_for, is_critical
from .events import EventEmitter, EventType, SessionEventRecord
from .models import Agent, AgentSession
from .role_config import role_instructions

logger = logging.getLogger(__name__)

TOOL_RESULTS_HEADER = "--- Tool Execution Results ---"


@dataclass
class ToolResult:
    """Outcome of one workspace call."""

    action: str
    success: bool
    output: str | None = None
    error: str | None = None
    preview_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "preview_url": self.preview_url,
        }


@dataclass
class AgentResult:
    """Result from running an agent."""

    success: bool
    output: str = ""
    cost: Decimal = Decimal("0")
    tokens: int = 0
    actions: list[ActionRequest] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    reasoning: str | None = None
    error: str | None = None
    error_code: ErrorCode | None = None
    critical: bool = False
    duration_ms: int = 0


def build_system_prompt(agent: Agent) -> str:
    parts = [agent.system_prompt.strip()] if agent.system_prompt else []
    instructions = role_instructions(agent.current_role)
    if instructions:
        parts.append(instructions)
    parts.append(ACTION_FORMAT_INSTRUCTIONS)
    return "\n\n".join(parts)


def build_messages(agent: Agent, context: str, iteration: int) -> list[dict[str, str]]:
    user_turn = (
        f"Current input from previous agent or user:\n\n{context}\n\n"
        f"Please process this according to your role as {agent.current_role}. "
        f"Iteration: {iteration}\n\n"
        "If this involves creating a website or application, use the action block to "
        "create actual files and build the project."
    )
    return [
        {"role": "system", "content": build_system_prompt(agent)},
        {"role": "user", "content": user_turn},
    ]


def format_tool_results(results: list[ToolResult]) -> str:
    lines = [TOOL_RESULTS_HEADER]
    for result in results:
        lines.append("")
        lines.append(f"{result.action}: {'SUCCESS' if result.success else 'FAILED'}")
        if result.output:
            lines.append(f"Output: {result.output}")
        if result.error:
            lines.append(f"Error: {result.error}")
        if result.preview_url:
            lines.append(f"Preview URL: {result.preview_url}")
    return "\n".join(lines)


_DECISION_JSON_RE = re.compile(r"\{[^{}]*\}", re.DOTALL)
_DECISION_TOKEN_RE = re.compile(r"^\W*(CONTINUE|STOP)\b", re.IGNORECASE)


def parse_continue_decision(text: str) -> bool:
    """Read a coordinator reply. Anything not clearly affirmative means stop."""
    if not text:
        return False

    for candidate in _DECISION_JSON_RE.findall(text):
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict) and isinstance(data.get("continue"), bool):
            return data["continue"]

    match = _DECISION_TOKEN_RE.match(text.strip())
    if match:
        return match.group(1).upper() == "CONTINUE"
    return False


COORDINATOR_INSTRUCTIONS = (
    "You must decide whether the team should run another iteration. Reply with only "
    'a JSON object {"continue": true} or {"continue": false}, or with the single word '
    "CONTINUE or STOP, based on whether the current output meets the requirements or "
    "needs further refinement."
)


class AgentInvoker:
    """Runs agents against the LLM capability and applies their tool actions."""

    def __init__(
        self,
        llm: LLMClient,
        credentials: CredentialStore,
        workspace: Workspace | None = None,
        events: EventEmitter | None = None,
    ) -> None:
        self.llm = llm
        self.credentials = credentials
        self.workspace = workspace or NullWorkspace()
        self.events = events

    async def _emit(self, event: SessionEventRecord) -> None:
        if self.events is not None:
            await self.events.emit(event)

    async def _credential(self, user_id: str, provider: str) -> str:
        credential = await self.credentials.get(user_id, provider)
        if not credential:
            raise CredentialError(f"No API key configured for provider {provider}")
        return credential

    async def invoke(
        self,
        agent: Agent,
        context: str,
        session: AgentSession,
        iteration: int,
    ) -> AgentResult:
        """Run one agent turn. Never raises; failures come back classified."""
        start = time.monotonic()
        await self._emit(
            SessionEventRecord(
                type=EventType.AGENT_STARTED,
                session_id=session.id,
                project_id=session.project_id,
                iteration=iteration,
                phase=agent.current_role,
                agent=agent.name,
                message=f"{agent.name} ({agent.current_role}) started iteration {iteration}",
            )
        )

        try:
            credential = await self._credential(session.owner_id, agent.provider)
            messages = build_messages(agent, context, iteration)
            response = await self.llm.call(agent.provider, credential, messages, agent.model)

            actions = extract(response)
            tool_results = await self.apply_actions(session.project_id, actions)
            usage = estimate_usage(agent.provider, context, response)

            output = response
            if tool_results:
                output = f"{response}\n\n{format_tool_results(tool_results)}"
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            code = error_code_for(e)
            critical = is_critical(code)
            logger.warning(
                "Agent %s failed (%s%s): %s",
                agent.name,
                code.value,
                ", critical" if critical else "",
                e,
            )
            await self._emit(
                SessionEventRecord(
                    type=EventType.AGENT_FAILED,
                    session_id=session.id,
                    project_id=session.project_id,
                    iteration=iteration,
                    phase=agent.current_role,
                    agent=agent.name,
                    message=f"{agent.name} failed: {e}",
                    data={"error": str(e), "error_code": code.value, "critical": critical},
                    duration_ms=duration_ms,
                )
            )
            return AgentResult(
                success=False,
                output=context,
                error=str(e),
                error_code=code,
                critical=critical,
                duration_ms=duration_ms,
            )

        duration_ms = int((time.monotonic() - start) * 1000)
        await self._emit(
            SessionEventRecord(
                type=EventType.AGENT_COMPLETED,
                session_id=session.id,
                project_id=session.project_id,
                iteration=iteration,
                phase=agent.current_role,
                agent=agent.name,
                message=response[:500],
                data={"tokens": usage.total_tokens, "cost": str(usage.cost), "actions": len(actions)},
                duration_ms=duration_ms,
            )
        )
        return AgentResult(
            success=True,
            output=output,
            cost=usage.cost,
            tokens=usage.total_tokens,
            actions=actions,
            tool_results=tool_results,
            reasoning=(
                f"Processed by {agent.name} ({agent.current_role}) "
                f"with {len(tool_results)} tool actions"
            ),
            duration_ms=duration_ms,
        )

    async def apply_actions(self, project_id: str, actions: list[ActionRequest]) -> list[ToolResult]:
        """Apply extracted actions; a failing action is reported, not raised."""
        results: list[ToolResult] = []

        files: list[FileOperation] = []
        for action in actions:
            if isinstance(action, (CreateFile, UpdateFile)):
                operation = "create" if isinstance(action, CreateFile) else "update"
                files.append(FileOperation(path=action.path, content=action.content, operation=operation))
            elif isinstance(action, DeleteFile):
                files.append(FileOperation(path=action.path, operation="delete"))

        if files:
            try:
                output = await self.workspace.apply_files(project_id, files)
                results.append(ToolResult(action="apply_files", success=True, output=output))
            except Exception as e:
                logger.warning("Workspace apply_files failed for %s: %s", project_id, e)
                results.append(ToolResult(action="apply_files", success=False, error=str(e)))

        for action in actions:
            if isinstance(action, BuildProject):
                try:
                    output = await self.workspace.build(project_id)
                    results.append(ToolResult(action="build_project", success=True, output=output))
                except Exception as e:
                    logger.warning("Workspace build failed for %s: %s", project_id, e)
                    results.append(ToolResult(action="build_project", success=False, error=str(e)))
            elif isinstance(action, CreatePreview):
                try:
                    url = await self.workspace.preview(project_id, action.framework)
                    results.append(
                        ToolResult(action="create_preview", success=True, preview_url=url)
                    )
                except Exception as e:
                    logger.warning("Workspace preview failed for %s: %s", project_id, e)
                    results.append(ToolResult(action="create_preview", success=False, error=str(e)))

        return results

    async def ask_coordinator(
        self,
        agent: Agent,
        output: str,
        session: AgentSession,
        iteration: int,
    ) -> bool:
        """Ask the coordinator whether to run another iteration.

        Past the iteration cap, without a credential or on any failure the
        answer is stop.
        """
        if iteration >= session.max_iterations:
            return False

        credential = await self.credentials.get(session.owner_id, agent.provider)
        if not credential:
            logger.info("Coordinator %s has no credential; stopping", agent.name)
            return False

        system = f"{agent.system_prompt}\n\n{COORDINATOR_INSTRUCTIONS}".strip()
        user = (
            f"Current output after iteration {iteration}:\n\n{output}\n\n"
            f"Should we continue to iteration {iteration + 1}? "
            f"Maximum iterations: {session.max_iterations}"
        )
        try:
            reply = await self.llm.call(
                agent.provider,
                credential,
                [{"role": "system", "content": system}, {"role": "user", "content": user}],
                agent.model,
            )
        except Exception as e:
            logger.warning("Coordinator decision failed: %s", e)
            return False

        decision = parse_continue_decision(reply)
        await self._emit(
            SessionEventRecord(
                type=EventType.COORDINATOR_DECIDED,
                session_id=session.id,
                project_id=session.project_id,
                iteration=iteration,
                phase="coordination",
                agent=agent.name,
                message="continue" if decision else "stop",
            )
        )
        return decision
