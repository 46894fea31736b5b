from __future__ import annotations

import os
from typing import TypedDict

from .models import AgentRole, LLMProvider


class RoleConfig(TypedDict, total=False):
    instructions: str
    description: str
    capabilities: list[str]


DEFAULT_ROLE_CONFIG: dict[str, RoleConfig] = {
    AgentRole.PLANNER.value: {
        "instructions": (
            "As the PLANNER, break the request into concrete, ordered tasks. Name the files, "
            "components and dependencies involved and call out open risks. Do not write full "
            "implementations."
        ),
        "description": "Turns the request into an actionable plan",
        "capabilities": ["planning", "decomposition"],
    },
    AgentRole.CODER.value: {
        "instructions": (
            "As the CODER, implement the current plan. Produce complete, working files rather "
            "than fragments and request them through the action block."
        ),
        "description": "Writes and updates project files",
        "capabilities": ["code_generation"],
    },
    AgentRole.TESTER.value: {
        "instructions": (
            "As the TESTER, look for bugs and missing cases in the work so far. Add or fix "
            "tests and report the defects you found with their location."
        ),
        "description": "Finds defects and writes tests",
        "capabilities": ["testing", "debugging"],
    },
    AgentRole.REVIEWER.value: {
        "instructions": (
            "As the REVIEWER, check the work for correctness, readability and security. List "
            "required changes first, then optional improvements."
        ),
        "description": "Reviews the work of the other agents",
        "capabilities": ["code_review", "security_analysis"],
    },
    AgentRole.COORDINATOR.value: {
        "instructions": (
            "As the COORDINATOR, summarise where the team stands against the original goal "
            "and state what the next iteration should focus on."
        ),
        "description": "Keeps the team on track and decides when to stop",
        "capabilities": ["coordination"],
    },
    AgentRole.CUSTOM.value: {
        "instructions": "Follow your system prompt.",
        "description": "Behaviour defined entirely by the agent's system prompt",
        "capabilities": [],
    },
}


class AgentTemplate(TypedDict):
    name: str
    role: str
    provider: str
    model: str
    system_prompt: str
    execution_order: int
    can_adapt_role: bool
    available_roles: list[str]


DEFAULT_TEAM_AGENTS: list[AgentTemplate] = [
    {
        "name": "Strategic Planner",
        "role": AgentRole.PLANNER.value,
        "provider": LLMProvider.GOOGLE.value,
        "model": "gemini-pro",
        "system_prompt": (
            "You are a strategic planner agent responsible for breaking down user requests "
            "into actionable tasks. Analyze the requirements, identify dependencies, and "
            "create a structured plan with clear steps."
        ),
        "execution_order": 1,
        "can_adapt_role": True,
        "available_roles": [AgentRole.PLANNER.value, AgentRole.COORDINATOR.value],
    },
    {
        "name": "Code Generator",
        "role": AgentRole.CODER.value,
        "provider": LLMProvider.ANTHROPIC.value,
        "model": "claude-3-5-sonnet-20241022",
        "system_prompt": (
            "You are a code generation agent specialized in writing clean, efficient, and "
            "well-documented code. Generate complete, functional implementations based on "
            "the provided specifications."
        ),
        "execution_order": 2,
        "can_adapt_role": True,
        "available_roles": [AgentRole.CODER.value, AgentRole.REVIEWER.value, AgentRole.TESTER.value],
    },
    {
        "name": "Quality Tester",
        "role": AgentRole.TESTER.value,
        "provider": LLMProvider.OPENAI.value,
        "model": "gpt-4",
        "system_prompt": (
            "You are a testing and debugging agent responsible for identifying issues, "
            "writing tests, and ensuring code quality."
        ),
        "execution_order": 3,
        "can_adapt_role": True,
        "available_roles": [AgentRole.TESTER.value, AgentRole.REVIEWER.value, AgentRole.CODER.value],
    },
    {
        "name": "Code Reviewer",
        "role": AgentRole.REVIEWER.value,
        "provider": LLMProvider.OPENAI.value,
        "model": "gpt-4",
        "system_prompt": (
            "You are a code review agent focused on code quality, maintainability, and "
            "adherence to best practices. Provide constructive feedback and approve final "
            "implementations."
        ),
        "execution_order": 4,
        "can_adapt_role": True,
        "available_roles": [
            AgentRole.REVIEWER.value,
            AgentRole.COORDINATOR.value,
            AgentRole.TESTER.value,
        ],
    },
    {
        "name": "Team Coordinator",
        "role": AgentRole.COORDINATOR.value,
        "provider": LLMProvider.XAI.value,
        "model": "grok-beta",
        "system_prompt": (
            "You are a coordination agent responsible for managing the workflow between "
            "other agents. Decide whether another iteration is needed and keep the team "
            "focused on the original goals."
        ),
        "execution_order": 5,
        "can_adapt_role": True,
        "available_roles": [
            AgentRole.COORDINATOR.value,
            AgentRole.PLANNER.value,
            AgentRole.REVIEWER.value,
        ],
    },
]


def get_env_key(role: str) -> str:
    return f"ENSEMBLE_ROLE_{role.upper()}_INSTRUCTIONS"


def resolve_role(role: str) -> RoleConfig:
    """Role config with an optional instructions override from the environment."""
    default_config = DEFAULT_ROLE_CONFIG.get(role, DEFAULT_ROLE_CONFIG[AgentRole.CUSTOM.value])
    merged_config = RoleConfig(**default_config)

    env_value = os.getenv(get_env_key(role))
    if env_value:
        merged_config["instructions"] = env_value

    return merged_config


def role_instructions(role: str) -> str:
    return resolve_role(role).get("instructions", "")
