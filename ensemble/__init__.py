"""
Multi-Agent Orchestration Engine

This package runs ordered teams of LLM-backed agents over bounded iterations
against a shared context, under rate and budget limits, with PostgreSQL-backed
session state.
"""

__version__ = "0.1.0"

# Tool actions
from ensemble.actions import ActionRequest, ParseFailure, ParseSuccess, extract

# Capabilities
from ensemble.capabilities import CredentialStore, LLMClient, ProgressSink, Workspace

# Configuration
from ensemble.config import Settings

# Cost tracking
from ensemble.costs import ProviderPricing, TokenUsage

# Errors
from ensemble.errors import CredentialError, EnsembleError, ErrorCode, ProviderError, ValidationError

# Fallback
from ensemble.fallback import fallback_to_single_agent

# Agent invocation
from ensemble.invoker import AgentInvoker, AgentResult

# Core models
from ensemble.models import (
    Agent,
    AgentMessage,
    AgentRole,
    AgentSession,
    FallbackRecord,
    Persona,
    RoleAssignmentRule,
    RoleTrigger,
    SessionStatus,
    Team,
)

# Guard
from ensemble.rate_limit import GuardDecision, UsageGuard

# Role adaptation
from ensemble.requirements import Complexity, ProjectRequirements, RequirementsAnalyzer
from ensemble.role_assignment import assign_roles, trigger_reassignment

# Scheduling
from ensemble.scheduler import SessionScheduler

__all__ = [
    # Version
    "__version__",
    # Models
    "Team",
    "Agent",
    "Persona",
    "AgentSession",
    "AgentMessage",
    "RoleAssignmentRule",
    "FallbackRecord",
    "AgentRole",
    "RoleTrigger",
    "SessionStatus",
    # Config
    "Settings",
    # Errors
    "ErrorCode",
    "EnsembleError",
    "ValidationError",
    "CredentialError",
    "ProviderError",
    # Capabilities
    "CredentialStore",
    "LLMClient",
    "Workspace",
    "ProgressSink",
    # Costs
    "ProviderPricing",
    "TokenUsage",
    # Guard
    "GuardDecision",
    "UsageGuard",
    # Actions
    "ActionRequest",
    "ParseSuccess",
    "ParseFailure",
    "extract",
    # Agents
    "AgentInvoker",
    "AgentResult",
    # Roles
    "Complexity",
    "ProjectRequirements",
    "RequirementsAnalyzer",
    "assign_roles",
    "trigger_reassignment",
    # Orchestration
    "SessionScheduler",
    "fallback_to_single_agent",
]
