"""
Contracts for the external collaborators the engine talks to.

The engine never stores provider credentials, runs builds or serves
previews itself. It reaches those through the interfaces below, which a
host application implements. Simple in-memory versions are provided for
local runs and tests.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileOperation:
    """One file change handed to the workspace in a batch."""

    path: str
    content: str | None = None
    operation: str = "create"

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "content": self.content, "operation": self.operation}


class CredentialStore(Protocol):
    async def get(self, user_id: str, provider: str) -> str | None: ...


class LLMClient(Protocol):
    async def call(
        self,
        provider: str,
        credential: str,
        messages: list[dict[str, str]],
        model: str,
    ) -> str:
        """Return the assistant text or raise ``ProviderError``."""
        ...


class Workspace(Protocol):
    async def apply_files(self, project_id: str, files: list[FileOperation]) -> str: ...

    async def build(self, project_id: str) -> str: ...

    async def preview(self, project_id: str, framework: str | None = None) -> str: ...


class ProgressSink(Protocol):
    async def emit(
        self,
        project_id: str,
        session_id: str,
        agent_name: str,
        text: str,
        phase: str,
    ) -> None: ...


class StaticCredentialStore:
    """Credentials keyed by provider, optionally per user."""

    def __init__(
        self,
        by_provider: dict[str, str] | None = None,
        by_user: dict[tuple[str, str], str] | None = None,
    ) -> None:
        self._by_provider = dict(by_provider or {})
        self._by_user = dict(by_user or {})

    async def get(self, user_id: str, provider: str) -> str | None:
        return self._by_user.get((user_id, provider)) or self._by_provider.get(provider)


class EnvCredentialStore:
    """Credentials read from ``ENSEMBLE_<PROVIDER>_API_KEY`` environment variables."""

    async def get(self, user_id: str, provider: str) -> str | None:
        return os.getenv(f"ENSEMBLE_{provider.upper()}_API_KEY") or None


class NullWorkspace:
    """Workspace that records requests without touching any files."""

    def __init__(self) -> None:
        self.applied: list[tuple[str, list[FileOperation]]] = []
        self.builds: list[str] = []
        self.previews: list[tuple[str, str | None]] = []

    async def apply_files(self, project_id: str, files: list[FileOperation]) -> str:
        self.applied.append((project_id, list(files)))
        return f"Applied {len(files)} file operation(s)"

    async def build(self, project_id: str) -> str:
        self.builds.append(project_id)
        return "Build skipped (no workspace configured)"

    async def preview(self, project_id: str, framework: str | None = None) -> str:
        self.previews.append((project_id, framework))
        return f"preview://{project_id}"


class LoggingProgressSink:
    """Writes progress to the module logger."""

    async def emit(
        self,
        project_id: str,
        session_id: str,
        agent_name: str,
        text: str,
        phase: str,
    ) -> None:
        logger.info("[%s] %s (%s): %s", session_id[:8], agent_name, phase, text[:200])
