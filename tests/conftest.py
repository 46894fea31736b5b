"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator, Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ensemble import db
from ensemble.capabilities import FileOperation, StaticCredentialStore
from ensemble.events import EventEmitter, SessionEventRecord
from ensemble.invoker import AgentInvoker
from ensemble.models import Agent, Team
from ensemble.teams import create_agent, create_team, toggle_team

OWNER = "user-1"

Reply = str | Exception | Callable[[list[dict[str, str]]], str]


class ScriptedLLM:
    """LLM fake answering by model name; records every call."""

    def __init__(self, replies: dict[str, Reply] | None = None, default: str = "OK") -> None:
        self.replies = dict(replies or {})
        self.default = default
        self.calls: list[tuple[str, str, list[dict[str, str]]]] = []

    async def call(
        self,
        provider: str,
        credential: str,
        messages: list[dict[str, str]],
        model: str,
    ) -> str:
        self.calls.append((provider, model, messages))
        reply = self.replies.get(model, self.default)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(messages)
        return reply

    def models_called(self) -> list[str]:
        return [model for _, model, _ in self.calls]


class RecordingWorkspace:
    def __init__(self, *, fail_build: bool = False) -> None:
        self.fail_build = fail_build
        self.applied: list[list[FileOperation]] = []
        self.builds = 0
        self.previews: list[str | None] = []

    async def apply_files(self, project_id: str, files: list[FileOperation]) -> str:
        self.applied.append(list(files))
        return f"wrote {len(files)}"

    async def build(self, project_id: str) -> str:
        self.builds += 1
        if self.fail_build:
            raise RuntimeError("npm run build exited with 1")
        return "built"

    async def preview(self, project_id: str, framework: str | None = None) -> str:
        self.previews.append(framework)
        return f"https://preview.local/{project_id}"


class RecordingEvents(EventEmitter):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[SessionEventRecord] = []
        self.on_event(self.records.append)

    def types(self) -> list[str]:
        return [r.type.value for r in self.records]


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await db.init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def factory(engine: AsyncEngine) -> db.SessionFactory:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def llm() -> ScriptedLLM:
    return ScriptedLLM()


@pytest.fixture
def workspace() -> RecordingWorkspace:
    return RecordingWorkspace()


@pytest.fixture
def events() -> RecordingEvents:
    return RecordingEvents()


@pytest.fixture
def credentials() -> StaticCredentialStore:
    return StaticCredentialStore(
        {"openai": "sk-openai", "anthropic": "sk-anthropic", "google": "g-key", "xai": "x-key"}
    )


@pytest.fixture
def invoker(
    llm: ScriptedLLM,
    credentials: StaticCredentialStore,
    workspace: RecordingWorkspace,
    events: RecordingEvents,
) -> AgentInvoker:
    return AgentInvoker(llm, credentials, workspace, events)


@pytest.fixture
def make_team(factory: db.SessionFactory):
    """Create an active team whose agents use their role name as model name."""

    async def _make(
        roles: list[str],
        *,
        owner_id: str = OWNER,
        budget_limit: str = "10.00",
        providers: dict[str, str] | None = None,
        active: bool = True,
    ) -> tuple[Team, list[Agent]]:
        providers = providers or {}
        async with db.get_session(factory) as session:
            team = await create_team(
                session, owner_id, "Test team", budget_limit=budget_limit, with_default_agents=False
            )
            agents = []
            for role in roles:
                agents.append(
                    await create_agent(
                        session,
                        team.id,
                        owner_id,
                        name=role.title(),
                        role=role,
                        provider=providers.get(role, "openai"),
                        model=role,
                        system_prompt=f"You are the {role}.",
                    )
                )
            if active:
                team = await toggle_team(session, team.id, owner_id, True)
        return team, agents

    return _make
