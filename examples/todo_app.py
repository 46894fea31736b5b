"""
Todo App Example

Runs a three-agent team (planner, coder, coordinator) for one session against
an in-memory SQLite database with a canned LLM, then prints the message log.
No provider keys or servers are needed.

Usage:
    pip install -e ".[test]"
    python examples/todo_app.py
"""

import asyncio
import json

from rich.console import Console
from rich.table import Table
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ensemble import db
from ensemble.capabilities import NullWorkspace, StaticCredentialStore
from ensemble.events import EventEmitter
from ensemble.invoker import AgentInvoker
from ensemble.scheduler import SessionScheduler
from ensemble.teams import create_agent, create_team, toggle_team

console = Console()

OWNER = "demo-user"

CANNED = {
    "planner": "1. Data model for todos\n2. Add/complete/delete\n3. Single page UI",
    "coder": "Here is the app.\n\n```json\n"
    + json.dumps(
        {
            "files": [
                {"path": "index.html", "content": "<ul id='todos'></ul>\n"},
                {"path": "app.js", "content": "const todos = [];\n"},
            ],
            "actions": [{"type": "build"}],
        }
    )
    + "\n```",
    "coordinator": '{"continue": false}',
}


class CannedLLM:
    """Answers by the role the user turn addresses."""

    async def call(self, provider, credential, messages, model):
        user = messages[-1]["content"]
        if "Should we continue" in user:
            return CANNED["coordinator"]
        for role in ("coordinator", "coder", "planner"):
            if f"your role as {role}" in user:
                return CANNED[role]
        return "OK"


async def main() -> None:
    engine = create_async_engine(
        "sqlite+aiosqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False}
    )
    await db.init_db(engine)
    factory = async_sessionmaker(engine, expire_on_commit=False)

    async with db.get_session(factory) as session:
        team = await create_team(session, OWNER, "Todo team", with_default_agents=False)
        for name, role in (("Planner", "planner"), ("Coder", "coder"), ("Coordinator", "coordinator")):
            await create_agent(
                session,
                team.id,
                OWNER,
                name=name,
                role=role,
                provider="openai",
                system_prompt=f"You are the {role}.",
            )
        await toggle_team(session, team.id, OWNER, True)

    workspace = NullWorkspace()
    invoker = AgentInvoker(CannedLLM(), StaticCredentialStore({"openai": "sk-demo"}), workspace)
    scheduler = SessionScheduler(
        invoker, session_factory=factory, events=EventEmitter(), queue_enabled=False
    )

    agent_session = await scheduler.start_session(
        team.id, "todo", "build a todo app", OWNER, max_iterations=2, background=False
    )
    snapshot = await scheduler.get_session_status(agent_session.id, OWNER)

    table = Table(title=f"Session {snapshot.session_id} [{snapshot.status}]")
    table.add_column("Iter", style="cyan")
    table.add_column("Agent")
    table.add_column("Type")
    table.add_column("Cost", justify="right")
    for m in snapshot.messages:
        table.add_row(str(m.iteration), m.agent_name, m.message_type, f"${m.cost:.6f}")
    console.print(table)
    console.print(f"Files written: {[op.path for _, ops in workspace.applied for op in ops]}")
    console.print(f"Builds: {len(workspace.builds)}")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
