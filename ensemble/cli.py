"""Main CLI entry point for ensemble."""

import asyncio
import logging
from decimal import Decimal

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__, db
from .budget import get_budget, get_budget_overview, reset_budget_usage, update_budget_limit
from .capabilities import EnvCredentialStore, LoggingProgressSink
from .config import settings
from .events import build_event_bus
from .fallback import fallback_to_single_agent
from .invoker import AgentInvoker
from .llm_client import GatewayLLMClient
from .model_config import get_all_configs
from .models import AgentRole, LLMProvider, RoleTrigger
from .queue import wait_for_session_status
from .role_assignment import assign_roles, create_rule, get_role_history, trigger_reassignment
from .scheduler import ControlAction, SessionScheduler
from .teams import create_agent, create_team, get_owned_team, list_agents, list_teams, toggle_team

console = Console()

STATUS_STYLES = {
    "running": "cyan",
    "paused": "yellow",
    "completed": "green",
    "failed": "red",
}


def _scheduler() -> SessionScheduler:
    events = build_event_bus(sink=LoggingProgressSink())
    invoker = AgentInvoker(GatewayLLMClient(), EnvCredentialStore(), events=events)
    return SessionScheduler(invoker, events=events)


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


owner_option = click.option(
    "--owner",
    "owner_id",
    envvar="ENSEMBLE_OWNER_ID",
    default="local",
    show_default=True,
    help="Owner (user) id",
)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show engine logs")
def main(verbose: bool) -> None:
    """Multi-agent orchestration CLI.

    Run ordered teams of LLM agents over iterations under rate and budget limits.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


# =============================================================================
# Sessions
# =============================================================================


@main.command()
@click.argument("prompt")
@click.option("--team", "team_id", required=True, help="Team id")
@click.option("--project", "project_id", default="default", help="Project id")
@click.option("--max-iterations", "-n", default=None, type=int, help="Maximum iterations")
@click.option("--wait", "wait_seconds", default=0, type=int, help="With the queue enabled, wait up to N seconds")
@owner_option
def start(
    prompt: str,
    team_id: str,
    project_id: str,
    max_iterations: int | None,
    wait_seconds: int,
    owner_id: str,
) -> None:
    """Start a session and run it to the end.

    With the Redis queue enabled the run is handed to a worker instead.

    PROMPT: What the team should build
    """

    async def do_start() -> None:
        scheduler = _scheduler()
        agent_session = await scheduler.start_session(
            team_id, project_id, prompt, owner_id, max_iterations, background=False
        )
        if scheduler.queue_enabled:
            console.print(f"[cyan]Queued session {agent_session.id}[/cyan]")
            if wait_seconds <= 0:
                return
            status = await wait_for_session_status(agent_session.id, timeout_seconds=wait_seconds)
            if status is None:
                console.print("[yellow]Still running; check `ensemble status` later[/yellow]")
                return

        snapshot = await scheduler.get_session_status(agent_session.id, owner_id)
        console.print(
            Panel(
                f"Status: {_styled(snapshot.status)}\n"
                f"Iteration: {snapshot.current_iteration}/{snapshot.max_iterations}\n"
                f"Cost: ${snapshot.total_cost:.4f}"
                + (f"\nError: {snapshot.error_message}" if snapshot.error_message else ""),
                title=f"Session {agent_session.id}",
            )
        )

    asyncio.run(do_start())


@main.command()
@click.argument("session_id")
@click.option("--full", is_flag=True, help="Print full message contents")
@owner_option
def status(session_id: str, full: bool, owner_id: str) -> None:
    """Show status and messages of a session."""

    async def show_status() -> None:
        snapshot = await _scheduler().get_session_status(session_id, owner_id)
        console.print(
            Panel(
                f"Status: {_styled(snapshot.status)}\n"
                f"Iteration: {snapshot.current_iteration}/{snapshot.max_iterations}\n"
                f"Cost: ${snapshot.total_cost:.4f}"
                + (f"\nError: {snapshot.error_message}" if snapshot.error_message else ""),
                title=f"Session {snapshot.session_id}",
            )
        )
        if not snapshot.messages:
            return

        table = Table(title="Messages")
        table.add_column("Iter", style="cyan")
        table.add_column("Agent")
        table.add_column("Role")
        table.add_column("Type")
        table.add_column("Cost", justify="right")
        table.add_column("Content")
        for m in snapshot.messages:
            content = m.content if full else m.content[:80].replace("\n", " ")
            table.add_row(
                str(m.iteration),
                m.agent_name,
                m.agent_role,
                "[red]error[/red]" if m.message_type == "error" else m.message_type,
                f"${m.cost:.4f}",
                content,
            )
        console.print(table)

    asyncio.run(show_status())


@main.command(name="list-sessions")
@click.option("--team", "team_id", default=None, help="Filter by team")
@click.option("--project", "project_id", default=None, help="Filter by project")
@owner_option
def list_sessions_cmd(team_id: str | None, project_id: str | None, owner_id: str) -> None:
    """List recent sessions."""

    async def list_all() -> None:
        sessions = await _scheduler().list_sessions(owner_id, team_id=team_id, project_id=project_id)
        if not sessions:
            console.print("[yellow]No sessions found[/yellow]")
            return

        table = Table(title="Sessions")
        table.add_column("ID", style="cyan")
        table.add_column("Status")
        table.add_column("Iteration")
        table.add_column("Cost", justify="right")
        table.add_column("Prompt")
        for s in sessions:
            table.add_row(
                s.id,
                _styled(s.status),
                f"{s.current_iteration}/{s.max_iterations}",
                f"${s.total_cost:.4f}",
                s.initial_prompt[:50],
            )
        console.print(table)

    asyncio.run(list_all())


def _control(session_id: str, owner_id: str, action: ControlAction) -> None:
    async def do_control() -> None:
        scheduler = _scheduler()
        new_status = await scheduler.control_session(
            session_id, owner_id, action, background=action is not ControlAction.RESUME
        )
        console.print(f"[green]✓[/green] Session {session_id}: {_styled(new_status)}")

    asyncio.run(do_control())


@main.command()
@click.argument("session_id")
@owner_option
def pause(session_id: str, owner_id: str) -> None:
    """Pause a running session after its current iteration."""
    _control(session_id, owner_id, ControlAction.PAUSE)


@main.command()
@click.argument("session_id")
@owner_option
def resume(session_id: str, owner_id: str) -> None:
    """Resume a paused session and run it to the end."""
    _control(session_id, owner_id, ControlAction.RESUME)


@main.command()
@click.argument("session_id")
@owner_option
def stop(session_id: str, owner_id: str) -> None:
    """Stop a session; it is marked completed."""
    _control(session_id, owner_id, ControlAction.STOP)


@main.command()
@click.argument("session_id")
@click.option(
    "--provider",
    type=click.Choice([p.value for p in LLMProvider]),
    default=LLMProvider.OPENAI.value,
    help="Provider for the single agent",
)
@click.option("--model", default=None, help="Model identifier override")
@owner_option
def fallback(session_id: str, provider: str, model: str | None, owner_id: str) -> None:
    """Answer a session's prompt with a single agent."""

    async def do_fallback() -> None:
        llm = GatewayLLMClient()
        try:
            result = await fallback_to_single_agent(
                session_id,
                provider,
                owner_id,
                model,
                llm=llm,
                credentials=EnvCredentialStore(),
                events=build_event_bus(),
            )
        finally:
            await llm.aclose()
        console.print(Panel(result.response, title=f"Fallback ({result.provider}/{result.model})"))

    asyncio.run(do_fallback())


# =============================================================================
# Teams
# =============================================================================


@main.group(name="team")
def team_group() -> None:
    """Manage agent teams."""


@team_group.command(name="create")
@click.argument("name")
@click.option("--description", default=None, help="Team description")
@click.option("--project", "project_id", default=None, help="Project id")
@click.option("--budget", "budget_limit", default=None, type=Decimal, help="Budget limit (USD)")
@click.option("--empty", is_flag=True, help="Do not add the default agents")
@owner_option
def team_create(
    name: str,
    description: str | None,
    project_id: str | None,
    budget_limit: Decimal | None,
    empty: bool,
    owner_id: str,
) -> None:
    """Create a team (with the five default agents unless --empty)."""

    async def do_create() -> None:
        async with db.get_session() as session:
            team = await create_team(
                session,
                owner_id,
                name,
                description=description,
                project_id=project_id,
                budget_limit=budget_limit,
                with_default_agents=not empty,
            )
            console.print(f"[green]✓[/green] Created team {team.name}: {team.id}")

    asyncio.run(do_create())


@team_group.command(name="list")
@owner_option
def team_list(owner_id: str) -> None:
    """List teams and their agents."""

    async def do_list() -> None:
        async with db.get_session() as session:
            teams = await list_teams(session, owner_id)
            if not teams:
                console.print("[yellow]No teams found[/yellow]")
                return
            for team in teams:
                agents = await list_agents(session, team.id, owner_id)
                table = Table(
                    title=f"{team.name} ({team.id}){' [green]active[/green]' if team.is_active else ''}"
                )
                table.add_column("#", style="cyan")
                table.add_column("Agent")
                table.add_column("Role")
                table.add_column("Provider/Model")
                table.add_column("Enabled")
                for agent in agents:
                    role = agent.current_role
                    if role != agent.role:
                        role = f"{role} (base {agent.role})"
                    table.add_row(
                        str(agent.execution_order),
                        agent.name,
                        role,
                        f"{agent.provider}/{agent.model}",
                        "✓" if agent.is_enabled else "-",
                    )
                console.print(table)

    asyncio.run(do_list())


@team_group.command(name="activate")
@click.argument("team_id")
@click.option("--off", is_flag=True, help="Deactivate instead")
@owner_option
def team_activate(team_id: str, off: bool, owner_id: str) -> None:
    """Make a team the owner's active team."""

    async def do_toggle() -> None:
        async with db.get_session() as session:
            team = await toggle_team(session, team_id, owner_id, not off)
            state = "active" if team.is_active else "inactive"
            console.print(f"[green]✓[/green] Team {team.name} is {state}")

    asyncio.run(do_toggle())


@team_group.command(name="add-agent")
@click.argument("team_id")
@click.argument("name")
@click.option("--role", type=click.Choice([r.value for r in AgentRole]), required=True)
@click.option("--provider", type=click.Choice([p.value for p in LLMProvider]), required=True)
@click.option("--model", default=None, help="Model identifier (default per provider)")
@click.option("--system-prompt", default="", help="System prompt")
@click.option("--order", "execution_order", default=None, type=int, help="Execution order")
@click.option("--adaptive", is_flag=True, help="Allow role adaptation")
@owner_option
def team_add_agent(
    team_id: str,
    name: str,
    role: str,
    provider: str,
    model: str | None,
    system_prompt: str,
    execution_order: int | None,
    adaptive: bool,
    owner_id: str,
) -> None:
    """Add an agent to a team."""

    async def do_add() -> None:
        async with db.get_session() as session:
            agent = await create_agent(
                session,
                team_id,
                owner_id,
                name=name,
                role=role,
                provider=provider,
                model=model,
                system_prompt=system_prompt,
                execution_order=execution_order,
                can_adapt_role=adaptive,
            )
            console.print(
                f"[green]✓[/green] Added {agent.name} ({agent.role}, {agent.provider}/{agent.model}) "
                f"at position {agent.execution_order}"
            )

    asyncio.run(do_add())


# =============================================================================
# Roles
# =============================================================================


@main.group(name="roles")
def roles_group() -> None:
    """Adapt agent roles."""


@roles_group.command(name="assign")
@click.argument("team_id")
@click.option("--context", "context", default="", help="Project description to analyze")
@owner_option
def roles_assign(team_id: str, context: str, owner_id: str) -> None:
    """Re-score adaptable agents against the project requirements."""

    async def do_assign() -> None:
        async with db.get_session() as session:
            changes = await assign_roles(session, team_id, owner_id, context=context)
        if not changes:
            console.print("[yellow]No role changes[/yellow]")
        for c in changes:
            console.print(f"[green]✓[/green] {c.agent_id}: {c.from_role} → {c.new_role} ({c.reason})")

    asyncio.run(do_assign())


@roles_group.command(name="trigger")
@click.argument("team_id")
@click.argument("trigger", type=click.Choice([t.value for t in RoleTrigger]))
@click.option("--metric", "metrics", multiple=True, help="Context metric NAME=VALUE (repeatable)")
@owner_option
def roles_trigger(team_id: str, trigger: str, metrics: tuple[str, ...], owner_id: str) -> None:
    """Fire a role trigger with the given context metrics."""
    context: dict[str, object] = {}
    for item in metrics:
        key, sep, value = item.partition("=")
        if not sep:
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint="--metric")
        try:
            context[key] = float(value)
        except ValueError:
            context[key] = value

    async def do_trigger() -> None:
        async with db.get_session() as session:
            await get_owned_team(session, team_id, owner_id)
            changes = await trigger_reassignment(session, team_id, RoleTrigger(trigger), context)
        if not changes:
            console.print("[yellow]No rule matched[/yellow]")
        for c in changes:
            console.print(f"[green]✓[/green] {c.agent_id}: {c.from_role} → {c.new_role} ({c.reason})")

    asyncio.run(do_trigger())


@roles_group.command(name="history")
@click.argument("team_id")
@owner_option
def roles_history(team_id: str, owner_id: str) -> None:
    """Show recent role changes of a team."""

    async def show_history() -> None:
        async with db.get_session() as session:
            rows = await get_role_history(session, team_id, owner_id)
        if not rows:
            console.print("[yellow]No role changes recorded[/yellow]")
            return
        table = Table(title="Role history")
        table.add_column("When", style="cyan")
        table.add_column("Agent")
        table.add_column("Change")
        table.add_column("Trigger")
        for entry, agent_name in rows:
            table.add_row(
                entry.assigned_at.strftime("%Y-%m-%d %H:%M"),
                agent_name,
                f"{entry.from_role} → {entry.to_role}",
                entry.trigger,
            )
        console.print(table)

    asyncio.run(show_history())


@roles_group.command(name="add-rule")
@click.argument("team_id")
@click.option("--trigger", type=click.Choice([t.value for t in RoleTrigger]), required=True)
@click.option("--from", "from_role", type=click.Choice([r.value for r in AgentRole]), required=True)
@click.option("--to", "to_role", type=click.Choice([r.value for r in AgentRole]), required=True)
@click.option("--condition", default="true", help='e.g. "error_rate > 0.3"')
@click.option("--priority", default=0, help="Higher runs first")
@click.option("--project-type", default=None, help="Only for this project type")
@owner_option
def roles_add_rule(
    team_id: str,
    trigger: str,
    from_role: str,
    to_role: str,
    condition: str,
    priority: int,
    project_type: str | None,
    owner_id: str,
) -> None:
    """Add a role assignment rule."""

    async def do_add() -> None:
        async with db.get_session() as session:
            rule = await create_rule(
                session,
                team_id,
                owner_id,
                trigger=trigger,
                from_role=from_role,
                to_role=to_role,
                condition=condition,
                priority=priority,
                project_type=project_type,
            )
            console.print(f"[green]✓[/green] Added rule {rule.id}")

    asyncio.run(do_add())


# =============================================================================
# Budget
# =============================================================================


@main.group(name="budget")
def budget_group() -> None:
    """Team budgets."""


@budget_group.command(name="show")
@click.argument("team_id", required=False)
@owner_option
def budget_show(team_id: str | None, owner_id: str) -> None:
    """Show the budget of one team, or of all teams."""

    async def do_show() -> None:
        async with db.get_session() as session:
            if team_id:
                infos = [await get_budget(session, team_id, owner_id)]
            else:
                infos = await get_budget_overview(session, owner_id)

        table = Table(title="Budgets")
        table.add_column("Team", style="cyan")
        table.add_column("Used", justify="right")
        table.add_column("Limit", justify="right")
        table.add_column("Remaining", justify="right")
        table.add_column("Used %", justify="right")
        for info in infos:
            table.add_row(
                info.team_name,
                f"${info.budget_used:.4f}",
                f"${info.budget_limit:.2f}",
                f"${info.budget_remaining:.4f}",
                f"{info.utilization_percent:.1f}%",
            )
        console.print(table)

    asyncio.run(do_show())


@budget_group.command(name="set")
@click.argument("team_id")
@click.argument("limit", type=Decimal)
@owner_option
def budget_set(team_id: str, limit: Decimal, owner_id: str) -> None:
    """Set a team's budget limit (USD)."""

    async def do_set() -> None:
        async with db.get_session() as session:
            info = await update_budget_limit(session, team_id, owner_id, limit)
        console.print(f"[green]✓[/green] {info.team_name}: limit ${info.budget_limit:.2f}")

    asyncio.run(do_set())


@budget_group.command(name="reset")
@click.argument("team_id")
@owner_option
def budget_reset(team_id: str, owner_id: str) -> None:
    """Reset a team's used budget to zero."""

    async def do_reset() -> None:
        async with db.get_session() as session:
            info = await reset_budget_usage(session, team_id, owner_id)
        console.print(f"[green]✓[/green] {info.team_name}: usage reset")

    asyncio.run(do_reset())


# =============================================================================
# Infrastructure
# =============================================================================


@main.command()
def worker() -> None:
    """Consume queued session runs from Redis."""
    from .workers.session_worker import SessionWorker

    asyncio.run(SessionWorker().run_forever())


@main.command(name="init-db")
def init_db_cmd() -> None:
    """Create all tables (development only; use alembic in production)."""
    asyncio.run(db.init_db())
    console.print("[green]✓[/green] Database initialized")


@main.command(name="db-info")
def db_info() -> None:
    """Show database and queue settings."""
    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Database", f"{settings.db_host}:{settings.db_port}/{settings.db_name}")
    table.add_row("Redis", settings.redis_url)
    table.add_row("Queue enabled", str(settings.redis_queue_enabled))
    table.add_row("LLM gateway", settings.llm_gateway_url)
    table.add_row(
        "Rate limits",
        f"{settings.rate_max_requests_per_minute}/min, {settings.rate_max_requests_per_hour}/h, "
        f"${settings.rate_max_cost_per_hour}/h",
    )
    table.add_row("Default max iterations", str(settings.default_max_iterations))
    for provider, config in get_all_configs().items():
        table.add_row(f"Model ({provider})", f"{config['model']} [dim]({config['source']})[/dim]")
    console.print(table)


if __name__ == "__main__":
    main()
