import pytest

from ensemble import db
from ensemble.events import (
    EventEmitter,
    EventType,
    SessionEventRecord,
    build_event_bus,
    persist_event_handler,
    progress_sink_handler,
)

from .conftest import OWNER


class ListSink:
    def __init__(self) -> None:
        self.lines: list[tuple[str, str, str, str, str]] = []

    async def emit(self, project_id, session_id, agent_name, text, phase) -> None:
        self.lines.append((project_id, session_id, agent_name, text, phase))


@pytest.mark.asyncio
async def test_handler_errors_do_not_propagate() -> None:
    seen: list[str] = []

    def broken(event):
        raise RuntimeError("handler down")

    emitter = EventEmitter()
    emitter.on_event(broken)
    emitter.on_event(lambda event: seen.append(event.message))

    await emitter.emit(SessionEventRecord(type=EventType.SESSION_STARTED, session_id="s", message="hi"))

    assert seen == ["hi"]


@pytest.mark.asyncio
async def test_persisted_events_land_in_the_session_log(factory, make_team) -> None:
    team, _ = await make_team(["coder"])
    async with db.get_session(factory) as session:
        agent_session = await db.create_agent_session(session, team, "proj", OWNER, "build", 1)

    bus = build_event_bus(factory, publish=False)
    await bus.emit(
        SessionEventRecord(
            type=EventType.AGENT_COMPLETED,
            session_id=agent_session.id,
            phase="coder",
            agent="Coder",
            message="done",
            data={"tokens": 12},
            duration_ms=40,
        )
    )
    # unknown sessions are ignored
    await persist_event_handler(factory)(SessionEventRecord(session_id="missing"))

    async with db.get_session(factory) as session:
        [logged] = await db.get_session_events(session, agent_session.id)
    assert (logged.phase, logged.event, logged.agent) == ("coder", "agent.completed", "Coder")
    assert logged.details == {"tokens": 12}
    assert logged.duration_ms == 40


@pytest.mark.asyncio
async def test_progress_sink_receives_agent_events_only() -> None:
    sink = ListSink()
    handler = progress_sink_handler(sink)

    await handler(SessionEventRecord(type=EventType.SESSION_STARTED, session_id="s", message="go"))
    await handler(
        SessionEventRecord(
            type=EventType.AGENT_STARTED, session_id="s", project_id="p", agent="Coder", message="m"
        )
    )

    assert sink.lines == [("p", "s", "Coder", "m", "agent.started")]
