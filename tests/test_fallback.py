import pytest
from sqlalchemy import select

from ensemble import db
from ensemble.capabilities import StaticCredentialStore
from ensemble.errors import CredentialError, ErrorCode, ProviderError, ValidationError
from ensemble.fallback import (
    FALLBACK_SYSTEM_PROMPT,
    fallback_to_single_agent,
    get_session_with_fallback,
    save_fallback_response,
)
from ensemble.models import FallbackRecord, SessionStatus

from .conftest import OWNER


@pytest.fixture
def new_session(factory, make_team):
    async def _new(status: SessionStatus = SessionStatus.FAILED, prompt: str = "build a todo app"):
        team, _ = await make_team(["coder"])
        async with db.get_session(factory) as session:
            agent_session = await db.create_agent_session(session, team, "proj", OWNER, prompt, 3)
            agent_session.status = status.value
        return agent_session

    return _new


@pytest.mark.asyncio
async def test_fallback_replays_the_prompt_and_stores_the_reply(
    llm, credentials, factory, events, new_session
) -> None:
    agent_session = await new_session(prompt="write a haiku about queues")
    llm.replies["gpt-4"] = "Messages wait in line"

    result = await fallback_to_single_agent(
        agent_session.id,
        "openai",
        OWNER,
        llm=llm,
        credentials=credentials,
        session_factory=factory,
        events=events,
    )

    assert (result.provider, result.model, result.response) == ("openai", "gpt-4", "Messages wait in line")
    provider, model, messages = llm.calls[0]
    assert messages == [
        {"role": "system", "content": FALLBACK_SYSTEM_PROMPT},
        {"role": "user", "content": "write a haiku about queues"},
    ]
    assert events.types() == ["fallback.completed"]

    view = await get_session_with_fallback(agent_session.id, OWNER, session_factory=factory)
    assert view.has_fallback
    assert view.fallback_response == "Messages wait in line"


@pytest.mark.asyncio
async def test_rerun_overwrites_the_stored_reply(llm, credentials, factory, new_session) -> None:
    agent_session = await new_session()
    llm.replies["gpt-4"] = "first"
    llm.replies["claude-3"] = "second"

    await fallback_to_single_agent(
        agent_session.id, "openai", OWNER, llm=llm, credentials=credentials, session_factory=factory
    )
    result = await fallback_to_single_agent(
        agent_session.id,
        "anthropic",
        OWNER,
        "claude-3",
        llm=llm,
        credentials=credentials,
        session_factory=factory,
    )

    assert result.model == "claude-3"
    view = await get_session_with_fallback(agent_session.id, OWNER, session_factory=factory)
    assert view.fallback_response == "second"


@pytest.mark.asyncio
async def test_saving_over_an_existing_reply_updates_in_place(factory, new_session) -> None:
    agent_session = await new_session()

    async with db.get_session(factory) as session:
        await save_fallback_response(session, agent_session.id, "first", "openai", "gpt-4")
        await save_fallback_response(session, agent_session.id, "second", "xai", "grok")

    async with db.get_session(factory) as session:
        records = (
            await session.scalars(
                select(FallbackRecord).where(FallbackRecord.session_id == agent_session.id)
            )
        ).all()
    assert [(r.response, r.provider, r.model) for r in records] == [("second", "xai", "grok")]


@pytest.mark.asyncio
async def test_paused_session_is_escalated_to_failed(llm, credentials, factory, new_session) -> None:
    agent_session = await new_session(SessionStatus.PAUSED)

    await fallback_to_single_agent(
        agent_session.id, "openai", OWNER, llm=llm, credentials=credentials, session_factory=factory
    )

    async with db.get_session(factory) as session:
        stored = await db.get_agent_session(session, agent_session.id)
    assert stored.status == SessionStatus.FAILED.value
    assert stored.error_message == "Escalated to single-agent fallback"


@pytest.mark.asyncio
async def test_completed_session_is_rejected(llm, credentials, factory, new_session) -> None:
    agent_session = await new_session(SessionStatus.COMPLETED)

    with pytest.raises(ValidationError, match="already completed"):
        await fallback_to_single_agent(
            agent_session.id, "openai", OWNER, llm=llm, credentials=credentials, session_factory=factory
        )
    assert llm.calls == []


@pytest.mark.asyncio
async def test_missing_credential_and_bad_provider(llm, factory, new_session) -> None:
    agent_session = await new_session(SessionStatus.RUNNING)
    credentials = StaticCredentialStore({"openai": "sk"})

    with pytest.raises(CredentialError, match="no API key found for provider: google"):
        await fallback_to_single_agent(
            agent_session.id, "google", OWNER, llm=llm, credentials=credentials, session_factory=factory
        )
    with pytest.raises(ValidationError):
        await fallback_to_single_agent(
            agent_session.id, "mistral", OWNER, llm=llm, credentials=credentials, session_factory=factory
        )

    # nothing was escalated
    async with db.get_session(factory) as session:
        stored = await db.get_agent_session(session, agent_session.id)
    assert stored.status == SessionStatus.RUNNING.value
    assert llm.calls == []


@pytest.mark.asyncio
async def test_provider_failure_propagates_without_a_record(llm, credentials, factory, new_session) -> None:
    agent_session = await new_session()
    llm.replies["gpt-4"] = ProviderError("gateway 503", ErrorCode.TRANSIENT)

    with pytest.raises(ProviderError):
        await fallback_to_single_agent(
            agent_session.id, "openai", OWNER, llm=llm, credentials=credentials, session_factory=factory
        )

    view = await get_session_with_fallback(agent_session.id, OWNER, session_factory=factory)
    assert not view.has_fallback


@pytest.mark.asyncio
async def test_sessions_are_owner_scoped(llm, credentials, factory, new_session) -> None:
    agent_session = await new_session()

    with pytest.raises(ValidationError):
        await fallback_to_single_agent(
            agent_session.id, "openai", "someone-else", llm=llm, credentials=credentials, session_factory=factory
        )
    with pytest.raises(ValidationError):
        await get_session_with_fallback(agent_session.id, "someone-else", session_factory=factory)
