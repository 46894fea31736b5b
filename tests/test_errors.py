import pytest

from ensemble.errors import (
    CredentialError,
    ErrorCode,
    ProviderError,
    ValidationError,
    error_code_for,
    is_critical,
    missing_table_name,
)


@pytest.mark.parametrize(
    ("exc", "code"),
    [
        (CredentialError("no key"), ErrorCode.AUTH),
        (ProviderError("boom", ErrorCode.RATE_LIMIT), ErrorCode.RATE_LIMIT),
        (RuntimeError("Invalid API key provided"), ErrorCode.AUTH),
        (RuntimeError("HTTP 429 Too Many Requests"), ErrorCode.RATE_LIMIT),
        (RuntimeError("You exceeded your current quota"), ErrorCode.BUDGET),
        (TimeoutError("request timed out"), ErrorCode.TRANSIENT),
        (RuntimeError("model produced nothing"), ErrorCode.UNKNOWN),
    ],
)
def test_error_code_for(exc: BaseException, code: ErrorCode) -> None:
    assert error_code_for(exc) == code


def test_validation_errors_are_not_auth_failures() -> None:
    assert error_code_for(ValidationError("team not found")) == ErrorCode.UNKNOWN


def test_only_auth_rate_and_budget_are_critical() -> None:
    assert is_critical(ErrorCode.AUTH)
    assert is_critical(ErrorCode.RATE_LIMIT)
    assert is_critical(ErrorCode.BUDGET)
    assert not is_critical(ErrorCode.TRANSIENT)
    assert not is_critical(ErrorCode.UNKNOWN)


def test_missing_table_name_from_sqlite_and_postgres_messages() -> None:
    assert missing_table_name(RuntimeError("no such table: agent_sessions")) == "agent_sessions"
    assert missing_table_name(RuntimeError('relation "agents" does not exist')) == "agents"
    assert missing_table_name(RuntimeError("disk full")) is None
