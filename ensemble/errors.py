"""Error types and helpers for the orchestration engine."""

from __future__ import annotations

import re
from enum import StrEnum

import click


class ErrorCode(StrEnum):
    """Structured failure tag attached to LLM and agent errors."""

    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    BUDGET = "budget"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


CRITICAL_CODES: frozenset[ErrorCode] = frozenset(
    {ErrorCode.AUTH, ErrorCode.RATE_LIMIT, ErrorCode.BUDGET}
)


class EnsembleError(click.ClickException):
    """Base class for engine errors surfaced to callers."""

    code: ErrorCode = ErrorCode.UNKNOWN


class SchemaNotInitializedError(EnsembleError):
    """Raised when the database schema/migrations have not been applied."""


class ValidationError(EnsembleError):
    """Missing or unauthorized team, agent, session or bad arguments."""


class CredentialError(EnsembleError):
    """No usable credential for the agent's provider."""

    code = ErrorCode.AUTH


class RateLimitError(EnsembleError):
    """A user exceeded a request or cost window."""

    code = ErrorCode.RATE_LIMIT


class BudgetError(EnsembleError):
    """A team's budget ledger would be exceeded."""

    code = ErrorCode.BUDGET


class ProviderError(EnsembleError):
    """An LLM call failed; ``code`` tells whether the session can go on."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.UNKNOWN) -> None:
        super().__init__(message)
        self.code = code


class ParseError(EnsembleError):
    """A structured tool-action block could not be decoded."""


_CRITICAL_KEYWORDS: dict[ErrorCode, tuple[str, ...]] = {
    ErrorCode.AUTH: (
        "api key",
        "authentication",
        "authorization",
        "unauthorized",
        "forbidden",
        " 401",
        " 403",
    ),
    ErrorCode.RATE_LIMIT: ("rate limit", "rate-limit", "too many requests", " 429"),
    ErrorCode.BUDGET: ("budget", "quota", "insufficient credit", " 402"),
}

_TRANSIENT_KEYWORDS = ("timeout", "timed out", "temporarily", "unavailable", "connection")


def error_code_for(exc: BaseException) -> ErrorCode:
    """Tag an exception with an ErrorCode.

    Engine errors carry their own code. Anything else is tagged from its
    message so adapters that raise plain exceptions still classify.
    """
    if isinstance(exc, EnsembleError) and not isinstance(exc, ValidationError):
        if exc.code is not ErrorCode.UNKNOWN:
            return exc.code

    message = f" {exc}".lower()
    for code, keywords in _CRITICAL_KEYWORDS.items():
        if any(kw in message for kw in keywords):
            return code
    if any(kw in message for kw in _TRANSIENT_KEYWORDS):
        return ErrorCode.TRANSIENT
    return ErrorCode.UNKNOWN


def is_critical(code: ErrorCode) -> bool:
    """Critical failures halt the session; the rest degrade to a placeholder."""
    return code in CRITICAL_CODES


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True

    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Database schema is not initialized{table_hint}.",
        "Run: `alembic upgrade head`",
        "Or for a scratch database: `ensemble init-db`",
    ]
    return "\n".join(lines)
