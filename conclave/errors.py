"""Error types and helpers for the coordination platform."""

from __future__ import annotations

import re

import click


class ConclaveError(Exception):
    """Base class for platform errors."""


class StoreUnavailable(ConclaveError):
    """The backing store could not be reached. Fatal to the in-flight call."""


class AuditWriteFailed(ConclaveError):
    """An audit entry could not be persisted after bounded retries."""


class NotHolder(ConclaveError):
    """Caller tried to renew or release a lease it does not hold."""

    def __init__(self, resource_id: str, holder_id: str) -> None:
        super().__init__(f"{holder_id!r} does not hold {resource_id!r}")
        self.resource_id = resource_id
        self.holder_id = holder_id


class LockNotAcquired(ConclaveError):
    """Raised by the ``locked`` context manager when the lease was denied."""


class ProposalClosed(ConclaveError):
    """A vote arrived after the proposal was decided or expired."""

    def __init__(self, proposal_id: str, status: str) -> None:
        super().__init__(f"Proposal {proposal_id} is {status}")
        self.proposal_id = proposal_id
        self.status = status


class SessionNotActive(ConclaveError):
    """The session is completed, aborted or past its TTL."""


class UnknownTask(ConclaveError, KeyError):
    """No task with the given id."""


class UnknownProposal(ConclaveError, KeyError):
    """No proposal with the given id."""


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


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

    # Fallback for drivers that don't format errors consistently.
    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
        if "does not exist" in message and "relation" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Audit schema is not initialized{table_hint}.",
        "Run: `alembic upgrade head`",
        "Or validate with: `conclave schema-check`",
    ]
    return "\n".join(lines)
