"""Call session records: a forward-only status ledger in Postgres."""

from __future__ import annotations

import dataclasses
import datetime
import logging
from typing import Protocol

import asyncpg

from campus_call.call.state import CallStatus
from campus_call.errors import CallSessionConflict, SessionStoreError

logger = logging.getLogger(__name__)

# Persisted statuses in the only order they may be written
STATUS_ORDER: tuple[CallStatus, ...] = (
    CallStatus.RINGING,
    CallStatus.ACCEPTED,
    CallStatus.ENDED,
)


@dataclasses.dataclass(frozen=True)
class CallSession:
    id: str
    caller_id: str
    receiver_id: str
    status: CallStatus
    created_at: datetime.datetime


class CallSessionStore(Protocol):
    async def create(
        self, caller_id: str, receiver_id: str, status: CallStatus = ...
    ) -> CallSession: ...

    async def update_status(self, session_id: str, status: CallStatus) -> bool: ...


def _check_persisted(status: CallStatus) -> None:
    if status not in STATUS_ORDER:
        raise ValueError(f"status {status!r} is not persisted")


def _row_to_session(row: asyncpg.Record) -> CallSession:
    return CallSession(
        id=str(row["id"]),
        caller_id=row["caller_id"],
        receiver_id=row["receiver_id"],
        status=CallStatus(row["status"]),
        created_at=row["created_at"],
    )


class PgCallSessionStore:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def create(
        self,
        caller_id: str,
        receiver_id: str,
        status: CallStatus = CallStatus.RINGING,
    ) -> CallSession:
        """Insert a new session.

        Raises CallSessionConflict if a ringing session already exists
        between the two users (in either direction).
        """
        _check_persisted(status)
        if status == CallStatus.ENDED:
            raise ValueError("a session cannot be created ended")
        try:
            row = await self._pool.fetchrow(
                "INSERT INTO call_sessions (caller_id, receiver_id, status)"
                " VALUES ($1, $2, $3)"
                " RETURNING id, caller_id, receiver_id, status, created_at",
                caller_id,
                receiver_id,
                status.value,
            )
        except asyncpg.UniqueViolationError as exc:
            raise CallSessionConflict(
                f"{caller_id} and {receiver_id} already have a ringing call"
            ) from exc
        except (OSError, asyncpg.PostgresError) as exc:
            raise SessionStoreError(f"cannot create call session: {exc}") from exc
        assert row is not None
        session = _row_to_session(row)
        logger.info(
            "Created call session %s (%s -> %s, %s)",
            session.id,
            caller_id,
            receiver_id,
            session.status,
        )
        return session

    async def update_status(self, session_id: str, status: CallStatus) -> bool:
        """Advance a session's status. Returns False if it was already at or
        past *status* (or does not exist); the stored value never moves back."""
        _check_persisted(status)
        rank = STATUS_ORDER.index(status)
        try:
            row = await self._pool.fetchrow(
                "UPDATE call_sessions SET status = $2"
                " WHERE id = $1::uuid"
                "   AND array_position($3::text[], status) < $4"
                " RETURNING id",
                session_id,
                status.value,
                [s.value for s in STATUS_ORDER],
                rank + 1,
            )
        except (OSError, ValueError, asyncpg.PostgresError) as exc:
            raise SessionStoreError(
                f"cannot update session {session_id}: {exc}"
            ) from exc
        if row is None:
            logger.debug("Session %s not advanced to %s", session_id, status)
            return False
        logger.info("Session %s -> %s", session_id, status)
        return True

    async def get(self, session_id: str) -> CallSession | None:
        row = await self._pool.fetchrow(
            "SELECT id, caller_id, receiver_id, status, created_at"
            " FROM call_sessions WHERE id = $1::uuid",
            session_id,
        )
        return _row_to_session(row) if row is not None else None

    async def expire_ringing(self, older_than: datetime.timedelta) -> int:
        """Mark ringing sessions older than *older_than* as ended."""
        result = await self._pool.execute(
            "UPDATE call_sessions SET status = 'ended'"
            " WHERE status = 'ringing' AND created_at < now() - $1::interval",
            older_than,
        )
        # asyncpg returns the command tag, e.g. "UPDATE 3"
        count = int(result.split()[-1])
        if count:
            logger.info("Expired %d abandoned ringing session(s)", count)
        return count
