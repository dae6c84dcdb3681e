"""
Session persistence keyed by call id, with merge-before-save.

Turns for one call arrive as independent requests, and background work
(form submissions, post-call summaries) may write the same session in
between. ``save()`` therefore reloads the stored copy and merges the
sub-keys other writers own before overwriting:

* form submissions already recorded in storage win per token
* notification records are unioned by (type, target)
* a booking confirmed in storage is never replaced by an unconfirmed copy
* an ended call stays ended
* ``revision`` always increases

Usage:
    store = SessionStore(InMemoryKeyValueBackend())
    session, created = await store.load_or_create("CA123", caller_id="+61412345678")
    ...
    await store.save(session)
"""

import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable, Optional, Protocol, Union

from pydantic import ValidationError

from src.config import settings
from src.schemas.session_schema import FormSubmission, Session

logger = logging.getLogger(__name__)

KEY_PREFIX = "voice:session:"


class SessionPersistenceError(Exception):
    """Storage was unreachable, timed out, or held an unreadable session."""


class SessionNotFound(LookupError):
    """No session is stored for the requested call id."""


class UnknownFormToken(LookupError):
    """The form token was never issued for this call."""


class FormAlreadySubmitted(Exception):
    """A form token may only be submitted once."""

    def __init__(self, token: str) -> None:
        super().__init__(f"Form {token} was already submitted")
        self.token = token


class KeyValueBackend(Protocol):
    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str) -> None:
        ...


class InMemoryKeyValueBackend:
    """Dict-backed store standing in for Redis or similar in tests and demos."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.fail_reads = False
        self.fail_writes = False

    async def get(self, key: str) -> Optional[str]:
        if self.fail_reads:
            raise ConnectionError("session store unreachable")
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        if self.fail_writes:
            raise ConnectionError("session store unreachable")
        self.data[key] = value


SessionMutation = Callable[[Session], Union[None, Awaitable[None]]]


def merge_sessions(ours: Session, stored: Session) -> Session:
    """Fold sub-keys owned by other writers from ``stored`` into ``ours``."""
    for token, submission in stored.form_tokens.items():
        mine = ours.form_tokens.get(token)
        if mine is None or (submission.submitted and not mine.submitted):
            ours.form_tokens[token] = submission

    seen = {(n.type, n.target_id) for n in ours.notifications_sent}
    for record in stored.notifications_sent:
        if (record.type, record.target_id) not in seen:
            ours.notifications_sent.append(record)
            seen.add((record.type, record.target_id))

    # A confirmed booking is never rolled back by a writer that missed it.
    for i, booking in enumerate(stored.bookings[: len(ours.bookings)]):
        if booking.appointment_created and not ours.bookings[i].appointment_created:
            ours.bookings[i] = booking
            if i == ours.active_booking:
                ours.terminal_lock = ours.terminal_lock or stored.terminal_lock

    if stored.ended and not ours.ended:
        ours.ended = True
        ours.ended_reason = stored.ended_reason
    if ours.call_summary is None:
        ours.call_summary = stored.call_summary

    ours.revision = max(ours.revision, stored.revision)
    return ours


class SessionStore:
    """Loads, creates and saves ``Session`` objects through a key-value backend."""

    def __init__(
        self,
        backend: Optional[KeyValueBackend] = None,
        clock: Callable[[], float] = time.time,
        timeout: Optional[float] = None,
    ) -> None:
        self._backend = backend or InMemoryKeyValueBackend()
        self._clock = clock
        self.timeout = timeout or settings.timeouts.storage_sec

    @staticmethod
    def key_for(call_id: str) -> str:
        return f"{KEY_PREFIX}{call_id}"

    async def load(self, call_id: str) -> Optional[Session]:
        """Return the stored session, or None if this call has none.

        Raises:
            SessionPersistenceError: storage failed or held unreadable data.
        """
        try:
            raw = await asyncio.wait_for(self._backend.get(self.key_for(call_id)), self.timeout)
        except asyncio.TimeoutError as e:
            raise SessionPersistenceError(f"load timed out for {call_id}") from e
        except Exception as e:
            raise SessionPersistenceError(f"load failed for {call_id}: {e}") from e
        if raw is None:
            return None
        try:
            return Session.model_validate_json(raw)
        except ValidationError as e:
            raise SessionPersistenceError(f"stored session for {call_id} is unreadable") from e

    async def load_or_create(
        self,
        call_id: str,
        caller_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> tuple[Session, bool]:
        """Hydrate the session for ``call_id`` or start a fresh one.

        A storage failure is logged and answered with a fresh, unsaved
        session so the caller still gets a reply.
        """
        try:
            existing = await self.load(call_id)
        except SessionPersistenceError as e:
            logger.error("Session load failed, continuing with a fresh session: %s", e)
            existing = None
        if existing is not None:
            if caller_id and not existing.caller_id:
                existing.caller_id = caller_id
            return existing, False

        now = self._clock()
        session = Session(
            call_id=call_id,
            caller_id=caller_id,
            tenant_id=tenant_id,
            created_at=now,
            updated_at=now,
        )
        logger.info("Created session for call %s", call_id)
        return session, True

    async def save(self, session: Session, merge: bool = True) -> Session:
        """Persist ``session``, merging concurrent writes first when ``merge`` is set.

        Raises:
            SessionPersistenceError: storage failed or timed out.
        """
        if merge:
            stored = await self.load(session.call_id)
            if stored is not None:
                merge_sessions(session, stored)
        session.revision += 1
        session.updated_at = self._clock()
        try:
            await asyncio.wait_for(
                self._backend.set(self.key_for(session.call_id), session.model_dump_json()),
                self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise SessionPersistenceError(f"save timed out for {session.call_id}") from e
        except Exception as e:
            raise SessionPersistenceError(f"save failed for {session.call_id}: {e}") from e
        logger.debug("Saved session %s (revision %d)", session.call_id, session.revision)
        return session

    async def update_if_present(
        self,
        call_id: str,
        mutate: SessionMutation,
        allow_ended: bool = False,
    ) -> Optional[Session]:
        """Apply ``mutate`` to a stored session and save it.

        A no-op returning None when the call has no session, or when it has
        ended and ``allow_ended`` is not set. Background completions go
        through here so they never resurrect or corrupt a finished call.
        """
        session = await self.load(call_id)
        if session is None:
            logger.debug("Skipping update for unknown call %s", call_id)
            return None
        if session.ended and not allow_ended:
            logger.debug("Skipping update for ended call %s", call_id)
            return None
        outcome = mutate(session)
        if inspect.isawaitable(outcome):
            await outcome
        return await self.save(session)

    async def record_form_submission(
        self, call_id: str, token: str, data: dict[str, str]
    ) -> FormSubmission:
        """Mark an issued form token as submitted.

        Raises:
            SessionNotFound: no session for ``call_id``.
            UnknownFormToken: ``token`` was never issued on this call.
            FormAlreadySubmitted: ``token`` was submitted before.
        """
        session = await self.load(call_id)
        if session is None:
            raise SessionNotFound(call_id)
        submission = session.form_tokens.get(token)
        if submission is None:
            raise UnknownFormToken(token)
        if submission.submitted:
            raise FormAlreadySubmitted(token)

        submission.submitted_at = self._clock()
        submission.data = dict(data)
        await self.save(session)
        logger.info("Form %s submitted for call %s", token, call_id)
        return submission

