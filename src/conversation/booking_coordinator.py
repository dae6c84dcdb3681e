"""
Executes a confirmed booking against the scheduling backend exactly once.

The coordinator is the only code that calls ``create_appointment``. Each
execution:

1. returns the existing confirmation if the active booking already holds
   an appointment (a repeated "yes" never double-books)
2. refuses to start while a previous attempt's lock is still live
3. moves the booking state machine to LOCKED, which checks the lock
   preconditions, and persists the lock before any external call; the
   stored copy is checked before and after the save, and the attempt
   backs off unless the stored lock carries its own owner token
4. creates one appointment per target, skipping targets that already
   have one from an earlier partial attempt
5. on success sets the terminal lock and sends notifications once
6. on failure records FAILED, texts the caller that reception will
   confirm, and raises an operator alert

Usage:
    coordinator = BookingCoordinator(scheduling, dispatcher, store)
    outcome = await coordinator.execute(session)
    reply = outcome.reply
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

from src.config import settings
from src.conversation.extractors import is_valid_person_name
from src.conversation.notifications import NotificationDispatcher, intake_form_token
from src.conversation.session_store import SessionPersistenceError, SessionStore
from src.conversation.state_machine import (
    BookingState,
    BookingStateMachine,
    BookingTrigger,
    CallStage,
    LockPreconditions,
)
from src.logging_context import get_call_logger
from src.prompts.prompt_templates import (
    BOOKING_FAILED_REPLY,
    LOCK_PENDING_REPLY,
    NOT_YET_BOOKED_REPLY,
    build_already_booked,
    build_booking_confirmed,
    build_confirmation_sms,
    build_group_confirmed,
    build_intake_form_sms,
    build_pending_sms,
)
from src.schemas.booking_schema import AppointmentRequest, Slot
from src.schemas.session_schema import (
    BookingContext,
    BookingTarget,
    NotificationType,
    Session,
)
from src.tools.scheduling import SchedulingBackend, SchedulingError

logger = get_call_logger(__name__)

PENDING_NOTIFICATION_TARGET = "call"


@dataclass
class BookingOutcome:
    """Result of one execution attempt."""
    success: bool
    reply: str
    appointment_ids: list[str] = field(default_factory=list)
    already_booked: bool = False
    lock_pending: bool = False
    not_ready: bool = False


def target_slot(booking: BookingContext, target: BookingTarget) -> Optional[Slot]:
    """The slot assigned to ``target``: its own in a group, the selected one otherwise."""
    index = target.slot_index if booking.is_group else booking.selected_slot_index
    if index is None or not 0 <= index < len(booking.slots):
        return None
    return booking.slots[index]


def is_ready(booking: BookingContext) -> bool:
    """Every target named and confirmed, and every target holding a distinct slot."""
    if not booking.targets:
        return False
    for target in booking.targets:
        if not target.name or not is_valid_person_name(target.name):
            return False
        if not target.identity_confirmed:
            return False
        if target_slot(booking, target) is None:
            return False
    if booking.is_group:
        indices = {t.slot_index for t in booking.targets}
        if len(indices) != len(booking.targets) or len(booking.slots) < len(booking.targets):
            return False
    return True


def restore_machine(booking: BookingContext) -> BookingStateMachine:
    return BookingStateMachine(booking.state, booking.state_trace)


def sync_machine(booking: BookingContext, machine: BookingStateMachine) -> None:
    booking.state = machine.current_state
    booking.state_trace = machine.get_state_trace()


class BookingCoordinator:
    """Drives one booking context from READY through to CONFIRMED or FAILED."""

    def __init__(
        self,
        scheduling: SchedulingBackend,
        dispatcher: NotificationDispatcher,
        store: Optional[SessionStore] = None,
        clock: Callable[[], float] = time.time,
        lock_ttl: Optional[float] = None,
        group_lock_ttl: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> None:
        conv = settings.conversation
        self._scheduling = scheduling
        self._dispatcher = dispatcher
        self._store = store
        self._clock = clock
        self.lock_ttl = lock_ttl or conv.booking_lock_ttl_sec
        self.group_lock_ttl = group_lock_ttl or conv.group_booking_lock_ttl_sec
        self.timeout = timeout or settings.timeouts.scheduling_sec
        self._claims: dict[str, asyncio.Lock] = {}

    async def execute(self, session: Session) -> BookingOutcome:
        booking = session.booking
        if booking.appointment_created:
            logger.info("Booking already confirmed, not creating again")
            return BookingOutcome(
                success=True,
                reply=build_already_booked(booking.selected_slot),
                appointment_ids=[t.appointment_id for t in booking.targets if t.appointment_id],
                already_booked=True,
            )

        now = self._clock()
        if booking.booking_lock_until is not None and now < booking.booking_lock_until:
            logger.info("Booking lock held for another %.1fs", booking.booking_lock_until - now)
            return BookingOutcome(success=False, reply=LOCK_PENDING_REPLY, lock_pending=True)

        machine = restore_machine(booking)
        self._prepare(machine)

        preconditions = LockPreconditions(
            identity_confirmed=all(t.identity_confirmed for t in booking.targets),
            slot_selected=is_ready(booking),
            caller_confirmed=booking.caller_confirmed,
            now=now,
            lock_until=booking.booking_lock_until,
        )
        if not machine.can_transition(BookingTrigger.LOCK_ACQUIRED, preconditions):
            sync_machine(booking, machine)
            logger.warning("Booking not ready to lock: %s", preconditions)
            return BookingOutcome(success=False, reply=NOT_YET_BOOKED_REPLY, not_ready=True)

        owner = uuid.uuid4().hex
        async with self._claim_guard(session.call_id):
            stored = await self._stored_booking(session)
            if stored is not None:
                conflict = self._claimed_elsewhere(session, stored, now)
                if conflict is not None:
                    return conflict

            machine.transition(BookingTrigger.LOCK_ACQUIRED, preconditions)
            ttl = self.group_lock_ttl if booking.is_group else self.lock_ttl
            booking.booking_lock_until = now + ttl
            booking.lock_owner = owner
            session.stage = CallStage.BOOKING_IN_PROGRESS
            sync_machine(booking, machine)
            persisted = await self._persist(session)

        stored = await self._stored_booking(session) if persisted else None
        if stored is not None and stored.lock_owner != owner:
            # Another process claimed the booking between our check and our save.
            conflict = self._claimed_elsewhere(session, stored, now)
            if conflict is not None:
                logger.warning("Booking lock taken by another turn, not creating")
                return conflict

        machine.transition(BookingTrigger.CREATE_STARTED)
        sync_machine(booking, machine)

        created, patient_ids, error = await self._create_all(session)
        if error is not None:
            return await self._fail(session, machine, error)

        machine.transition(BookingTrigger.CREATE_SUCCEEDED)
        sync_machine(booking, machine)
        booking.appointment_created = True
        booking.booking_lock_until = None
        booking.lock_owner = None
        session.terminal_lock = True
        session.stage = CallStage.SENDING_NOTIFICATION
        logger.info("Booking confirmed: %s", ", ".join(created))
        await self._persist(session)

        sent_forms = await self._notify(session, patient_ids)
        session.stage = CallStage.TERMINAL
        return BookingOutcome(
            success=True,
            reply=self._confirmation_reply(booking, sent_forms),
            appointment_ids=created,
        )

    @staticmethod
    def _prepare(machine: BookingStateMachine) -> None:
        """Bring a restored machine to READY so the lock transition can be tried."""
        state = machine.current_state
        if state == BookingState.COLLECTING:
            machine.transition(BookingTrigger.DETAILS_COMPLETE)
        elif state in (BookingState.LOCKED, BookingState.EXECUTING):
            # A previous attempt died mid-flight and its lock has expired.
            logger.warning("Recovering booking left in %s", state.value)
            machine.transition(BookingTrigger.CREATE_FAILED)
            machine.transition(BookingTrigger.RETRY_REQUESTED)
        elif state == BookingState.FAILED:
            machine.transition(BookingTrigger.RETRY_REQUESTED)

    def _claim_guard(self, call_id: str) -> asyncio.Lock:
        """Serialises check-then-lock for one call within this process."""
        guard = self._claims.get(call_id)
        if guard is None:
            guard = self._claims[call_id] = asyncio.Lock()
        return guard

    async def _stored_booking(self, session: Session) -> Optional[BookingContext]:
        """The stored copy of the active booking, or None when it can't be read."""
        if self._store is None:
            return None
        try:
            stored = await self._store.load(session.call_id)
        except SessionPersistenceError as e:
            logger.error("Could not re-read booking state, continuing: %s", e)
            return None
        if stored is None or session.active_booking >= len(stored.bookings):
            return None
        return stored.bookings[session.active_booking]

    def _claimed_elsewhere(
        self, session: Session, stored: BookingContext, now: float
    ) -> Optional[BookingOutcome]:
        """Outcome for a booking another turn has confirmed or is executing, else None."""
        if stored.appointment_created:
            logger.info("Booking already confirmed by another turn")
            session.terminal_lock = True
            session.stage = CallStage.TERMINAL
            return self._adopt(session, stored, BookingOutcome(
                success=True,
                reply=build_already_booked(stored.selected_slot),
                appointment_ids=[t.appointment_id for t in stored.targets if t.appointment_id],
                already_booked=True,
            ))
        if stored.booking_lock_until is not None and now < stored.booking_lock_until:
            logger.info("Booking lock held by another turn")
            return self._adopt(session, stored, BookingOutcome(
                success=False, reply=LOCK_PENDING_REPLY, lock_pending=True,
            ))
        return None

    @staticmethod
    def _adopt(session: Session, stored: BookingContext, outcome: BookingOutcome) -> BookingOutcome:
        session.bookings[session.active_booking] = stored
        return outcome

    async def _persist(self, session: Session) -> bool:
        if self._store is None:
            return False
        try:
            await self._store.save(session)
        except SessionPersistenceError as e:
            logger.error("Could not persist booking state, continuing: %s", e)
            return False
        return True

    async def _create_all(
        self, session: Session
    ) -> tuple[list[str], dict[int, Optional[str]], Optional[str]]:
        """Create an appointment per target. Returns (ids, patient ids by target, error)."""
        booking = session.booking
        info = booking.collected_info
        created: list[str] = []
        patient_ids: dict[int, Optional[str]] = {}
        for i, target in enumerate(booking.targets):
            if target.appointment_id:
                created.append(target.appointment_id)
                patient_ids[i] = target.patient_id
                continue
            slot = target_slot(booking, target)
            request = AppointmentRequest(
                call_id=session.call_id,
                patient_name=target.name or "",
                phone=session.caller_id or info.phone,
                email=info.email if target.relation == "self" else None,
                patient_id=target.patient_id,
                is_new_patient=target.patient_id is None,
                relation=target.relation,
                slot=slot,
                notes=info.complaint,
            )
            try:
                result = await asyncio.wait_for(
                    self._scheduling.create_appointment(request), self.timeout
                )
            except asyncio.TimeoutError:
                return created, patient_ids, "create timed out"
            except SchedulingError as e:
                return created, patient_ids, str(e)
            if not result.confirmed:
                return created, patient_ids, "backend returned no appointment id"

            target.appointment_id = result.id
            booking.completed += 1
            created.append(result.id)
            patient_ids[i] = target.patient_id or result.patient_id
        return created, patient_ids, None

    async def _fail(
        self, session: Session, machine: BookingStateMachine, reason: str
    ) -> BookingOutcome:
        booking = session.booking
        stored = await self._stored_booking(session)
        if stored is not None and stored.appointment_created:
            logger.warning("Create failed but another turn confirmed the booking: %s", reason)
            return self._claimed_elsewhere(session, stored, self._clock())
        machine.transition(BookingTrigger.CREATE_FAILED)
        sync_machine(booking, machine)
        booking.failure_reason = reason
        booking.booking_lock_until = None
        booking.lock_owner = None
        session.error_count += 1
        session.stage = CallStage.ERROR_RECOVERY
        await self._persist(session)
        logger.error(
            "ALERT booking failed for call %s (%d of %d created): %s",
            session.call_id, booking.completed, len(booking.targets), reason,
        )
        await self._dispatcher.send_once(
            session,
            NotificationType.BOOKING_PENDING,
            PENDING_NOTIFICATION_TARGET,
            build_pending_sms(),
        )
        return BookingOutcome(success=False, reply=BOOKING_FAILED_REPLY)

    async def _notify(self, session: Session, patient_ids: dict[int, Optional[str]]) -> int:
        """Confirmation per appointment, intake form per new patient. Returns forms sent."""
        booking = session.booking
        single = not booking.is_group and session.active_booking == 0
        forms = 0
        for i, target in enumerate(booking.targets):
            name = target.name or ""
            slot = target_slot(booking, target)
            await self._dispatcher.send_once(
                session,
                NotificationType.BOOKING_CONFIRMATION,
                target.appointment_id,
                build_confirmation_sms(name, slot),
                token=target.appointment_id,
            )
            if target.patient_id is not None:
                continue
            key = None if single else target.appointment_id.lower()
            token = intake_form_token(session.call_id, key)
            self._dispatcher.issue_form(session, token, name, patient_ids.get(i))
            delivered = await self._dispatcher.send_once(
                session,
                NotificationType.INTAKE_FORM,
                token,
                build_intake_form_sms(name, token),
                token=token,
            )
            if delivered:
                forms += 1
        return forms

    @staticmethod
    def _confirmation_reply(booking: BookingContext, sent_forms: int) -> str:
        if booking.is_group:
            return build_group_confirmed([t.name or "" for t in booking.targets])
        target = booking.primary_target
        return build_booking_confirmed(target.name or "", booking.selected_slot, sent_forms > 0)
