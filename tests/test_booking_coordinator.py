"""Tests for the booking coordinator: exactly-once creation and failure handling."""

import asyncio

import pytest

from src.conversation.booking_coordinator import BookingCoordinator, is_ready, target_slot
from src.conversation.state_machine import BookingState, CallStage
from src.prompts.prompt_templates import BOOKING_FAILED_REPLY, LOCK_PENDING_REPLY
from src.schemas.session_schema import NotificationType
from src.tools.scheduling import SchedulingError
from tests.conftest import make_ready_session


@pytest.fixture
def coordinator(scheduling, dispatcher, store, fake_clock):
    return BookingCoordinator(scheduling, dispatcher, store, clock=fake_clock)


def templates(sms):
    return [m["template"] for m in sms.sent]


class TestReadiness:
    def test_ready_single(self):
        assert is_ready(make_ready_session().booking)

    def test_unnamed_target_not_ready(self):
        booking = make_ready_session().booking
        booking.primary_target.name = None
        assert not is_ready(booking)

    def test_placeholder_name_not_ready(self):
        booking = make_ready_session().booking
        booking.primary_target.name = "patient1"
        assert not is_ready(booking)

    def test_group_needs_distinct_slots(self):
        booking = make_ready_session(names=("Michael Brown", "Scott Brown")).booking
        assert is_ready(booking)
        booking.targets[1].slot_index = 0
        assert not is_ready(booking)

    def test_target_slot_in_group(self):
        booking = make_ready_session(names=("Michael Brown", "Scott Brown")).booking
        assert target_slot(booking, booking.targets[1]) == booking.slots[1]


class TestExecute:
    @pytest.mark.asyncio
    async def test_success(self, coordinator, scheduling, sms):
        session = make_ready_session()
        outcome = await coordinator.execute(session)

        assert outcome.success
        assert outcome.reply.startswith("You're all booked in. Sam Taylor at 8am tomorrow")
        assert len(outcome.appointment_ids) == 1
        assert len(scheduling.create_calls) == 1

        booking = session.booking
        assert booking.appointment_created
        assert booking.state == BookingState.CONFIRMED
        assert booking.booking_lock_until is None
        assert session.terminal_lock
        assert session.stage == CallStage.TERMINAL
        assert templates(sms) == ["booking_confirmation", "intake_form"]
        assert "form_CA-READY" in session.form_tokens

    @pytest.mark.asyncio
    async def test_existing_patient_gets_no_form(self, coordinator, sms):
        session = make_ready_session(patient_id="PT-1001")
        outcome = await coordinator.execute(session)
        assert "short form" not in outcome.reply
        assert templates(sms) == ["booking_confirmation"]

    @pytest.mark.asyncio
    async def test_second_execute_never_double_books(self, coordinator, scheduling, sms):
        session = make_ready_session()
        first = await coordinator.execute(session)
        second = await coordinator.execute(session)

        assert second.already_booked
        assert second.appointment_ids == first.appointment_ids
        assert second.reply.startswith("You're already booked in for 8am tomorrow")
        assert len(scheduling.create_calls) == 1
        assert len(sms.sent) == 2

    @pytest.mark.asyncio
    async def test_not_ready_without_caller_yes(self, coordinator, scheduling):
        session = make_ready_session(caller_confirmed=False)
        outcome = await coordinator.execute(session)

        assert outcome.not_ready
        assert scheduling.create_calls == []
        assert session.booking.state == BookingState.READY

    @pytest.mark.asyncio
    async def test_live_lock_is_respected(self, coordinator, scheduling, fake_clock):
        session = make_ready_session()
        session.booking.booking_lock_until = fake_clock.now + 5
        outcome = await coordinator.execute(session)

        assert outcome.lock_pending
        assert outcome.reply == LOCK_PENDING_REPLY
        assert scheduling.create_calls == []

    @pytest.mark.asyncio
    async def test_lock_persisted_before_create(self, coordinator, scheduling, store):
        seen = {}
        original = scheduling.create_appointment

        async def create_and_peek(request):
            stored = await store.load(request.call_id)
            seen["state"] = stored.booking.state
            seen["lock"] = stored.booking.booking_lock_until
            return await original(request)

        scheduling.create_appointment = create_and_peek
        await coordinator.execute(make_ready_session())

        assert seen["state"] == BookingState.LOCKED
        assert seen["lock"] is not None


class TestFailure:
    @pytest.mark.asyncio
    async def test_create_failure(self, coordinator, scheduling, sms):
        scheduling.fail_create = True
        session = make_ready_session()
        outcome = await coordinator.execute(session)

        assert not outcome.success
        assert outcome.reply == BOOKING_FAILED_REPLY
        booking = session.booking
        assert booking.state == BookingState.FAILED
        assert not booking.appointment_created
        assert booking.booking_lock_until is None
        assert booking.failure_reason == "appointment creation failed"
        assert session.error_count == 1
        assert session.stage == CallStage.ERROR_RECOVERY
        assert not session.terminal_lock
        assert templates(sms) == ["booking_pending"]

    @pytest.mark.asyncio
    async def test_missing_appointment_id_is_failure(self, coordinator, scheduling):
        scheduling.omit_id = True
        session = make_ready_session()
        outcome = await coordinator.execute(session)

        assert not outcome.success
        assert session.booking.failure_reason == "backend returned no appointment id"
        assert session.booking.appointment_id is None

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, coordinator, scheduling, sms):
        scheduling.fail_create = True
        session = make_ready_session()
        await coordinator.execute(session)

        scheduling.fail_create = False
        outcome = await coordinator.execute(session)
        assert outcome.success
        assert session.booking.state_trace == [
            "collecting", "ready", "locked", "executing", "failed",
            "ready", "locked", "executing", "confirmed",
        ]
        # The pending text is not repeated on the retry.
        assert templates(sms).count(NotificationType.BOOKING_PENDING.value) == 1

    @pytest.mark.asyncio
    async def test_recovers_booking_left_locked(self, coordinator, scheduling, fake_clock):
        session = make_ready_session()
        booking = session.booking
        booking.state = BookingState.LOCKED
        booking.state_trace = ["collecting", "ready", "locked"]
        booking.booking_lock_until = fake_clock.now - 1

        outcome = await coordinator.execute(session)
        assert outcome.success
        assert len(scheduling.create_calls) == 1

    @pytest.mark.asyncio
    async def test_group_partial_failure_resumes(self, coordinator, scheduling, sms):
        session = make_ready_session(names=("Michael Brown", "Scott Brown"))
        second_slot = session.booking.slots[1]
        scheduling.block_slot(second_slot.practitioner_id, second_slot.start)

        outcome = await coordinator.execute(session)
        booking = session.booking
        assert not outcome.success
        assert booking.completed == 1
        assert booking.targets[0].appointment_id is not None
        assert booking.targets[1].appointment_id is None
        assert booking.failure_reason == "slot no longer available"

        scheduling.reset()
        outcome = await coordinator.execute(session)
        assert outcome.success
        assert booking.completed == 2
        assert outcome.reply.startswith("Done, Michael Brown and Scott Brown are both booked in.")
        # Only the missing appointment is created on the retry.
        assert [r.patient_name for r in scheduling.create_calls] == ["Scott Brown"]
        forms = [m for m in sms.sent if m["template"] == NotificationType.INTAKE_FORM.value]
        assert len(forms) == 2


class TestConcurrentConfirm:
    @pytest.mark.asyncio
    async def test_simultaneous_executes_create_once(self, coordinator, scheduling, store, sms):
        await store.save(make_ready_session())
        original = scheduling.create_appointment

        async def slow_create(request):
            await asyncio.sleep(0.05)
            return await original(request)

        scheduling.create_appointment = slow_create
        # Both copies are loaded before either turn takes the lock.
        first_copy = await store.load("CA-READY")
        second_copy = await store.load("CA-READY")
        outcomes = await asyncio.gather(
            coordinator.execute(first_copy), coordinator.execute(second_copy),
        )

        assert len(scheduling.create_calls) == 1
        assert sorted(o.success for o in outcomes) == [False, True]
        loser = next(o for o in outcomes if not o.success)
        assert loser.lock_pending
        assert loser.reply == LOCK_PENDING_REPLY
        assert NotificationType.BOOKING_PENDING.value not in templates(sms)

        stored = await store.load("CA-READY")
        assert stored.booking.appointment_created
        assert stored.terminal_lock

    @pytest.mark.asyncio
    async def test_stored_lock_from_another_turn_is_respected(
        self, coordinator, scheduling, store, fake_clock
    ):
        other = make_ready_session()
        other.booking.booking_lock_until = fake_clock.now + 5
        other.booking.lock_owner = "other-turn"
        await store.save(other)

        session = make_ready_session()
        outcome = await coordinator.execute(session)

        assert outcome.lock_pending
        assert scheduling.create_calls == []
        assert session.booking.lock_owner == "other-turn"

    @pytest.mark.asyncio
    async def test_booking_confirmed_elsewhere_is_reported_not_recreated(
        self, coordinator, scheduling, store
    ):
        other = make_ready_session()
        other.booking.appointment_created = True
        other.booking.primary_target.appointment_id = "APT-OTHER"
        await store.save(other)

        session = make_ready_session()
        outcome = await coordinator.execute(session)

        assert outcome.already_booked
        assert outcome.appointment_ids == ["APT-OTHER"]
        assert scheduling.create_calls == []
        assert session.booking.appointment_created
        assert session.terminal_lock

    @pytest.mark.asyncio
    async def test_failure_after_another_turn_confirmed_sends_no_pending_text(
        self, coordinator, scheduling, store, sms
    ):
        await store.save(make_ready_session())

        async def confirmed_elsewhere_then_fail(request):
            stored = await store.load(request.call_id)
            stored.booking.appointment_created = True
            stored.booking.primary_target.appointment_id = "APT-OTHER"
            await store.save(stored)
            raise SchedulingError("slot no longer available")

        scheduling.create_appointment = confirmed_elsewhere_then_fail
        session = await store.load("CA-READY")
        outcome = await coordinator.execute(session)

        assert outcome.already_booked
        assert outcome.reply.startswith("You're already booked in for 8am tomorrow")
        assert session.error_count == 0
        assert sms.sent == []
