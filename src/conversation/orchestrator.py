"""
Turn orchestrator: one inbound utterance in, one response directive out.

Every turn is an independent request. The session is loaded at the start,
mutated by the pipeline below and saved at the end (the booking coordinator
also saves as soon as it takes the booking lock):

    empty speech    -> stage guard (silent / "still there?" / hang up)
    safety gate     -> fixed override, skipping classification
    goodbye         -> farewell and hang up
    booking shape   -> substitute, secondary or group targets
    classification  -> intent, entities, intent lock
    handoff (pre)   -> explicit request, out of scope, low confidence, hello loop
    corrections     -> re-target the booking while it is not locked
    pending answer  -> handler for the question we last asked
    intent routing  -> exhaustive dispatch over ``Intent``
    handoff (post)  -> backend error, no-match loop
    terminal guard  -> no booking prompts after the terminal lock,
                       no success claims without an appointment id

Any unexpected exception becomes a calm apology plus a transfer.

Usage:
    orchestrator = TurnOrchestrator(store, scheduling, sender)
    greeting = await orchestrator.start_call("CA123", caller_id="+61412345678")
    output = await orchestrator.handle_turn(TurnInput(call_id="CA123", utterance_text="hi"))
"""

import asyncio
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from src.config import settings
from src.conversation.background import CallTaskTracker
from src.conversation.booking_coordinator import (
    BookingCoordinator,
    restore_machine,
    sync_machine,
    target_slot,
)
from src.conversation.disambiguation import DisambiguationEngine, ResolutionStatus
from src.conversation.extractors import (
    YesNo,
    BookingRequestKind,
    classify_yes_no,
    detect_booking_request,
    extract_day,
    extract_name,
    extract_named_person,
    extract_relation,
    extract_time_preference,
    extract_two_names,
    is_correction,
    is_goodbye,
    is_valid_person_name,
    parse_time_preference,
    wants_same_time,
    wants_someone_new,
)
from src.conversation.guardrails import ReplyGuardPipeline, SafetyCategory, SafetyGate
from src.conversation.handoff import HandoffDetector, HandoffSignals
from src.conversation.intent_classifier import IntentClassifier
from src.conversation.notifications import NotificationDispatcher
from src.conversation.session_store import SessionPersistenceError, SessionStore
from src.conversation.stage_guard import EmptyTurnAction, StageGuard
from src.conversation.state_machine import BookingState, BookingTrigger, CallStage
from src.conversation.terminal_guard import TerminalGuard, prompts_booking
from src.logging_context import call_context, get_call_logger
from src.prompts.prompt_templates import (
    ANYTHING_ELSE,
    ASK_GROUP_NAMES,
    ASK_NAME,
    ASK_NAME_AGAIN,
    ASK_TIME,
    ASK_TIME_AGAIN,
    ASK_WHAT_TO_CHANGE,
    CHANGE_REQUEST_REPLY,
    CLARIFY_REPLY,
    EMERGENCY_REPLY,
    GREETING_REPLY,
    HANDOFF_REPLIES,
    HOW_CAN_I_HELP,
    HUMAN_TRANSFER_REPLY,
    NEGATION_REPLY,
    OFF_LIMITS_REPLY,
    SILENCE_GOODBYE_REPLY,
    STILL_THERE_REPLY,
    SYSTEM_TROUBLE_REPLY,
    WHAT_ELSE_REPLY,
    build_already_booked,
    build_ask_other_name,
    build_ask_relation_name,
    build_booking_confirm,
    build_farewell,
    build_greeting,
    build_identity_ack,
    build_identity_confirm,
    build_no_slots,
    build_not_enough_slots,
    build_patient_choice,
    build_slot_offer,
    build_slot_reask,
)
from src.prompts.system_prompts import CALL_SUMMARY_PROMPT, RECEPTIONIST_REPLY_PROMPT
from src.schemas.booking_schema import Patient
from src.schemas.intent_schema import Intent, IntentResult
from src.schemas.session_schema import (
    BookingContext,
    BookingMode,
    BookingTarget,
    FormSubmission,
    QuestionKind,
    Session,
    TurnRole,
)
from src.schemas.turn_schema import ActionType, TurnAction, TurnInput, TurnOutput
from src.tools.knowledge import answer_faq
from src.tools.llm import LLMProvider, ProviderUnavailableError
from src.tools.notifications import InMemoryNotificationSender, NotificationSender
from src.tools.scheduling import MockSchedulingBackend, SchedulingBackend, SchedulingError
from src.utils import mask_phone

logger = get_call_logger(__name__)

# Intents after which a bare "yes"/"no" or greeting leaves the primary intent alone.
_CONVERSATIONAL_INTENTS = frozenset({
    Intent.CONFIRMATION, Intent.NEGATION, Intent.GREETING,
    Intent.CLARIFICATION, Intent.UNKNOWN,
})
# Intents under which a loose answer to "what's your name?" may be a name.
_NAME_BEARING_INTENTS = frozenset({
    Intent.UNKNOWN, Intent.GREETING, Intent.CONFIRMATION,
    Intent.BOOKING_STANDARD, Intent.BOOKING_NEW_PATIENT,
})
_DIGIT_QUESTIONS = frozenset({QuestionKind.PATIENT_CHOICE, QuestionKind.SLOT_CHOICE})
_SENTENCE_SPLIT = re.compile(r"(?<=[.?!])\s+")
_LEADING_ACK = re.compile(r"^(?:sure|okay|ok|great|no problem|no worries)[,.!]\s+", re.IGNORECASE)
_DAY_WORDS = frozenset({
    "today", "tomorrow", "monday", "tuesday", "wednesday", "thursday",
    "friday", "saturday", "sunday",
})

TIME_HINTS = "morning, afternoon, evening, today, tomorrow, next week, monday, tuesday, wednesday, thursday, friday, saturday"
YES_NO_HINTS = "yes, no, that's right, someone else"


@dataclass
class RouteResult:
    """What routing decided for this turn, before the handoff and terminal checks."""
    reply: str
    resolved: bool = True
    is_faq: bool = False
    transfer: bool = False
    hangup: bool = False
    reason: Optional[str] = None
    out_of_scope: bool = False

    def prefixed(self, prefix: str) -> "RouteResult":
        """Lead with ``prefix`` in place of the reply's own acknowledgement.

        Handoffs and goodbyes are spoken as they are.
        """
        if prefix and not (self.transfer or self.hangup):
            reply = _LEADING_ACK.sub("", self.reply)
            reply = reply[:1].upper() + reply[1:]
            self.reply = f"{prefix} {reply}".strip()
        return self


def _without_booking_offer(text: str) -> str:
    return " ".join(s for s in _SENTENCE_SPLIT.split(text) if not prompts_booking(s))


def _refine_preference(current: Optional[str], text: str) -> Optional[str]:
    """Time preference from ``text``, keeping the current day when only a time is said.

    "anything in the afternoon?" after "tomorrow morning" means tomorrow
    afternoon, not today.
    """
    new = extract_time_preference(text)
    if new is None or not current or extract_day(text) is not None:
        return new
    current_day = current.split()[0]
    if current_day in _DAY_WORDS and new.startswith("today "):
        return f"{current_day} {new[len('today '):]}"
    return new


class TurnOrchestrator:
    """Sequences the conversation components for each turn of a call."""

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        scheduling: Optional[SchedulingBackend] = None,
        sender: Optional[NotificationSender] = None,
        llm: Optional[LLMProvider] = None,
        clock: Callable[[], float] = time.time,
        tracker: Optional[CallTaskTracker] = None,
    ) -> None:
        self._clock = clock
        self._tz = ZoneInfo(settings.clinic.timezone)
        self._llm = llm
        self.store = store or SessionStore(clock=clock)
        self.scheduling = scheduling or MockSchedulingBackend(clock=self._now)
        self.dispatcher = NotificationDispatcher(sender or InMemoryNotificationSender(), clock)
        self.coordinator = BookingCoordinator(
            self.scheduling, self.dispatcher, self.store, clock=clock
        )
        self.safety = SafetyGate()
        self.classifier = IntentClassifier(llm)
        self.disambiguation = DisambiguationEngine()
        self.handoff = HandoffDetector()
        self.stage_guard = StageGuard()
        self.terminal_guard = TerminalGuard()
        self.reply_guard = ReplyGuardPipeline()
        self.tasks = tracker or CallTaskTracker()
        self._window = settings.conversation.history_window
        self._max_slots = settings.conversation.max_slots_offered
        self._scheduling_timeout = settings.timeouts.scheduling_sec
        self._llm_timeout = settings.timeouts.llm_sec

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), self._tz)

    # ------------------------------------------------------------------ #
    # Call lifecycle
    # ------------------------------------------------------------------ #

    async def start_call(
        self,
        call_id: str,
        caller_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> TurnOutput:
        """Create or hydrate the session and speak the greeting."""
        with call_context(call_id):
            session, _ = await self.store.load_or_create(call_id, caller_id, tenant_id)
            if session.ended:
                return self._inert_output()

            known: Optional[Patient] = None
            candidates = await self._load_candidates(session)
            if len(candidates) == 1:
                known = candidates[0]
                session.tentative_patient_id = known.id
                self.disambiguation.ask(session, QuestionKind.IDENTITY_CONFIRM)
            logger.info("Call started from %s (%d record(s) on file)",
                        mask_phone(caller_id or ""), len(candidates))

            reply = build_greeting(known)
            session.stage = CallStage.GREETING
            session.append_turn(TurnRole.ASSISTANT, reply, self._clock(), self._window)
            await self._save(session)
            return TurnOutput(speech_text=reply, next_stage_hint=session.stage.value,
                              hints=self._speech_hints(session))

    async def end_call(self, call_id: str, reason: str = "caller_hangup") -> Optional[Session]:
        """Mark the call inert, cancel its tasks and schedule the post-call summary."""
        with call_context(call_id):

            def _mark_ended(session: Session) -> None:
                if not session.ended:
                    session.ended = True
                    session.ended_reason = reason
                    session.stage = CallStage.ENDED

            try:
                session = await self.store.update_if_present(call_id, _mark_ended, allow_ended=True)
            except SessionPersistenceError as e:
                logger.error("Could not mark call ended: %s", e)
                return None
            self._after_call(call_id, session)
            return session

    async def record_form_submission(
        self, call_id: str, token: str, data: dict[str, str]
    ) -> FormSubmission:
        """Store an intake form submitted from the web link sent by SMS."""
        with call_context(call_id):
            return await self.store.record_form_submission(call_id, token, data)

    def _after_call(self, call_id: str, session: Optional[Session]) -> None:
        self.tasks.cancel(call_id)
        if session is not None and session.call_summary is None:
            self.tasks.spawn(call_id, self._summarise(call_id))

    async def _summarise(self, call_id: str) -> None:
        """Best-effort post-call summary; only ever touches a call that still exists."""
        session = await self.store.load(call_id)
        if session is None:
            return
        summary = await self._llm_summary(session) or self._plain_summary(session)

        def _apply(stored: Session) -> None:
            if stored.call_summary is None:
                stored.call_summary = summary

        await self.store.update_if_present(call_id, _apply, allow_ended=True)
        logger.info("Call summary stored")

    async def _llm_summary(self, session: Session) -> Optional[str]:
        if self._llm is None:
            return None
        transcript = "\n".join(f"{t.role.value}: {t.text}" for t in session.turn_history)
        messages = [
            {"role": "system", "content": CALL_SUMMARY_PROMPT},
            {"role": "user", "content": transcript},
        ]
        try:
            response = await asyncio.wait_for(
                self._llm.complete(messages, temperature=settings.model.llm_temperature,
                                   max_tokens=settings.model.reply_max_tokens),
                self._llm_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Summary LLM timed out, using plain summary")
            return None
        except ProviderUnavailableError as e:
            logger.warning("Summary LLM unavailable (%s), using plain summary", e)
            return None
        return response.text.strip()

    @staticmethod
    def _plain_summary(session: Session) -> str:
        booked = [
            f"{t.name} at {target_slot(booking, t).speakable}"
            for booking in session.bookings if booking.appointment_created
            for t in booking.targets if t.appointment_id
        ]
        if booked:
            outcome = "booked " + "; ".join(booked)
        elif session.handoff_reason:
            outcome = f"was transferred to reception ({session.handoff_reason})"
        else:
            outcome = "ended without a booking"
        caller = mask_phone(session.caller_id) if session.caller_id else "Unknown caller"
        return f"{caller} {outcome}."

    # ------------------------------------------------------------------ #
    # Turn pipeline
    # ------------------------------------------------------------------ #

    async def handle_turn(self, turn: TurnInput) -> TurnOutput:
        """Process one utterance. Never raises."""
        with call_context(turn.call_id):
            try:
                return await self._handle_turn(turn)
            except Exception:
                logger.exception("Unhandled error while processing turn")
                return TurnOutput(
                    speech_text=SYSTEM_TROUBLE_REPLY,
                    action=TurnAction(type=ActionType.TRANSFER, params={"reason": "system_error"}),
                    should_transfer=True,
                )

    async def _handle_turn(self, turn: TurnInput) -> TurnOutput:
        session, _ = await self.store.load_or_create(turn.call_id, turn.caller_id, turn.tenant_id)
        if session.ended:
            logger.info("Turn received for ended call, ignoring")
            return self._inert_output()

        text = (turn.utterance_text or "").strip()
        digits = (turn.digits or "").strip() or None
        now = self._clock()
        if not text and not digits:
            return await self._handle_empty(session, now)

        self.stage_guard.on_speech(session)
        session.append_turn(TurnRole.USER, text or f"[keypad {digits}]", now, self._window)

        result, intent = await self._route(session, text, digits)
        if intent is not None:
            session.turn_history[-1].intent = intent

        if result.resolved:
            session.no_match_count = 0
        else:
            session.no_match_count += 1

        if not (result.transfer or result.hangup):
            result = self._post_route_handoff(session, result)
        if not (result.transfer or result.hangup):
            result.reply = self.terminal_guard.apply(result.reply, session, is_faq=result.is_faq)

        return await self._finish(session, result)

    async def _handle_empty(self, session: Session, now: float) -> TurnOutput:
        action = self.stage_guard.on_empty(session, now)
        if action == EmptyTurnAction.SILENT:
            await self._save(session)
            return TurnOutput(
                action=TurnAction(type=ActionType.WAIT),
                next_stage_hint=session.stage.value,
                collect_digits=session.awaiting_response_type in _DIGIT_QUESTIONS,
            )
        if action == EmptyTurnAction.PROMPT:
            return await self._finish(session, RouteResult(reply=STILL_THERE_REPLY))
        return await self._finish(
            session, RouteResult(reply=SILENCE_GOODBYE_REPLY, hangup=True, reason="silence")
        )

    async def _route(
        self, session: Session, text: str, digits: Optional[str]
    ) -> tuple[RouteResult, Optional[Intent]]:
        safety = self.safety.inspect(text)
        if safety.overridden:
            return self._route_safety(session, safety.category, safety.forced_reply,
                                      safety.transfer), safety.forced_intent

        closing_pending = session.awaiting_response_type == QuestionKind.ANYTHING_ELSE
        if is_goodbye(text, closing_pending) and not session.group_booking_in_progress:
            logger.info("Caller said goodbye")
            return RouteResult(
                reply=build_farewell(session.has_confirmed_booking), hangup=True, reason="goodbye"
            ), None

        request = detect_booking_request(text, session.has_confirmed_booking)
        if request != BookingRequestKind.NONE:
            self._apply_booking_request(session, request, text)

        classification = await self.classifier.classify(text, self._history(session)[:-1])
        intent = classification.intent
        if request != BookingRequestKind.NONE and not intent.is_booking:
            intent = Intent.BOOKING_STANDARD
        self._record_intent(session, intent)
        self._merge_entities(session, classification)

        decision = self.handoff.evaluate(HandoffSignals(
            utterance=text,
            intent=intent,
            confidence=classification.confidence,
            recent_user_texts=session.recent_texts(TurnRole.USER, 5),
            question_pending=session.awaiting_response_type is not None,
        ))
        if decision.should_handoff:
            return self._handoff_result(session, decision.trigger.value), intent

        if intent == Intent.CLARIFICATION:
            return self._repeat_last(session), intent

        booking = session.booking
        if (
            is_correction(text)
            and request == BookingRequestKind.NONE
            and booking.state in (BookingState.COLLECTING, BookingState.READY)
            and not booking.appointment_created
        ):
            self._retarget(session, text)
            return await self._advance_booking(session), intent

        kind = session.awaiting_response_type
        if kind is not None:
            handler = self._answer_handlers[kind]
            answered = await handler(self, session, text, digits, classification)
            if answered is not None:
                return answered, intent

        route = self._INTENT_ROUTES[intent]
        return await route(self, session, text, classification), intent

    # ------------------------------------------------------------------ #
    # Safety, handoff and finishing
    # ------------------------------------------------------------------ #

    def _route_safety(
        self,
        session: Session,
        category: SafetyCategory,
        reply: str,
        transfer: bool,
    ) -> RouteResult:
        if transfer:
            session.handoff_reason = category.value
            return RouteResult(reply=reply, transfer=True, reason=category.value)
        if category == SafetyCategory.OFF_LIMITS:
            return RouteResult(reply=reply, resolved=False,
                               out_of_scope=session.no_match_count >= 1)
        # Medical advice: refuse, and keep any booking in flight moving.
        if self._booking_active(session) and session.awaiting_response_type is not None:
            return RouteResult(reply=f"{_without_booking_offer(reply)} {self._question_for(session)}")
        return RouteResult(reply=reply, is_faq=True)

    def _handoff_result(self, session: Session, trigger: str, reason: Optional[str] = None) -> RouteResult:
        session.handoff_reason = reason or trigger
        return RouteResult(reply=HANDOFF_REPLIES[trigger], transfer=True, reason=reason or trigger)

    def _post_route_handoff(self, session: Session, result: RouteResult) -> RouteResult:
        decision = self.handoff.evaluate(HandoffSignals(
            backend_error=session.backend_error,
            out_of_scope=result.out_of_scope,
            no_match_count=session.no_match_count,
            recent_assistant_texts=session.recent_texts(TurnRole.ASSISTANT, 1) + [result.reply],
        ))
        if not decision.should_handoff:
            return result
        return self._handoff_result(session, decision.trigger.value)

    async def _finish(self, session: Session, result: RouteResult) -> TurnOutput:
        action: Optional[TurnAction] = None
        if result.transfer or result.hangup:
            action_type = ActionType.TRANSFER if result.transfer else ActionType.HANGUP
            action = TurnAction(type=action_type, params={"reason": result.reason or ""})
            session.ended = True
            session.ended_reason = result.reason or action_type.value
            session.stage = CallStage.ENDED
            session.awaiting_response_type = None

        if result.reply:
            session.append_turn(TurnRole.ASSISTANT, result.reply, self._clock(), self._window)
        await self._save(session)
        if session.ended:
            self._after_call(session.call_id, session)

        return TurnOutput(
            speech_text=result.reply,
            action=action,
            next_stage_hint=session.stage.value,
            collect_digits=session.awaiting_response_type in _DIGIT_QUESTIONS,
            hints=self._speech_hints(session),
            should_transfer=result.transfer,
            should_hangup=result.hangup,
        )

    async def _save(self, session: Session) -> None:
        try:
            await self.store.save(session)
        except SessionPersistenceError as e:
            logger.error("Session save failed, reply still returned: %s", e)

    @staticmethod
    def _inert_output() -> TurnOutput:
        return TurnOutput(
            action=TurnAction(type=ActionType.HANGUP, params={"reason": "call_ended"}),
            next_stage_hint=CallStage.ENDED.value,
            should_hangup=True,
        )

    def _speech_hints(self, session: Session) -> Optional[str]:
        kind = session.awaiting_response_type
        if kind == QuestionKind.TIME:
            return TIME_HINTS
        if kind == QuestionKind.SLOT_CHOICE:
            names = {s.practitioner_name for s in session.booking.slots}
            return ", ".join(["first", "second", "third", "last", *sorted(names)])
        if kind == QuestionKind.PATIENT_CHOICE:
            return ", ".join([p.first_name for p in session.candidate_patients] + ["someone new"])
        if kind in (QuestionKind.IDENTITY_CONFIRM, QuestionKind.BOOKING_CONFIRM):
            return YES_NO_HINTS
        return None

    # ------------------------------------------------------------------ #
    # Session helpers
    # ------------------------------------------------------------------ #

    def _history(self, session: Session) -> list[dict[str, str]]:
        return [{"role": t.role.value, "content": t.text} for t in session.turn_history]

    @staticmethod
    def _booking_active(session: Session) -> bool:
        return session.intent_locked and not session.booking.appointment_created

    @staticmethod
    def _record_intent(session: Session, intent: Intent) -> None:
        if intent.is_booking:
            if not session.intent_locked:
                logger.info("Booking intent locked: %s", intent.value)
            session.primary_intent = intent
            session.intent_locked = True
        elif not session.intent_locked and intent not in _CONVERSATIONAL_INTENTS:
            session.primary_intent = intent

    def _merge_entities(self, session: Session, classification: IntentResult) -> None:
        """Fold extracted entities into the active booking without overwriting."""
        if not self._booking_active(session):
            return
        entities = classification.entities
        info = session.collected_info
        if entities.time_preference and not info.time_preference:
            info.time_preference = entities.time_preference
            info.preferred_day = entities.preferred_day
            info.preferred_time = entities.preferred_time
        if entities.email and not info.email:
            info.email = entities.email
        if entities.phone and not info.phone:
            info.phone = entities.phone
        if entities.existing_patient is not None and info.is_new_patient is None:
            info.is_new_patient = not entities.existing_patient
        if classification.intent == Intent.BOOKING_NEW_PATIENT:
            info.is_new_patient = True

        target = session.booking.primary_target
        if (
            entities.name
            and not session.booking.is_group
            and target.relation == "self"
            and not target.name
            and session.tentative_patient_id is None
            and (not session.candidate_patients or session.candidates_declined)
            and is_valid_person_name(entities.name)
        ):
            target.name = entities.name
            target.identity_confirmed = True
            info.name = entities.name

    async def _load_candidates(self, session: Session) -> list[Patient]:
        """Look up records for the caller's number once per call."""
        if session.candidates_loaded or not session.caller_id:
            return session.candidate_patients
        session.candidates_loaded = True
        try:
            session.candidate_patients = await asyncio.wait_for(
                self.scheduling.find_candidates(session.caller_id), self._scheduling_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Patient lookup timed out, will ask for a name")
        except SchedulingError as e:
            logger.warning("Patient lookup failed (%s), will ask for a name", e)
        return session.candidate_patients

    # ------------------------------------------------------------------ #
    # Booking targets
    # ------------------------------------------------------------------ #

    def _apply_booking_request(
        self, session: Session, request: BookingRequestKind, text: str
    ) -> None:
        booking = session.booking
        relation = extract_relation(text) or "family"

        if request == BookingRequestKind.SECONDARY:
            if not booking.appointment_created:
                return
            previous = booking
            context = BookingContext(
                mode=BookingMode.SECONDARY,
                targets=[BookingTarget(relation=relation)],
            )
            context.collected_info.phone = previous.collected_info.phone
            context.collected_info.email = previous.collected_info.email
            if wants_same_time(text):
                context.collected_info.time_preference = previous.collected_info.time_preference
            self._name_target(context.primary_target, extract_named_person(text))
            session.start_booking(context)
            session.terminal_lock = False
            session.awaiting_response_type = None
            session.stage = CallStage.COLLECT_IDENTITY
            logger.info("Secondary booking started for %s", relation)
            return

        if booking.appointment_created or booking.state not in (
            BookingState.COLLECTING, BookingState.READY, BookingState.FAILED
        ):
            return

        if request == BookingRequestKind.GROUP:
            if booking.is_group:
                return
            caller = booking.primary_target if booking.primary_target.relation == "self" else BookingTarget()
            other = BookingTarget(relation=relation)
            pairs = extract_two_names(text)
            if pairs:
                self._name_target(caller, pairs[0][0])
                self._name_target(other, pairs[1][0])
            else:
                self._name_target(other, extract_named_person(text))
            booking.mode = BookingMode.GROUP
            booking.targets = [caller, other]
            booking.selected_slot_index = None
            booking.slots = []
            booking.caller_confirmed = False
            self._details_changed(booking)
            session.awaiting_response_type = None
            logger.info("Group booking started for self and %s", relation)
            return

        # Substitute: the one booking is for someone other than the caller.
        target = booking.primary_target
        target.relation = relation
        target.patient_id = None
        target.name = None
        target.identity_confirmed = False
        self._name_target(target, extract_named_person(text))
        session.tentative_patient_id = None
        booking.caller_confirmed = False
        self._details_changed(booking)
        if session.awaiting_response_type in (QuestionKind.IDENTITY_CONFIRM, QuestionKind.PATIENT_CHOICE):
            session.awaiting_response_type = None
        logger.info("Booking re-targeted to caller's %s", relation)

    @staticmethod
    def _name_target(target: BookingTarget, name: Optional[str]) -> bool:
        if not name or not is_valid_person_name(name):
            return False
        target.name = name
        target.identity_confirmed = True
        return True

    @staticmethod
    def _details_changed(booking: BookingContext) -> None:
        machine = restore_machine(booking)
        if machine.can_transition(BookingTrigger.DETAILS_CHANGED):
            machine.transition(BookingTrigger.DETAILS_CHANGED)
            sync_machine(booking, machine)

    def _retarget(self, session: Session, text: str) -> None:
        """Handle "no, it's actually for my daughter Mia" before the booking is locked."""
        booking = session.booking
        target = booking.primary_target
        relation = extract_relation(text)
        name = extract_named_person(text) or extract_name(text)
        if relation:
            target.relation = relation
        elif re.search(r"\bnot for me\b|\bwrong person\b|\bdifferent person\b", text.lower()):
            target.relation = "family"
        target.patient_id = None
        target.name = None
        target.identity_confirmed = False
        self._name_target(target, name)
        session.tentative_patient_id = None
        booking.caller_confirmed = False
        self._details_changed(booking)
        session.awaiting_response_type = None
        logger.info("Booking target corrected (relation=%s, named=%s)", target.relation, bool(target.name))

    def _decline_candidates(self, session: Session) -> None:
        """Identity denied: forget the tentative record, keep intent and time preference."""
        session.candidates_declined = True
        session.tentative_patient_id = None
        target = session.booking.primary_target
        if target.relation == "self":
            target.patient_id = None
            target.name = None
            target.identity_confirmed = False
        session.collected_info.name = None
        if session.awaiting_response_type in (QuestionKind.IDENTITY_CONFIRM, QuestionKind.PATIENT_CHOICE):
            session.awaiting_response_type = None

    def _confirm_patient(self, session: Session, patient: Patient) -> None:
        """The only place a looked-up record becomes the booking's patient."""
        target = session.booking.primary_target
        target.patient_id = patient.id
        target.name = patient.full_name
        target.relation = "self"
        target.identity_confirmed = True
        target.is_new_patient = False
        session.tentative_patient_id = None
        session.collected_info.name = patient.full_name
        session.collected_info.is_new_patient = False
        if session.awaiting_response_type in (QuestionKind.IDENTITY_CONFIRM, QuestionKind.PATIENT_CHOICE):
            session.awaiting_response_type = None
        logger.info("Identity confirmed for patient %s", patient.id)

    # ------------------------------------------------------------------ #
    # Asking questions
    # ------------------------------------------------------------------ #

    def _ask(
        self,
        session: Session,
        kind: QuestionKind,
        first: str,
        again: Optional[str] = None,
        stage: Optional[CallStage] = None,
    ) -> Optional[RouteResult]:
        """Ask ``kind`` (first or repeated wording) while its budget lasts.

        Once the budget is spent, identity questions fall back to booking a
        new patient and return None so the caller moves on; every other kind
        hands off to reception.
        """
        asked_before = session.question_ask_counts.get(kind, 0) > 0
        question = again if (asked_before and again) else first
        resolution = self.disambiguation.clarify(session, kind, question)
        if resolution.status == ResolutionStatus.AMBIGUOUS:
            if stage is not None:
                session.stage = stage
            return RouteResult(reply=resolution.question)
        if resolution.status == ResolutionStatus.NEW_PERSON:
            self._decline_candidates(session)
            return None
        return self._escalate(session, kind)

    def _escalate(self, session: Session, kind: QuestionKind) -> RouteResult:
        logger.info("Escalating after %s was asked %d times", kind.value, self.disambiguation.max_asks)
        return self._handoff_result(session, "frustration_loop", reason=f"{kind.value}_exhausted")

    def _question_for(self, session: Session) -> str:
        """The wording of the currently pending booking question, without counting an ask."""
        booking = session.booking
        kind = session.awaiting_response_type
        if kind == QuestionKind.TIME:
            return ASK_TIME
        if kind == QuestionKind.SLOT_CHOICE and booking.slots:
            return build_slot_offer(booking.slots)
        if kind == QuestionKind.BOOKING_CONFIRM and booking.slots:
            return self._confirm_question(booking)
        if kind == QuestionKind.NAME:
            return ASK_NAME
        return HOW_CAN_I_HELP

    @staticmethod
    def _confirm_question(booking: BookingContext) -> str:
        names = [t.name or "" for t in booking.targets]
        if booking.is_group:
            slots = [booking.slots[t.slot_index] for t in booking.targets]
        else:
            slots = [booking.selected_slot]
        return build_booking_confirm(names, slots)

    # ------------------------------------------------------------------ #
    # Booking flow
    # ------------------------------------------------------------------ #

    async def _advance_booking(self, session: Session, prefix: str = "") -> RouteResult:
        """Ask the next missing thing, or execute once everything is confirmed.

        Order: names of other people, time, slots, slot choice, the caller's
        own identity, then the explicit yes.
        """
        booking = session.booking
        if booking.appointment_created:
            session.awaiting_response_type = QuestionKind.ANYTHING_ELSE
            return RouteResult(reply=build_already_booked(booking.selected_slot)).prefixed(prefix)

        step = self._other_names_step(session)
        if step is not None:
            return step.prefixed(prefix)

        step = await self._time_and_slots_step(session)
        if step is not None:
            return step.prefixed(prefix)

        step = await self._identity_step(session)
        if step is not None:
            return step.prefixed(prefix)

        if not booking.caller_confirmed:
            asked = self._ask(session, QuestionKind.BOOKING_CONFIRM,
                              self._confirm_question(booking), stage=CallStage.CONFIRM)
            return asked.prefixed(prefix)

        return (await self._execute_booking(session)).prefixed(prefix)

    def _other_names_step(self, session: Session) -> Optional[RouteResult]:
        booking = session.booking
        if booking.is_group:
            missing = [t for t in booking.targets if not t.name]
            if not missing:
                return None
            named = [t.name for t in booking.targets if t.name]
            question = build_ask_other_name(named[0]) if named else ASK_GROUP_NAMES
            return self._ask(session, QuestionKind.GROUP_NAMES, question,
                             stage=CallStage.COLLECT_IDENTITY)

        target = booking.primary_target
        if target.relation == "self" or (target.name and target.identity_confirmed):
            return None
        return self._ask(session, QuestionKind.NAME, build_ask_relation_name(target.relation),
                         ASK_NAME_AGAIN, stage=CallStage.COLLECT_IDENTITY)

    async def _time_and_slots_step(self, session: Session) -> Optional[RouteResult]:
        booking = session.booking
        info = booking.collected_info
        if not info.time_preference:
            return self._ask(session, QuestionKind.TIME, ASK_TIME, ASK_TIME_AGAIN,
                             stage=CallStage.COLLECT_TIME)

        needed = len(booking.targets) if booking.is_group else 1
        if not booking.slots:
            time_range = parse_time_preference(info.time_preference, self._now())
            try:
                found = await asyncio.wait_for(
                    self.scheduling.search_slots(time_range), self._scheduling_timeout
                )
            except asyncio.TimeoutError:
                logger.warning("Slot search timed out")
                session.backend_error = True
                return RouteResult(reply=SYSTEM_TROUBLE_REPLY)
            except SchedulingError as e:
                logger.warning("Slot search failed: %s", e)
                session.backend_error = True
                return RouteResult(reply=SYSTEM_TROUBLE_REPLY)

            preference = info.time_preference
            if len(found) < needed:
                booking.reset_time()
                reply = build_no_slots(preference) if not found else build_not_enough_slots(needed)
                return self._ask(session, QuestionKind.TIME, reply, stage=CallStage.COLLECT_TIME)

            booking.slots = found[:max(self._max_slots, needed)]
            session.question_ask_counts.pop(QuestionKind.SLOT_CHOICE, None)
            session.question_ask_counts.pop(QuestionKind.BOOKING_CONFIRM, None)
            logger.info("Found %d slot(s) for %s", len(found), preference)

        if booking.is_group:
            for i, target in enumerate(booking.targets):
                if target.slot_index is None:
                    target.slot_index = i
            return None

        if booking.selected_slot_index is None:
            return self._ask(session, QuestionKind.SLOT_CHOICE, build_slot_offer(booking.slots),
                             build_slot_reask(booking.slots), stage=CallStage.OFFER_SLOTS)
        return None

    async def _identity_step(self, session: Session) -> Optional[RouteResult]:
        booking = session.booking
        if booking.is_group:
            return None
        target = booking.primary_target
        if target.identity_confirmed and target.name:
            return None

        if target.relation == "self" and not session.candidates_declined:
            candidates = await self._load_candidates(session)
            if session.tentative_patient_id is None and len(candidates) == 1:
                session.tentative_patient_id = candidates[0].id
            tentative = session.find_candidate(session.tentative_patient_id)
            if tentative is not None:
                asked = self._ask(session, QuestionKind.IDENTITY_CONFIRM,
                                  build_identity_confirm(tentative), stage=CallStage.COLLECT_IDENTITY)
                if asked is not None:
                    return asked
            elif len(candidates) > 1:
                asked = self._ask(session, QuestionKind.PATIENT_CHOICE,
                                  build_patient_choice(candidates), stage=CallStage.COLLECT_IDENTITY)
                if asked is not None:
                    return asked

        return self._ask(session, QuestionKind.NAME, ASK_NAME, ASK_NAME_AGAIN,
                         stage=CallStage.COLLECT_IDENTITY)

    async def _execute_booking(self, session: Session) -> RouteResult:
        outcome = await self.coordinator.execute(session)
        if outcome.lock_pending:
            session.awaiting_response_type = QuestionKind.BOOKING_CONFIRM
            return RouteResult(reply=outcome.reply)
        if outcome.not_ready:
            session.booking.caller_confirmed = False
            return await self._advance_booking(session)
        session.awaiting_response_type = QuestionKind.ANYTHING_ELSE
        return RouteResult(reply=outcome.reply)

    def _change_time(self, session: Session, preference: str) -> None:
        booking = session.booking
        booking.reset_time()
        booking.collected_info.time_preference = preference
        self._details_changed(booking)
        session.awaiting_response_type = None
        logger.info("Time preference changed to %s", preference)

    # ------------------------------------------------------------------ #
    # Answers to pending questions (None = not an answer, route by intent)
    # ------------------------------------------------------------------ #

    async def _answer_identity(
        self, session: Session, text: str, digits: Optional[str], classification: IntentResult
    ) -> Optional[RouteResult]:
        candidate = session.find_candidate(session.tentative_patient_id)
        if candidate is None:
            session.awaiting_response_type = None
            return None

        answer = classify_yes_no(text)
        if answer != YesNo.NO and not wants_someone_new(text):
            match = self.disambiguation.resolve_patient(text, [candidate])
            if answer == YesNo.YES or match.status == ResolutionStatus.RESOLVED:
                self._confirm_patient(session, candidate)
                ack = build_identity_ack(candidate.first_name)
                if self._booking_active(session):
                    return await self._advance_booking(session, prefix=ack)
                return RouteResult(reply=f"{ack} {HOW_CAN_I_HELP}")
            return None

        logger.info("Caller denied being the record on file")
        self._decline_candidates(session)
        stated = extract_name(text, permissive=True)
        target = session.booking.primary_target
        prefix = "Sorry about that."
        if target.relation == "self" and self._name_target(target, stated):
            session.collected_info.name = target.name
            session.collected_info.is_new_patient = True
            prefix = f"Sorry about that. {build_identity_ack(target.name.split()[0])}"
        if self._booking_active(session):
            return await self._advance_booking(session, prefix=prefix)
        return RouteResult(reply=f"{prefix} {HOW_CAN_I_HELP}")

    async def _answer_patient_choice(
        self, session: Session, text: str, digits: Optional[str], classification: IntentResult
    ) -> Optional[RouteResult]:
        candidates = session.candidate_patients
        resolution = self.disambiguation.resolve_patient(text, candidates, digits)
        if resolution.status == ResolutionStatus.RESOLVED:
            chosen = candidates[resolution.index]
            self._confirm_patient(session, chosen)
            return await self._advance_booking(session, prefix=build_identity_ack(chosen.first_name))
        if resolution.status == ResolutionStatus.NEW_PERSON:
            self._decline_candidates(session)
            stated = extract_name(text)
            if self._name_target(session.booking.primary_target, stated):
                session.collected_info.is_new_patient = True
            return await self._advance_booking(session, prefix="No problem.")
        return None

    async def _answer_name(
        self, session: Session, text: str, digits: Optional[str], classification: IntentResult
    ) -> Optional[RouteResult]:
        target = session.booking.primary_target
        name = extract_named_person(text) if target.relation != "self" else None
        if name is None:
            permissive = classification.intent in _NAME_BEARING_INTENTS
            name = extract_name(text, permissive=permissive)
        if not self._name_target(target, name):
            return None
        session.awaiting_response_type = None
        if target.relation == "self":
            session.collected_info.name = name
            if session.collected_info.is_new_patient is None:
                session.collected_info.is_new_patient = True
        return await self._advance_booking(session, prefix=build_identity_ack(name.split()[0]))

    async def _answer_group_names(
        self, session: Session, text: str, digits: Optional[str], classification: IntentResult
    ) -> Optional[RouteResult]:
        missing = [t for t in session.booking.targets if not t.name]
        names = [name for name, _ in extract_two_names(text)]
        if not names:
            single = extract_named_person(text) or extract_name(text, permissive=True)
            names = [single] if single else []
        filled = 0
        for target, name in zip(missing, names):
            if self._name_target(target, name):
                filled += 1
        if not filled:
            return None
        session.awaiting_response_type = None
        return await self._advance_booking(session, prefix="Thanks.")

    async def _answer_time(
        self, session: Session, text: str, digits: Optional[str], classification: IntentResult
    ) -> Optional[RouteResult]:
        info = session.collected_info
        if not info.time_preference:
            preference = extract_time_preference(text)
            if preference is None:
                return None
            info.time_preference = preference
        session.awaiting_response_type = None
        return await self._advance_booking(session)

    async def _answer_slot_choice(
        self, session: Session, text: str, digits: Optional[str], classification: IntentResult
    ) -> Optional[RouteResult]:
        booking = session.booking
        resolution = self.disambiguation.resolve_slot(text, booking.slots, digits)
        if resolution.status != ResolutionStatus.RESOLVED and len(booking.slots) == 1:
            answer = classify_yes_no(text)
            if answer == YesNo.YES:
                resolution.status, resolution.index = ResolutionStatus.RESOLVED, 0
            elif answer == YesNo.NO and extract_time_preference(text) is None:
                return self._ask_what_to_change(session)

        if resolution.status == ResolutionStatus.RESOLVED:
            booking.selected_slot_index = resolution.index
            booking.primary_target.slot_index = resolution.index
            session.awaiting_response_type = None
            logger.info("Slot %d selected", resolution.index + 1)
            return await self._advance_booking(session, prefix="Great.")

        preference = _refine_preference(booking.collected_info.time_preference, text)
        if preference and preference != booking.collected_info.time_preference:
            self._change_time(session, preference)
            return await self._advance_booking(session)
        return None

    async def _answer_booking_confirm(
        self, session: Session, text: str, digits: Optional[str], classification: IntentResult
    ) -> Optional[RouteResult]:
        booking = session.booking
        preference = _refine_preference(booking.collected_info.time_preference, text)
        if preference and preference != booking.collected_info.time_preference:
            self._change_time(session, preference)
            return await self._advance_booking(session, prefix="No problem.")

        answer = classify_yes_no(text)
        if answer == YesNo.YES:
            booking.caller_confirmed = True
            session.awaiting_response_type = None
            return await self._execute_booking(session)
        if answer == YesNo.NO:
            return self._ask_what_to_change(session)
        return None

    async def _answer_anything_else(
        self, session: Session, text: str, digits: Optional[str], classification: IntentResult
    ) -> Optional[RouteResult]:
        session.awaiting_response_type = None
        if classification.intent == Intent.CONFIRMATION and len(text.split()) <= 3:
            return RouteResult(reply=WHAT_ELSE_REPLY)
        return None

    def _ask_what_to_change(self, session: Session) -> RouteResult:
        booking = session.booking
        booking.reset_time()
        self._details_changed(booking)
        return self._ask(session, QuestionKind.TIME, ASK_WHAT_TO_CHANGE, stage=CallStage.COLLECT_TIME)

    _answer_handlers: dict[
        QuestionKind,
        Callable[..., Awaitable[Optional[RouteResult]]],
    ] = {
        QuestionKind.IDENTITY_CONFIRM: _answer_identity,
        QuestionKind.PATIENT_CHOICE: _answer_patient_choice,
        QuestionKind.NAME: _answer_name,
        QuestionKind.GROUP_NAMES: _answer_group_names,
        QuestionKind.TIME: _answer_time,
        QuestionKind.SLOT_CHOICE: _answer_slot_choice,
        QuestionKind.BOOKING_CONFIRM: _answer_booking_confirm,
        QuestionKind.ANYTHING_ELSE: _answer_anything_else,
    }

    # ------------------------------------------------------------------ #
    # Intent routes
    # ------------------------------------------------------------------ #

    async def _route_booking(
        self, session: Session, text: str, classification: IntentResult
    ) -> RouteResult:
        if session.booking.appointment_created:
            session.awaiting_response_type = QuestionKind.ANYTHING_ELSE
            return RouteResult(reply=build_already_booked(session.booking.selected_slot))
        return await self._advance_booking(session)

    async def _route_faq(
        self, session: Session, text: str, classification: IntentResult
    ) -> RouteResult:
        answer = answer_faq(classification.intent) or CLARIFY_REPLY
        if self._booking_active(session):
            # Answer, then pick the booking back up. A pending question is
            # repeated without spending its ask budget.
            answer = _without_booking_offer(answer)
            if session.awaiting_response_type is not None:
                return RouteResult(reply=f"{answer} {self._question_for(session)}", is_faq=True)
            follow_up = await self._advance_booking(session)
            if follow_up.transfer:
                return follow_up
            return RouteResult(reply=f"{answer} {follow_up.reply}", is_faq=True)
        if session.terminal_lock:
            answer = _without_booking_offer(answer)
        else:
            session.stage = CallStage.FAQ
            if prompts_booking(answer):
                session.awaiting_response_type = None
                return RouteResult(reply=answer, is_faq=True)
        session.awaiting_response_type = QuestionKind.ANYTHING_ELSE
        return RouteResult(reply=f"{answer} {ANYTHING_ELSE}", is_faq=True)

    async def _route_change(
        self, session: Session, text: str, classification: IntentResult
    ) -> RouteResult:
        logger.info("Existing appointment %s, routing to reception", classification.intent.value)
        session.handoff_reason = classification.intent.value
        return RouteResult(reply=CHANGE_REQUEST_REPLY, transfer=True, reason=classification.intent.value)

    async def _route_human(
        self, session: Session, text: str, classification: IntentResult
    ) -> RouteResult:
        session.handoff_reason = "explicit_request"
        return RouteResult(reply=HUMAN_TRANSFER_REPLY, transfer=True, reason="explicit_request")

    async def _route_emergency(
        self, session: Session, text: str, classification: IntentResult
    ) -> RouteResult:
        session.handoff_reason = "emergency"
        return RouteResult(reply=EMERGENCY_REPLY, transfer=True, reason="emergency")

    async def _route_greeting(
        self, session: Session, text: str, classification: IntentResult
    ) -> RouteResult:
        if self._booking_active(session):
            return await self._advance_booking(session)
        return RouteResult(reply=GREETING_REPLY)

    async def _route_confirmation(
        self, session: Session, text: str, classification: IntentResult
    ) -> RouteResult:
        if self._booking_active(session):
            result = await self._advance_booking(session)
            result.resolved = False
            return result
        offered = session.recent_texts(TurnRole.ASSISTANT, 1)
        if not session.terminal_lock and offered and prompts_booking(offered[0]):
            self._record_intent(session, Intent.BOOKING_STANDARD)
            return await self._advance_booking(session)
        return RouteResult(reply=WHAT_ELSE_REPLY)

    async def _route_negation(
        self, session: Session, text: str, classification: IntentResult
    ) -> RouteResult:
        if self._booking_active(session) and session.awaiting_response_type is not None:
            result = await self._advance_booking(session)
            result.resolved = False
            return result
        session.awaiting_response_type = QuestionKind.ANYTHING_ELSE
        return RouteResult(reply=NEGATION_REPLY)

    async def _route_clarification(
        self, session: Session, text: str, classification: IntentResult
    ) -> RouteResult:
        return self._repeat_last(session)

    def _repeat_last(self, session: Session) -> RouteResult:
        previous = session.recent_texts(TurnRole.ASSISTANT, 1)
        if not previous:
            return RouteResult(reply=GREETING_REPLY)
        return RouteResult(reply=f"Sure. {previous[0]}")

    async def _route_irrelevant(
        self, session: Session, text: str, classification: IntentResult
    ) -> RouteResult:
        return RouteResult(reply=OFF_LIMITS_REPLY, resolved=False,
                           out_of_scope=session.no_match_count >= 1)

    async def _route_unknown(
        self, session: Session, text: str, classification: IntentResult
    ) -> RouteResult:
        if self._booking_active(session) and session.awaiting_response_type is not None:
            result = await self._advance_booking(session)
            result.resolved = False
            return result
        reply = await self._llm_reply(session)
        if reply is None:
            return RouteResult(reply=CLARIFY_REPLY, resolved=False)
        return RouteResult(reply=reply)

    async def _llm_reply(self, session: Session) -> Optional[str]:
        """Model-phrased answer for an open question, reviewed before use."""
        if self._llm is None:
            return None
        messages = [{"role": "system", "content": RECEPTIONIST_REPLY_PROMPT}]
        messages.extend(self._history(session))
        try:
            response = await asyncio.wait_for(
                self._llm.complete(messages, temperature=settings.model.llm_temperature,
                                   max_tokens=settings.model.reply_max_tokens),
                self._llm_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Reply LLM timed out")
            return None
        except ProviderUnavailableError as e:
            logger.warning("Reply LLM unavailable: %s", e)
            return None
        review = self.reply_guard.review(response.text)
        if review.text is None:
            logger.warning("Model reply blocked: %s", "; ".join(v.message or "" for v in review.violations))
            return None
        return review.text

    _INTENT_ROUTES: dict[Intent, Callable[..., Awaitable[RouteResult]]] = {
        Intent.BOOKING_STANDARD: _route_booking,
        Intent.BOOKING_NEW_PATIENT: _route_booking,
        Intent.CHANGE_APPOINTMENT: _route_change,
        Intent.CANCEL_APPOINTMENT: _route_change,
        Intent.FAQ_PRICES: _route_faq,
        Intent.FAQ_HOURS: _route_faq,
        Intent.FAQ_LOCATION: _route_faq,
        Intent.FAQ_FIRST_VISIT: _route_faq,
        Intent.FAQ_SERVICES: _route_faq,
        Intent.FAQ_INSURANCE: _route_faq,
        Intent.ASK_HUMAN: _route_human,
        Intent.GREETING: _route_greeting,
        Intent.CONFIRMATION: _route_confirmation,
        Intent.NEGATION: _route_negation,
        Intent.CLARIFICATION: _route_clarification,
        Intent.IRRELEVANT: _route_irrelevant,
        Intent.EMERGENCY: _route_emergency,
        Intent.UNKNOWN: _route_unknown,
    }


_unrouted = set(Intent) - set(TurnOrchestrator._INTENT_ROUTES)
if _unrouted:
    raise RuntimeError(f"Intents without a route: {sorted(i.value for i in _unrouted)}")
_unhandled = set(QuestionKind) - set(TurnOrchestrator._answer_handlers)
if _unhandled:
    raise RuntimeError(f"Questions without an answer handler: {sorted(k.value for k in _unhandled)}")
