"""
Offline console demo: plays a phone call through the real turn orchestrator.

Uses the mock scheduling backend, the in-memory SMS sender and the keyword
intent classifier, so no API keys and no network calls are needed. Each
turn prints the receptionist's reply plus the stage and action the
telephony layer would receive.

Usage:
    python console_demo.py
    python console_demo.py --scenario booking
    python console_demo.py --scenario family
    python console_demo.py --scenario emergency
    python console_demo.py --scenario faq
"""

import argparse
import asyncio
import uuid
from typing import Optional

from src.config import settings
from src.conversation.orchestrator import TurnOrchestrator
from src.schemas.booking_schema import Patient
from src.schemas.turn_schema import TurnInput, TurnOutput
from src.tools.notifications import InMemoryNotificationSender
from src.tools.scheduling import MockSchedulingBackend

BLUE = "\033[94m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"

KNOWN_CALLER = "+61412345678"
UNKNOWN_CALLER = "+61400111222"

DEMO_PATIENTS = [
    Patient(id="PT-1001", first_name="Jane", last_name="Citizen", phone=KNOWN_CALLER),
]


class ConsoleSession:
    """Drives one simulated call in the terminal."""

    # Pre-scripted scenarios for --scenario flag: (caller id, utterances)
    SCENARIOS: dict[str, tuple[str, list[str]]] = {
        "booking": (UNKNOWN_CALLER, [
            "Hi, I'd like to book an appointment please",
            "tomorrow morning",
            "the first one",
            "Sam Taylor",
            "yes please",
            "no thanks, bye",
        ]),
        "family": (KNOWN_CALLER, [
            "yes it's me, can I book in for tomorrow afternoon",
            "the second one",
            "yes",
            "can I also book my son Tom for the same time",
            "the first one",
            "yes",
            "that's all, bye",
        ]),
        "emergency": (UNKNOWN_CALLER, [
            "I've got chest pain and I can't breathe properly",
        ]),
        "faq": (UNKNOWN_CALLER, [
            "How much is a first appointment?",
            "And what are your opening hours?",
            "no that's all, thanks",
        ]),
    }

    MAX_INPUT_LENGTH = 500

    def __init__(self, caller_id: str = UNKNOWN_CALLER) -> None:
        self.caller_id = caller_id
        self.call_id = f"CONSOLE-{uuid.uuid4().hex[:8]}"
        self.sms = InMemoryNotificationSender()
        self.scheduling = MockSchedulingBackend(patients=list(DEMO_PATIENTS))
        self.orchestrator = TurnOrchestrator(scheduling=self.scheduling, sender=self.sms)
        self.finished = False

    def agent_say(self, output: TurnOutput) -> None:
        if output.speech_text:
            print(f"{GREEN}{BOLD}[{settings.clinic.assistant_name}]{RESET} {GREEN}{output.speech_text}{RESET}")
        action = output.action.type.value if output.action else "listen"
        colour = RED if output.should_transfer else DIM
        print(f"{colour}  >> stage={output.next_stage_hint} action={action}{RESET}")
        if output.should_transfer or output.should_hangup:
            self.finished = True

    def banner(self, title: str) -> None:
        print()
        print(f"{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  CLINIC RECEPTIONIST - {title}{RESET}")
        print(f"{BOLD}  Clinic: {settings.clinic.name}{RESET}")
        print(f"{BOLD}  Caller: {self.caller_id}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")
        print()

    async def say(self, text: str) -> None:
        output = await self.orchestrator.handle_turn(
            TurnInput(call_id=self.call_id, utterance_text=text, caller_id=self.caller_id)
        )
        self.agent_say(output)

    async def run_scenario(self, scenario: str) -> None:
        """Auto-play a pre-scripted scenario."""
        _, steps = self.SCENARIOS[scenario]
        self.banner(f"Scenario: {scenario}")
        self.agent_say(await self.orchestrator.start_call(self.call_id, self.caller_id))

        for step in steps:
            if self.finished:
                break
            print(f"\n{BLUE}[Caller] {RESET}{step}")
            await self.say(step)

        await self.summary()

    async def run(self) -> None:
        self.banner("Console Demo (type 'quit' to exit)")
        self.agent_say(await self.orchestrator.start_call(self.call_id, self.caller_id))

        while not self.finished:
            user_input = (await asyncio.to_thread(input, f"\n{BLUE}[Caller] {RESET}")).strip()
            if user_input.lower() in ("quit", "exit", "q"):
                await self.orchestrator.end_call(self.call_id)
                print(f"\n{DIM}Caller hung up.{RESET}")
                break
            if len(user_input) > self.MAX_INPUT_LENGTH:
                user_input = user_input[: self.MAX_INPUT_LENGTH]
            await self.say(user_input)

        await self.summary()

    async def summary(self) -> None:
        await self.orchestrator.tasks.drain()
        session = await self.orchestrator.store.load(self.call_id)
        print(f"\n{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  Call complete.{RESET}")
        if session is not None:
            for i, booking in enumerate(session.bookings, start=1):
                trace = " -> ".join(booking.state_trace)
                print(f"{DIM}  Booking {i} ({booking.mode.value}): {trace}{RESET}")
            if session.call_summary:
                print(f"{DIM}  Summary: {session.call_summary}{RESET}")
        for message in self.sms.sent:
            print(f"{YELLOW}  SMS {message['template']}: {message['body']}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Offline console demo")
    parser.add_argument(
        "--scenario",
        choices=sorted(ConsoleSession.SCENARIOS),
        default=None,
        help="Auto-play a pre-scripted scenario instead of interactive mode",
    )
    parser.add_argument(
        "--known-caller",
        action="store_true",
        help="Interactive mode: call from a number with a patient on file",
    )
    args = parser.parse_args(argv)

    if args.scenario:
        caller_id, _ = ConsoleSession.SCENARIOS[args.scenario]
        asyncio.run(ConsoleSession(caller_id).run_scenario(args.scenario))
    else:
        caller_id = KNOWN_CALLER if args.known_caller else UNKNOWN_CALLER
        asyncio.run(ConsoleSession(caller_id).run())


if __name__ == "__main__":
    main()
