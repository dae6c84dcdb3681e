from src.conversation.guardrails import ReplyGuardPipeline, SafetyCategory, SafetyGate
from src.conversation.handoff import HandoffDetector, HandoffTrigger
from src.conversation.intent_classifier import IntentClassifier
from src.conversation.state_machine import (
    BookingState,
    BookingStateMachine,
    BookingTrigger,
    CallStage,
)

__all__ = [
    "BookingStateMachine",
    "BookingState",
    "BookingTrigger",
    "CallStage",
    "SafetyGate",
    "SafetyCategory",
    "ReplyGuardPipeline",
    "HandoffDetector",
    "HandoffTrigger",
    "IntentClassifier",
]
