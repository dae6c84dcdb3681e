"""
Guardrails on both sides of the LLM.

Pre-LLM, the ``SafetyGate`` inspects the raw utterance and can short-circuit
the whole turn with a fixed reply:
1. emergency phrases: forced emergency intent, transfer
2. explicit human request: forced ask_human intent, transfer
3. profanity: forced ask_human intent, transfer
4. medical-advice questions: fixed refusal, offer a booking
5. off-limits topics: fixed redirect

Post-LLM, the ``ReplyGuardPipeline`` reviews any model-phrased reply before
it reaches the caller: clinical claims and persona breaks are blocked,
formatting is stripped.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from src.prompts.prompt_templates import (
    EMERGENCY_REPLY,
    HUMAN_TRANSFER_REPLY,
    MEDICAL_ADVICE_REPLY,
    OFF_LIMITS_REPLY,
    PROFANITY_REPLY,
)
from src.schemas.intent_schema import Intent

logger = logging.getLogger(__name__)


@dataclass
class GuardrailResult:
    """Outcome of a single guardrail check."""
    passed: bool
    violation_type: Optional[str] = None
    message: Optional[str] = None
    severity: str = "warning"  # "warning" | "block" | "escalate"


def _compile(patterns: list[str]) -> list[re.Pattern[str]]:
    return [re.compile(p) for p in patterns]


def _first_match(patterns: list[re.Pattern[str]], text: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match.group(0)
    return None


# --- Pre-LLM safety gate ---


class SafetyCategory(str, Enum):
    EMERGENCY = "emergency"
    EXPLICIT_HUMAN = "explicit_human"
    PROFANITY = "profanity"
    MEDICAL_ADVICE = "medical_advice"
    OFF_LIMITS = "off_limits"


@dataclass
class SafetyResult:
    """Whether the turn is overridden, and with what."""
    overridden: bool
    forced_intent: Optional[Intent] = None
    forced_reply: Optional[str] = None
    category: Optional[SafetyCategory] = None
    transfer: bool = False
    matched: Optional[str] = None


@dataclass(frozen=True)
class _SafetyRule:
    category: SafetyCategory
    patterns: list[re.Pattern[str]]
    forced_intent: Intent
    reply: str
    transfer: bool


EMERGENCY_PATTERNS = _compile([
    r"\bemergency\b", r"\bambulance\b", r"\b000\b", r"\b911\b",
    r"\bheart attack\b", r"\bchest pains?\b", r"\bcan'?t breathe\b",
    r"\bcannot breathe\b", r"\bdifficulty breathing\b", r"\bchoking\b",
    r"\bunconscious\b", r"\bnot breathing\b", r"\bstroke\b", r"\bseizure\b",
    r"\bsevere bleeding\b", r"\bbleeding badly\b", r"\bdying\b", r"\boverdose\b",
    r"\bsuicid(?:e|al)\b", r"\bkill myself\b", r"\bwant to die\b",
])

EXPLICIT_HUMAN_PATTERNS = _compile([
    r"\b(?:speak|talk|chat) (?:to|with) (?:a |an |the |someone at )?(?:real |actual |live )?"
    r"(?:person|human|someone|somebody|receptionist|reception|staff|manager|operator)\b",
    r"\b(?:real|actual|live) person\b",
    r"\bhuman being\b",
    r"\boperator\b",
    r"\btransfer me\b",
    r"\bput me through\b",
    r"\bconnect me (?:to|with) (?:a |the )?(?:person|human|reception|receptionist|someone)\b",
])

PROFANITY_PATTERNS = _compile([
    r"\bf+u+c+k\w*\b", r"\bshit\w*\b", r"\bbullshit\b", r"\bdamn\b", r"\bdammit\b",
    r"\bbugger\b", r"\bbastard\b", r"\bcrap\b", r"\bpiss(?:ed)? off\b", r"\bwhat the hell\b",
])

MEDICAL_ADVICE_PATTERNS = _compile([
    r"\bshould i take\b", r"\bwhat medication\b", r"\bwhich medication\b",
    r"\bdiagnos(?:e|is)\b", r"\bdosage\b", r"\bside effects?\b",
    r"\bis it serious\b", r"\bwhat'?s wrong with me\b", r"\bwhat is wrong with me\b",
    r"\bhow (?:do|should) i treat\b", r"\bis it broken\b", r"\bshould i (?:ice|heat|stretch) it\b",
])

OFF_LIMITS_PATTERNS = _compile([
    r"\bpolitic(?:s|al)\b", r"\breligio(?:n|us)\b", r"\blawsuit\b", r"\blawyer\b",
    r"\blegal action\b", r"\bmalpractice\b", r"\bsue (?:you|the clinic)\b",
])


class SafetyGate:
    """Runs before any classification; first matching rule wins."""

    RULES: list[_SafetyRule] = [
        _SafetyRule(SafetyCategory.EMERGENCY, EMERGENCY_PATTERNS,
                    Intent.EMERGENCY, EMERGENCY_REPLY, transfer=True),
        _SafetyRule(SafetyCategory.EXPLICIT_HUMAN, EXPLICIT_HUMAN_PATTERNS,
                    Intent.ASK_HUMAN, HUMAN_TRANSFER_REPLY, transfer=True),
        _SafetyRule(SafetyCategory.PROFANITY, PROFANITY_PATTERNS,
                    Intent.ASK_HUMAN, PROFANITY_REPLY, transfer=True),
        _SafetyRule(SafetyCategory.MEDICAL_ADVICE, MEDICAL_ADVICE_PATTERNS,
                    Intent.ASK_HUMAN, MEDICAL_ADVICE_REPLY, transfer=False),
        _SafetyRule(SafetyCategory.OFF_LIMITS, OFF_LIMITS_PATTERNS,
                    Intent.IRRELEVANT, OFF_LIMITS_REPLY, transfer=False),
    ]

    def inspect(self, utterance: str) -> SafetyResult:
        """Check a raw utterance. Never raises; no match means ``overridden=False``."""
        if not utterance or not utterance.strip():
            return SafetyResult(overridden=False)
        lower = utterance.lower().replace("’", "'")
        for rule in self.RULES:
            matched = _first_match(rule.patterns, lower)
            if matched:
                logger.info("Safety gate triggered: %s ('%s')", rule.category.value, matched)
                return SafetyResult(
                    overridden=True,
                    forced_intent=rule.forced_intent,
                    forced_reply=rule.reply,
                    category=rule.category,
                    transfer=rule.transfer,
                    matched=matched,
                )
        return SafetyResult(overridden=False)


# --- Post-LLM reply guards ---


class ClinicalClaimGuardrail:
    """Blocks model replies that diagnose, prescribe or promise outcomes."""

    FORBIDDEN_PATTERNS = _compile([
        r"\bsounds like (?:you have|it'?s) (?:a |an )?\w+",
        r"\byou (?:probably |likely )?have (?:a |an )?(?:tear|fracture|sprain|strain|infection)\b",
        r"\byou should take\b", r"\bi (?:recommend|suggest) taking\b",
        r"\b(?:ibuprofen|paracetamol|panadol|nurofen)\b",
        r"\bguarantee\w*\b", r"\bbulk.?bill\w*\b", r"\bmedicare covers\b",
    ])

    def check_response(self, response_text: str) -> GuardrailResult:
        matched = _first_match(self.FORBIDDEN_PATTERNS, response_text.lower())
        if matched:
            logger.warning("Clinical claim blocked: '%s'", matched)
            return GuardrailResult(
                passed=False,
                violation_type="clinical_claim",
                message=f"Response contains an unverified clinical claim: '{matched}'.",
                severity="block",
            )
        return GuardrailResult(passed=True)


class PersonaGuardrail:
    """Enforces consistent voice persona and prevents formatting leaks."""

    FORBIDDEN_PATTERNS = [
        "as an ai", "as a language model", "i'm just a computer",
        "i don't have feelings", "i'm an ai", "openai", "chatgpt",
    ]

    FORMATTING_VIOLATIONS = ["- ", "* ", "1. ", "## ", "**", "```", "#"]

    def check_persona(self, response_text: str) -> GuardrailResult:
        lower = response_text.lower()
        for pattern in self.FORBIDDEN_PATTERNS:
            if pattern in lower:
                return GuardrailResult(
                    passed=False,
                    violation_type="persona_break",
                    message=f"Response breaks persona with: '{pattern}'.",
                    severity="block",
                )
        return GuardrailResult(passed=True)

    def check_formatting(self, response_text: str) -> GuardrailResult:
        for fmt in self.FORMATTING_VIOLATIONS:
            if fmt in response_text:
                return GuardrailResult(
                    passed=False,
                    violation_type="formatting_violation",
                    message=f"Voice response should not contain '{fmt}' formatting.",
                    severity="warning",
                )
        return GuardrailResult(passed=True)


def strip_formatting(text: str) -> str:
    """Remove markdown markers and list bullets, keeping the words."""
    text = re.sub(r"```.*?```", " ", text, flags=re.S)
    text = re.sub(r"^\s*(?:[-*]|\d+\.)\s+", "", text, flags=re.M)
    text = re.sub(r"[*#`_]+", "", text)
    return re.sub(r"\s+", " ", text).strip()


@dataclass
class ReplyReview:
    """Reviewed reply text; ``text`` is None when the reply must be discarded."""
    text: Optional[str]
    violations: list[GuardrailResult] = field(default_factory=list)


class ReplyGuardPipeline:
    """Post-LLM review of model-phrased replies."""

    def __init__(self) -> None:
        self.clinical = ClinicalClaimGuardrail()
        self.persona = PersonaGuardrail()

    def check_agent_response(self, text: str) -> list[GuardrailResult]:
        """Post-LLM: check a reply for clinical claims, persona, formatting."""
        results = [
            self.clinical.check_response(text),
            self.persona.check_persona(text),
            self.persona.check_formatting(text),
        ]
        return [r for r in results if not r.passed]

    def review(self, text: str) -> ReplyReview:
        violations = self.check_agent_response(text)
        if any(v.severity == "block" for v in violations):
            return ReplyReview(text=None, violations=violations)
        if violations:
            text = strip_formatting(text)
        return ReplyReview(text=text, violations=violations)
