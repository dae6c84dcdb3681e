"""
Centralized configuration with environment variable overrides.

Clinic details, conversation thresholds, model settings and external call
timeouts all live here. Nothing is hardcoded in orchestration or tool logic.
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from src.logging_context import CallIdFilter

load_dotenv()

logger = logging.getLogger(__name__)


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


@dataclass(frozen=True)
class ClinicConfig:
    """Clinic-specific settings loaded from environment or defaults."""

    name: str = os.getenv("CLINIC_NAME", "Riverside Physiotherapy")
    assistant_name: str = os.getenv("ASSISTANT_NAME", "Sarah")
    address: str = os.getenv(
        "CLINIC_ADDRESS", "Level 1, 120 Grey Street, South Brisbane"
    )
    parking: str = os.getenv(
        "CLINIC_PARKING", "There's two-hour street parking on Grey Street"
    )
    hours_weekday: str = os.getenv("CLINIC_HOURS_WEEKDAY", "Monday to Friday 7am to 7pm")
    hours_weekend: str = os.getenv("CLINIC_HOURS_WEEKEND", "Saturday 8am to 1pm, closed Sunday")
    phone: str = os.getenv("CLINIC_PHONE", "07 3000 1234")
    standard_price: str = os.getenv("STANDARD_CONSULT_PRICE", "$95")
    new_patient_price: str = os.getenv("NEW_PATIENT_CONSULT_PRICE", "$120")
    insurance_info: str = os.getenv(
        "INSURANCE_INFO",
        "We have HICAPS on site, so you can claim from most private health funds on the spot",
    )
    timezone: str = os.getenv("CLINIC_TIMEZONE", "Australia/Brisbane")
    emergency_number: str = os.getenv("EMERGENCY_NUMBER", "000")


@dataclass(frozen=True)
class ModelConfig:
    """LLM provider settings."""

    llm_model: str = os.getenv("LLM_MODEL", "gpt-4o-mini")
    llm_temperature: float = _safe_float("LLM_TEMPERATURE", "0.3")
    classifier_temperature: float = _safe_float("CLASSIFIER_TEMPERATURE", "0.2")
    classifier_max_tokens: int = _safe_int("CLASSIFIER_MAX_TOKENS", "300")
    reply_max_tokens: int = _safe_int("REPLY_MAX_TOKENS", "150")
    api_key: str = os.getenv("OPENAI_API_KEY", "")


@dataclass(frozen=True)
class ConversationConfig:
    """Thresholds for classification, clarification, locking and silence."""

    classifier_confidence_threshold: float = _safe_float("CLASSIFIER_CONFIDENCE_THRESHOLD", "0.6")
    low_confidence_threshold: float = _safe_float("LOW_CONFIDENCE_THRESHOLD", "0.5")
    max_question_asks: int = _safe_int("MAX_QUESTION_ASKS", "2")
    no_match_threshold: int = _safe_int("NO_MATCH_THRESHOLD", "2")
    history_window: int = _safe_int("CONVERSATION_HISTORY_WINDOW", "20")
    empty_speech_grace_ms: int = _safe_int("EMPTY_SPEECH_GRACE_MS", "1000")
    max_empty_prompts: int = _safe_int("MAX_EMPTY_PROMPTS", "2")
    booking_lock_ttl_sec: float = _safe_float("BOOKING_LOCK_TTL_SEC", "10")
    group_booking_lock_ttl_sec: float = _safe_float("GROUP_BOOKING_LOCK_TTL_SEC", "20")
    max_slots_offered: int = _safe_int("MAX_SLOTS_OFFERED", "3")


@dataclass(frozen=True)
class TimeoutConfig:
    """Upper bounds, in seconds, for every external suspension point."""

    llm_sec: float = _safe_float("LLM_TIMEOUT_SEC", "4.0")
    scheduling_sec: float = _safe_float("SCHEDULING_TIMEOUT_SEC", "6.0")
    notification_sec: float = _safe_float("NOTIFICATION_TIMEOUT_SEC", "5.0")
    storage_sec: float = _safe_float("STORAGE_TIMEOUT_SEC", "2.0")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    clinic: ClinicConfig = field(default_factory=ClinicConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    service_name: str = os.getenv("SERVICE_NAME", "clinic-receptionist")
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = _safe_int("API_PORT", "8080")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    for temp_name, temp_value in [
        ("LLM_TEMPERATURE", config.model.llm_temperature),
        ("CLASSIFIER_TEMPERATURE", config.model.classifier_temperature),
    ]:
        if not 0.0 <= temp_value <= 2.0:
            raise ValueError(f"{temp_name} must be between 0.0 and 2.0, got {temp_value}")

    for tokens_name, tokens_value in [
        ("CLASSIFIER_MAX_TOKENS", config.model.classifier_max_tokens),
        ("REPLY_MAX_TOKENS", config.model.reply_max_tokens),
    ]:
        if tokens_value < 1:
            raise ValueError(f"{tokens_name} must be >= 1, got {tokens_value}")

    conv = config.conversation
    for rate_name, rate_value in [
        ("CLASSIFIER_CONFIDENCE_THRESHOLD", conv.classifier_confidence_threshold),
        ("LOW_CONFIDENCE_THRESHOLD", conv.low_confidence_threshold),
    ]:
        if not 0.0 <= rate_value <= 1.0:
            raise ValueError(f"{rate_name} must be between 0.0 and 1.0, got {rate_value}")

    # A question may be asked at most twice per call.
    if not 1 <= conv.max_question_asks <= 2:
        raise ValueError(
            f"MAX_QUESTION_ASKS must be 1 or 2, got {conv.max_question_asks}"
        )
    if conv.no_match_threshold < 1:
        raise ValueError(
            f"NO_MATCH_THRESHOLD must be >= 1, got {conv.no_match_threshold}"
        )
    if conv.history_window < 2:
        raise ValueError(
            f"CONVERSATION_HISTORY_WINDOW must be >= 2, got {conv.history_window}"
        )
    if conv.empty_speech_grace_ms < 0:
        raise ValueError(
            f"EMPTY_SPEECH_GRACE_MS must be >= 0, got {conv.empty_speech_grace_ms}"
        )
    if conv.max_empty_prompts < 1:
        raise ValueError(
            f"MAX_EMPTY_PROMPTS must be >= 1, got {conv.max_empty_prompts}"
        )
    if conv.booking_lock_ttl_sec <= 0 or conv.group_booking_lock_ttl_sec <= 0:
        raise ValueError("Booking lock TTLs must be > 0")
    if conv.max_slots_offered < 1:
        raise ValueError(
            f"MAX_SLOTS_OFFERED must be >= 1, got {conv.max_slots_offered}"
        )

    for timeout_name, timeout_value in [
        ("LLM_TIMEOUT_SEC", config.timeouts.llm_sec),
        ("SCHEDULING_TIMEOUT_SEC", config.timeouts.scheduling_sec),
        ("NOTIFICATION_TIMEOUT_SEC", config.timeouts.notification_sec),
        ("STORAGE_TIMEOUT_SEC", config.timeouts.storage_sec),
    ]:
        if timeout_value <= 0:
            raise ValueError(f"{timeout_name} must be > 0, got {timeout_value}")


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] [%(call_id)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # Every record needs a call_id before the root formatter sees it.
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, CallIdFilter) for f in handler.filters):
            handler.addFilter(CallIdFilter())
    logger.info("Configuration loaded for '%s'", config.clinic.name)
    return config


# Singleton instance
settings = load_config()
