"""Clinic FAQ catalog: services, pricing and practical answers read from configuration."""

import logging
from typing import Optional

from src.config import settings
from src.schemas.intent_schema import Intent

logger = logging.getLogger(__name__)

_clinic = settings.clinic

SERVICE_CATALOG: dict[str, dict] = {
    "physiotherapy": {
        "name": "Physiotherapy",
        "description": "assessment and treatment for back, neck, joint and muscle pain",
        "duration": "30 minutes",
    },
    "sports injury": {
        "name": "Sports injury rehab",
        "description": "return-to-sport programs for sprains, strains and post-surgery recovery",
        "duration": "30 minutes",
    },
    "dry needling": {
        "name": "Dry needling",
        "description": "done within a physio consult for muscle tightness and trigger points",
        "duration": "30 minutes",
    },
    "clinical pilates": {
        "name": "Clinical pilates",
        "description": "supervised small-group rehab classes",
        "duration": "45 minutes",
    },
    "remedial massage": {
        "name": "Remedial massage",
        "description": "hands-on soft tissue treatment",
        "duration": "45 or 60 minutes",
    },
}


def _services_answer() -> str:
    names = [info["name"].lower() for info in SERVICE_CATALOG.values()]
    listed = ", ".join(names[:-1]) + f" and {names[-1]}"
    return f"We offer {listed}. Would you like to book in?"


FAQ_ANSWERS: dict[Intent, str] = {
    Intent.FAQ_PRICES: (
        f"A standard consultation is {_clinic.standard_price}, and an initial consultation "
        f"for new patients is {_clinic.new_patient_price}."
    ),
    Intent.FAQ_HOURS: f"We're open {_clinic.hours_weekday}, and {_clinic.hours_weekend}.",
    Intent.FAQ_LOCATION: f"We're at {_clinic.address}. {_clinic.parking}.",
    Intent.FAQ_FIRST_VISIT: (
        "For your first visit, please arrive five minutes early and wear comfortable "
        "clothing. We'll text you a short intake form to fill in beforehand, and the "
        "initial consult runs about 45 minutes."
    ),
    Intent.FAQ_INSURANCE: f"{_clinic.insurance_info}.",
    Intent.FAQ_SERVICES: _services_answer(),
}


def answer_faq(intent: Intent) -> Optional[str]:
    """Return the canned answer for an FAQ intent, or None if there isn't one."""
    answer = FAQ_ANSWERS.get(intent)
    if answer is None:
        logger.debug("No FAQ answer for %s", intent.value)
    return answer
