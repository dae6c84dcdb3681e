"""Fixed replies and reply builders for every scripted turn of the call.

Safety overrides, failure apologies and booking confirmations are fixed
text: the LLM may phrase open-ended answers, but nothing here is generated.
"""

from typing import Optional

from src.config import settings
from src.schemas.booking_schema import Patient, Slot

_clinic = settings.clinic

ANYTHING_ELSE = "Is there anything else I can help with?"

# --- Safety overrides ---

EMERGENCY_REPLY = (
    "I'm hearing that this may be an emergency. If this is a medical emergency, "
    f"please hang up and call {_clinic.emergency_number} immediately. "
    "I'll put you through to our team now."
)
HUMAN_TRANSFER_REPLY = "Of course. I'll put you through to our reception team now."
PROFANITY_REPLY = (
    "I can hear this is frustrating. Let me put you through to someone in our team who can help."
)
MEDICAL_ADVICE_REPLY = (
    "I'm not able to give medical advice over the phone, but one of our physios can "
    "assess that properly. Would you like me to book you in?"
)
OFF_LIMITS_REPLY = (
    "That's not something I can help with, I'm afraid. I can help with appointments "
    "or questions about the clinic."
)

# --- Errors and handoff ---

SYSTEM_TROUBLE_REPLY = (
    "I'm having a bit of trouble with my system. Let me transfer you to our reception team."
)
BOOKING_FAILED_REPLY = (
    "I couldn't complete the booking just now. I'll have reception confirm your "
    f"appointment by text in a moment. {ANYTHING_ELSE}"
)
CLARIFY_REPLY = "Sorry, I didn't catch that. Could you say that again?"
STILL_THERE_REPLY = "Are you still there?"
SILENCE_GOODBYE_REPLY = (
    "I haven't heard anything, so I'll let you go. Please call back any time. Goodbye."
)
CHANGE_REQUEST_REPLY = (
    "I'll put you through to reception so they can look after your existing appointment."
)
NOT_YET_BOOKED_REPLY = "I haven't booked that in yet. Let's finish the details first."
LOCK_PENDING_REPLY = "One moment, I'm just finishing that booking."
HOW_CAN_I_HELP = "How can I help you today?"
GREETING_REPLY = f"Hi there. {HOW_CAN_I_HELP}"
WHAT_ELSE_REPLY = "Sure, what else can I help with?"
NEGATION_REPLY = f"No worries. {ANYTHING_ELSE}"

HANDOFF_REPLIES: dict[str, str] = {
    "explicit_request": HUMAN_TRANSFER_REPLY,
    "profanity": PROFANITY_REPLY,
    "backend_error": SYSTEM_TROUBLE_REPLY,
    "out_of_scope": "Let me put you through to our reception team, they'll be able to help with that.",
    "low_confidence": "I want to make sure you get the right help, so I'll put you through to reception.",
    "frustration_loop": "Sorry for the trouble. Let me put you through to someone at reception.",
    "repeated_hello": "It sounds like the line isn't great. Let me put you through to reception.",
}


def build_greeting(known_patient: Optional[Patient] = None) -> str:
    """Opening line, recognising a single known caller by first name."""
    greeting = (
        f"Hi, thanks for calling {_clinic.name}, this is {_clinic.assistant_name}. "
        "How can I help you today?"
    )
    if known_patient is None:
        return greeting
    return (
        f"Hi, thanks for calling {_clinic.name}, this is {_clinic.assistant_name}. "
        f"I think I might recognise this number, are you {known_patient.first_name}, "
        "or someone else?"
    )


# --- Identity ---

ASK_NAME = "Can I get your full name, please?"
ASK_NAME_AGAIN = "Sorry, could you tell me the full name for the booking? You can spell it if that's easier."
ASK_GROUP_NAMES = "No problem, I can book you both in. Can I get both full names, please?"


def build_ask_relation_name(relation: str) -> str:
    return f"No problem. What's your {relation}'s full name?"


def build_ask_other_name(known_name: str) -> str:
    return f"Thanks. I've got {known_name}. And what's the other person's full name?"


def build_identity_confirm(patient: Patient) -> str:
    return f"Am I speaking with {patient.first_name}?"


def build_patient_choice(candidates: list[Patient]) -> str:
    """Read out candidate records with digits, plus a "someone new" option."""
    options = [f"press {i} for {p.first_name}" for i, p in enumerate(candidates, start=1)]
    new_digit = len(candidates) + 1
    return (
        "I have a few people on file for this number. "
        f"Just say the name, or {', '.join(options)}, or {new_digit} for someone new."
    )


def build_identity_ack(first_name: str) -> str:
    return f"Thanks {first_name}."


# --- Time and slots ---

ASK_TIME = "When would you like to come in? A day and rough time is perfect."
ASK_TIME_AGAIN = "What day suits you best, and is morning or afternoon better?"


def build_slot_offer(slots: list[Slot]) -> str:
    """Offer up to three slots by their speakable text."""
    spoken = [slot.speakable for slot in slots]
    if len(spoken) == 1:
        return f"I have {spoken[0]}. Would that work?"
    listed = ", ".join(spoken[:-1]) + f", or {spoken[-1]}"
    return f"I have {listed}. Which one suits you best?"


def build_slot_reask(slots: list[Slot]) -> str:
    """Repeat the offer more slowly when the choice wasn't clear."""
    if len(slots) == 1:
        return f"Sorry, just to check, would {slots[0].speakable} work for you?"
    options = [f"{i} for {slot.speakable}" for i, slot in enumerate(slots, start=1)]
    return f"Sorry, which one would you like? Say the time, or press {', '.join(options)}."


def build_no_slots(preference: str) -> str:
    return f"I'm sorry, I don't have anything free for {preference}. Is there another day or time that would suit?"


def build_not_enough_slots(count: int) -> str:
    return (
        f"I couldn't find {count} free appointments close together then. "
        "Is there another day or time that would suit?"
    )


def build_booking_confirm(names: list[str], slots: list[Slot]) -> str:
    """Read back the booking before asking for the explicit yes."""
    if len(names) == 1:
        return f"Just to confirm, that's {names[0]} at {slots[0].speakable}. Shall I book that in?"
    pairs = [f"{name} at {slot.speakable}" for name, slot in zip(names, slots)]
    listed = ", and ".join(pairs)
    return f"Just to confirm, that's {listed}. Shall I book those in?"


ASK_WHAT_TO_CHANGE = "No problem. What day and time would suit better?"


# --- Outcomes ---


def build_booking_confirmed(name: str, slot: Slot, send_form: bool) -> str:
    text = f"You're all booked in. {name} at {slot.speakable}. I'll text you the details"
    if send_form:
        text += ", along with a short form to fill in before your visit"
    return f"{text}. {ANYTHING_ELSE}"


def build_group_confirmed(names: list[str]) -> str:
    listed = ", ".join(names[:-1]) + f" and {names[-1]}"
    everyone = "both" if len(names) == 2 else "all"
    return (
        f"Done, {listed} are {everyone} booked in. I'll text you the details for each appointment. "
        f"{ANYTHING_ELSE}"
    )


def build_already_booked(slot: Optional[Slot]) -> str:
    if slot is None:
        return f"You're all booked in. {ANYTHING_ELSE}"
    return f"You're already booked in for {slot.speakable}. {ANYTHING_ELSE}"


def build_farewell(booked: bool) -> str:
    if booked:
        return "Thanks for calling, we'll see you soon. Goodbye."
    return f"Thanks for calling {_clinic.name}. Have a great day. Goodbye."


# --- SMS bodies ---


def build_confirmation_sms(name: str, slot: Slot) -> str:
    return (
        f"Hi {name.split()[0]}, your appointment at {_clinic.name} is confirmed for "
        f"{slot.start.strftime('%A %d %B at %I:%M %p')} with {slot.practitioner_name}. "
        f"Call {_clinic.phone} to make changes."
    )


def build_intake_form_sms(name: str, token: str) -> str:
    return (
        f"Hi {name.split()[0]}, please complete your new patient form before your visit: "
        f"https://forms.example.com/intake/{token}"
    )


def build_pending_sms() -> str:
    return (
        f"Thanks for calling {_clinic.name}. Our reception team will text you shortly "
        "to confirm your appointment time."
    )
