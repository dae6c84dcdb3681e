"""Request/response contract between the telephony layer and the orchestrator."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

MAX_CALL_ID_LENGTH = 256
MAX_UTTERANCE_LENGTH = 2000
MAX_PHONE_NUMBER_LENGTH = 32


class ActionType(str, Enum):
    TRANSFER = "transfer"
    HANGUP = "hangup"
    WAIT = "wait"


class TurnAction(BaseModel):
    """Side effect the telephony layer should perform after speaking."""
    type: ActionType
    params: dict[str, str] = Field(default_factory=dict)


class TurnInput(BaseModel):
    """One inbound utterance for a call."""
    call_id: str = Field(..., min_length=1, max_length=MAX_CALL_ID_LENGTH)
    utterance_text: str = Field(default="", max_length=MAX_UTTERANCE_LENGTH)
    digits: Optional[str] = Field(default=None, max_length=16)
    caller_id: Optional[str] = Field(default=None, max_length=MAX_PHONE_NUMBER_LENGTH)
    tenant_id: Optional[str] = Field(default=None, max_length=64)


class TurnOutput(BaseModel):
    """Response directive; the telephony layer renders it into its own markup."""
    speech_text: str = ""
    action: Optional[TurnAction] = None
    next_stage_hint: Optional[str] = None
    collect_digits: bool = False
    hints: Optional[str] = None
    should_transfer: bool = False
    should_hangup: bool = False
