"""
HTTP surface for the telephony adapter.

The adapter owns audio, speech recognition and synthesis; it posts one
request per caller utterance and plays back ``speech_text``, then applies
``action`` (transfer, hang up or keep listening).

Endpoints:
    POST /voice/calls                  start a call, returns the greeting
    POST /voice/turn                   one utterance in, one directive out
    POST /voice/calls/{call_id}/end    caller hung up
    POST /forms/{call_id}/{token}      intake form submitted from the SMS link
    GET  /health                       liveness

Usage:
    python main.py
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from src.config import settings
from src.conversation.orchestrator import TurnOrchestrator
from src.conversation.session_store import (
    FormAlreadySubmitted,
    SessionNotFound,
    UnknownFormToken,
)
from src.schemas.turn_schema import (
    MAX_CALL_ID_LENGTH,
    MAX_PHONE_NUMBER_LENGTH,
    TurnInput,
    TurnOutput,
)

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_FORM_FIELDS = 50


# --- Request / response models ---


class StartCallRequest(BaseModel):
    """Call-start webhook payload."""
    call_id: str = Field(..., min_length=1, max_length=MAX_CALL_ID_LENGTH)
    caller_id: Optional[str] = Field(default=None, max_length=MAX_PHONE_NUMBER_LENGTH)
    tenant_id: Optional[str] = Field(default=None, max_length=64)


class EndCallRequest(BaseModel):
    reason: str = Field(default="caller_hangup", max_length=64)


class EndCallResponse(BaseModel):
    call_id: str
    ended: bool


class FormSubmissionRequest(BaseModel):
    """Intake form fields as submitted by the web form."""
    data: dict[str, str] = Field(default_factory=dict)

    @field_validator("data")
    @classmethod
    def validate_field_count(cls, v: dict[str, str]) -> dict[str, str]:
        if len(v) > MAX_FORM_FIELDS:
            raise ValueError(f"form cannot have more than {MAX_FORM_FIELDS} fields")
        return v


class FormSubmissionResponse(BaseModel):
    token: str
    submitted_at: float


class HealthResponse(BaseModel):
    status: str
    clinic: str


# --- Dependencies ---


def get_orchestrator(request: Request) -> TurnOrchestrator:
    return request.app.state.orchestrator


# --- Routes ---


@router.post("/voice/calls")
async def start_call(
    payload: StartCallRequest,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
) -> TurnOutput:
    return await orchestrator.start_call(payload.call_id, payload.caller_id, payload.tenant_id)


@router.post("/voice/turn")
async def handle_turn(
    turn: TurnInput,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
) -> TurnOutput:
    """Process one utterance. Always 200: failures come back as a transfer directive."""
    return await orchestrator.handle_turn(turn)


@router.post("/voice/calls/{call_id}/end")
async def end_call(
    call_id: str,
    payload: Optional[EndCallRequest] = None,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
) -> EndCallResponse:
    reason = payload.reason if payload else "caller_hangup"
    session = await orchestrator.end_call(call_id, reason)
    return EndCallResponse(call_id=call_id, ended=session is not None)


@router.post("/forms/{call_id}/{token}")
async def submit_form(
    call_id: str,
    token: str,
    payload: FormSubmissionRequest,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
) -> FormSubmissionResponse:
    try:
        submission = await orchestrator.record_form_submission(call_id, token, payload.data)
    except (SessionNotFound, UnknownFormToken):
        raise HTTPException(status_code=404, detail="Unknown form")
    except FormAlreadySubmitted:
        raise HTTPException(status_code=409, detail="Form already submitted")
    return FormSubmissionResponse(token=submission.token, submitted_at=submission.submitted_at)


@router.get("/health")
async def health_check() -> HealthResponse:
    return HealthResponse(status="ok", clinic=settings.clinic.name)


# --- Application ---


def create_app(orchestrator: Optional[TurnOrchestrator] = None) -> FastAPI:
    """Create the application around ``orchestrator`` (mock collaborators by default)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Receptionist API starting for %s", settings.clinic.name)
        yield
        await app.state.orchestrator.tasks.drain()
        logger.info("Receptionist API stopped")

    app = FastAPI(
        title=f"{settings.clinic.name} Voice Receptionist",
        description="Turn orchestrator for the clinic's phone receptionist",
        version="0.2.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator or TurnOrchestrator()
    app.include_router(router, tags=["Voice"])
    return app
