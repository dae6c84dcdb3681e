"""Tests for empty-speech handling."""

import pytest

from src.conversation.stage_guard import EmptyTurnAction, StageGuard
from src.conversation.state_machine import CallStage
from tests.conftest import make_session


@pytest.fixture
def guard():
    return StageGuard(grace_ms=1000, max_empty_prompts=2)


class TestEmptyTurns:
    def test_first_empty_turn_is_silent(self, guard):
        session = make_session()
        assert guard.on_empty(session, 100.0) == EmptyTurnAction.SILENT
        assert session.empty_count == 1

    def test_within_grace_window_is_silent(self, guard):
        session = make_session()
        guard.on_empty(session, 100.0)
        assert guard.on_empty(session, 100.4) == EmptyTurnAction.SILENT
        assert session.empty_prompts == 0

    def test_after_grace_window_prompts(self, guard):
        session = make_session()
        guard.on_empty(session, 100.0)
        assert guard.on_empty(session, 103.0) == EmptyTurnAction.PROMPT
        assert session.empty_prompts == 1

    def test_hangup_after_max_prompts(self, guard):
        session = make_session()
        guard.on_empty(session, 100.0)
        assert guard.on_empty(session, 105.0) == EmptyTurnAction.PROMPT
        assert guard.on_empty(session, 110.0) == EmptyTurnAction.PROMPT
        assert guard.on_empty(session, 115.0) == EmptyTurnAction.HANGUP

    @pytest.mark.parametrize("stage", [
        CallStage.BOOKING_IN_PROGRESS, CallStage.SENDING_NOTIFICATION, CallStage.TERMINAL,
    ])
    def test_non_interactive_stages_never_prompt(self, guard, stage):
        session = make_session(stage=stage)
        for now in (100.0, 105.0, 110.0, 115.0):
            assert guard.on_empty(session, now) == EmptyTurnAction.SILENT
        assert session.empty_prompts == 0

    def test_speech_resets_tracking(self, guard):
        session = make_session()
        guard.on_empty(session, 100.0)
        guard.on_empty(session, 105.0)
        StageGuard.on_speech(session)

        assert session.empty_count == 0
        assert session.empty_prompts == 0
        assert session.last_empty_at is None
        assert guard.on_empty(session, 106.0) == EmptyTurnAction.SILENT
