"""Tests for the interactive runner's turn error handling."""

from unittest.mock import MagicMock

import pytest

from intake.agents.models import ConversationPhase, TurnResult
from intake.core.errors import InvalidTransitionError, OracleUnavailable
from scripts.run_intake import _attempt


def _raising(exc):
    def fn(*args):
        raise exc
    return fn


@pytest.mark.parametrize(
    "exc",
    [
        FileNotFoundError("evidence/offer.pdf"),
        ValueError("No files provided"),
        RuntimeError("No document store configured for this session"),
        InvalidTransitionError("Conversation not started"),
    ],
)
def test_rejected_turn_reported_inline(exc, capsys):
    _attempt(_raising(exc), ["evidence/offer.pdf"])
    out = capsys.readouterr().out
    assert out.startswith("[error]")
    assert str(exc) in out


def test_oracle_outage_asks_to_resend(capsys):
    _attempt(_raising(OracleUnavailable("model offline")), "hello")
    assert "please send that again" in capsys.readouterr().out


def test_successful_turn_printed(capsys):
    fn = MagicMock(return_value=TurnResult(message="Welcome back!", phase=ConversationPhase.COLLECTING))
    _attempt(fn, "hi")
    fn.assert_called_once_with("hi")
    assert "ava> Welcome back!" in capsys.readouterr().out
