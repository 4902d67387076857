import logging
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from tool_runtime.budget import SUMMARY_HEADER, ContextBudgetManager, ModelCondenser
from tool_runtime.errors import CondensationFailure, ModelServiceFailure
from tool_runtime.models import BudgetTrigger, CapabilityCall, Message, ModelResponse, Role, TriggerMode
from tool_runtime.transcript import Transcript

from conftest import ScriptedModelService


def _turn(n):
    call = CapabilityCall(call_id=f"c{n}", capability_name="add", arguments={"a": n, "b": n})
    return [Message.user(f"q{n}"), Message.assistant("", [call]), Message.result(f"c{n}", str(2 * n))]


def _condenser(text="condensed"):
    condenser = MagicMock()
    condenser.condense.return_value = text
    return condenser


# ---------------------------------------------------------------------------
# Trigger semantics
# ---------------------------------------------------------------------------


def test_trigger_requires_a_threshold():
    with pytest.raises(ValidationError):
        BudgetTrigger()


def test_or_trigger_fires_on_any_threshold():
    transcript = Transcript([Message.user("x") for _ in range(4)])
    manager = ContextBudgetManager(BudgetTrigger(messages=4, tokens=10_000), keep_count=1, condenser=_condenser())
    assert manager.should_condense(transcript) is True


def test_and_trigger_needs_every_threshold():
    transcript = Transcript([Message.user("x") for _ in range(4)])
    manager = ContextBudgetManager(
        BudgetTrigger(messages=4, tokens=10_000, mode=TriggerMode.AND), keep_count=1, condenser=_condenser()
    )
    assert manager.should_condense(transcript) is False

    transcript.append(Message.user("y" * 40_000))
    assert manager.should_condense(transcript) is True


def test_no_trigger_never_condenses():
    transcript = Transcript([Message.user("x") for _ in range(50)])
    condenser = _condenser()
    manager = ContextBudgetManager(None, keep_count=1, condenser=condenser)

    assert manager.maybe_condense(transcript) is False
    condenser.condense.assert_not_called()


# ---------------------------------------------------------------------------
# Condensation
# ---------------------------------------------------------------------------


def test_condensation_preserves_system_and_tail():
    messages = [Message.system("sys"), *_turn(1), *_turn(2), *_turn(3)]
    transcript = Transcript(messages)
    condenser = _condenser("earlier: 1+1=2, 2+2=4")
    manager = ContextBudgetManager(BudgetTrigger(messages=5), keep_count=3, condenser=condenser)

    before = transcript.render()
    assert manager.maybe_condense(transcript) is True
    after = transcript.render()

    assert len(after) < len(before)
    assert after[0] == before[0]
    assert after[-3:] == before[-3:]
    assert after[1].role is Role.ASSISTANT
    assert after[1].is_summary
    assert after[1].content == SUMMARY_HEADER + "earlier: 1+1=2, 2+2=4"
    condenser.condense.assert_called_once_with(before[1:7])


def test_cut_moves_back_to_keep_results_with_their_call():
    # keep_count=1 would keep only the result of c2; its assistant call must stay too.
    transcript = Transcript([*_turn(1), *_turn(2)])
    manager = ContextBudgetManager(BudgetTrigger(messages=2), keep_count=1, condenser=_condenser())

    assert manager.select_prefix(transcript) == (0, 4)
    assert manager.maybe_condense(transcript) is True
    rendered = transcript.render()
    assert [m.role for m in rendered] == [Role.ASSISTANT, Role.ASSISTANT, Role.CAPABILITY_RESULT]
    assert rendered[0].is_summary


def test_empty_prefix_is_noop():
    transcript = Transcript([Message.system("sys"), Message.user("q")])
    condenser = _condenser()
    manager = ContextBudgetManager(BudgetTrigger(messages=1), keep_count=10, condenser=condenser)

    assert manager.maybe_condense(transcript) is False
    condenser.condense.assert_not_called()
    assert len(transcript) == 2


def test_single_message_prefix_is_noop():
    transcript = Transcript([Message.system("sys"), Message.user("q1"), Message.user("q2")])
    condenser = _condenser()
    manager = ContextBudgetManager(BudgetTrigger(messages=1), keep_count=1, condenser=condenser)

    assert manager.maybe_condense(transcript) is False
    condenser.condense.assert_not_called()


def test_pending_call_defers_condensation():
    call = CapabilityCall(call_id="open", capability_name="add", arguments={"a": 1, "b": 1})
    transcript = Transcript([Message.user("q1"), Message.user("q2"), Message.assistant("", [call])])
    condenser = _condenser()
    manager = ContextBudgetManager(BudgetTrigger(messages=2), keep_count=0, condenser=condenser)

    assert manager.maybe_condense(transcript) is False
    condenser.condense.assert_not_called()

    transcript.append(Message.result("open", "2"))
    assert manager.maybe_condense(transcript) is True
    assert len(transcript) == 1


def test_condenser_failure_is_logged_and_skipped(caplog):
    transcript = Transcript([*_turn(1), *_turn(2)])
    condenser = MagicMock()
    condenser.condense.side_effect = ModelServiceFailure("rate_limit", "slow down", retryable=True)
    manager = ContextBudgetManager(BudgetTrigger(messages=2), keep_count=1, condenser=condenser)
    before = transcript.render()

    with caplog.at_level(logging.WARNING, logger="tool_runtime.budget"):
        assert manager.maybe_condense(transcript) is False

    assert transcript.render() == before
    assert "condensation failed" in caplog.text

    condenser.condense.side_effect = None
    condenser.condense.return_value = "recovered"
    assert manager.maybe_condense(transcript) is True


# ---------------------------------------------------------------------------
# ModelCondenser
# ---------------------------------------------------------------------------


def test_model_condenser_sends_formatted_excerpt():
    service = ScriptedModelService([ModelResponse(content="  the summary  ")])
    condenser = ModelCondenser(service, model="summarizer")

    summary = condenser.condense(_turn(1))

    assert summary == "the summary"
    request = service.requests[0]
    assert request.model == "summarizer"
    assert request.capabilities == []
    assert request.messages[0].role is Role.SYSTEM
    assert "call[c1] add" in request.messages[1].content
    assert "result[c1]: 2" in request.messages[1].content


def test_model_condenser_rejects_empty_summary():
    condenser = ModelCondenser(ScriptedModelService([ModelResponse(content="   ")]))
    with pytest.raises(CondensationFailure):
        condenser.condense(_turn(1))
