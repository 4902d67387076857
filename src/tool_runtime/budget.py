# budget.py
# Context budget manager: keeps the transcript within the model's usable
# input size by collapsing old turns into a single summary message.
#
# Runs strictly between loop iterations, never concurrently with an
# in-flight model or capability call.

import logging
from typing import Protocol

from tool_runtime.errors import CondensationFailure, InvalidTranscriptState
from tool_runtime.models import BudgetTrigger, Message, ModelRequest, Role, TriggerMode
from tool_runtime.transcript import Transcript

logger = logging.getLogger(__name__)

SUMMARY_HEADER = "Conversation summary of earlier messages:\n"

CONDENSE_PROMPT = """\
You condense conversation history for an assistant that has limited context.

Summarize the conversation excerpt you are given. Keep every fact, decision, \
open question, and tool result the assistant may need later, including \
source ids like [doc-1]. Drop pleasantries and repetition. Write plain prose \
or short bullet points, no preamble.\
"""


class Condenser(Protocol):
    def condense(self, messages: list[Message]) -> str: ...


def _format_for_condensation(messages: list[Message], max_chars: int = 12000) -> str:
    lines: list[str] = []
    for message in messages:
        if message.role is Role.CAPABILITY_RESULT:
            tag = f"result[{message.capability_call_ref}]"
        else:
            tag = message.role.value
        lines.append(f"{tag}: {message.content}".rstrip())
        for call in message.capability_calls:
            lines.append(f"  call[{call.call_id}] {call.capability_name}({call.arguments})")
    text = "\n".join(lines)
    if len(text) > max_chars:
        # Keep the most recent part; older lines are the least useful.
        text = "[... earlier excerpt truncated ...]\n" + text[-max_chars:]
    return text


class ModelCondenser:
    """Condenser backed by the model invocation service."""

    def __init__(self, service, model: str | None = None, instructions: str = CONDENSE_PROMPT) -> None:
        self._service = service
        self._model = model
        self._instructions = instructions

    def condense(self, messages: list[Message]) -> str:
        request = ModelRequest(
            messages=[
                Message.system(self._instructions),
                Message.user(_format_for_condensation(messages)),
            ],
            model=self._model,
        )
        response = self._service.complete(request)
        summary = response.content.strip()
        if not summary:
            raise CondensationFailure("Condensation returned an empty summary.")
        return summary


class ContextBudgetManager:
    """
    Triggered condensation of a transcript prefix.

    The prefix is everything after a leading system message and before the
    last `keep_count` messages. It is replaced by one assistant-authored
    summary message; the system message and the kept suffix are untouched.
    """

    def __init__(self, trigger: BudgetTrigger | None, keep_count: int, condenser: Condenser | None) -> None:
        if keep_count < 0:
            raise ValueError("keep_count must be >= 0")
        self.trigger = trigger
        self.keep_count = keep_count
        self.condenser = condenser
        self.condensations = 0

    def should_condense(self, transcript: Transcript) -> bool:
        if self.trigger is None:
            return False
        checks = []
        if self.trigger.tokens is not None:
            checks.append(transcript.estimate_size() >= self.trigger.tokens)
        if self.trigger.messages is not None:
            checks.append(len(transcript) >= self.trigger.messages)
        if self.trigger.mode is TriggerMode.AND:
            return all(checks)
        return any(checks)

    def select_prefix(self, transcript: Transcript) -> tuple[int, int]:
        """Return the [start, end) range eligible for condensation (may be empty)."""
        messages = transcript.render()
        start = 1 if messages and messages[0].role is Role.SYSTEM else 0
        end = max(start, len(messages) - self.keep_count)
        # A kept capability-result must stay next to the call that produced it.
        while end > start and end < len(messages) and messages[end].role is Role.CAPABILITY_RESULT:
            end -= 1
        return start, end

    def maybe_condense(self, transcript: Transcript) -> bool:
        """Condense if the trigger holds. Returns True when the transcript changed."""
        if self.condenser is None or not self.should_condense(transcript):
            return False

        start, end = self.select_prefix(transcript)
        if end - start < 2:
            logger.debug("condensation skipped: prefix [%d, %d) too short to shrink", start, end)
            return False
        if transcript.has_pending_before(end):
            logger.info("condensation deferred: unanswered capability call in range")
            return False

        prefix = transcript.render()[start:end]
        try:
            summary_text = self.condenser.condense(prefix)
        except Exception:
            logger.warning("condensation failed; retrying next iteration", exc_info=True)
            return False

        summary = Message(role=Role.ASSISTANT, content=SUMMARY_HEADER + summary_text, is_summary=True)
        try:
            transcript.replace_range(start, end, summary)
        except InvalidTranscriptState:
            logger.warning("condensation range rejected by transcript; skipping", exc_info=True)
            return False

        self.condensations += 1
        logger.info(
            "condensed %d message(s) into one summary; %d message(s) remain",
            end - start,
            len(transcript),
        )
        return True
