# transcript.py
# Ordered, append-only message log for one run.
#
# The only non-append mutation is replace_range(), owned by the context
# budget manager, which collapses a contiguous span into one summary.

import json
import math
from collections.abc import Iterable, Iterator
from typing import Any

from tool_runtime.errors import InvalidTranscriptState
from tool_runtime.models import CapabilityCall, Message, Role

CHARS_PER_TOKEN = 4


def estimate_tokens(message: Message) -> int:
    """Token-equivalent size of a message: ceil(chars / 4)."""
    chars = len(message.content)
    for call in message.capability_calls:
        chars += len(call.capability_name)
        chars += len(json.dumps(call.arguments, sort_keys=True, ensure_ascii=False))
    return math.ceil(chars / CHARS_PER_TOKEN)


class Transcript:
    """
    Conversation log with call/result pairing enforced on append.

    Every capability-result must answer an outstanding call emitted earlier
    by an assistant message; call ids are unique for the transcript's life.
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = []
        # call_id -> (call, index of the assistant message that emitted it)
        self._pending: dict[str, tuple[CapabilityCall, int]] = {}
        self._seen_call_ids: set[str] = set()
        for message in messages:
            self.append(message)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append(self, message: Message) -> None:
        if message.role is Role.CAPABILITY_RESULT:
            ref = message.capability_call_ref
            if ref not in self._pending:
                raise InvalidTranscriptState(
                    f"capability-result references '{ref}', which is not an outstanding call."
                )
            del self._pending[ref]
        elif message.capability_calls:
            ids = [call.call_id for call in message.capability_calls]
            repeated = [cid for cid in ids if cid in self._seen_call_ids or ids.count(cid) > 1]
            if repeated:
                raise InvalidTranscriptState(f"Duplicate call_id(s) in transcript: {sorted(set(repeated))}")
            index = len(self._messages)
            for call in message.capability_calls:
                self._pending[call.call_id] = (call, index)
                self._seen_call_ids.add(call.call_id)

        self._messages.append(message)

    def replace_range(self, start: int, end: int, summary: Message) -> None:
        """
        Atomically replace messages[start:end] with a single summary message.

        Refuses ranges that hold an unanswered call or that would split a
        call from its result on either side of the boundary.
        """
        if not 0 <= start < end <= len(self._messages):
            raise InvalidTranscriptState(f"Invalid condensation range [{start}, {end}).")
        if summary.role is Role.CAPABILITY_RESULT or summary.capability_calls:
            raise InvalidTranscriptState("A condensation summary cannot carry capability calls or results.")

        span = self._messages[start:end]
        emitted = {call.call_id for message in span for call in message.capability_calls}
        answered = {m.capability_call_ref for m in span if m.role is Role.CAPABILITY_RESULT}

        if emitted & set(self._pending):
            raise InvalidTranscriptState("Cannot condense a range holding an unanswered capability call.")
        if emitted - answered or answered - emitted:
            raise InvalidTranscriptState("Condensation range would separate a capability call from its result.")

        shift = (end - start) - 1
        self._messages[start:end] = [summary]
        self._pending = {
            call_id: (call, index - shift if index >= end else index)
            for call_id, (call, index) in self._pending.items()
        }

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def render(self) -> list[Message]:
        """Ordered view handed to the model service. Never truncated."""
        return list(self._messages)

    def estimate_size(self) -> int:
        return sum(estimate_tokens(message) for message in self._messages)

    def pending_calls(self) -> list[CapabilityCall]:
        return [call for call, _ in self._pending.values()]

    def has_pending_before(self, index: int) -> bool:
        return any(origin < index for _, origin in self._pending.values())

    def knows_call(self, call_id: str) -> bool:
        return call_id in self._seen_call_ids

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_records(self) -> list[dict[str, Any]]:
        return [message.model_dump(mode="json") for message in self._messages]

    @classmethod
    def from_records(cls, records: Iterable[dict[str, Any]]) -> "Transcript":
        return cls(Message.model_validate(record) for record in records)

    # ------------------------------------------------------------------
    # Sequence protocol
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]
