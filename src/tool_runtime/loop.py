# loop.py
# Orchestration loop: the per-run state machine.
#
#   PLANNING ──(calls)──► EXECUTING_CAPABILITIES ──► PLANNING …
#      │
#      └──(no calls)──► DONE          any fatal error ──► ABORTED
#
# One control thread per run. Suspension happens only at the model call
# and at each capability call. Cancellation and the deadline are checked
# before every such call, never during one.

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from tool_runtime.budget import ContextBudgetManager
from tool_runtime.capabilities import CapabilityRegistry
from tool_runtime.errors import (
    Cancelled,
    CapabilityError,
    CapabilityHandlerFailure,
    IterationLimitExceeded,
    RunTimeout,
    SchemaViolation,
)
from tool_runtime.middleware import MiddlewareChain, ModelHandler
from tool_runtime.models import CapabilityCall, CapabilityResult, Message, ModelRequest, RunStatus
from tool_runtime.transcript import Transcript

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    PLANNING = "planning"
    EXECUTING_CAPABILITIES = "executing_capabilities"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class RunState:
    """Per-run mutable state, owned by exactly one OrchestrationLoop."""

    transcript: Transcript
    run_id: str = field(default_factory=lambda: uuid4().hex)
    iteration_count: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: RunStatus = RunStatus.RUNNING
    loop_state: LoopState = LoopState.PLANNING
    final_answer: str | None = None


def _status_for(exc: Exception) -> RunStatus:
    if isinstance(exc, Cancelled):
        return RunStatus.CANCELLED
    if isinstance(exc, RunTimeout):
        return RunStatus.TIMED_OUT
    return RunStatus.FAILED


class OrchestrationLoop:
    """
    Drives one run from its initial transcript to DONE or ABORTED.

    `model_terminal` is the innermost model call (the supervisor hands in a
    retrying wrapper around the model service); the middleware chain wraps
    it. Run-level failures propagate out of run() after the loop has closed
    any unanswered calls of the current turn.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        chain: MiddlewareChain,
        model_terminal: ModelHandler,
        budget: ContextBudgetManager | None = None,
        iteration_cap: int = 10,
        deadline: float | None = None,
        timeout_seconds: float = 0.0,
        cancel_event: threading.Event | None = None,
        model: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if iteration_cap < 1:
            raise ValueError("iteration_cap must be a positive integer")
        self._registry = registry
        self._chain = chain
        self._model_terminal = model_terminal
        self._budget = budget
        self._iteration_cap = iteration_cap
        self._deadline = deadline
        self._timeout_seconds = timeout_seconds
        self._cancel_event = cancel_event
        self._model = model
        self._clock = clock
        self._specs = registry.specs()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, state: RunState) -> str:
        """Run to a terminal state. Returns the final answer text."""
        try:
            while state.loop_state is not LoopState.DONE:
                if state.loop_state is LoopState.PLANNING:
                    self._plan(state)
                else:
                    self._execute_turn(state)
        except Exception as exc:
            state.loop_state = LoopState.ABORTED
            state.status = _status_for(exc)
            self._close_pending(state, exc)
            logger.info("run %s aborted after %d iteration(s): %s", state.run_id, state.iteration_count, exc)
            raise

        state.status = RunStatus.COMPLETED
        logger.info("run %s completed in %d iteration(s)", state.run_id, state.iteration_count)
        return state.final_answer or ""

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def _checkpoint(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise Cancelled()
        if self._deadline is not None and self._clock() >= self._deadline:
            raise RunTimeout(self._timeout_seconds)

    # ------------------------------------------------------------------
    # PLANNING
    # ------------------------------------------------------------------

    def _plan(self, state: RunState) -> None:
        self._checkpoint()
        if state.iteration_count >= self._iteration_cap:
            raise IterationLimitExceeded(self._iteration_cap)

        state.iteration_count += 1
        request = ModelRequest(messages=state.transcript.render(), capabilities=self._specs, model=self._model)
        response = self._chain.model_call(request, self._model_terminal)

        if not response.capability_calls:
            state.transcript.append(Message.assistant(response.content))
            state.final_answer = response.content
            state.loop_state = LoopState.DONE
            return

        calls = self._unique_ids(state, response.capability_calls)
        state.transcript.append(Message.assistant(response.content, calls))
        logger.debug(
            "run %s iteration %d: %d capability call(s)", state.run_id, state.iteration_count, len(calls)
        )
        state.loop_state = LoopState.EXECUTING_CAPABILITIES

    def _unique_ids(self, state: RunState, calls: list[CapabilityCall]) -> list[CapabilityCall]:
        """Providers occasionally reuse call ids across turns; re-key those calls."""
        seen: set[str] = set()
        unique = []
        def taken(call_id: str) -> bool:
            return call_id in seen or state.transcript.knows_call(call_id)

        for index, call in enumerate(calls):
            if taken(call.call_id):
                new_id = f"{call.call_id}-{state.iteration_count}-{index}"
                attempt = 1
                while taken(new_id):
                    new_id = f"{call.call_id}-{state.iteration_count}-{index}-{attempt}"
                    attempt += 1
                logger.debug("re-keyed duplicate call id %s as %s", call.call_id, new_id)
                call = call.model_copy(update={"call_id": new_id})
            seen.add(call.call_id)
            unique.append(call)
        return unique

    # ------------------------------------------------------------------
    # EXECUTING_CAPABILITIES
    # ------------------------------------------------------------------

    def _execute_turn(self, state: RunState) -> None:
        # Strictly sequential, in emission order.
        for call in state.transcript.pending_calls():
            self._checkpoint()
            result = self._execute(call)
            state.transcript.append(Message.result(call.call_id, result.content, is_error=result.is_error))

        if self._budget is not None:
            self._budget.maybe_condense(state.transcript)
        state.loop_state = LoopState.PLANNING

    def _execute(self, call: CapabilityCall) -> CapabilityResult:
        try:
            if call.argument_error:
                raise SchemaViolation(call.capability_name, ["<arguments>"], call.argument_error)
            self._registry.validate_arguments(call.capability_name, call.arguments)
            result = self._chain.capability_call(call, self._invoke_capability)
        except CapabilityError as exc:
            logger.warning("capability %s [%s] rejected: %s", call.capability_name, call.call_id, exc)
            return CapabilityResult(call_id=call.call_id, content=f"Error: {exc}", is_error=True)

        if result.call_id != call.call_id:
            result = result.model_copy(update={"call_id": call.call_id})
        return result

    def _invoke_capability(self, call: CapabilityCall) -> CapabilityResult:
        """Innermost capability stage: resolve, re-validate, run the handler."""
        capability = self._registry.resolve(call.capability_name)
        arguments = self._registry.validate_arguments(call.capability_name, call.arguments)
        try:
            output = capability.handler(arguments)
        except Exception as exc:
            raise CapabilityHandlerFailure(call.capability_name, f"{type(exc).__name__}: {exc}") from exc
        if output is None:
            output = ""
        return CapabilityResult(call_id=call.call_id, content=output if isinstance(output, str) else str(output))

    # ------------------------------------------------------------------
    # Abort
    # ------------------------------------------------------------------

    def _close_pending(self, state: RunState, exc: Exception) -> None:
        """Answer calls left open by an abort so the transcript stays resumable."""
        for call in state.transcript.pending_calls():
            state.transcript.append(Message.result(call.call_id, f"Not executed: {exc}", is_error=True))
