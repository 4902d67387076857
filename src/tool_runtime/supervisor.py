# supervisor.py
# Run supervisor. Owns the run lifecycle (caps, deadlines, cancellation,
# bounded model retries) and the structured terminal result.
#
# Nothing raised inside a run crosses this boundary. Callers always get a
# FinalAnswer or a RunError carrying the taxonomy kind and the transcript.

import logging
import threading
import time
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tool_runtime.budget import Condenser, ContextBudgetManager, ModelCondenser
from tool_runtime.capabilities import CapabilityRegistry
from tool_runtime.errors import (
    Cancelled,
    ErrorKind,
    InvalidTranscriptState,
    ModelServiceFailure,
    RunTimeout,
    ToolRuntimeError,
)
from tool_runtime.loop import OrchestrationLoop, RunState
from tool_runtime.middleware import Middleware, MiddlewareChain, ModelHandler
from tool_runtime.model_service import ModelService
from tool_runtime.models import BudgetTrigger, FinalAnswer, Message, ModelRequest, ModelResponse, RunError, RunStatus
from tool_runtime.transcript import Transcript

logger = logging.getLogger(__name__)

RunResult = FinalAnswer | RunError


class RunConfig(BaseModel):
    """Explicit per-supervisor configuration. No ambient global state."""

    model_config = ConfigDict(arbitrary_types_allowed=True, protected_namespaces=())

    registry: CapabilityRegistry = Field(default_factory=CapabilityRegistry)
    middleware: list[Middleware] = Field(default_factory=list)
    iteration_cap: int = Field(default=10, ge=1, description="Finite by construction.")
    timeout: timedelta = Field(default=timedelta(seconds=120))
    budget_trigger: BudgetTrigger | None = None
    keep_count: int = Field(default=4, ge=0)
    model: str | None = Field(default=None, description="Model override sent with every request.")
    model_retries: int = Field(default=2, ge=0)
    retry_backoff: float = Field(default=0.5, ge=0.0, description="Seconds; grows linearly per attempt.")

    @field_validator("timeout")
    @classmethod
    def _positive_timeout(cls, value: timedelta) -> timedelta:
        if value.total_seconds() <= 0:
            raise ValueError("timeout must be positive")
        return value


class RunHandle:
    """Caller-side view of one run."""

    def __init__(self, run_id: str, state: RunState, future: Future, cancel_event: threading.Event) -> None:
        self.run_id = run_id
        self._state = state
        self._future = future
        self._cancel_event = cancel_event

    def result(self, timeout: float | None = None) -> RunResult:
        """Block until the run is terminal."""
        return self._future.result(timeout=timeout)

    def cancel(self) -> None:
        """Request cooperative cancellation, honored at the next checkpoint."""
        self._cancel_event.set()

    def done(self) -> bool:
        return self._future.done()

    @property
    def status(self) -> RunStatus:
        return self._state.status


class RunSupervisor:
    """
    Starts and supervises runs against one model service.

    Example:
        config = RunConfig(registry=CapabilityRegistry([add]), iteration_cap=5)
        with RunSupervisor(OpenAIModelService("openai/gpt-4o-mini"), config) as supervisor:
            outcome = supervisor.run([Message.user("What is 2 + 2?")])
    """

    def __init__(
        self,
        service: ModelService,
        config: RunConfig | None = None,
        condenser: Condenser | None = None,
        max_workers: int = 4,
    ) -> None:
        self._service = service
        self._config = config or RunConfig()
        self._condenser = condenser
        # Registration must be complete before any run can resolve against it.
        self._config.registry.freeze()
        self._chain = MiddlewareChain(self._config.middleware)
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tool-runtime")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, initial_transcript: Iterable[Message] | Transcript, config: RunConfig | None = None) -> RunHandle:
        if config is None:
            config, chain = self._config, self._chain
        else:
            config.registry.freeze()
            chain = MiddlewareChain(config.middleware)

        transcript = Transcript(initial_transcript)
        if transcript.pending_calls():
            raise InvalidTranscriptState("Initial transcript holds unanswered capability calls.")

        state = RunState(transcript=transcript)
        cancel_event = threading.Event()
        future = self._pool.submit(self._supervise, state, config, chain, cancel_event)
        logger.info("run %s started with %d message(s)", state.run_id, len(transcript))
        return RunHandle(state.run_id, state, future, cancel_event)

    def run(self, initial_transcript: Iterable[Message] | Transcript, config: RunConfig | None = None) -> RunResult:
        return self.start(initial_transcript, config).result()

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def __enter__(self) -> "RunSupervisor":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # Run body (worker thread)
    # ------------------------------------------------------------------

    def _supervise(
        self,
        state: RunState,
        config: RunConfig,
        chain: MiddlewareChain,
        cancel_event: threading.Event,
    ) -> RunResult:
        timeout_seconds = config.timeout.total_seconds()
        deadline = time.monotonic() + timeout_seconds
        condenser = self._condenser
        if condenser is None:
            condenser = ModelCondenser(self._service, model=config.model)
        budget = ContextBudgetManager(config.budget_trigger, config.keep_count, condenser)
        loop = OrchestrationLoop(
            registry=config.registry,
            chain=chain,
            model_terminal=self._retrying_terminal(config, deadline, timeout_seconds, cancel_event),
            budget=budget,
            iteration_cap=config.iteration_cap,
            deadline=deadline,
            timeout_seconds=timeout_seconds,
            cancel_event=cancel_event,
            model=config.model,
        )

        try:
            content = loop.run(state)
        except ToolRuntimeError as exc:
            return self._error(state, exc.kind, str(exc))
        except Exception as exc:
            logger.exception("run %s failed unexpectedly", state.run_id)
            state.status = RunStatus.FAILED
            return self._error(state, ErrorKind.INTERNAL, f"{type(exc).__name__}: {exc}")

        return FinalAnswer(
            run_id=state.run_id,
            content=content,
            iterations=state.iteration_count,
            transcript=state.transcript.render(),
        )

    def _error(self, state: RunState, kind: ErrorKind, message: str) -> RunError:
        return RunError(
            run_id=state.run_id,
            kind=kind,
            message=message,
            iterations=state.iteration_count,
            transcript=state.transcript.render(),
            status=state.status,
        )

    def _retrying_terminal(
        self,
        config: RunConfig,
        deadline: float,
        timeout_seconds: float,
        cancel_event: threading.Event,
    ) -> ModelHandler:
        """Innermost model call with bounded retries of retryable failures."""

        def call(request: ModelRequest) -> ModelResponse:
            attempt = 0
            while True:
                try:
                    return self._service.complete(request)
                except ModelServiceFailure as exc:
                    if not exc.retryable or attempt >= config.model_retries:
                        raise
                    attempt += 1
                    delay = config.retry_backoff * attempt
                    logger.warning(
                        "model call failed (%s), retry %d/%d in %.2fs",
                        exc.reason,
                        attempt,
                        config.model_retries,
                        delay,
                    )
                    if time.monotonic() + delay >= deadline:
                        raise RunTimeout(timeout_seconds) from exc
                    if cancel_event.wait(delay):
                        raise Cancelled() from exc

        return call
