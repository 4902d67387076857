# middleware.py
# Interceptors around the two outbound calls of a run: model calls and
# capability calls.
#
# One ordered list of stages drives both chains. Composition is outside-in:
# the first stage wraps every later stage down to the real call. Each stage
# either calls `call_next` exactly once and may post-process the result, or
# short-circuits with a synthetic result. Stages are shared across
# concurrent runs, so any state they keep must be guarded.

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable, Sequence

from tool_runtime import display
from tool_runtime.errors import (
    CapabilityHandlerFailure,
    EscalatedFailure,
    MiddlewareContractViolation,
    ModelServiceFailure,
)
from tool_runtime.models import CapabilityCall, CapabilityResult, ModelRequest, ModelResponse
from tool_runtime.transcript import estimate_tokens

logger = logging.getLogger(__name__)

ModelHandler = Callable[[ModelRequest], ModelResponse]
CapabilityHandler = Callable[[CapabilityCall], CapabilityResult]


class Middleware:
    """Base stage. Both extension points pass through unless overridden."""

    name = "middleware"

    def wrap_model_call(self, request: ModelRequest, call_next: ModelHandler) -> ModelResponse:
        return call_next(request)

    def wrap_capability_call(self, call: CapabilityCall, call_next: CapabilityHandler) -> CapabilityResult:
        return call_next(call)


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------


class MiddlewareChain:
    """Fixed, ordered composition of middleware stages."""

    def __init__(self, stages: Iterable[Middleware] = ()) -> None:
        self._stages: tuple[Middleware, ...] = tuple(stages)

    @property
    def stages(self) -> tuple[Middleware, ...]:
        return self._stages

    def model_call(self, request: ModelRequest, terminal: ModelHandler) -> ModelResponse:
        handler = self._compose("wrap_model_call", terminal, ModelResponse)
        return handler(request)

    def capability_call(self, call: CapabilityCall, terminal: CapabilityHandler) -> CapabilityResult:
        handler = self._compose("wrap_capability_call", terminal, CapabilityResult)
        return handler(call)

    def _compose(self, method: str, terminal: Callable, expected: type) -> Callable:
        handler = terminal
        for stage in reversed(self._stages):
            handler = _bind(stage, method, handler, expected)
        return handler


def _bind(stage: Middleware, method: str, call_next: Callable, expected: type) -> Callable:
    wrap = getattr(stage, method)
    stage_name = getattr(stage, "name", type(stage).__name__)

    def invoke(payload):
        result = wrap(payload, call_next)
        if not isinstance(result, expected):
            raise MiddlewareContractViolation(
                f"Middleware '{stage_name}' returned {type(result).__name__} from {method}; "
                f"expected {expected.__name__}."
            )
        return result

    return invoke


# ---------------------------------------------------------------------------
# Built-in stages
# ---------------------------------------------------------------------------


class LoggingMiddleware(Middleware):
    """Logs size and latency of every model call and capability call."""

    name = "logging"

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def wrap_model_call(self, request, call_next):
        tokens = sum(estimate_tokens(m) for m in request.messages)
        started = time.perf_counter()
        response = call_next(request)
        self._log.info(
            "model call: %d messages, ~%d tokens, %d capability call(s), %.2fs",
            len(request.messages),
            tokens,
            len(response.capability_calls),
            time.perf_counter() - started,
        )
        return response

    def wrap_capability_call(self, call, call_next):
        started = time.perf_counter()
        result = call_next(call)
        self._log.info(
            "capability %s [%s]: %s in %.2fs",
            call.capability_name,
            call.call_id,
            "error" if result.is_error else "ok",
            time.perf_counter() - started,
        )
        return result


class CostRoutingMiddleware(Middleware):
    """Send small transcripts to a cheaper model."""

    name = "cost_routing"

    def __init__(self, cheap_model: str, max_tokens: int) -> None:
        self.cheap_model = cheap_model
        self.max_tokens = max_tokens

    def wrap_model_call(self, request, call_next):
        tokens = sum(estimate_tokens(m) for m in request.messages)
        if tokens <= self.max_tokens:
            request = request.model_copy(update={"model": self.cheap_model})
        return call_next(request)


class ModelFallbackMiddleware(Middleware):
    """On a model service failure, retry the request against each fallback model in turn."""

    name = "model_fallback"

    def __init__(self, fallback_models: Sequence[str]) -> None:
        if not fallback_models:
            raise ValueError("ModelFallbackMiddleware needs at least one fallback model.")
        self.fallback_models = list(fallback_models)

    def wrap_model_call(self, request, call_next):
        try:
            return call_next(request)
        except ModelServiceFailure as first:
            last = first
            for model in self.fallback_models:
                logger.warning("model call failed (%s); falling back to %s", last.reason, model)
                try:
                    return call_next(request.model_copy(update={"model": model}))
                except ModelServiceFailure as exc:
                    last = exc
            raise last


class CapabilityCacheMiddleware(Middleware):
    """
    Short-circuit repeated capability calls with a cached result.

    Only successful results are cached, keyed on capability name plus
    canonical JSON arguments. Restrict `cacheable` to read-only
    capabilities; caching a write would skip its side effect.
    """

    name = "capability_cache"

    def __init__(self, cacheable: Iterable[str] | None = None, max_entries: int = 256) -> None:
        self.cacheable = set(cacheable) if cacheable is not None else None
        self.max_entries = max_entries
        self._store: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()
        self.hits = 0

    def _key(self, call: CapabilityCall) -> tuple[str, str]:
        return call.capability_name, json.dumps(call.arguments, sort_keys=True, default=str)

    def wrap_capability_call(self, call, call_next):
        if self.cacheable is not None and call.capability_name not in self.cacheable:
            return call_next(call)

        key = self._key(call)
        with self._lock:
            cached = self._store.get(key)
            if cached is not None:
                self.hits += 1
        if cached is not None:
            return CapabilityResult(call_id=call.call_id, content=cached)

        result = call_next(call)
        if not result.is_error:
            with self._lock:
                if len(self._store) >= self.max_entries:
                    self._store.pop(next(iter(self._store)))
                self._store[key] = result.content
        return result


class CapabilityErrorMiddleware(Middleware):
    """
    Decide what a handler failure means.

    Capabilities named in `escalate` abort the run with EscalatedFailure.
    Any other failure becomes a synthetic result carrying `fallback_message`.
    """

    name = "capability_errors"

    def __init__(
        self,
        fallback_message: str = "The {name} capability is unavailable right now ({reason}). Try a different approach.",
        escalate: Iterable[str] = (),
    ) -> None:
        self.fallback_message = fallback_message
        self.escalate = frozenset(escalate)

    def wrap_capability_call(self, call, call_next):
        try:
            return call_next(call)
        except CapabilityHandlerFailure as exc:
            if exc.capability_name in self.escalate:
                raise EscalatedFailure(exc.capability_name, exc.reason) from exc
            content = self.fallback_message.format(name=exc.capability_name, reason=exc.reason)
            return CapabilityResult(call_id=call.call_id, content=content, is_error=True)


class ConsoleTraceMiddleware(Middleware):
    """
    Rich console trace of a run.

    Detects condensation the way a caller sees it: a summary message shows
    up at the head of the context. Meant for one interactive console.
    """

    name = "console_trace"

    def __init__(self) -> None:
        self._last_summary: str | None = None
        self._lock = threading.Lock()

    def wrap_model_call(self, request, call_next):
        summary = next((m.content for m in request.messages if m.is_summary), None)
        with self._lock:
            fresh = summary is not None and summary != self._last_summary
            self._last_summary = summary
        if fresh:
            display.condensed(summary, len(request.messages))

        display.model_call(len(request.messages), sum(estimate_tokens(m) for m in request.messages), request.model)
        response = call_next(request)
        display.model_response(response)
        return response

    def wrap_capability_call(self, call, call_next):
        display.capability_call(call)
        result = call_next(call)
        display.capability_result(result)
        return result
