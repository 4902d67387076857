import logging
from unittest.mock import MagicMock, patch

import pytest

from tool_runtime.errors import CapabilityHandlerFailure, EscalatedFailure, MiddlewareContractViolation, ModelServiceFailure
from tool_runtime.middleware import (
    CapabilityCacheMiddleware,
    CapabilityErrorMiddleware,
    ConsoleTraceMiddleware,
    CostRoutingMiddleware,
    LoggingMiddleware,
    Middleware,
    MiddlewareChain,
    ModelFallbackMiddleware,
)
from tool_runtime.models import CapabilityResult, Message, ModelRequest, ModelResponse, Role

from conftest import call


def _request(*texts):
    return ModelRequest(messages=[Message.user(t) for t in texts])


class Recorder(Middleware):
    def __init__(self, name, log):
        self.name = name
        self.log = log

    def wrap_model_call(self, request, call_next):
        self.log.append(f"{self.name}:in")
        response = call_next(request)
        self.log.append(f"{self.name}:out")
        return response

    def wrap_capability_call(self, call, call_next):
        self.log.append(f"{self.name}:in")
        result = call_next(call)
        self.log.append(f"{self.name}:out")
        return result


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def test_chain_runs_outside_in():
    log = []
    chain = MiddlewareChain([Recorder("first", log), Recorder("second", log)])

    def terminal(request):
        log.append("terminal")
        return ModelResponse(content="ok")

    assert chain.model_call(_request("hi"), terminal).content == "ok"
    assert log == ["first:in", "second:in", "terminal", "second:out", "first:out"]


def test_empty_chain_calls_terminal_directly():
    terminal = MagicMock(return_value=CapabilityResult(call_id="c1", content="4"))
    result = MiddlewareChain().capability_call(call("add", "c1", a=2, b=2), terminal)

    assert result.content == "4"
    terminal.assert_called_once()


def test_short_circuit_skips_downstream():
    class Canned(Middleware):
        def wrap_model_call(self, request, call_next):
            return ModelResponse(content="canned")

    terminal = MagicMock()
    log = []
    chain = MiddlewareChain([Canned(), Recorder("inner", log)])

    assert chain.model_call(_request("hi"), terminal).content == "canned"
    terminal.assert_not_called()
    assert log == []


def test_stage_may_rewrite_request():
    class Upper(Middleware):
        def wrap_capability_call(self, call, call_next):
            args = {k: v.upper() for k, v in call.arguments.items()}
            return call_next(call.model_copy(update={"arguments": args}))

    seen = []

    def terminal(c):
        seen.append(c.arguments)
        return CapabilityResult(call_id=c.call_id, content="")

    MiddlewareChain([Upper()]).capability_call(call("echo", "c1", message="hi"), terminal)
    assert seen == [{"message": "HI"}]


def test_stage_returning_none_is_contract_violation():
    class Broken(Middleware):
        def wrap_model_call(self, request, call_next):
            call_next(request)

    chain = MiddlewareChain([Broken()])
    with pytest.raises(MiddlewareContractViolation, match="NoneType"):
        chain.model_call(_request("hi"), lambda r: ModelResponse(content="x"))


# ---------------------------------------------------------------------------
# Built-in stages
# ---------------------------------------------------------------------------


def test_logging_middleware_logs_model_and_capability_calls(caplog):
    chain = MiddlewareChain([LoggingMiddleware()])
    with caplog.at_level(logging.INFO, logger="tool_runtime.middleware"):
        chain.model_call(_request("abcd" * 10), lambda r: ModelResponse(content="ok"))
        chain.capability_call(call("add", "c1"), lambda c: CapabilityResult(call_id="c1", content="2"))

    assert "model call: 1 messages, ~10 tokens" in caplog.text
    assert "capability add [c1]: ok" in caplog.text


def test_cost_routing_uses_cheap_model_for_small_requests():
    seen = []

    def terminal(request):
        seen.append(request.model)
        return ModelResponse()

    chain = MiddlewareChain([CostRoutingMiddleware(cheap_model="cheap", max_tokens=10)])
    chain.model_call(_request("short"), terminal)
    chain.model_call(_request("x" * 400), terminal)

    assert seen == ["cheap", None]


def test_model_fallback_tries_next_model():
    models = []

    def terminal(request):
        models.append(request.model)
        if request.model != "backup":
            raise ModelServiceFailure("status", "upstream 503", retryable=True)
        return ModelResponse(content="from backup")

    chain = MiddlewareChain([ModelFallbackMiddleware(["other", "backup"])])
    assert chain.model_call(_request("hi"), terminal).content == "from backup"
    assert models == [None, "other", "backup"]


def test_model_fallback_reraises_last_failure():
    def terminal(request):
        raise ModelServiceFailure("auth", f"bad key for {request.model}")

    chain = MiddlewareChain([ModelFallbackMiddleware(["backup"])])
    with pytest.raises(ModelServiceFailure, match="backup"):
        chain.model_call(_request("hi"), terminal)


def test_cache_short_circuits_identical_calls():
    cache = CapabilityCacheMiddleware(cacheable=["search"])
    terminal = MagicMock(side_effect=lambda c: CapabilityResult(call_id=c.call_id, content="hits"))
    chain = MiddlewareChain([cache])

    first = chain.capability_call(call("search", "c1", query="qubits"), terminal)
    second = chain.capability_call(call("search", "c2", query="qubits"), terminal)

    assert terminal.call_count == 1
    assert (first.content, second.content) == ("hits", "hits")
    assert second.call_id == "c2"
    assert cache.hits == 1


def test_cache_skips_errors_and_non_cacheable():
    cache = CapabilityCacheMiddleware(cacheable=["search"])
    chain = MiddlewareChain([cache])
    failing = MagicMock(side_effect=lambda c: CapabilityResult(call_id=c.call_id, content="boom", is_error=True))
    writes = MagicMock(side_effect=lambda c: CapabilityResult(call_id=c.call_id, content="wrote"))

    chain.capability_call(call("search", "c1", query="q"), failing)
    chain.capability_call(call("search", "c2", query="q"), failing)
    chain.capability_call(call("file_write", "c3", path="a"), writes)
    chain.capability_call(call("file_write", "c4", path="a"), writes)

    assert failing.call_count == 2
    assert writes.call_count == 2


def test_error_middleware_converts_failure_to_fallback():
    def terminal(c):
        raise CapabilityHandlerFailure(c.capability_name, "TimeoutError: slow")

    chain = MiddlewareChain([CapabilityErrorMiddleware(fallback_message="{name} unavailable")])
    result = chain.capability_call(call("search", "c1"), terminal)

    assert result.is_error
    assert result.content == "search unavailable"


def test_error_middleware_escalates_named_capabilities():
    def terminal(c):
        raise CapabilityHandlerFailure(c.capability_name, "disk full")

    chain = MiddlewareChain([CapabilityErrorMiddleware(escalate=["file_write"])])
    with pytest.raises(EscalatedFailure, match="disk full"):
        chain.capability_call(call("file_write", "c1"), terminal)


@patch("tool_runtime.middleware.display")
def test_console_trace_reports_new_summary_once(mock_display):
    summary = Message(role=Role.ASSISTANT, content="Conversation summary", is_summary=True)
    request = ModelRequest(messages=[Message.system("s"), summary, Message.user("q")])
    chain = MiddlewareChain([ConsoleTraceMiddleware()])

    chain.model_call(request, lambda r: ModelResponse(content="a"))
    chain.model_call(request, lambda r: ModelResponse(content="b"))

    mock_display.condensed.assert_called_once_with("Conversation summary", 3)
    assert mock_display.model_call.call_count == 2
    assert mock_display.model_response.call_count == 2
