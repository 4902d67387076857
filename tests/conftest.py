import itertools

import pytest
from pydantic import BaseModel

from tool_runtime.capabilities import Capability, CapabilityRegistry
from tool_runtime.models import CapabilityCall, ModelResponse


# ---------------------------------------------------------------------------
# Scripted model service
# ---------------------------------------------------------------------------


class ScriptedModelService:
    """
    Plays back a fixed list of replies.

    Items may be a ModelResponse, an exception instance (raised), or a
    callable taking the request and returning either.
    """

    def __init__(self, replies=(), repeat_last=False):
        self._replies = list(replies)
        self._repeat_last = repeat_last
        self.requests = []

    def complete(self, request):
        self.requests.append(request)
        if not self._replies:
            raise AssertionError("ScriptedModelService ran out of replies")
        item = self._replies[0] if self._repeat_last and len(self._replies) == 1 else self._replies.pop(0)
        if callable(item):
            item = item(request)
        if isinstance(item, Exception):
            raise item
        return item


class AlwaysCallsService:
    """Requests the same capability on every planning step, never answers."""

    def __init__(self, name="add", arguments=None):
        self.name = name
        self.arguments = arguments if arguments is not None else {"a": 1, "b": 1}
        self.requests = []
        self._ids = itertools.count(1)

    def complete(self, request):
        self.requests.append(request)
        return ModelResponse(capability_calls=[call(self.name, f"call-{next(self._ids)}", **self.arguments)])


def call(name, call_id, **arguments):
    return CapabilityCall(call_id=call_id, capability_name=name, arguments=arguments)


def reply(text):
    return ModelResponse(content=text)


def calls(*capability_calls, content=""):
    return ModelResponse(content=content, capability_calls=list(capability_calls))


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class AddArgs(BaseModel):
    a: int
    b: int


class EchoArgs(BaseModel):
    message: str


@pytest.fixture
def handler_log():
    return []


@pytest.fixture
def add_capability(handler_log):
    def _add(args):
        handler_log.append(("add", args))
        return str(args["a"] + args["b"])

    return Capability(name="add", description="Add two integers.", argument_schema=AddArgs, handler=_add)


@pytest.fixture
def echo_capability(handler_log):
    def _echo(args):
        handler_log.append(("echo", args))
        return args["message"]

    return Capability(name="echo", description="Echo a message.", argument_schema=EchoArgs, handler=_echo)


@pytest.fixture
def registry(add_capability, echo_capability):
    return CapabilityRegistry([add_capability, echo_capability])
