# models.py
# Data contracts for the orchestration runtime.
# Frozen records and their validation rules; behaviour lives elsewhere.

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tool_runtime.errors import ErrorKind


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    CAPABILITY_RESULT = "capability-result"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


class TriggerMode(str, Enum):
    AND = "and"
    OR = "or"


# ---------------------------------------------------------------------------
# Transcript entries
# ---------------------------------------------------------------------------


class CapabilityCall(BaseModel):
    """One structured request from the model to invoke a named capability."""

    model_config = ConfigDict(frozen=True)

    call_id: str = Field(..., min_length=1, description="Unique within the run.")
    capability_name: str = Field(..., description="Registry key the model asked for.")
    arguments: dict[str, Any] = Field(default_factory=dict)
    argument_error: str | None = Field(
        default=None,
        description="Set when the provider's raw argument payload could not be decoded.",
    )


class Message(BaseModel):
    """A single transcript entry."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str = ""
    capability_calls: list[CapabilityCall] = Field(default_factory=list)
    capability_call_ref: str | None = None
    is_error: bool = False
    is_summary: bool = False

    @model_validator(mode="after")
    def _check_role_fields(self) -> "Message":
        if self.capability_calls and self.role is not Role.ASSISTANT:
            raise ValueError("capability_calls are only allowed on assistant messages")
        if self.role is Role.CAPABILITY_RESULT and not self.capability_call_ref:
            raise ValueError("capability-result messages require capability_call_ref")
        if self.role is not Role.CAPABILITY_RESULT and self.capability_call_ref is not None:
            raise ValueError("capability_call_ref is only allowed on capability-result messages")
        return self

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str = "", calls: list[CapabilityCall] | None = None) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, capability_calls=list(calls or []))

    @classmethod
    def result(cls, call_id: str, content: str, is_error: bool = False) -> "Message":
        return cls(
            role=Role.CAPABILITY_RESULT,
            content=content,
            capability_call_ref=call_id,
            is_error=is_error,
        )


# ---------------------------------------------------------------------------
# Model service contracts
# ---------------------------------------------------------------------------


class CapabilitySpec(BaseModel):
    """What the model is shown about a capability."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    parameters: dict[str, Any] = Field(default_factory=dict, description="JSON schema.")


class ModelRequest(BaseModel):
    messages: list[Message]
    capabilities: list[CapabilitySpec] = Field(default_factory=list)
    model: str | None = Field(default=None, description="Per-request model override.")


class ModelResponse(BaseModel):
    content: str = ""
    capability_calls: list[CapabilityCall] = Field(default_factory=list)
    model: str | None = None
    usage: dict[str, int] = Field(default_factory=dict)


class CapabilityResult(BaseModel):
    call_id: str
    content: str = ""
    is_error: bool = False


# ---------------------------------------------------------------------------
# Budget trigger
# ---------------------------------------------------------------------------


class BudgetTrigger(BaseModel):
    """
    When condensation fires.

    OR  : any configured threshold reached.
    AND : every configured threshold reached.
    """

    tokens: int | None = Field(default=None, gt=0)
    messages: int | None = Field(default=None, gt=0)
    mode: TriggerMode = TriggerMode.OR

    @model_validator(mode="after")
    def _require_threshold(self) -> "BudgetTrigger":
        if self.tokens is None and self.messages is None:
            raise ValueError("BudgetTrigger needs at least one of tokens or messages")
        return self


# ---------------------------------------------------------------------------
# Run outcomes
# ---------------------------------------------------------------------------


class FinalAnswer(BaseModel):
    run_id: str
    content: str
    iterations: int
    transcript: list[Message]
    status: Literal[RunStatus.COMPLETED] = RunStatus.COMPLETED


class RunError(BaseModel):
    run_id: str
    kind: ErrorKind
    message: str
    iterations: int
    transcript: list[Message]
    status: RunStatus = RunStatus.FAILED
