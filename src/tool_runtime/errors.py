# errors.py
# Error taxonomy for the orchestration runtime.
#
# Three families, distinguished by how far they travel:
#   capability-level — become transcript content, the model sees them
#   run-level        — terminal, returned as a structured RunError
#   configuration    — raised straight to the caller, never tied to a run

from enum import Enum


class ErrorKind(str, Enum):
    SCHEMA_VIOLATION = "schema_violation"
    UNKNOWN_CAPABILITY = "unknown_capability"
    CAPABILITY_HANDLER_FAILURE = "capability_handler_failure"
    MODEL_SERVICE_FAILURE = "model_service_failure"
    ITERATION_LIMIT_EXCEEDED = "iteration_limit_exceeded"
    RUN_TIMEOUT = "run_timeout"
    CANCELLED = "cancelled"
    INVALID_TRANSCRIPT_STATE = "invalid_transcript_state"
    DUPLICATE_CAPABILITY = "duplicate_capability"
    CONFIGURATION_ERROR = "configuration_error"
    CONDENSATION_FAILURE = "condensation_failure"
    INTERNAL = "internal"


class ToolRuntimeError(Exception):
    """Base class. Every runtime error carries a taxonomy kind."""

    kind: ErrorKind = ErrorKind.INTERNAL


# ---------------------------------------------------------------------------
# Capability-level (recovered locally as transcript content)
# ---------------------------------------------------------------------------


class CapabilityError(ToolRuntimeError):
    """Marker base for errors the loop feeds back to the model."""


class SchemaViolation(CapabilityError):
    kind = ErrorKind.SCHEMA_VIOLATION

    def __init__(self, capability_name: str, fields: list[str], detail: str = "") -> None:
        self.capability_name = capability_name
        self.fields = list(fields)
        self.detail = detail
        message = (
            f"Invalid arguments for capability '{capability_name}': "
            f"offending field(s) {', '.join(self.fields) or '<none>'}"
        )
        if detail:
            message += f". {detail}"
        super().__init__(message)


class UnknownCapability(CapabilityError):
    kind = ErrorKind.UNKNOWN_CAPABILITY

    def __init__(self, capability_name: str, available: list[str] | None = None) -> None:
        self.capability_name = capability_name
        self.available = list(available or [])
        listing = ", ".join(self.available) if self.available else "none"
        super().__init__(
            f"Unknown capability '{capability_name}'. Available capabilities: {listing}."
        )


class CapabilityHandlerFailure(CapabilityError):
    kind = ErrorKind.CAPABILITY_HANDLER_FAILURE

    def __init__(self, capability_name: str, reason: str) -> None:
        self.capability_name = capability_name
        self.reason = reason
        super().__init__(f"Capability '{capability_name}' failed: {reason}")


# ---------------------------------------------------------------------------
# Run-level (terminal)
# ---------------------------------------------------------------------------


class ModelServiceFailure(ToolRuntimeError):
    """Transport, auth, quota or response-shape failure from the model service."""

    kind = ErrorKind.MODEL_SERVICE_FAILURE

    def __init__(self, reason: str, message: str, retryable: bool = False) -> None:
        self.reason = reason
        self.retryable = retryable
        super().__init__(f"Model service failure ({reason}): {message}")


class IterationLimitExceeded(ToolRuntimeError):
    kind = ErrorKind.ITERATION_LIMIT_EXCEEDED

    def __init__(self, cap: int) -> None:
        self.cap = cap
        super().__init__(f"Iteration cap of {cap} reached without a final answer.")


class RunTimeout(ToolRuntimeError):
    kind = ErrorKind.RUN_TIMEOUT

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Run exceeded its {timeout_seconds:g}s deadline.")


class Cancelled(ToolRuntimeError):
    kind = ErrorKind.CANCELLED

    def __init__(self) -> None:
        super().__init__("Run was cancelled by the caller.")


class EscalatedFailure(ToolRuntimeError):
    """A capability failure a middleware stage chose to make fatal."""

    kind = ErrorKind.CAPABILITY_HANDLER_FAILURE

    def __init__(self, capability_name: str, reason: str) -> None:
        self.capability_name = capability_name
        self.reason = reason
        super().__init__(f"Capability '{capability_name}' failure escalated: {reason}")


class MiddlewareContractViolation(ToolRuntimeError):
    kind = ErrorKind.CONFIGURATION_ERROR


# ---------------------------------------------------------------------------
# Programmer / configuration errors
# ---------------------------------------------------------------------------


class InvalidTranscriptState(ToolRuntimeError):
    kind = ErrorKind.INVALID_TRANSCRIPT_STATE


class DuplicateCapability(ToolRuntimeError):
    kind = ErrorKind.DUPLICATE_CAPABILITY

    def __init__(self, capability_name: str) -> None:
        self.capability_name = capability_name
        super().__init__(f"Capability '{capability_name}' is already registered.")


class ConfigurationError(ToolRuntimeError):
    kind = ErrorKind.CONFIGURATION_ERROR


class CondensationFailure(ToolRuntimeError):
    kind = ErrorKind.CONDENSATION_FAILURE
