# capabilities.py
# Capability registry: closed, name-keyed dispatch with schema validation.
#
# Dispatch is a dict lookup plus a pydantic validation pass. Malformed
# model output is rejected here, before any handler code runs.

import logging
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tool_runtime.errors import ConfigurationError, DuplicateCapability, SchemaViolation, UnknownCapability
from tool_runtime.models import CapabilitySpec

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], str]


class Capability(BaseModel):
    """A named unit of work the planner may request."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(..., pattern=r"^[A-Za-z0-9_-]{1,64}$")
    description: str = Field(..., min_length=1, description="Read by the model to decide when to call it.")
    argument_schema: type[BaseModel]
    handler: Handler

    def spec(self) -> CapabilitySpec:
        return CapabilitySpec(
            name=self.name,
            description=self.description,
            parameters=self.argument_schema.model_json_schema(),
        )


def capability(name: str, description: str, schema: type[BaseModel]) -> Callable[[Handler], Capability]:
    """
    Decorator turning a plain `dict -> str` function into a Capability.

        @capability("add", "Add two integers.", AddArgs)
        def add(args: dict) -> str:
            return str(args["a"] + args["b"])
    """

    def wrap(fn: Handler) -> Capability:
        return Capability(name=name, description=description, argument_schema=schema, handler=fn)

    return wrap


def _field_path(loc: tuple) -> str:
    return ".".join(str(part) for part in loc) or "<arguments>"


class CapabilityRegistry:
    """
    Name -> Capability map.

    Registration happens at setup. Once frozen (the Run Supervisor freezes
    its registry at construction) the registry is read-only and safe to
    share across concurrent runs without locking.
    """

    def __init__(self, capabilities: Iterable[Capability] = ()) -> None:
        self._capabilities: dict[str, Capability] = {}
        self._frozen = False
        for cap in capabilities:
            self.register(cap)

    def register(self, cap: Capability) -> None:
        if self._frozen:
            raise ConfigurationError(
                f"Cannot register '{cap.name}': registry is frozen once runs may start."
            )
        if cap.name in self._capabilities:
            raise DuplicateCapability(cap.name)
        self._capabilities[cap.name] = cap
        logger.debug("Registered capability %s", cap.name)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def resolve(self, name: str) -> Capability:
        try:
            return self._capabilities[name]
        except KeyError:
            raise UnknownCapability(name, self.names()) from None

    def validate_arguments(self, name: str, arguments: Any) -> dict[str, Any]:
        """
        Validate raw model arguments against the capability's schema.

        Returns the normalized argument dict. Raises SchemaViolation naming
        every offending field.
        """
        cap = self.resolve(name)
        if not isinstance(arguments, dict):
            raise SchemaViolation(name, ["<arguments>"], "Arguments must be a JSON object.")
        try:
            validated = cap.argument_schema.model_validate(arguments)
        except ValidationError as exc:
            errors = exc.errors()
            fields = [_field_path(err["loc"]) for err in errors]
            detail = "; ".join(f"{_field_path(err['loc'])}: {err['msg']}" for err in errors)
            raise SchemaViolation(name, fields, detail) from exc
        return validated.model_dump()

    def specs(self) -> list[CapabilitySpec]:
        return [cap.spec() for cap in self._capabilities.values()]

    def names(self) -> list[str]:
        return sorted(self._capabilities)

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)
