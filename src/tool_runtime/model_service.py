# model_service.py
# Model invocation service: the planner the loop talks to.
#
# The loop depends only on the ModelService protocol. OpenAIModelService is
# the shipped adapter for any OpenAI-compatible chat completions endpoint
# (OpenRouter by default). Provider errors never escape as opaque SDK
# exceptions; they surface as ModelServiceFailure with a reason.

import json
import logging
import os
from typing import Any, Protocol
from uuid import uuid4

import openai
from openai import OpenAI

from tool_runtime.errors import ModelServiceFailure
from tool_runtime.models import CapabilityCall, CapabilitySpec, Message, ModelRequest, ModelResponse, Role

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


class ModelService(Protocol):
    def complete(self, request: ModelRequest) -> ModelResponse: ...


# ---------------------------------------------------------------------------
# Wire conversion
# ---------------------------------------------------------------------------


def to_openai_message(message: Message) -> dict[str, Any]:
    if message.role is Role.CAPABILITY_RESULT:
        return {"role": "tool", "tool_call_id": message.capability_call_ref, "content": message.content}

    payload: dict[str, Any] = {"role": message.role.value, "content": message.content}
    if message.capability_calls:
        payload["tool_calls"] = [
            {
                "id": call.call_id,
                "type": "function",
                "function": {
                    "name": call.capability_name,
                    "arguments": json.dumps(call.arguments, ensure_ascii=False),
                },
            }
            for call in message.capability_calls
        ]
    return payload


def to_openai_tool(spec: CapabilitySpec) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": spec.name,
            "description": spec.description,
            "parameters": spec.parameters,
        },
    }


def _parse_call(tool_call: Any) -> CapabilityCall:
    function = getattr(tool_call, "function", None)
    name = getattr(function, "name", None)
    if not name:
        raise ModelServiceFailure("bad_response", "tool call carried no function name", retryable=True)
    # Some OpenAI-compatible gateways omit tool call ids.
    call_id = getattr(tool_call, "id", None) or f"call_{uuid4().hex}"

    raw = function.arguments or "{}"
    try:
        # strict=False allows literal newlines inside strings
        arguments = json.loads(raw, strict=False)
    except json.JSONDecodeError as exc:
        return CapabilityCall(
            call_id=call_id,
            capability_name=name,
            argument_error=f"Arguments are not valid JSON: {exc}",
        )
    if not isinstance(arguments, dict):
        return CapabilityCall(
            call_id=call_id,
            capability_name=name,
            argument_error="Arguments must be a JSON object.",
        )
    return CapabilityCall(call_id=call_id, capability_name=name, arguments=arguments)


# ---------------------------------------------------------------------------
# OpenAI-compatible adapter
# ---------------------------------------------------------------------------


class OpenAIModelService:
    """
    Chat-completions adapter with native tool calling.

    Example:
        service = OpenAIModelService(model="openai/gpt-4o-mini")
        response = service.complete(ModelRequest(messages=[Message.user("hi")]))
    """

    def __init__(
        self,
        model: str,
        base_url: str | None = None,
        api_key: str | None = None,
        client: OpenAI | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.model = model
        self._client = client or OpenAI(
            base_url=base_url or DEFAULT_BASE_URL,
            api_key=api_key or os.getenv("OPENROUTER_API_KEY"),
            timeout=timeout,
            max_retries=0,
        )

    def complete(self, request: ModelRequest) -> ModelResponse:
        model = request.model or self.model
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [to_openai_message(m) for m in request.messages],
        }
        if request.capabilities:
            kwargs["tools"] = [to_openai_tool(spec) for spec in request.capabilities]

        try:
            response = self._client.chat.completions.create(**kwargs)
        except openai.AuthenticationError as exc:
            raise ModelServiceFailure("auth", str(exc), retryable=False) from exc
        except openai.PermissionDeniedError as exc:
            raise ModelServiceFailure("auth", str(exc), retryable=False) from exc
        except openai.RateLimitError as exc:
            raise ModelServiceFailure("rate_limit", str(exc), retryable=True) from exc
        except openai.APITimeoutError as exc:
            raise ModelServiceFailure("timeout", str(exc), retryable=True) from exc
        except openai.APIConnectionError as exc:
            raise ModelServiceFailure("transport", str(exc), retryable=True) from exc
        except openai.APIStatusError as exc:
            raise ModelServiceFailure("status", str(exc), retryable=exc.status_code >= 500) from exc
        except openai.APIError as exc:
            # e.g. APIResponseValidationError: the body did not match the SDK schema
            raise ModelServiceFailure("bad_response", str(exc), retryable=True) from exc

        if not response.choices:
            raise ModelServiceFailure("bad_response", "response carried no choices", retryable=True)

        message = response.choices[0].message
        calls = [_parse_call(tc) for tc in (message.tool_calls or [])]
        usage = {}
        if response.usage is not None:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens or 0,
                "completion_tokens": response.usage.completion_tokens or 0,
            }
        logger.debug("model %s replied with %d tool call(s)", model, len(calls))
        return ModelResponse(
            content=(message.content or "").strip(),
            capability_calls=calls,
            model=response.model or model,
            usage=usage,
        )
