# config.py
# Environment-driven settings and logging setup.
#
# Settings are read once and passed explicitly into the supervisor and the
# model service. Nothing here is consulted implicitly at run time.

import logging
import os
from collections.abc import Mapping

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from rich.logging import RichHandler

_LOGGER_NAME = "tool_runtime"
_CONFIGURED_ATTR = "_tool_runtime_rich_logging"

DEFAULT_MODEL = "openai/gpt-4o-mini"


class Settings(BaseModel):
    model: str = DEFAULT_MODEL
    endpoint: str | None = None
    api_key: str | None = None
    iteration_cap: int = Field(default=10, ge=1)
    timeout: float = Field(default=120.0, gt=0)
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        """
        Build settings from the environment (loading `.env` first).

        AI_MODEL / AI_ENDPOINT / AI_API_KEY select the provider; the API key
        falls back to OPENROUTER_API_KEY. TOOL_RUNTIME_* tune the runtime.
        """
        if env is None:
            load_dotenv()
            env = os.environ

        values: dict[str, object] = {}
        if env.get("AI_MODEL"):
            values["model"] = env["AI_MODEL"]
        if env.get("AI_ENDPOINT"):
            values["endpoint"] = env["AI_ENDPOINT"]
        api_key = env.get("AI_API_KEY") or env.get("OPENROUTER_API_KEY")
        if api_key:
            values["api_key"] = api_key
        if env.get("TOOL_RUNTIME_ITERATION_CAP"):
            values["iteration_cap"] = env["TOOL_RUNTIME_ITERATION_CAP"]
        if env.get("TOOL_RUNTIME_TIMEOUT"):
            values["timeout"] = env["TOOL_RUNTIME_TIMEOUT"]
        if env.get("TOOL_RUNTIME_LOG_LEVEL"):
            values["log_level"] = env["TOOL_RUNTIME_LOG_LEVEL"]
        return cls.model_validate(values)


def _parse_level(raw: str) -> int:
    level = logging.getLevelName(raw.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: str = "WARNING") -> logging.Logger:
    """Attach a single RichHandler to the package logger. Safe to call repeatedly."""
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(_parse_level(level))
    logger.propagate = False

    if not any(getattr(handler, _CONFIGURED_ATTR, False) for handler in logger.handlers):
        handler = RichHandler(rich_tracebacks=True, show_path=False, markup=False)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        setattr(handler, _CONFIGURED_ATTR, True)
        logger.addHandler(handler)

    return logger
