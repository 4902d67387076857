import logging

import pytest
from pydantic import ValidationError
from rich.logging import RichHandler

from tool_runtime.config import DEFAULT_MODEL, Settings, configure_logging


def test_settings_defaults_from_empty_env():
    settings = Settings.from_env({})
    assert settings.model == DEFAULT_MODEL
    assert settings.api_key is None
    assert settings.iteration_cap == 10


def test_settings_read_provider_and_runtime_vars():
    settings = Settings.from_env(
        {
            "AI_MODEL": "anthropic/claude-3.5-haiku",
            "AI_ENDPOINT": "http://localhost:8080/v1",
            "OPENROUTER_API_KEY": "sk-or",
            "TOOL_RUNTIME_ITERATION_CAP": "4",
            "TOOL_RUNTIME_TIMEOUT": "2.5",
            "TOOL_RUNTIME_LOG_LEVEL": "debug",
        }
    )
    assert settings.model == "anthropic/claude-3.5-haiku"
    assert settings.endpoint == "http://localhost:8080/v1"
    assert settings.api_key == "sk-or"
    assert settings.iteration_cap == 4
    assert settings.timeout == 2.5
    assert settings.log_level == "debug"


def test_ai_api_key_wins_over_openrouter_key():
    assert Settings.from_env({"AI_API_KEY": "primary", "OPENROUTER_API_KEY": "fallback"}).api_key == "primary"


def test_settings_reject_unbounded_iteration_cap():
    with pytest.raises(ValidationError):
        Settings.from_env({"TOOL_RUNTIME_ITERATION_CAP": "0"})


@pytest.fixture
def restore_package_logger():
    logger = logging.getLogger("tool_runtime")
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


def test_configure_logging_is_idempotent(restore_package_logger):
    logger = configure_logging("debug")
    configure_logging("info")

    rich_handlers = [h for h in logger.handlers if isinstance(h, RichHandler)]
    assert len(rich_handlers) == 1
    assert logger.level == logging.INFO
    assert logger.propagate is False
