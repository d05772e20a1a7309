"""Typed runtime configuration for the tool loop."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from llm_toolloop.errors import ConfigurationError

logger = logging.getLogger(__name__)

MAX_TURNS_ENV = "LLM_TOOLLOOP_MAX_TURNS"
TOOL_TIMEOUT_ENV = "LLM_TOOLLOOP_TOOL_TIMEOUT"
MODEL_TIMEOUT_ENV = "LLM_TOOLLOOP_MODEL_TIMEOUT"
PARALLEL_TOOLS_ENV = "LLM_TOOLLOOP_PARALLEL_TOOLS"

DEFAULT_MAX_TURNS: int = 20
"""Maximum model rounds before the loop stops in BudgetExhausted."""

DEFAULT_CONNECT_TIMEOUT: float = 30.0
"""Seconds to wait for a remote tool provider to initialize."""

DEFAULT_TOOL_RESULT_MAX_LENGTH: int = 50_000
"""Maximum character length of a tool result rendered for the model."""

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class LoopConfig:
    """Loop policy resolved once and passed explicitly into run_tool_loop().

    Timeouts are per individual call: ``tool_timeout`` bounds each tool
    dispatch, ``model_timeout`` bounds each model round. ``None`` disables
    the deadline.
    """

    max_turns: int = DEFAULT_MAX_TURNS
    tool_timeout: float | None = None
    model_timeout: float | None = None
    parallel_tool_calls: bool = True

    def validate(self) -> "LoopConfig":
        """Raise ConfigurationError if any field is out of range."""
        if isinstance(self.max_turns, bool) or not isinstance(self.max_turns, int):
            raise ConfigurationError(
                f"max_turns must be an integer, got {type(self.max_turns).__name__}"
            )
        if self.max_turns < 1:
            raise ConfigurationError(f"max_turns must be >= 1, got {self.max_turns}")
        for field_name in ("tool_timeout", "model_timeout"):
            value = getattr(self, field_name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ConfigurationError(
                    f"{field_name} must be a positive number or None, got {value!r}"
                )
        return self

    @classmethod
    def from_env(cls) -> "LoopConfig":
        """Build config from environment variables, defaulting invalid values."""
        return cls(
            max_turns=_int_from_env(MAX_TURNS_ENV, DEFAULT_MAX_TURNS),
            tool_timeout=_timeout_from_env(TOOL_TIMEOUT_ENV),
            model_timeout=_timeout_from_env(MODEL_TIMEOUT_ENV),
            parallel_tool_calls=_bool_from_env(PARALLEL_TOOLS_ENV, True),
        )


def _int_from_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value < 1:
        logger.warning("Invalid %s=%r; expected a positive integer. Defaulting to %d.", name, raw, default)
        return default
    return value


def _timeout_from_env(name: str) -> float | None:
    raw = os.environ.get(name, "").strip().lower()
    if raw in {"", "none", "off"}:
        return None
    try:
        value = float(raw)
    except ValueError:
        value = 0.0
    if value <= 0:
        logger.warning("Invalid %s=%r; expected seconds > 0. Disabling the timeout.", name, raw)
        return None
    return value


def _bool_from_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    logger.warning("Invalid %s=%r; expected on/off boolean. Defaulting to %s.", name, raw, default)
    return default
