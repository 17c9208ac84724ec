from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


@dataclass(frozen=True)
class ConversationSettings:
    """Conversation runtime settings loaded from environment with fail-fast validation."""

    model_name: str = "gpt-4o-mini"
    temperature: float = 0.2
    max_completion_tokens: int = 4_096
    chunk_size: int = 64
    max_tool_rounds: int = 8
    turn_timeout_seconds: int = 120
    emit_tool_error_events: bool = True
    state_store_root: str = "state_store"
    session_id: str = "default"

    @classmethod
    def from_env(cls) -> "ConversationSettings":
        return cls(
            model_name=os.getenv("CONVERSATION_MODEL", "gpt-4o-mini"),
            temperature=_get_env_float("CONVERSATION_TEMPERATURE", default=0.2, minimum=0.0, maximum=2.0),
            max_completion_tokens=_get_env_int("CONVERSATION_MAX_COMPLETION_TOKENS", default=4_096, minimum=64),
            chunk_size=_get_env_int("CONVERSATION_CHUNK_SIZE", default=64, minimum=1, maximum=4_096),
            max_tool_rounds=_get_env_int("CONVERSATION_MAX_TOOL_ROUNDS", default=8, minimum=1, maximum=64),
            turn_timeout_seconds=_get_env_int("CONVERSATION_TURN_TIMEOUT_SECONDS", default=120, minimum=1),
            emit_tool_error_events=_get_env_bool("CONVERSATION_EMIT_TOOL_ERROR_EVENTS", default=True),
            state_store_root=os.getenv("CONVERSATION_STATE_STORE_ROOT", "state_store"),
            session_id=os.getenv("CONVERSATION_SESSION_ID", "default"),
        ).normalized()

    def normalized(self) -> "ConversationSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model_name = self.model_name.strip()
        if not model_name:
            raise ValueError("CONVERSATION_MODEL must be non-empty")
        if self.chunk_size < 1:
            raise ValueError(f"CONVERSATION_CHUNK_SIZE must be >= 1, got: {self.chunk_size}")
        if self.max_tool_rounds < 1:
            raise ValueError(f"CONVERSATION_MAX_TOOL_ROUNDS must be >= 1, got: {self.max_tool_rounds}")
        if self.turn_timeout_seconds < 1:
            raise ValueError(
                f"CONVERSATION_TURN_TIMEOUT_SECONDS must be >= 1, got: {self.turn_timeout_seconds}"
            )
        if not self.state_store_root.strip():
            raise ValueError("CONVERSATION_STATE_STORE_ROOT must be non-empty")
        session_id = self.session_id.strip()
        if not session_id:
            raise ValueError("CONVERSATION_SESSION_ID must be non-empty")
        return ConversationSettings(
            model_name=model_name,
            temperature=self.temperature,
            max_completion_tokens=self.max_completion_tokens,
            chunk_size=self.chunk_size,
            max_tool_rounds=self.max_tool_rounds,
            turn_timeout_seconds=self.turn_timeout_seconds,
            emit_tool_error_events=self.emit_tool_error_events,
            state_store_root=self.state_store_root,
            session_id=session_id,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")
