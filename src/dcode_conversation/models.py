from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolStatus(str, Enum):
    START = "start"
    SUCCESS = "success"
    ERROR = "error"


class ConversationMessage(BaseModel):
    """One immutable transcript entry.

    ``conversation_id`` correlates entries (and streamed chunks) emitted within
    the same turn. It is not an ordering key: transcript order is list order.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    role: MessageRole
    content: str
    conversation_id: str = Field(min_length=1)


class ToolEvent(BaseModel):
    """Out-of-band tool lifecycle notification sent over the real-time channel."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    name: str
    status: ToolStatus
    args: dict[str, Any] | None = None


class ConversationalResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    enhanced_user_request: str = ""
    user_response: str = ""


ConversationResponseCallback = Callable[[str, str, bool, ToolEvent | None], Awaitable[None] | None]


@dataclass(frozen=True)
class UserConversationInputs:
    """Inputs for one conversational turn."""

    user_message: str
    past_messages: Sequence[ConversationMessage]
    conversation_response_callback: ConversationResponseCallback


@dataclass(frozen=True)
class UserConversationOutputs:
    """Result of one conversational turn.

    ``messages`` is always the past transcript plus exactly one user entry and
    one assistant entry.
    """

    conversation_response: ConversationalResponse
    messages: list[ConversationMessage] = field(default_factory=list)


@dataclass(frozen=True)
class InferenceContext:
    """Tracing token handed to the inference engine for one call."""

    agent_id: str
    user_id: str | None = None
    action_name: str = "conversationalResponse"
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_run_config(self) -> dict[str, Any]:
        """Render as a LangChain ``RunnableConfig`` fragment."""
        metadata = {"agent_id": self.agent_id, **self.metadata}
        if self.user_id is not None:
            metadata["user_id"] = self.user_id
        return {
            "run_name": self.action_name,
            "tags": [self.action_name],
            "metadata": metadata,
        }
