from __future__ import annotations

import json
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

import pytest
from langchain_core.messages import AIMessageChunk, BaseMessage

from dcode_conversation.models import ToolEvent


class ScriptedChatModel:
    """Chat model double that replays one scripted round of chunks per model call.

    A round is either a list of ``AIMessageChunk`` objects or an exception to
    raise when the model is called.
    """

    def __init__(self, rounds: Sequence[list[AIMessageChunk] | BaseException]) -> None:
        self.rounds = list(rounds)
        self.calls: list[list[BaseMessage]] = []
        self.configs: list[Any] = []
        self.bound_tools: list[Any] = []

    def bind_tools(self, tools: Sequence[Any], **kwargs: Any) -> "ScriptedChatModel":
        self.bound_tools = list(tools)
        return self

    async def astream(self, messages: Sequence[BaseMessage], config: Any = None, **kwargs: Any) -> AsyncIterator[AIMessageChunk]:
        self.calls.append(list(messages))
        self.configs.append(config)
        if not self.rounds:
            raise AssertionError("ScriptedChatModel called more times than scripted")
        step = self.rounds.pop(0)
        if isinstance(step, BaseException):
            raise step
        for chunk in step:
            yield chunk


def text_round(*deltas: str) -> list[AIMessageChunk]:
    return [AIMessageChunk(content=delta) for delta in deltas]


def tool_round(*calls: tuple[str, dict[str, Any]], text: str = "") -> list[AIMessageChunk]:
    """One model round that optionally says ``text`` and then requests ``calls``."""
    chunks = [AIMessageChunk(content=text)] if text else []
    chunks.append(
        AIMessageChunk(
            content="",
            tool_call_chunks=[
                {"name": name, "args": json.dumps(args), "id": f"call_{name}_{idx}", "index": idx}
                for idx, (name, args) in enumerate(calls)
            ],
        )
    )
    return chunks


@dataclass
class EventRecorder:
    """Captures every real-time callback a turn emits."""

    events: list[tuple[str, str, bool, ToolEvent | None]] = field(default_factory=list)

    def __call__(self, chunk: str, conversation_id: str, is_streaming: bool, tool_event: ToolEvent | None = None) -> None:
        self.events.append((chunk, conversation_id, is_streaming, tool_event))

    @property
    def streamed(self) -> list[str]:
        return [chunk for chunk, _, streaming, _ in self.events if streaming]

    @property
    def tool_events(self) -> list[ToolEvent]:
        return [event for _, _, streaming, event in self.events if not streaming and event is not None]

    @property
    def conversation_ids(self) -> set[str]:
        return {conversation_id for _, conversation_id, _, _ in self.events}


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture(autouse=True)
def _no_network_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests independent of any developer environment."""
    for name in ("BRIGHTDATA_API_KEY", "BRIGHTDATA_SERP_ZONE", "BRIGHTDATA_SERP_COUNTRY"):
        monkeypatch.delenv(name, raising=False)
