"""Streaming, tool-augmented inference for conversational turns.

``ChatInferenceEngine`` runs a LangGraph loop of two nodes::

    START -> model -> (tool calls pending?) -> tools -> model -> ... -> END

The model node streams text deltas into a ``ChunkBuffer`` that forwards them
to the caller in fixed-size batches. The tools node executes each requested
tool in order: arguments are validated against the tool's schema first, then
``on_start`` fires, the tool runs, and ``on_complete`` fires. Everything the
model said across all rounds, concatenated, is the completion text.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, TypedDict, TypeVar

import openai
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
    message_chunk_to_message,
)
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph
from pydantic import ValidationError

from .errors import RateLimitExceededError, SecurityError, TurnCancelledError
from .llm import get_conversation_model
from .models import ConversationMessage, InferenceContext, MessageRole
from .settings import ConversationSettings
from .tools import ToolDefinition
from .utils import maybe_await

logger = logging.getLogger(__name__)

T = TypeVar("T")
ChunkSink = Callable[[str], Awaitable[None] | None]

DEFAULT_CHUNK_SIZE = 64
DEFAULT_MAX_TOOL_ROUNDS = 8


class CancellationToken:
    """Cooperative cancellation handle threaded through one turn."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelledError(self.reason or "turn cancelled")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first, in which case the work is cancelled."""
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if not work.done():
            work.cancel()
            try:
                await work
            except asyncio.CancelledError:
                pass
            self.raise_if_cancelled()
        return work.result()


class ChunkBuffer:
    """Batches streamed text into chunks of at least ``chunk_size`` characters.

    The concatenation of every emitted chunk equals the concatenation of every
    pushed delta once ``flush`` has been called.
    """

    def __init__(self, sink: ChunkSink, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got: {chunk_size}")
        self._sink = sink
        self._chunk_size = chunk_size
        self._pending: list[str] = []
        self._pending_size = 0
        self.emitted: list[str] = []

    async def push(self, delta: str) -> None:
        if not delta:
            return
        self._pending.append(delta)
        self._pending_size += len(delta)
        if self._pending_size >= self._chunk_size:
            await self.flush()

    async def flush(self) -> None:
        if not self._pending:
            return
        chunk = "".join(self._pending)
        self._pending.clear()
        self._pending_size = 0
        self.emitted.append(chunk)
        await maybe_await(self._sink(chunk))

    @property
    def text(self) -> str:
        return "".join(self.emitted)


@dataclass(frozen=True)
class InferenceResult:
    text: str
    tool_calls: int = 0
    rounds: int = 0


class InferenceEngine(Protocol):
    """Anything able to run one streamed, tool-augmented completion."""

    async def run(
        self,
        *,
        messages: Sequence[BaseMessage],
        tools: Sequence[ToolDefinition[Any, Any]],
        on_chunk: ChunkSink,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        context: InferenceContext | None = None,
        cancellation: CancellationToken | None = None,
    ) -> InferenceResult: ...


def to_langchain_messages(system_prompt: str, transcript: Sequence[ConversationMessage]) -> list[BaseMessage]:
    """Render the system preamble plus transcript as LangChain chat messages.

    Transcript ``tool`` entries carry no tool-call id, so they are replayed as
    assistant-side notes.
    """
    messages: list[BaseMessage] = [SystemMessage(content=system_prompt)]
    for entry in transcript:
        if entry.role == MessageRole.USER:
            messages.append(HumanMessage(content=entry.content))
        else:
            messages.append(AIMessage(content=entry.content))
    return messages


def content_to_text(content: Any) -> str:
    """Extract plain text from a message content payload (string or content blocks)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") in (None, "text", "output_text"):
                text_value = block.get("text")
                if isinstance(text_value, str):
                    parts.append(text_value)
        return "".join(parts)
    return ""


def _tool_output_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    if isinstance(result, ToolMessage):
        return content_to_text(result.content)
    try:
        return json.dumps(result, default=str)
    except (TypeError, ValueError):
        return str(result)


def translate_provider_error(exc: Exception) -> Exception:
    """Map provider SDK errors onto the conversation runtime's fatal error types.

    Errors without a fatal counterpart are returned unchanged.
    """
    if isinstance(exc, openai.RateLimitError):
        return RateLimitExceededError(f"Inference rate limit exceeded: {exc}")
    if isinstance(exc, openai.PermissionDeniedError):
        return SecurityError(f"Inference request rejected by provider policy: {exc}")
    if isinstance(exc, openai.BadRequestError) and getattr(exc, "code", None) == "content_filter":
        return SecurityError(f"Inference request blocked by content filter: {exc}")
    return exc


_STREAM_END = object()


async def _next_chunk(stream: AsyncIterator[Any]) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _STREAM_END


async def _close_stream(stream: AsyncIterator[Any]) -> None:
    """Close an abandoned model stream so the provider connection is released."""
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


class InferenceState(TypedDict, total=False):
    messages: list[BaseMessage]
    rounds: int
    tool_calls: int


@dataclass
class _InferenceRun:
    """Per-call wiring: the bound model, tools, stream buffer and cancellation token."""

    model: Any
    tools: dict[str, ToolDefinition[Any, Any]]
    buffer: ChunkBuffer
    cancellation: CancellationToken
    max_tool_rounds: int

    def build_graph(self) -> StateGraph:
        graph = StateGraph(InferenceState)
        graph.add_node("model", self._call_model)
        graph.add_node("tools", self._run_tools)
        graph.add_edge(START, "model")
        graph.add_conditional_edges("model", self._route, {"tools": "tools", END: END})
        graph.add_edge("tools", "model")
        return graph

    async def _call_model(self, state: InferenceState, config: RunnableConfig) -> InferenceState:
        aggregate: AIMessageChunk | None = None
        stream = self.model.astream(state["messages"], config=config)
        try:
            while True:
                self.cancellation.raise_if_cancelled()
                chunk = await self.cancellation.run(_next_chunk(stream))
                if chunk is _STREAM_END:
                    break
                if not isinstance(chunk, AIMessageChunk):
                    continue
                aggregate = chunk if aggregate is None else aggregate + chunk
                await self.buffer.push(content_to_text(chunk.content))
        except TurnCancelledError:
            await _close_stream(stream)
            raise
        except Exception as exc:
            translated = translate_provider_error(exc)
            if translated is exc:
                raise
            raise translated from exc
        await self.buffer.flush()

        message = message_chunk_to_message(aggregate) if aggregate is not None else AIMessage(content="")
        rounds = state.get("rounds", 0) + 1
        logger.debug("Model round %d finished with %d tool call(s)", rounds, len(getattr(message, "tool_calls", [])))
        return {"messages": [*state["messages"], message], "rounds": rounds}

    def _route(self, state: InferenceState) -> str:
        last = state["messages"][-1]
        pending = bool(getattr(last, "tool_calls", None) or getattr(last, "invalid_tool_calls", None))
        if not pending:
            return END
        if state.get("rounds", 0) >= self.max_tool_rounds:
            logger.warning("Tool round limit (%d) reached; finishing without executing pending calls", self.max_tool_rounds)
            return END
        return "tools"

    async def _run_tools(self, state: InferenceState) -> InferenceState:
        last = state["messages"][-1]
        results: list[BaseMessage] = []
        executed = 0
        for invalid in getattr(last, "invalid_tool_calls", None) or []:
            logger.warning("Model produced an unparseable call for tool %s", invalid.get("name"))
            results.append(
                ToolMessage(
                    content=f"Error: arguments for tool '{invalid.get('name')}' were not valid JSON: {invalid.get('error')}",
                    tool_call_id=invalid.get("id") or "",
                    status="error",
                )
            )
        for call in getattr(last, "tool_calls", None) or []:
            self.cancellation.raise_if_cancelled()
            results.append(await self._run_one(call))
            executed += 1
        return {
            "messages": [*state["messages"], *results],
            "tool_calls": state.get("tool_calls", 0) + executed,
        }

    async def _run_one(self, call: dict[str, Any]) -> ToolMessage:
        name = call["name"]
        call_id = call.get("id") or ""
        args = dict(call.get("args") or {})
        definition = self.tools.get(name)
        if definition is None:
            logger.warning("Model requested unknown tool %s", name)
            return ToolMessage(content=f"Error: tool '{name}' is not available", tool_call_id=call_id, status="error")
        try:
            definition.validate_args(args)
        except ValidationError as exc:
            logger.warning("Rejected call to %s: %s", name, exc.errors(include_url=False))
            return ToolMessage(
                content=f"Error: invalid arguments for tool '{name}': {exc}",
                tool_call_id=call_id,
                name=name,
                status="error",
            )

        if definition.on_start is not None:
            await maybe_await(definition.on_start(args))
        try:
            result = await self.cancellation.run(definition.execute(args))
        except Exception as exc:
            logger.error("Tool %s failed: %s", name, exc)
            if definition.on_error is not None:
                await maybe_await(definition.on_error(args, exc))
            raise
        if definition.on_complete is not None:
            await maybe_await(definition.on_complete(args, result))
        return ToolMessage(content=_tool_output_text(result), tool_call_id=call_id, name=name)


class ChatInferenceEngine:
    """Inference engine backed by a LangChain chat model with native tool calling."""

    def __init__(self, model: BaseChatModel, *, max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS) -> None:
        if max_tool_rounds < 1:
            raise ValueError(f"max_tool_rounds must be >= 1, got: {max_tool_rounds}")
        self.model = model
        self.max_tool_rounds = max_tool_rounds

    @classmethod
    def from_settings(cls, settings: ConversationSettings) -> "ChatInferenceEngine":
        return cls(get_conversation_model(settings), max_tool_rounds=settings.max_tool_rounds)

    async def run(
        self,
        *,
        messages: Sequence[BaseMessage],
        tools: Sequence[ToolDefinition[Any, Any]],
        on_chunk: ChunkSink,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        context: InferenceContext | None = None,
        cancellation: CancellationToken | None = None,
    ) -> InferenceResult:
        """Stream one tool-augmented completion.

        Args:
            messages: System preamble followed by the transcript.
            tools: Tool definitions the model may call; names must be unique.
            on_chunk: Receives batched text deltas in model order.
            chunk_size: Minimum characters per forwarded batch.
            context: Tracing token forwarded as LangChain run metadata.
            cancellation: Raced against every stream read and tool call; a stalled
                stream is closed as soon as it fires.

        Returns:
            InferenceResult whose ``text`` equals the concatenation of all
            chunks passed to ``on_chunk``.

        Raises:
            RateLimitExceededError: If the provider rate limit is exhausted.
            SecurityError: If the provider rejects the request on policy grounds.
            TurnCancelledError: If ``cancellation`` fires mid-call.
        """
        by_name: dict[str, ToolDefinition[Any, Any]] = {}
        for definition in tools:
            if definition.name in by_name:
                raise ValueError(f"Duplicate tool name in one turn: {definition.name}")
            by_name[definition.name] = definition

        bound = self.model.bind_tools([definition.tool for definition in tools]) if tools else self.model
        run = _InferenceRun(
            model=bound,
            tools=by_name,
            buffer=ChunkBuffer(on_chunk, chunk_size=chunk_size),
            cancellation=cancellation or CancellationToken(),
            max_tool_rounds=self.max_tool_rounds,
        )
        config: dict[str, Any] = context.as_run_config() if context is not None else {}
        config["recursion_limit"] = self.max_tool_rounds * 2 + 4
        final_state = await run.build_graph().compile().ainvoke(
            {"messages": list(messages), "rounds": 0, "tool_calls": 0},
            config=config,
        )
        await run.buffer.flush()
        return InferenceResult(
            text=run.buffer.text,
            tool_calls=final_state.get("tool_calls", 0),
            rounds=final_state.get("rounds", 0),
        )
