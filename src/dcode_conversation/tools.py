"""Tool contracts for conversational turns.

A ``ToolDefinition`` composes a LangChain ``BaseTool`` (name, description,
argument schema, execution) with optional lifecycle hooks. The inference engine
validates arguments against the tool's schema, fires ``on_start`` immediately
before execution and ``on_complete`` immediately after it. ``attach_lifecycle``
decorates any definition so those hooks report to the real-time channel.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, Generic, TypeVar

from langchain_core.tools import BaseTool, StructuredTool
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import ConversationResponseCallback, ToolEvent, ToolStatus
from .utils import maybe_await

logger = logging.getLogger(__name__)

ArgsT = TypeVar("ArgsT", bound=BaseModel)
ResultT = TypeVar("ResultT")

StartHook = Callable[[dict[str, Any]], Awaitable[None] | None]
CompleteHook = Callable[[dict[str, Any], Any], Awaitable[None] | None]
ErrorHook = Callable[[dict[str, Any], BaseException], Awaitable[None] | None]

QUEUE_REQUEST_TOOL_NAME = "queue_request"
QUEUE_REQUEST_MIN_LENGTH = 8
QUEUE_REQUEST_SUCCESS = "Modification request queued successfully, will be implemented in the next phase of development."


@dataclass(frozen=True)
class ToolDefinition(Generic[ArgsT, ResultT]):
    """A capability the model may invoke mid-turn, plus optional lifecycle hooks."""

    tool: BaseTool
    on_start: StartHook | None = None
    on_complete: CompleteHook | None = None
    on_error: ErrorHook | None = None

    @property
    def name(self) -> str:
        return self.tool.name

    @property
    def description(self) -> str:
        return self.tool.description

    @property
    def args_schema(self) -> type[BaseModel] | None:
        schema = self.tool.args_schema
        if isinstance(schema, type) and issubclass(schema, BaseModel):
            return schema
        return None

    def validate_args(self, args: dict[str, Any]) -> dict[str, Any]:
        """Validate raw model-supplied arguments against the tool schema.

        Raises:
            pydantic.ValidationError: If the arguments violate the schema.
        """
        schema = self.args_schema
        if schema is None:
            return dict(args)
        return schema.model_validate(args).model_dump()

    async def execute(self, args: dict[str, Any]) -> ResultT:
        return await self.tool.ainvoke(args)


def attach_lifecycle(
    definition: ToolDefinition[ArgsT, ResultT],
    notify: ConversationResponseCallback,
    conversation_id: str,
    *,
    emit_errors: bool = True,
) -> ToolDefinition[ArgsT, ResultT]:
    """Return a copy of ``definition`` whose lifecycle hooks report to ``notify``.

    Hooks already present on ``definition`` still run, before the notification.
    Notifications carry empty chunk text, ``is_streaming=False`` and the turn's
    ``conversation_id``. ``error`` notifications are only wired when
    ``emit_errors`` is set.
    """
    name = definition.name
    inner_start, inner_complete, inner_error = definition.on_start, definition.on_complete, definition.on_error

    async def _notify(status: ToolStatus, args: dict[str, Any]) -> None:
        event = ToolEvent(name=name, status=status, args=dict(args))
        await maybe_await(notify("", conversation_id, False, event))

    async def on_start(args: dict[str, Any]) -> None:
        if inner_start is not None:
            await maybe_await(inner_start(args))
        await _notify(ToolStatus.START, args)

    async def on_complete(args: dict[str, Any], result: Any) -> None:
        if inner_complete is not None:
            await maybe_await(inner_complete(args, result))
        await _notify(ToolStatus.SUCCESS, args)

    async def on_error(args: dict[str, Any], error: BaseException) -> None:
        if inner_error is not None:
            await maybe_await(inner_error(args, error))
        await _notify(ToolStatus.ERROR, args)

    return replace(
        definition,
        on_start=on_start,
        on_complete=on_complete,
        on_error=on_error if emit_errors else inner_error,
    )


class ModificationRequestSlot:
    """Turn-scoped holder for the modification request captured by ``queue_request``.

    Single slot, last write wins. One slot belongs to exactly one turn.
    """

    def __init__(self) -> None:
        self._value: str | None = None
        self.writes = 0

    def set(self, modification_request: str) -> None:
        self._value = modification_request
        self.writes += 1

    @property
    def is_set(self) -> bool:
        return self._value is not None

    @property
    def value(self) -> str:
        return self._value or ""


class QueueRequestArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    modificationRequest: str = Field(  # noqa: N815 - wire name exposed to the model.
        min_length=QUEUE_REQUEST_MIN_LENGTH,
        description=(
            "The changes needed to be made to the app. Please don't supply any code level or implementation "
            "details. Provide detailed requirements and description of the changes you want to make."
        ),
    )

    @field_validator("modificationRequest")
    @classmethod
    def _require_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("modificationRequest must not be blank")
        return value


def build_queue_request_tool(state_mutator: Callable[[str], None]) -> ToolDefinition[QueueRequestArgs, str]:
    """Build the per-turn ``queue_request`` tool around ``state_mutator``.

    Args:
        state_mutator: Receives the validated modification request. Called once
            per tool invocation; repeated calls overwrite earlier ones.

    Returns:
        ToolDefinition whose execution returns ``QUEUE_REQUEST_SUCCESS``.
    """

    def _queue_request(modificationRequest: str) -> str:  # noqa: N803
        logger.info("Queueing app edit request (%d chars)", len(modificationRequest))
        state_mutator(modificationRequest)
        return QUEUE_REQUEST_SUCCESS

    tool = StructuredTool.from_function(
        func=_queue_request,
        name=QUEUE_REQUEST_TOOL_NAME,
        description="Queue up modification requests or changes, to be implemented in the next development phase",
        args_schema=QueueRequestArgs,
    )
    return ToolDefinition(tool=tool)
