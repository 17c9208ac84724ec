"""Conversational turn processing.

One call to ``UserConversationProcessor.execute`` handles one user message:
it renders the system preamble with the latest project context, streams a
tool-augmented completion to the caller, captures any modification request the
model queued, and returns the transcript extended by exactly one user entry
and one assistant entry.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from .errors import FATAL_TURN_ERRORS
from .inference import CancellationToken, InferenceEngine, to_langchain_messages
from .lookup import informational_tools
from .models import (
    ConversationalResponse,
    ConversationMessage,
    InferenceContext,
    MessageRole,
    UserConversationInputs,
    UserConversationOutputs,
)
from .project_updates import ProjectUpdateRecorder, ProjectUpdateType, is_project_update_type, process_project_updates
from .prompts import CONVERSATION_SYSTEM_PROMPT, render_system_prompt
from .settings import ConversationSettings
from .tools import ModificationRequestSlot, ToolDefinition, attach_lifecycle, build_queue_request_tool
from .utils import maybe_await, unique_conversation_id

logger = logging.getLogger(__name__)

FALLBACK_USER_RESPONSE = (
    "I understand you'd like to make some changes to your project. "
    "Let me make sure this is incorporated in the next phase of development."
)
FALLBACK_REQUEST_PREFIX = "User request: "


class UserConversationProcessor:
    """Runs conversational turns against an inference engine.

    The processor holds no per-turn state; every call to ``execute`` builds its
    own modification-request slot and tool set, so concurrent turns never
    share extraction state.
    """

    def __init__(
        self,
        engine: InferenceEngine,
        *,
        settings: ConversationSettings | None = None,
        system_prompt_template: str = CONVERSATION_SYSTEM_PROMPT,
        tool_factory: Callable[[], Sequence[ToolDefinition[Any, Any]]] = informational_tools,
    ) -> None:
        self.engine = engine
        self.settings = settings if settings is not None else ConversationSettings()
        self.system_prompt_template = system_prompt_template
        self.tool_factory = tool_factory

    async def execute(
        self,
        inputs: UserConversationInputs,
        *,
        project_context: str = "",
        context: InferenceContext | None = None,
        cancellation: CancellationToken | None = None,
    ) -> UserConversationOutputs:
        """Process one user message.

        Args:
            inputs: User message, past transcript and real-time callback.
            project_context: Opaque summary of the project merged into the
                system preamble. Never stored in the transcript.
            context: Tracing token forwarded to the inference engine.
            cancellation: Optional token that aborts the turn.

        Returns:
            The response plus ``past_messages`` extended by one user and one
            assistant entry. On recoverable failures the response is the
            deterministic fallback.

        Raises:
            RateLimitExceededError: Propagated unchanged from the engine.
            SecurityError: Propagated unchanged from the engine.
            TurnCancelledError: If ``cancellation`` fired during the turn.
        """
        user_message = inputs.user_message
        past_messages = list(inputs.past_messages)
        taken_ids = {message.conversation_id for message in past_messages}
        logger.info("Processing user message (%d chars, %d past messages)", len(user_message), len(past_messages))

        user_entry = self._new_entry(MessageRole.USER, user_message, taken_ids)
        try:
            system_prompt = render_system_prompt(project_context, self.system_prompt_template)
            ai_conversation_id = unique_conversation_id(taken_ids)
            taken_ids.add(ai_conversation_id)
            logger.info("Generated conversation ID %s", ai_conversation_id)

            callback = inputs.conversation_response_callback
            slot = ModificationRequestSlot()
            streamed: list[str] = []

            def capture_request(modification_request: str) -> None:
                logger.info("Received app edit request (%d chars)", len(modification_request))
                slot.set(modification_request)

            async def on_chunk(chunk: str) -> None:
                streamed.append(chunk)
                await maybe_await(callback(chunk, ai_conversation_id, True, None))

            tools = [
                attach_lifecycle(
                    definition,
                    callback,
                    ai_conversation_id,
                    emit_errors=self.settings.emit_tool_error_events,
                )
                for definition in [*self.tool_factory(), build_queue_request_tool(capture_request)]
            ]
            logger.info(
                "Executing inference for user message (conversation=%s, tools=%s)",
                ai_conversation_id,
                [tool.name for tool in tools],
            )

            async with asyncio.timeout(self.settings.turn_timeout_seconds):
                result = await self.engine.run(
                    messages=to_langchain_messages(system_prompt, [*past_messages, user_entry]),
                    tools=tools,
                    on_chunk=on_chunk,
                    chunk_size=self.settings.chunk_size,
                    context=context,
                    cancellation=cancellation,
                )

            user_response = "".join(streamed)
            if result.text != user_response:
                logger.warning(
                    "Completion text (%d chars) differs from streamed text (%d chars)",
                    len(result.text),
                    len(user_response),
                )
            logger.info(
                "Successfully processed user message (streamed=%s, enhanced_request=%s, request_writes=%d, tool_calls=%d)",
                bool(user_response),
                slot.is_set,
                slot.writes,
                result.tool_calls,
            )
            response = ConversationalResponse(enhanced_user_request=slot.value, user_response=user_response)
            assistant_entry = self._new_entry(MessageRole.ASSISTANT, result.text, taken_ids)
            return UserConversationOutputs(
                conversation_response=response,
                messages=[*past_messages, user_entry, assistant_entry],
            )
        except FATAL_TURN_ERRORS as exc:
            logger.error("Turn aborted by %s: %s", type(exc).__name__, exc)
            raise
        except Exception:
            logger.exception("Error processing user message; returning fallback response")
            return UserConversationOutputs(
                conversation_response=ConversationalResponse(
                    enhanced_user_request=f"{FALLBACK_REQUEST_PREFIX}{user_message}",
                    user_response=FALLBACK_USER_RESPONSE,
                ),
                messages=[
                    *past_messages,
                    user_entry,
                    self._new_entry(MessageRole.ASSISTANT, FALLBACK_USER_RESPONSE, taken_ids),
                ],
            )

    def process_project_updates(
        self,
        update_type: ProjectUpdateType | str,
        data: Mapping[str, Any] | None = None,
        *,
        recorder: ProjectUpdateRecorder | None = None,
    ) -> list[ConversationMessage]:
        return process_project_updates(update_type, data, recorder=recorder)

    @staticmethod
    def is_project_update_type(kind: object) -> bool:
        return is_project_update_type(kind)

    @staticmethod
    def _new_entry(role: MessageRole, content: str, taken_ids: set[str]) -> ConversationMessage:
        conversation_id = unique_conversation_id(taken_ids)
        taken_ids.add(conversation_id)
        return ConversationMessage(role=role, content=content, conversation_id=conversation_id)
