"""Compaction of build-pipeline milestones into transcript entries.

Only a fixed set of milestone kinds is reflected in the conversation, and only
as a short memo naming the kind. Payloads never enter the transcript; callers
that want an audit trail pass a ``recorder`` that stores them elsewhere, keyed
by the memo's conversation id.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

from .models import ConversationMessage, MessageRole
from .utils import generate_conversation_id

logger = logging.getLogger(__name__)


class ProjectUpdateType(str, Enum):
    PHASE_IMPLEMENTING = "phase_implementing"
    PHASE_IMPLEMENTED = "phase_implemented"
    CODE_REVIEW = "code_review"
    FILE_REGENERATING = "file_regenerating"
    FILE_REGENERATED = "file_regenerated"
    DEPLOYMENT_COMPLETED = "deployment_completed"
    COMMAND_EXECUTING = "command_executing"


PROJECT_UPDATE_TYPES: frozenset[str] = frozenset(kind.value for kind in ProjectUpdateType)

ProjectUpdateRecorder = Callable[[str, str, Mapping[str, Any] | None], None]


def _kind_value(kind: object) -> object:
    return kind.value if isinstance(kind, Enum) else kind


def is_project_update_type(kind: object) -> bool:
    """Return True iff ``kind`` names one of the milestone kinds kept in the transcript."""
    value = _kind_value(kind)
    return isinstance(value, str) and value in PROJECT_UPDATE_TYPES


def format_project_update_memo(kind: str) -> str:
    return f"**<Internal Memo>**\nProject Updates: {kind}\n</Internal Memo>"


def process_project_updates(
    update_type: ProjectUpdateType | str,
    data: Mapping[str, Any] | None = None,
    *,
    recorder: ProjectUpdateRecorder | None = None,
) -> list[ConversationMessage]:
    """Turn one pipeline milestone into at most one assistant transcript entry.

    Never raises. Unknown kinds and internal failures yield an empty list.

    Args:
        update_type: Milestone kind reported by the build pipeline.
        data: Milestone payload. Handed to ``recorder`` only, never stored in
            the returned entry.
        recorder: Optional sink receiving ``(conversation_id, kind, data)``.

    Returns:
        A single assistant entry, or an empty list.
    """
    try:
        kind = _kind_value(update_type)
        logger.info("Processing project update %s", kind)
        if not is_project_update_type(kind):
            logger.warning("Ignoring project update of unsupported kind %r", kind)
            return []
        message = ConversationMessage(
            role=MessageRole.ASSISTANT,
            content=format_project_update_memo(str(kind)),
            conversation_id=generate_conversation_id(),
        )
        if recorder is not None:
            recorder(message.conversation_id, str(kind), data)
        return [message]
    except Exception:
        logger.exception("Error processing project update %r", update_type)
        return []
