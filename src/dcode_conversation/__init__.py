from importlib.metadata import version

from .conversation import FALLBACK_USER_RESPONSE, UserConversationProcessor
from .errors import (
    ConversationError,
    RateLimitExceededError,
    SecurityError,
    TurnCancelledError,
)
from .inference import CancellationToken, ChatInferenceEngine, ChunkBuffer, InferenceEngine, InferenceResult
from .models import (
    ConversationalResponse,
    ConversationMessage,
    InferenceContext,
    MessageRole,
    ToolEvent,
    ToolStatus,
    UserConversationInputs,
    UserConversationOutputs,
)
from .project_updates import (
    PROJECT_UPDATE_TYPES,
    ProjectUpdateType,
    is_project_update_type,
    process_project_updates,
)
from .settings import ConversationSettings
from .state_store import ConversationStateStore
from .tools import (
    QUEUE_REQUEST_SUCCESS,
    ModificationRequestSlot,
    ToolDefinition,
    attach_lifecycle,
    build_queue_request_tool,
)


def get_version() -> str:
    try:
        return version("dcode-conversation")
    except Exception:
        return "0.0.0"


__all__ = [
    "CancellationToken",
    "ChatInferenceEngine",
    "ChunkBuffer",
    "ConversationError",
    "ConversationMessage",
    "ConversationSettings",
    "ConversationStateStore",
    "ConversationalResponse",
    "FALLBACK_USER_RESPONSE",
    "InferenceContext",
    "InferenceEngine",
    "InferenceResult",
    "MessageRole",
    "ModificationRequestSlot",
    "PROJECT_UPDATE_TYPES",
    "ProjectUpdateType",
    "QUEUE_REQUEST_SUCCESS",
    "RateLimitExceededError",
    "SecurityError",
    "ToolDefinition",
    "ToolEvent",
    "ToolStatus",
    "TurnCancelledError",
    "UserConversationInputs",
    "UserConversationOutputs",
    "UserConversationProcessor",
    "attach_lifecycle",
    "build_queue_request_tool",
    "get_version",
    "is_project_update_type",
    "process_project_updates",
]
