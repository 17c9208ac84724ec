"""Entry point for `python -m dcode_conversation` and the `dcode-chat` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path

from dcode_conversation.conversation import UserConversationProcessor
from dcode_conversation.errors import RateLimitExceededError, SecurityError
from dcode_conversation.inference import ChatInferenceEngine
from dcode_conversation.models import ConversationMessage, InferenceContext, ToolEvent, UserConversationInputs
from dcode_conversation.settings import ConversationSettings
from dcode_conversation.state_store import ConversationStateStore

EXIT_COMMANDS = frozenset({"/exit", "/quit"})
UPDATE_COMMAND = "/update"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chat with the app-building assistant")
    parser.add_argument("--message", default=None, help="Send a single message and exit (non-interactive)")
    parser.add_argument("--session-id", default=None, help="Conversation session to resume (default: CONVERSATION_SESSION_ID)")
    parser.add_argument("--state-store-root", type=Path, default=None, help="Directory holding transcripts and the build queue")
    parser.add_argument("--project-context", default=None, help="Inline project context summary")
    parser.add_argument("--project-context-file", type=Path, default=None, help="Path to a project context summary file")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def load_project_context(*, inline: str | None, path: Path | None) -> str:
    if inline is not None and path is not None:
        raise ValueError("--project-context cannot be combined with --project-context-file")
    if path is not None:
        if not path.is_file():
            raise FileNotFoundError(f"Project context file does not exist: {path}")
        return path.read_text(encoding="utf-8")
    return inline or ""


def print_stream_event(chunk: str, conversation_id: str, is_streaming: bool, tool_event: ToolEvent | None = None) -> None:
    if is_streaming:
        sys.stdout.write(chunk)
        sys.stdout.flush()
    elif tool_event is not None:
        print(f"\n[tool] {tool_event.name}: {tool_event.status}", file=sys.stderr)


class ChatSession:
    """Drives turns for one persisted session."""

    def __init__(
        self,
        processor: UserConversationProcessor,
        store: ConversationStateStore,
        *,
        project_context: str,
    ) -> None:
        self.processor = processor
        self.store = store
        self.project_context = project_context
        self.messages: list[ConversationMessage] = store.load_transcript()

    async def send(self, user_message: str) -> str:
        outputs = await self.processor.execute(
            UserConversationInputs(
                user_message=user_message,
                past_messages=self.messages,
                conversation_response_callback=print_stream_event,
            ),
            project_context=self.project_context,
            context=InferenceContext(agent_id=self.store.session_id),
        )
        self.messages = outputs.messages
        self.store.save_transcript(self.messages)
        request = outputs.conversation_response.enhanced_user_request.strip()
        if request:
            self.store.enqueue_request(request, conversation_id=self.messages[-1].conversation_id)
        return outputs.conversation_response.user_response

    def record_update(self, kind: str, payload: dict[str, object] | None = None) -> bool:
        entries = self.processor.process_project_updates(kind, payload, recorder=self.store.record_project_update)
        if not entries:
            return False
        self.messages = [*self.messages, *entries]
        self.store.save_transcript(self.messages)
        return True

    async def handle_line(self, line: str) -> None:
        if line.startswith(UPDATE_COMMAND):
            kind, _, raw_payload = line[len(UPDATE_COMMAND) :].strip().partition(" ")
            payload = json.loads(raw_payload) if raw_payload.strip() else None
            if self.record_update(kind, payload):
                print(f"[update] recorded {kind}", file=sys.stderr)
            else:
                print(f"[update] ignored {kind!r}", file=sys.stderr)
            return
        await self.send(line)
        print()


async def run_interactive(session: ChatSession) -> int:
    while True:
        try:
            line = (await asyncio.to_thread(input, "you> ")).strip()
        except EOFError:
            return 0
        if not line:
            continue
        if line in EXIT_COMMANDS:
            return 0
        try:
            await session.handle_line(line)
        except (RateLimitExceededError, SecurityError) as exc:
            logging.error("Turn rejected: %s", exc)
        except json.JSONDecodeError as exc:
            logging.error("Invalid update payload: %s", exc)
        except (OSError, ValueError) as exc:
            logging.error("Turn failed: %s", exc)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = ConversationSettings.from_env()
        if args.session_id is not None:
            settings = replace(settings, session_id=args.session_id).normalized()
        root = args.state_store_root if args.state_store_root is not None else settings.state_store_path(Path.cwd())
        project_context = load_project_context(inline=args.project_context, path=args.project_context_file)
        store = ConversationStateStore(root, session_id=settings.session_id)
        engine = ChatInferenceEngine.from_settings(settings)
        session = ChatSession(
            UserConversationProcessor(engine, settings=settings),
            store,
            project_context=project_context,
        )
    except (OSError, ValueError, RuntimeError) as exc:
        logging.error("Unable to start conversation: %s", exc)
        return 1

    if args.message is None:
        return asyncio.run(run_interactive(session))

    try:
        asyncio.run(session.send(args.message))
    except (RateLimitExceededError, SecurityError) as exc:
        logging.error("Turn rejected: %s", exc)
        return 2
    except (OSError, ValueError) as exc:
        logging.error("Turn failed: %s", exc)
        return 1
    print()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
