from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path

import pytest
from conftest import ScriptedChatModel, text_round, tool_round

from dcode_conversation import get_version
from dcode_conversation.__main__ import ChatSession, load_project_context, run_interactive
from dcode_conversation.conversation import UserConversationProcessor
from dcode_conversation.inference import ChatInferenceEngine
from dcode_conversation.prompts import CONVERSATION_SYSTEM_PROMPT, render_system_prompt
from dcode_conversation.settings import ConversationSettings
from dcode_conversation.state_store import ConversationStateStore
from dcode_conversation.utils import generate_conversation_id, slugify_name, unique_conversation_id

REPO_ROOT = Path(__file__).resolve().parents[1]

_SETTINGS_ENV = (
    "CONVERSATION_MODEL",
    "CONVERSATION_TEMPERATURE",
    "CONVERSATION_MAX_COMPLETION_TOKENS",
    "CONVERSATION_CHUNK_SIZE",
    "CONVERSATION_MAX_TOOL_ROUNDS",
    "CONVERSATION_TURN_TIMEOUT_SECONDS",
    "CONVERSATION_EMIT_TOOL_ERROR_EVENTS",
    "CONVERSATION_STATE_STORE_ROOT",
    "CONVERSATION_SESSION_ID",
)


@pytest.fixture
def clean_settings_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in _SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_slugify_name() -> None:
    assert slugify_name("Hello World!") == "hello-world"
    assert slugify_name("Python_3.12") == "python-3-12"


def test_conversation_ids_have_prefix_and_avoid_taken_ids() -> None:
    generated = generate_conversation_id()
    assert generated.startswith("conv-")
    assert len(generated) == len("conv-") + 32

    taken = {generate_conversation_id() for _ in range(10)}
    assert unique_conversation_id(taken) not in taken


def test_get_version_returns_string() -> None:
    assert isinstance(get_version(), str)


def test_settings_defaults(clean_settings_env: pytest.MonkeyPatch) -> None:
    settings = ConversationSettings.from_env()

    assert settings == ConversationSettings()
    assert settings.model_name == "gpt-4o-mini"
    assert settings.chunk_size == 64
    assert settings.max_tool_rounds == 8
    assert settings.emit_tool_error_events is True


def test_settings_from_env_overrides(clean_settings_env: pytest.MonkeyPatch) -> None:
    clean_settings_env.setenv("CONVERSATION_MODEL", "  gpt-4o  ")
    clean_settings_env.setenv("CONVERSATION_TEMPERATURE", "0.7")
    clean_settings_env.setenv("CONVERSATION_CHUNK_SIZE", "16")
    clean_settings_env.setenv("CONVERSATION_EMIT_TOOL_ERROR_EVENTS", "off")
    clean_settings_env.setenv("CONVERSATION_SESSION_ID", "team-demo")

    settings = ConversationSettings.from_env()

    assert settings.model_name == "gpt-4o"
    assert settings.temperature == 0.7
    assert settings.chunk_size == 16
    assert settings.emit_tool_error_events is False
    assert settings.session_id == "team-demo"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("CONVERSATION_CHUNK_SIZE", "abc", "must be an integer"),
        ("CONVERSATION_CHUNK_SIZE", "0", "must be >= 1"),
        ("CONVERSATION_TEMPERATURE", "3.5", "must be within"),
        ("CONVERSATION_EMIT_TOOL_ERROR_EVENTS", "maybe", "must be a boolean"),
        ("CONVERSATION_MODEL", "   ", "must be non-empty"),
    ],
)
def test_settings_invalid_env_raises(clean_settings_env: pytest.MonkeyPatch, name: str, value: str, message: str) -> None:
    clean_settings_env.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        ConversationSettings.from_env()


def test_state_store_path_resolution(tmp_path: Path) -> None:
    assert ConversationSettings().state_store_path(tmp_path) == tmp_path / "state_store"
    absolute = tmp_path / "elsewhere"
    assert ConversationSettings(state_store_root=str(absolute)).state_store_path(Path("/unused")) == absolute


def test_render_system_prompt_substitutes_context() -> None:
    rendered = render_system_prompt("Recipe app with favourites")

    assert "Recipe app with favourites" in rendered
    assert "{{query}}" not in rendered
    assert "queue_request" in rendered
    assert "(no project context available yet)" in render_system_prompt("   ")
    assert render_system_prompt("ctx", "Context: {{query}}") == "Context: ctx"
    assert "{{query}}" in CONVERSATION_SYSTEM_PROMPT


def test_load_project_context(tmp_path: Path) -> None:
    context_file = tmp_path / "context.md"
    context_file.write_text("# Blueprint\nA todo app", encoding="utf-8")

    assert load_project_context(inline=None, path=context_file) == "# Blueprint\nA todo app"
    assert load_project_context(inline="inline", path=None) == "inline"
    assert load_project_context(inline=None, path=None) == ""
    with pytest.raises(ValueError):
        load_project_context(inline="inline", path=context_file)
    with pytest.raises(FileNotFoundError):
        load_project_context(inline=None, path=tmp_path / "missing.md")


@pytest.mark.asyncio
async def test_chat_session_persists_transcript_and_queues_request(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    model = ScriptedChatModel(
        [
            tool_round(("queue_request", {"modificationRequest": "Add a dark-mode toggle"})),
            text_round("I'll add a dark-mode toggle in the next development phase."),
            text_round("You're welcome!"),
        ]
    )
    store = ConversationStateStore(tmp_path, session_id="cli")
    processor = UserConversationProcessor(ChatInferenceEngine(model), settings=ConversationSettings(), tool_factory=lambda: [])
    session = ChatSession(processor, store, project_context="A todo app")

    reply = await session.send("Please add dark mode")
    await session.handle_line("thanks")

    assert reply == "I'll add a dark-mode toggle in the next development phase."
    assert "dark-mode toggle" in capsys.readouterr().out
    assert len(store.load_transcript()) == 4
    queued = store.queued_requests()
    assert [record["request"] for record in queued] == ["Add a dark-mode toggle"]

    resumed = ChatSession(processor, store, project_context="A todo app")
    assert resumed.messages == session.messages


@pytest.mark.asyncio
async def test_chat_session_update_command(tmp_path: Path) -> None:
    store = ConversationStateStore(tmp_path)
    processor = UserConversationProcessor(ChatInferenceEngine(ScriptedChatModel([])))
    session = ChatSession(processor, store, project_context="")

    await session.handle_line('/update deployment_completed {"url": "https://app.example.com"}')
    await session.handle_line("/update agent_connected")

    transcript = store.load_transcript()
    assert len(transcript) == 1
    assert "deployment_completed" in transcript[0].content
    assert store.project_updates()[0]["data"] == {"url": "https://app.example.com"}
    assert store.project_updates()[0]["conversation_id"] == transcript[0].conversation_id


def test_cli_without_api_key_exits_with_setup_error(tmp_path: Path) -> None:
    env = {key: value for key, value in os.environ.items() if key != "OPENAI_API_KEY"}
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT / "src"), env.get("PYTHONPATH")]))

    result = subprocess.run(
        [sys.executable, "-m", "dcode_conversation", "--message", "hello", "--state-store-root", str(tmp_path / "store")],
        cwd=tmp_path,
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )

    assert result.returncode == 1, result.stderr
    assert "OPENAI_API_KEY" in result.stderr


def test_cli_rejects_conflicting_context_flags(tmp_path: Path) -> None:
    context_file = tmp_path / "ctx.md"
    context_file.write_text("ctx", encoding="utf-8")
    env = dict(os.environ, OPENAI_API_KEY="sk-test")
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT / "src"), os.environ.get("PYTHONPATH")]))

    result = subprocess.run(
        [
            sys.executable,
            "-m",
            "dcode_conversation",
            "--message",
            "hello",
            "--project-context",
            "inline",
            "--project-context-file",
            str(context_file),
            "--state-store-root",
            str(tmp_path / "store"),
        ],
        cwd=tmp_path,
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )

    assert result.returncode == 1
    assert "cannot be combined" in result.stderr


@pytest.mark.asyncio
async def test_chat_session_never_queues_blank_request(tmp_path: Path) -> None:
    model = ScriptedChatModel(
        [
            tool_round(("queue_request", {"modificationRequest": " " * 8})),
            text_round("Could you describe the change you have in mind?"),
        ]
    )
    store = ConversationStateStore(tmp_path)
    processor = UserConversationProcessor(ChatInferenceEngine(model), tool_factory=lambda: [])
    session = ChatSession(processor, store, project_context="")

    await session.handle_line("make it nicer")

    assert len(store.load_transcript()) == 2
    assert store.queued_requests() == []
    rejection = model.calls[1][-1]
    assert "blank" in rejection.content


@pytest.mark.asyncio
async def test_interactive_loop_survives_store_failure(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    model = ScriptedChatModel(
        [
            tool_round(("queue_request", {"modificationRequest": "Add a dark-mode toggle"})),
            text_round("I'll add that."),
            text_round("Anything else?"),
        ]
    )
    store = ConversationStateStore(tmp_path)
    processor = UserConversationProcessor(ChatInferenceEngine(model), tool_factory=lambda: [])
    session = ChatSession(processor, store, project_context="")

    def _disk_full(request: str, *, conversation_id: str | None = None) -> dict[str, object]:
        raise OSError("disk full")

    monkeypatch.setattr(store, "enqueue_request", _disk_full)
    lines = iter(["add dark mode", "hello again", "/exit"])
    monkeypatch.setattr("builtins.input", lambda prompt="": next(lines))

    with caplog.at_level(logging.ERROR):
        assert await run_interactive(session) == 0

    assert "Turn failed: disk full" in caplog.text
    assert len(store.load_transcript()) == 4
