from __future__ import annotations

import pytest

from dcode_conversation.project_updates import (
    PROJECT_UPDATE_TYPES,
    ProjectUpdateType,
    format_project_update_memo,
    is_project_update_type,
    process_project_updates,
)


def test_project_update_types_are_the_seven_milestones() -> None:
    assert PROJECT_UPDATE_TYPES == {
        "phase_implementing",
        "phase_implemented",
        "code_review",
        "file_regenerating",
        "file_regenerated",
        "deployment_completed",
        "command_executing",
    }


@pytest.mark.parametrize("kind", sorted(PROJECT_UPDATE_TYPES))
def test_every_member_kind_is_recognised(kind: str) -> None:
    assert is_project_update_type(kind)
    assert is_project_update_type(ProjectUpdateType(kind))


@pytest.mark.parametrize("kind", ["agent_connected", "PHASE_IMPLEMENTED", "", None, 42, ["code_review"]])
def test_non_member_kinds_are_rejected(kind: object) -> None:
    assert not is_project_update_type(kind)


def test_member_kind_yields_single_assistant_memo() -> None:
    entries = process_project_updates("phase_implemented", {"phase": 2, "files": ["src/App.tsx"]})

    assert len(entries) == 1
    entry = entries[0]
    assert entry.role == "assistant"
    assert entry.content == "**<Internal Memo>**\nProject Updates: phase_implemented\n</Internal Memo>"
    assert entry.conversation_id.startswith("conv-")


def test_payload_never_enters_transcript() -> None:
    entries = process_project_updates(ProjectUpdateType.DEPLOYMENT_COMPLETED, {"url": "https://secret.example.com"})

    assert entries[0].content == format_project_update_memo("deployment_completed")
    assert "secret" not in entries[0].content


def test_non_member_kind_yields_nothing() -> None:
    assert process_project_updates("agent_connected", {"agent": "x"}) == []


def test_memo_ids_are_fresh_per_call() -> None:
    first = process_project_updates("code_review")
    second = process_project_updates("code_review")

    assert first[0].conversation_id != second[0].conversation_id


def test_recorder_receives_full_payload_keyed_by_memo_id() -> None:
    recorded: list[tuple[str, str, object]] = []

    entries = process_project_updates(
        "command_executing",
        {"command": "npm run build"},
        recorder=lambda conversation_id, kind, data: recorded.append((conversation_id, kind, data)),
    )

    assert recorded == [(entries[0].conversation_id, "command_executing", {"command": "npm run build"})]


def test_recorder_failure_is_contained() -> None:
    def _broken(conversation_id: str, kind: str, data: object) -> None:
        raise OSError("disk full")

    assert process_project_updates("file_regenerated", {"path": "a.py"}, recorder=_broken) == []


def test_recorder_not_called_for_ignored_kinds() -> None:
    calls: list[object] = []

    process_project_updates("unknown_kind", {"x": 1}, recorder=lambda *args: calls.append(args))

    assert calls == []
