from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter, ValidationError

from .models import ConversationMessage
from .utils import slugify_name

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"
_TRANSCRIPT_ADAPTER = TypeAdapter(list[ConversationMessage])


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on a ``.lock`` sidecar of *path* for the duration of the context.

    The sidecar lets the data file itself be swapped with ``os.replace``
    without disturbing the lock handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* through a same-directory temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _append_jsonl(path: Path, record: Mapping[str, Any]) -> None:
    with _locked_file(path):
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, default=str) + "\n")
            handle.flush()
            os.fsync(handle.fileno())


def _read_jsonl(path: Path) -> list[dict[str, Any]]:
    if not path.is_file():
        return []
    records: list[dict[str, Any]] = []
    for line_no, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError:
            logger.warning("Skipping corrupt line %d in %s", line_no, path)
    return records


class ConversationStateStore:
    """File-backed persistence for one workspace's conversation sessions.

    Layout under ``root``::

        sessions/<session>.json      transcript, replaced atomically per turn
        build_queue.jsonl            modification requests handed to the build pipeline
        project_updates.jsonl        full milestone payloads, keyed by memo conversation id
    """

    def __init__(self, root: Path, *, session_id: str = "default") -> None:
        slug = slugify_name(session_id)
        if not slug:
            raise ValueError(f"session_id must contain at least one alphanumeric character: {session_id!r}")
        self.root = root
        self.session_id = slug
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def transcript_path(self) -> Path:
        return self.root / "sessions" / f"{self.session_id}.json"

    @property
    def build_queue_path(self) -> Path:
        return self.root / "build_queue.jsonl"

    @property
    def project_updates_path(self) -> Path:
        return self.root / "project_updates.jsonl"

    def load_transcript(self) -> list[ConversationMessage]:
        """Load the session transcript, or an empty list for a new session.

        Raises:
            ValueError: If the stored transcript is unreadable or fails validation.
        """
        path = self.transcript_path
        if not path.is_file():
            return []
        try:
            return _TRANSCRIPT_ADAPTER.validate_json(path.read_text(encoding="utf-8"))
        except (UnicodeDecodeError, ValidationError) as exc:
            raise ValueError(f"Transcript at {path} is corrupt: {exc}") from exc

    def save_transcript(self, messages: Sequence[ConversationMessage]) -> Path:
        """Replace the stored transcript with *messages* in one atomic write."""
        path = self.transcript_path
        payload = _TRANSCRIPT_ADAPTER.dump_json(list(messages), indent=2).decode("utf-8")
        with _locked_file(path):
            _atomic_write_text(path, payload)
        logger.debug("Saved %d transcript entries to %s", len(messages), path)
        return path

    def enqueue_request(self, request: str, *, conversation_id: str | None = None) -> dict[str, Any]:
        """Append a modification request to the build queue and return the queued record."""
        text = request.strip()
        if not text:
            raise ValueError("request must be non-empty")
        record = {
            "session_id": self.session_id,
            "conversation_id": conversation_id,
            "request": text,
            "queued_at": datetime.now(UTC).isoformat(),
        }
        _append_jsonl(self.build_queue_path, record)
        logger.info("Queued modification request for session %s", self.session_id)
        return record

    def queued_requests(self) -> list[dict[str, Any]]:
        return _read_jsonl(self.build_queue_path)

    def record_project_update(self, conversation_id: str, kind: str, data: Mapping[str, Any] | None) -> None:
        """Store a milestone's full payload outside the transcript."""
        _append_jsonl(
            self.project_updates_path,
            {
                "session_id": self.session_id,
                "conversation_id": conversation_id,
                "kind": kind,
                "data": dict(data) if data is not None else None,
                "recorded_at": datetime.now(UTC).isoformat(),
            },
        )

    def project_updates(self) -> list[dict[str, Any]]:
        return _read_jsonl(self.project_updates_path)
