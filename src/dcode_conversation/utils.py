from __future__ import annotations

import inspect
import re
import uuid
from collections.abc import Iterable
from typing import Any

CONVERSATION_ID_PREFIX = "conv"


def slugify_name(name: str, *, max_length: int = 64) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", name.lower()).strip("-")
    slug = re.sub(r"-{2,}", "-", slug)
    return slug[:max_length].rstrip("-")


def generate_conversation_id() -> str:
    return f"{CONVERSATION_ID_PREFIX}-{uuid.uuid4().hex}"


def unique_conversation_id(taken: Iterable[str]) -> str:
    """Return a fresh conversation id not present in ``taken``."""
    used = set(taken)
    while True:
        candidate = generate_conversation_id()
        if candidate not in used:
            return candidate


async def maybe_await(value: Any) -> Any:
    """Await ``value`` when a callback handed back an awaitable, else return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value
