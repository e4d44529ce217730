"""Trim a conversation to the window forwarded as answer context."""

from typing import Iterable

from .core import Citation, Message

DEFAULT_HISTORY_CAP = 8
HISTORY_ROLES = ("user", "assistant")


def build_history(messages: Iterable[Message | dict], cap: int = DEFAULT_HISTORY_CAP) -> list[dict]:
    """Return the last `cap` usable messages as plain dicts, oldest first.

    Accepts persisted Message objects or request-style dicts. Messages with
    a role other than user/assistant, or with blank content, are skipped.
    """
    if cap <= 0:
        return []

    entries = []
    for msg in messages:
        entry = _to_entry(msg)
        if entry is not None:
            entries.append(entry)

    return entries[-cap:]


def _to_entry(msg: Message | dict) -> dict | None:
    if isinstance(msg, Message):
        role, content, citations = msg.role, msg.content, msg.citations
    elif isinstance(msg, dict):
        role, content, citations = msg.get("role"), msg.get("content"), msg.get("citations")
    else:
        return None

    if role not in HISTORY_ROLES:
        return None
    if not isinstance(content, str) or not content.strip():
        return None

    entry = {"role": role, "content": content}
    if role == "assistant" and citations:
        entry["citations"] = [
            c.to_dict() if isinstance(c, Citation) else c
            for c in citations
        ]
    return entry
