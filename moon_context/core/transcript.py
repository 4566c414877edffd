"""Transcript parsing: pull message text out of host session files."""

from __future__ import annotations

import json
from pathlib import Path

from ..types import TranscriptMessage

TEXT_ROLES = {"user", "assistant", "system"}


def _content_text(content) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type", "text") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "\n".join(parts)
    if isinstance(content, dict):
        return _content_text(content.get("text") or content.get("content"))
    return ""


def _message_from_event(event: dict, offset: int) -> TranscriptMessage | None:
    inner = event.get("message") if isinstance(event.get("message"), dict) else event
    role = inner.get("role") or event.get("role") or event.get("type") or ""
    if role not in TEXT_ROLES:
        return None
    text = _content_text(inner.get("content", inner.get("text", ""))).strip()
    if not text:
        return None
    message_id = str(
        inner.get("id") or event.get("id") or event.get("uuid") or f"line-{offset}"
    )
    return TranscriptMessage(message_id=message_id, role=role, text=text, offset=offset)


def parse_transcript(raw: str) -> list[TranscriptMessage]:
    """Parse JSONL (one event per line) or a JSON document with a ``messages`` list.

    Anything that is not JSON is treated as plain text, one message per
    non-empty line.
    """
    stripped = raw.strip()
    if not stripped:
        return []

    single_object = stripped.startswith("{") and "\n" not in stripped
    if single_object or stripped.startswith("["):
        try:
            doc = json.loads(stripped)
        except json.JSONDecodeError:
            doc = None
        if doc is not None:
            events = doc if isinstance(doc, list) else doc.get("messages", [doc])
            out = []
            for i, event in enumerate(events):
                if isinstance(event, dict):
                    msg = _message_from_event(event, i)
                    if msg:
                        out.append(msg)
            return out

    messages: list[TranscriptMessage] = []
    for offset, line in enumerate(raw.splitlines()):
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            messages.append(
                TranscriptMessage(message_id=f"line-{offset}", role="text", text=line, offset=offset)
            )
            continue
        if isinstance(event, dict):
            msg = _message_from_event(event, offset)
            if msg:
                messages.append(msg)
    return messages


def read_transcript(path: str | Path) -> list[TranscriptMessage]:
    return parse_transcript(Path(path).read_text(encoding="utf-8", errors="replace"))


def signal_lines(messages: list[TranscriptMessage], limit: int = 200) -> list[str]:
    """Flatten messages into non-empty text lines for projections."""
    out: list[str] = []
    for msg in messages:
        for line in msg.text.splitlines():
            line = line.strip()
            if line:
                out.append(line[:500])
                if len(out) >= limit:
                    return out
    return out


def render_transcript(messages: list[TranscriptMessage]) -> str:
    return "\n".join(f"[{m.message_id}@{m.offset}] {m.role}: {m.text}" for m in messages)
