"""Distillation: remote LLM distiller, local rule-based fallback, candidate selection, daily notes."""

from __future__ import annotations

import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Callable

import yaml

from ..storage.helpers import epoch_to_day, epoch_to_str
from ..types import (
    ArchiveRecord,
    ContractViolationError,
    DataLossRiskError,
    DistillationError,
    DistillationRecord,
    Distiller,
    LLMProvider,
    LLMProviderError,
    MessageAnchor,
    MoonError,
    TranscriptMessage,
)
from .transcript import read_transcript, render_transcript

logger = logging.getLogger(__name__)

DISTILL_SYSTEM_PROMPT = """You distill archived assistant conversations into durable notes.

Read the transcript excerpt. Each line starts with [message_id@offset].
Return ONLY a JSON object, no prose:
{
  "summary": "markdown bullets covering goals, decisions, rules, milestones and open tasks",
  "anchors": [{"message_id": "<id from the transcript>", "offset": <integer offset>}]
}
Anchors point at the messages that carry each decision or task."""

LOCAL_CATEGORIES = (
    ("Goals", ("goal", "objective", "aim ", "we want", "trying to")),
    ("Decisions", ("decision", "decided", "agreed", "rule", "we will", "going with")),
    ("Milestones", ("milestone", "completed", "shipped", "released", "merged", "done:")),
    ("Open tasks", ("todo", "to do", "next", "follow up", "follow-up", "pending", "open question")),
)
LOCAL_MAX_SIGNALS = 20
LOCAL_FALLBACK_LINES = 12


def parse_distill_response(response: str) -> dict:
    """Parse the remote JSON response; anything unusable raises ContractViolationError."""
    text = response.strip()

    # Strip markdown fences if present
    if text.startswith("```"):
        lines = text.split("\n")
        lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines)

    # Strip thinking tags
    if "<think>" in text:
        text = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL).strip()

    parsed = None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}") + 1
        if start >= 0 and end > start:
            try:
                parsed = json.loads(text[start:end])
            except json.JSONDecodeError:
                parsed = None

    if not isinstance(parsed, dict):
        raise ContractViolationError("Distill response is not a JSON object")

    summary = parsed.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        raise ContractViolationError("Distill response missing 'summary'")

    anchors_raw = parsed.get("anchors", [])
    if not isinstance(anchors_raw, list):
        raise ContractViolationError("Distill response 'anchors' is not a list")
    anchors: list[MessageAnchor] = []
    for item in anchors_raw:
        if not isinstance(item, dict) or "message_id" not in item:
            raise ContractViolationError(f"Malformed anchor: {item!r}")
        try:
            offset = int(item.get("offset", 0))
        except (TypeError, ValueError) as e:
            raise ContractViolationError(f"Anchor offset is not an integer: {item!r}") from e
        anchors.append(MessageAnchor(message_id=str(item["message_id"]), offset=offset))

    return {"summary": summary.strip(), "anchors": anchors}


def chunk_messages(messages: list[TranscriptMessage], chunk_chars: int) -> list[list[TranscriptMessage]]:
    """Group messages into chunks of roughly ``chunk_chars`` rendered characters."""
    chunks: list[list[TranscriptMessage]] = []
    current: list[TranscriptMessage] = []
    size = 0
    for msg in messages:
        length = len(msg.text) + 32
        if current and size + length > chunk_chars:
            chunks.append(current)
            current, size = [], 0
        current.append(msg)
        size += length
    if current:
        chunks.append(current)
    return chunks


def _load_messages(archive: ArchiveRecord) -> list[TranscriptMessage]:
    try:
        return read_transcript(archive.archive_path)
    except OSError as e:
        raise DataLossRiskError(f"Cannot read archive {archive.archive_path}: {e}") from e


class LocalDistiller:
    """Rule-based extraction of goals, decisions, milestones and open tasks."""

    name = "local"

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def summarize(self, messages: list[TranscriptMessage]) -> tuple[str, list[MessageAnchor]]:
        found: dict[str, list[tuple[str, TranscriptMessage]]] = {name: [] for name, _ in LOCAL_CATEGORIES}
        total = 0
        for msg in messages:
            for line in msg.text.splitlines():
                line = line.strip()
                if not line:
                    continue
                lower = line.lower()
                for name, keywords in LOCAL_CATEGORIES:
                    if any(k in lower for k in keywords):
                        found[name].append((line, msg))
                        total += 1
                        break
                if total >= LOCAL_MAX_SIGNALS:
                    break
            if total >= LOCAL_MAX_SIGNALS:
                break

        anchors: list[MessageAnchor] = []
        seen: set[str] = set()

        def anchor(msg: TranscriptMessage) -> None:
            if msg.message_id not in seen:
                seen.add(msg.message_id)
                anchors.append(MessageAnchor(message_id=msg.message_id, offset=msg.offset))

        lines: list[str] = []
        if total == 0:
            lines.append("### Highlights")
            taken = 0
            for msg in messages:
                for line in msg.text.splitlines():
                    if line.strip() and taken < LOCAL_FALLBACK_LINES:
                        lines.append(f"- {line.strip()}")
                        anchor(msg)
                        taken += 1
            if taken == 0:
                lines.append("- no textual signals extracted")
        else:
            for name, _ in LOCAL_CATEGORIES:
                if not found[name]:
                    continue
                lines.append(f"### {name}")
                for text, msg in found[name]:
                    lines.append(f"- {text}")
                    anchor(msg)
        return "\n".join(lines), anchors

    def produce(self, archive: ArchiveRecord) -> DistillationRecord:
        messages = _load_messages(archive)
        summary, anchors = self.summarize(messages)
        return DistillationRecord(
            archive_ref=archive.archive_path,
            session_id=archive.session_id,
            produced_at=self._clock(),
            provider=self.name,
            summary_text=summary,
            content_hash=archive.content_hash,
            message_anchors=anchors,
        )


class RemoteDistiller:
    """Chunked distillation through an LLM provider.

    A failed chunk is summarised locally and reported through
    ``on_chunk_failure``; if every chunk fails the last error propagates.
    """

    name = "remote"

    def __init__(
        self,
        provider: LLMProvider,
        max_tokens: int = 2048,
        chunk_chars: int = 60_000,
        on_chunk_failure: Callable[[ArchiveRecord, int, Exception], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.provider = provider
        self.max_tokens = max_tokens
        self.chunk_chars = chunk_chars
        self.on_chunk_failure = on_chunk_failure
        self._clock = clock
        self._local = LocalDistiller(clock=clock)

    def produce(self, archive: ArchiveRecord) -> DistillationRecord:
        messages = _load_messages(archive)
        if not messages:
            raise ContractViolationError(f"Archive {archive.archive_path} has no messages to distill")

        chunks = chunk_messages(messages, self.chunk_chars)
        parts: list[str] = []
        anchors: list[MessageAnchor] = []
        failures: list[Exception] = []

        for i, chunk in enumerate(chunks):
            user = (
                f"Session: {archive.session_id}\nArchive: {archive.archive_path}\n"
                f"Chunk {i + 1} of {len(chunks)}\n\n{render_transcript(chunk)}"
            )
            try:
                response = self.provider.complete(DISTILL_SYSTEM_PROMPT, user, self.max_tokens)
                parsed = parse_distill_response(response)
            except (LLMProviderError, ContractViolationError) as e:
                logger.warning(f"Distill chunk {i + 1}/{len(chunks)} of {archive.archive_path} failed: {e}")
                failures.append(e)
                if self.on_chunk_failure:
                    self.on_chunk_failure(archive, i, e)
                summary, chunk_anchors = self._local.summarize(chunk)
                parts.append(summary)
                anchors.extend(chunk_anchors)
                continue
            parts.append(parsed["summary"])
            anchors.extend(parsed["anchors"])

        if len(failures) == len(chunks):
            raise failures[-1]

        return DistillationRecord(
            archive_ref=archive.archive_path,
            session_id=archive.session_id,
            produced_at=self._clock(),
            provider=self.name,
            summary_text="\n\n".join(parts),
            content_hash=archive.content_hash,
            message_anchors=anchors,
        )


class DistillerChain:
    """Try each distiller in order; the first success wins."""

    name = "chain"

    def __init__(self, distillers: list[Distiller]) -> None:
        self.distillers = distillers

    def produce(self, archive: ArchiveRecord) -> DistillationRecord:
        errors: list[str] = []
        for distiller in self.distillers:
            try:
                return distiller.produce(archive)
            except MoonError as e:
                logger.warning(f"{distiller.name} distiller failed for {archive.archive_path}: {e}")
                errors.append(f"{distiller.name}: {e}")
        raise DistillationError(
            f"All distillers failed for {archive.archive_path}: " + "; ".join(errors),
            errors=errors,
        )


def select_distill_candidates(
    records: list[ArchiveRecord],
    max_per_cycle: int,
    require_indexed: bool = True,
    exists: Callable[[str], bool] = os.path.isfile,
) -> list[ArchiveRecord]:
    """Live, undistilled records whose archive file exists; oldest day first, capped."""
    eligible = [
        r for r in records
        if not r.deleted
        and not r.distilled
        and (r.indexed or not require_indexed)
        and exists(r.archive_path)
    ]
    eligible.sort(key=lambda r: (r.day, r.created_at, r.content_hash))
    return eligible[:max(0, max_per_cycle)]


class DailyNotes:
    """``memory/YYYY-MM-DD.md``: one section per distilled archive."""

    def __init__(self, memory_dir: Path) -> None:
        self.memory_dir = Path(memory_dir)

    def path_for(self, when: float) -> Path:
        return self.memory_dir / f"{epoch_to_day(when)}.md"

    @staticmethod
    def _marker(content_hash: str) -> str:
        return f"<!-- moon-archive:{content_hash} -->"

    def contains(self, path: Path, content_hash: str) -> bool:
        return path.is_file() and self._marker(content_hash) in path.read_text(encoding="utf-8")

    def append(self, record: DistillationRecord) -> Path:
        """Append a section for ``record``; a section already present is left alone."""
        path = self.path_for(record.produced_at)
        if record.content_hash and self.contains(path, record.content_hash):
            logger.info(f"Daily note {path.name} already holds {record.archive_ref}")
            return path

        self.memory_dir.mkdir(parents=True, exist_ok=True)
        chunks: list[str] = []
        if not path.is_file():
            frontmatter = {"date": epoch_to_day(record.produced_at), "type": "daily-notes"}
            chunks.append("---\n" + yaml.dump(frontmatter, default_flow_style=False).strip() + "\n---\n")
            chunks.append(f"# Daily notes {epoch_to_day(record.produced_at)}\n")

        anchors = ", ".join(f"{a.message_id}@{a.offset}" for a in record.message_anchors[:20])
        chunks.append(
            "\n"
            f"### {record.session_id}\n"
            f"{self._marker(record.content_hash)}\n"
            f"- archive: {record.archive_ref}\n"
            f"- provider: {record.provider}\n"
            f"- distilled_at: {epoch_to_str(record.produced_at)}\n"
            + (f"- anchors: {anchors}\n" if anchors else "")
            + "\n"
            + record.summary_text.strip()
            + "\n"
        )
        with open(path, "a", encoding="utf-8") as f:
            f.write("".join(chunks))
            f.flush()
            os.fsync(f.fileno())
        return path
