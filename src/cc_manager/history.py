"""History indexer over the agent's on-disk JSONL transcripts.

Transcripts live in ``<projects_root>/<encoded_cwd>/<session_id>.jsonl``,
one JSON object per line. Only user and assistant entries count as
messages.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from .errors import SessionNotFoundError
from .storage.models import SessionRecord
from .storage.registry import SessionStore
from .utils import decode_encoded_cwd, extract_text_blocks, truncate

logger = logging.getLogger(__name__)

TITLE_LIMIT = 80
MESSAGE_TYPES = {"user", "assistant"}


@dataclass(slots=True)
class HistoryPage:
    messages: list[dict[str, Any]]
    next_cursor: int | None
    total_messages: int


@dataclass(slots=True)
class TranscriptSummary:
    session_id: str
    encoded_cwd: str
    cwd: str
    title: str
    created_at: int
    last_activity_at: int
    message_count: int
    messages: list[dict[str, Any]] = field(default_factory=list)


def _parse_timestamp(value: Any) -> int | None:
    if not isinstance(value, str):
        return None
    try:
        return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        return None


def _to_message(entry: dict[str, Any]) -> dict[str, Any] | None:
    kind = entry.get("type")
    if kind not in MESSAGE_TYPES:
        return None
    message = entry.get("message")
    if not isinstance(message, dict):
        return None
    text = extract_text_blocks(message.get("content"))
    if not text:
        return None
    return {
        "uuid": entry.get("uuid"),
        "role": message.get("role", kind),
        "text": text,
        "timestamp": entry.get("timestamp"),
    }


def read_transcript(path: Path, *, encoded_cwd: str) -> TranscriptSummary:
    """Parse a transcript file, skipping lines that are not valid JSON objects."""

    messages: list[dict[str, Any]] = []
    cwd: str | None = None
    summary_title: str | None = None
    first_ts: int | None = None
    last_ts: int | None = None

    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(entry, dict):
                continue

            if cwd is None and isinstance(entry.get("cwd"), str):
                cwd = entry["cwd"]
            if entry.get("type") == "summary" and isinstance(entry.get("summary"), str):
                summary_title = entry["summary"]

            timestamp = _parse_timestamp(entry.get("timestamp"))
            if timestamp is not None:
                first_ts = timestamp if first_ts is None else min(first_ts, timestamp)
                last_ts = timestamp if last_ts is None else max(last_ts, timestamp)

            message = _to_message(entry)
            if message is not None:
                messages.append(message)

    mtime = int(path.stat().st_mtime * 1000)
    first_user = next((m["text"] for m in messages if m["role"] == "user"), "")
    title = summary_title or truncate(first_user.strip(), TITLE_LIMIT) or path.stem
    return TranscriptSummary(
        session_id=path.stem,
        encoded_cwd=encoded_cwd,
        cwd=cwd or decode_encoded_cwd(encoded_cwd),
        title=title,
        created_at=first_ts if first_ts is not None else mtime,
        last_activity_at=max(last_ts or 0, mtime),
        message_count=len(messages),
        messages=messages,
    )


class HistoryIndexer:
    """Read paginated session history and reconcile externally created sessions."""

    def __init__(self, projects_root: Path, sessions: SessionStore, *, page_size: int = 50) -> None:
        self._projects_root = Path(projects_root)
        self._sessions = sessions
        self._page_size = page_size

    @property
    def projects_root(self) -> Path:
        return self._projects_root

    def transcript_path(self, session_id: str, encoded_cwd: str) -> Path:
        return self._projects_root / encoded_cwd / f"{session_id}.jsonl"

    def read_history(
        self,
        session_id: str,
        encoded_cwd: str,
        cursor: int | None = None,
    ) -> HistoryPage:
        """Return one page of messages starting at offset ``cursor``."""

        path = self.transcript_path(session_id, encoded_cwd)
        if not path.is_file():
            if self._sessions.get(session_id, encoded_cwd) is None:
                raise SessionNotFoundError(session_id, encoded_cwd)
            return HistoryPage(messages=[], next_cursor=None, total_messages=0)

        transcript = read_transcript(path, encoded_cwd=encoded_cwd)
        total = len(transcript.messages)
        start = max(cursor or 0, 0)
        end = start + self._page_size
        return HistoryPage(
            messages=transcript.messages[start:end],
            next_cursor=end if end < total else None,
            total_messages=total,
        )

    def refresh_index(self) -> int:
        """Scan every transcript and merge it into the session index."""

        if not self._projects_root.is_dir():
            return 0

        count = 0
        for directory in sorted(self._projects_root.iterdir()):
            if not directory.is_dir():
                continue
            for path in sorted(directory.glob("*.jsonl")):
                try:
                    transcript = read_transcript(path, encoded_cwd=directory.name)
                except OSError as exc:
                    logger.warning("Failed to read transcript", extra={"path": str(path), "error": str(exc)})
                    continue
                self._sessions.merge_indexed(
                    SessionRecord(
                        session_id=transcript.session_id,
                        encoded_cwd=transcript.encoded_cwd,
                        cwd=transcript.cwd,
                        title=transcript.title,
                        created_at=transcript.created_at,
                        updated_at=transcript.last_activity_at,
                        last_activity_at=transcript.last_activity_at,
                        source="index",
                        message_count=transcript.message_count,
                    )
                )
                count += 1

        logger.info("Session index refreshed", extra={"count": count, "root": str(self._projects_root)})
        return count


__all__ = ["HistoryIndexer", "HistoryPage", "TranscriptSummary", "read_transcript"]
