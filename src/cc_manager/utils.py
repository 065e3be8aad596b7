"""Small helpers shared across the manager."""

from __future__ import annotations

import time
from typing import Any


def now_ms() -> int:
    return int(time.time() * 1000)


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[: limit - 1]}…"


def encode_cwd(cwd: str) -> str:
    """Derive the workdir key for a session directory (``/tmp`` -> ``-tmp``)."""

    return cwd.replace("/", "-")


def decode_encoded_cwd(encoded_cwd: str) -> str:
    """Best-effort inverse of :func:`encode_cwd`.

    Lossy when the original path contains ``-``; only used to guess the
    directory of sessions that were created outside the manager.
    """

    if not encoded_cwd.startswith("-"):
        return encoded_cwd
    return encoded_cwd.replace("-", "/")


def extract_text_blocks(content: Any) -> str:
    """Join the ``text`` blocks of a message content payload."""

    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for block in content:
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str):
            parts.append(block["text"])
    return "".join(parts)


__all__ = ["decode_encoded_cwd", "encode_cwd", "extract_text_blocks", "now_ms", "truncate"]
