"""Best-effort decoder for Ollama's newline-delimited JSON chat stream."""
from __future__ import annotations

import json
from typing import Any, Callable, Iterable, Iterator


class StreamError(RuntimeError):
    """Raised when the server reports an error inside the stream."""


def parse_frame(raw: bytes | str) -> dict[str, Any] | None:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    line = raw.strip()
    if not line:
        return None
    try:
        frame = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(frame, dict):
        return None
    return frame


def frame_fragment(frame: dict[str, Any]) -> str:
    message = frame.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    return content if isinstance(content, str) else ""


def iter_accumulated(lines: Iterable[bytes | str]) -> Iterator[str]:
    """Yield the full text received so far, once per decoded frame.

    Blank and unparsable lines are skipped. Iteration stops right after a
    frame with ``done: true``; the source is not read any further.
    """
    text = ""
    for raw in lines:
        frame = parse_frame(raw)
        if frame is None:
            continue
        if "error" in frame:
            raise StreamError(str(frame["error"]))
        text += frame_fragment(frame)
        yield text
        if frame.get("done"):
            return


def decode_stream(lines: Iterable[bytes | str], on_update: Callable[[str], None]) -> str:
    text = ""
    for text in iter_accumulated(lines):
        on_update(text)
    return text
