"""Server-Sent Events framing for pipeline events.

Frames are ``event: <type>`` + ``data: <json>`` + blank line. Comment lines
(``: ping``) keep proxies from closing idle connections. Two control frames
close a stream: ``done`` (run finished, suspended or was cancelled) and
``error`` (run failed).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from fit_check.orchestrator.events import PipelineEvent, event_from_dict, is_pipeline_event

logger = logging.getLogger(__name__)

SSE_HEADERS: dict[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

DONE_EVENT = "done"
ERROR_EVENT = "error"
UNKNOWN_ERROR_CODE = "UNKNOWN"


def format_sse_event(event: PipelineEvent) -> str:
    return f"event: {event.type}\ndata: {json.dumps(event.to_dict())}\n\n"


def format_ping_event() -> str:
    return ": ping\n\n"


def format_sse_error(error: str | dict[str, Any], code: str | None = None) -> str:
    """Format a stream-level error frame; ``code`` defaults to ``UNKNOWN``."""

    if isinstance(error, str):
        payload = {"message": error, "code": code or UNKNOWN_ERROR_CODE}
    else:
        payload = {
            "message": str(error.get("message", "")),
            "code": error.get("code") or code or UNKNOWN_ERROR_CODE,
        }
    return f"event: {ERROR_EVENT}\ndata: {json.dumps(payload)}\n\n"


def format_done_event() -> str:
    return f"event: {DONE_EVENT}\ndata: {{}}\n\n"


class FrameKind(str, Enum):
    EVENT = "event"
    DONE = "done"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class SseFrame:
    """One decoded frame: a pipeline event or a control frame."""

    kind: FrameKind
    event: PipelineEvent | None = None
    error: dict[str, Any] | None = None


class SseDecoder:
    """Incremental decoder; feed it chunks as they arrive off the wire.

    Frames split across chunks are buffered until their terminating blank
    line. Payloads that are not valid JSON or not a known pipeline event are
    logged and skipped.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self.skipped = 0

    def feed(self, chunk: str) -> list[SseFrame]:
        self._buffer = (self._buffer + chunk).replace("\r\n", "\n")
        frames: list[SseFrame] = []
        while "\n\n" in self._buffer:
            block, self._buffer = self._buffer.split("\n\n", 1)
            frame = self._decode_block(block)
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> list[SseFrame]:
        """Decode whatever is left once the stream has ended."""

        block, self._buffer = self._buffer, ""
        if not block.strip():
            return []
        frame = self._decode_block(block)
        return [frame] if frame is not None else []

    def _decode_block(self, block: str) -> SseFrame | None:
        event_name = ""
        data_lines: list[str] = []
        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            field_name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field_name == "event":
                event_name = value
            elif field_name == "data":
                data_lines.append(value)
        if not data_lines:
            return None

        data = "\n".join(data_lines)
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            self._skip("invalid JSON in %r frame", event_name or "message")
            return None

        if event_name == DONE_EVENT:
            return SseFrame(kind=FrameKind.DONE)
        if event_name == ERROR_EVENT:
            error = payload if isinstance(payload, dict) else {"message": str(payload)}
            return SseFrame(kind=FrameKind.ERROR, error=error)
        if not is_pipeline_event(payload):
            self._skip("unknown or malformed event %r", event_name or "message")
            return None
        return SseFrame(kind=FrameKind.EVENT, event=event_from_dict(payload))

    def _skip(self, message: str, *args: object) -> None:
        self.skipped += 1
        logger.warning("Skipping SSE frame: " + message, *args)
