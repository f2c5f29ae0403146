"""SSE frame parsing and the client-side stream error type."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

_FRAME_BOUNDARY_RE = re.compile(r"\r?\n\r?\n")
RETRIABLE_TIMEOUT_CODE = "AI-408"


@dataclass(frozen=True)
class SSEMessage:
    event: str
    data: str

    def json(self) -> Any:
        return json.loads(self.data) if self.data else None


class ChatStreamError(Exception):
    def __init__(self, code: str, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.retriable = code == RETRIABLE_TIMEOUT_CODE or code.startswith("AI-5")

    @classmethod
    def from_payload(cls, payload: Any, status: Optional[int] = None) -> "ChatStreamError":
        if isinstance(payload, dict):
            code = str(payload.get("code") or "AI-500")
            message = str(payload.get("message") or payload.get("detail") or "Request failed")
            return cls(code, message, status)
        return cls("AI-500", str(payload or "Request failed"), status)


def parse_sse_block(block: str) -> Optional[SSEMessage]:
    event = "message"
    data_lines: List[str] = []
    for line in block.splitlines():
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value.strip() or "message"
        elif name == "data":
            data_lines.append(value)
    if not data_lines and event == "message":
        return None
    return SSEMessage(event=event, data="\n".join(data_lines))


def parse_sse_chunk(buffer: str) -> Tuple[List[SSEMessage], str]:
    """Split complete frames off `buffer`; returns (messages, unparsed remainder)."""
    parts = _FRAME_BOUNDARY_RE.split(buffer)
    rest = parts.pop()
    messages = [m for m in (parse_sse_block(part) for part in parts) if m is not None]
    return messages, rest


def error_from_body(body: bytes, status: int) -> ChatStreamError:
    """Build the error a non-2xx stream response carries (SSE error frame or JSON body)."""
    text = body.decode("utf-8", errors="replace")
    messages, rest = parse_sse_chunk(text + "\n\n")
    for message in messages:
        if message.event == "error":
            try:
                return ChatStreamError.from_payload(message.json(), status)
            except ValueError:
                return ChatStreamError("AI-500", message.data, status)
    try:
        return ChatStreamError.from_payload(json.loads(text), status)
    except ValueError:
        code = "RLS-401" if status == 401 else f"AI-{status}"
        return ChatStreamError(code, text.strip()[:200] or f"HTTP {status}", status)
