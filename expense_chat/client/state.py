"""
Pure state transitions for the stream consumer. No I/O here, so the
reconnect and transport-fallback rules can be tested directly.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import Optional

EVENTSOURCE = "eventsource"
FETCH = "fetch"


class StreamPhase(str, enum.Enum):
    IDLE = "idle"
    DRAFTING = "drafting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class StreamStatus:
    phase: StreamPhase = StreamPhase.IDLE
    attempt: int = 0
    last_error: Optional[str] = None


def stream_status_reducer(state: StreamStatus, action: str, error: Optional[str] = None) -> StreamStatus:
    if action == "start":
        return StreamStatus(StreamPhase.DRAFTING, attempt=1)
    if action == "reconnect":
        return StreamStatus(StreamPhase.DRAFTING, attempt=state.attempt + 1, last_error=error)
    if action == "token":
        return replace(state, phase=StreamPhase.STREAMING)
    if action == "complete":
        return replace(state, phase=StreamPhase.COMPLETED)
    if action == "fail":
        return replace(state, phase=StreamPhase.ERROR, last_error=error)
    if action == "reset":
        return StreamStatus()
    return state


class FailureKind(str, enum.Enum):
    CONNECT = "connect"
    HEARTBEAT = "heartbeat"
    SERVER_ERROR = "server_error"
    ABORTED = "aborted"


@dataclass(frozen=True)
class TransportState:
    transport: str = EVENTSOURCE
    fallback_used: bool = False
    content_seen: bool = False
    reconnects: int = 0


@dataclass(frozen=True)
class TransportDecision:
    action: str  # "retry" | "fail" | "stop"
    state: TransportState


def next_transport(
    state: TransportState,
    failure: FailureKind,
    *,
    allow_fetch_fallback: bool = True,
    max_reconnects: int = 3,
) -> TransportDecision:
    """What to do after a failed attempt.

    - aborted by the consumer: stop
    - server sent a definitive error: fail
    - heartbeat missed: reconnect on the same transport (bounded)
    - EventSource failed before any content: switch to fetch, once
    """
    if failure is FailureKind.ABORTED:
        return TransportDecision("stop", state)
    if failure is FailureKind.SERVER_ERROR:
        return TransportDecision("fail", state)
    if failure is FailureKind.HEARTBEAT:
        if state.reconnects >= max_reconnects:
            return TransportDecision("fail", state)
        return TransportDecision("retry", replace(state, content_seen=False, reconnects=state.reconnects + 1))
    if (
        state.transport == EVENTSOURCE
        and allow_fetch_fallback
        and not state.fallback_used
        and not state.content_seen
    ):
        return TransportDecision("retry", replace(state, transport=FETCH, fallback_used=True))
    return TransportDecision("fail", state)
