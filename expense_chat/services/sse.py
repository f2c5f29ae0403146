"""
Server-Sent Events emission for the chat stream.

EventChannel runs the chat producer and a heartbeat side by side and feeds one
ordered frame queue: at most one `meta`, any number of `token`, exactly one
terminal `result`/`error`, `ping` in between. Nothing is emitted after the
terminal event. Closing the response cancels both tasks.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from expense_chat.config import PING_INTERVAL_S
from expense_chat.services.errors import STREAM_ABORTED
from expense_chat.services.runtime import log_event

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = frozenset({"result", "error"})
SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


def format_event(event: str, data: Any) -> str:
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False, default=str)
    lines = payload.split("\n") if payload else [""]
    body = "".join(f"data: {line}\n" for line in lines)
    return f"event: {event}\n{body}\n"


class EventChannel:
    def __init__(self, ping_interval_s: float = PING_INTERVAL_S):
        self.ping_interval_s = ping_interval_s
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._closed = False
        self._meta_sent = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: str, data: Any) -> bool:
        """Queue one event. Returns False when the event was dropped."""
        if self._closed:
            log_event(logger, logging.DEBUG, "sse_event_after_close", sse_event=event)
            return False
        if event == "meta":
            if self._meta_sent:
                return False
            self._meta_sent = True
        await self._queue.put(format_event(event, data))
        if event in TERMINAL_EVENTS:
            self.close()
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def _heartbeat(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.ping_interval_s)
            if self._closed:
                break
            try:
                self._queue.put_nowait(format_event("ping", {}))
            except Exception:
                logger.warning("sse_ping_failed", exc_info=True)

    async def _run(self, producer: Callable[["EventChannel"], Awaitable[None]]) -> None:
        try:
            await producer(self)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("sse_producer_failed")
            await self.send("error", {"code": STREAM_ABORTED, "message": "Stream aborted"})
        finally:
            self.close()

    async def stream(self, producer: Callable[["EventChannel"], Awaitable[None]]) -> AsyncIterator[str]:
        producer_task = asyncio.create_task(self._run(producer))
        heartbeat_task = asyncio.create_task(self._heartbeat())
        completed = False
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    break
                yield frame
            completed = True
        finally:
            self._closed = True
            for task in (heartbeat_task, producer_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(heartbeat_task, producer_task, return_exceptions=True)
            if not completed:
                log_event(logger, logging.INFO, "sse_stream_closed_by_client")
