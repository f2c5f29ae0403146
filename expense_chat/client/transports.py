"""
Two ways to read the chat event stream, behind one interface:

- EventSourceTransport: GET only, line-oriented like a browser EventSource
- FetchTransport: GET or POST, reads raw chunks and splits frames itself;
  retries once on a retriable status with a short jittered delay
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import random
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol

import httpx

from expense_chat.client.events import ChatStreamError, SSEMessage, error_from_body, parse_sse_block, parse_sse_chunk

logger = logging.getLogger(__name__)

RETRIABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
RETRY_JITTER_S = (0.2, 0.6)


class TransportError(Exception):
    """The connection failed. `error` is set when the server answered with a definitive error."""

    def __init__(self, message: str, *, status: Optional[int] = None, error: Optional[ChatStreamError] = None):
        super().__init__(message)
        self.status = status
        self.error = error


@dataclass(frozen=True)
class StreamRequest:
    url: str
    params: Dict[str, str] = field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)


class StreamTransport(Protocol):
    name: str

    def open(self, request: StreamRequest) -> AsyncIterator[SSEMessage]:
        ...


def _is_event_stream(resp: httpx.Response) -> bool:
    return resp.headers.get("content-type", "").startswith("text/event-stream")


class EventSourceTransport:
    name = "eventsource"

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def open(self, request: StreamRequest) -> AsyncIterator[SSEMessage]:
        if request.body is not None:
            raise TransportError("EventSource cannot send a request body")
        headers = {"Accept": "text/event-stream", **request.headers}
        try:
            async with self._client.stream("GET", request.url, params=request.params, headers=headers) as resp:
                if resp.status_code != 200 or not _is_event_stream(resp):
                    body = await resp.aread()
                    error = error_from_body(body, resp.status_code) if resp.status_code >= 400 else None
                    raise TransportError(f"EventSource failed with HTTP {resp.status_code}", status=resp.status_code, error=error)
                block: List[str] = []
                async for line in resp.aiter_lines():
                    if line:
                        block.append(line)
                        continue
                    message = parse_sse_block("\n".join(block))
                    block = []
                    if message is not None:
                        yield message
        except httpx.HTTPError as exc:
            raise TransportError(f"EventSource connection error: {exc}") from exc


class FetchTransport:
    name = "fetch"

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ):
        self._client = client
        self._sleep = sleep
        self._jitter = jitter

    async def open(self, request: StreamRequest) -> AsyncIterator[SSEMessage]:
        method = "GET" if request.body is None else "POST"
        headers = {"Accept": "text/event-stream", **request.headers}
        retried = False
        while True:
            retry = False
            try:
                async with self._client.stream(
                    method,
                    request.url,
                    params=request.params or None,
                    json=request.body,
                    headers=headers,
                ) as resp:
                    if resp.status_code in RETRIABLE_STATUSES and not retried:
                        retry = True
                    elif resp.status_code >= 400:
                        body = await resp.aread()
                        raise TransportError(
                            f"fetch stream failed with HTTP {resp.status_code}",
                            status=resp.status_code,
                            error=error_from_body(body, resp.status_code),
                        )
                    else:
                        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
                        buffer = ""
                        async for chunk in resp.aiter_bytes():
                            buffer += decoder.decode(chunk)
                            messages, buffer = parse_sse_chunk(buffer)
                            for message in messages:
                                yield message
                        buffer += decoder.decode(b"", final=True)
                        if buffer.strip():
                            messages, _rest = parse_sse_chunk(buffer + "\n\n")
                            for message in messages:
                                yield message
                        return
            except httpx.HTTPError as exc:
                raise TransportError(f"fetch stream connection error: {exc}") from exc
            if retry:
                retried = True
                delay = self._jitter(*RETRY_JITTER_S)
                logger.info("fetch_stream_retry delay_s=%.3f", delay)
                await self._sleep(delay)
