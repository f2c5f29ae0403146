"""
Chat stream consumer.

One in-flight stream per client: starting a new question aborts the previous
one. Each received event resets the heartbeat timer; a missed heartbeat
forces one reconnect. EventSource is tried first and fetch takes over if it
fails before any content arrives.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from expense_chat.client.events import ChatStreamError, SSEMessage
from expense_chat.client.state import (
    EVENTSOURCE,
    FETCH,
    FailureKind,
    StreamPhase,
    StreamStatus,
    TransportState,
    next_transport,
    stream_status_reducer,
)
from expense_chat.client.transports import (
    EventSourceTransport,
    FetchTransport,
    StreamRequest,
    StreamTransport,
    TransportError,
)

logger = logging.getLogger(__name__)

STREAM_PATH = "/api/chat/stream"
CHAT_PATH = "/api/chat"
HEARTBEAT_TIMEOUT_S = 45.0
MAX_RECONNECTS = 3

Listener = Callable[[Any], Any]


class HeartbeatTimeout(Exception):
    pass


def build_stream_params(
    question: str,
    *,
    since: Optional[str] = None,
    until: Optional[str] = None,
    timezone: Optional[str] = None,
    trip_id: Optional[str] = None,
    user_id: Optional[str] = None,
    token: Optional[str] = None,
) -> Dict[str, str]:
    params = {"q": question}
    optional = {"since": since, "until": until, "tz": timezone, "tripId": trip_id, "userId": user_id, "token": token}
    params.update({key: value for key, value in optional.items() if value})
    return params


def build_stream_url(base_url: str, question: str, **kwargs: Optional[str]) -> str:
    return str(httpx.URL(base_url.rstrip("/") + STREAM_PATH, params=build_stream_params(question, **kwargs)))


class StreamHandle:
    """Listeners plus the outcome of one stream. Listener methods chain."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}
        self.task: Optional["asyncio.Task[None]"] = None
        self.status = StreamStatus()
        self.answer = ""
        self.meta: Optional[Dict[str, Any]] = None
        self.result: Optional[Dict[str, Any]] = None
        self.error: Optional[ChatStreamError] = None
        self.reconnects = 0

    def on(self, event: str, listener: Listener) -> "StreamHandle":
        self._listeners.setdefault(event, []).append(listener)
        return self

    def on_token(self, listener: Listener) -> "StreamHandle":
        return self.on("token", listener)

    def on_result(self, listener: Listener) -> "StreamHandle":
        return self.on("result", listener)

    def on_error(self, listener: Listener) -> "StreamHandle":
        return self.on("error", listener)

    def emit(self, event: str, payload: Any) -> None:
        for listener in self._listeners.get(event, []):
            try:
                listener(payload)
            except Exception:
                logger.warning("stream_listener_failed event=%s", event, exc_info=True)

    def update_status(self, action: str, error: Optional[str] = None) -> None:
        self.status = stream_status_reducer(self.status, action, error)
        self.emit("status", self.status)

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    def abort(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()

    async def wait(self) -> Optional[Dict[str, Any]]:
        if self.task is not None:
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        return self.result


class ChatStreamClient:
    def __init__(
        self,
        base_url: str,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        heartbeat_timeout_s: float = HEARTBEAT_TIMEOUT_S,
        max_reconnects: int = MAX_RECONNECTS,
        allow_fetch_fallback: bool = True,
        transports: Optional[Dict[str, StreamTransport]] = None,
        token_provider: Optional[Callable[[], Awaitable[Optional[str]]]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(connect=5.0, read=None, write=20.0, pool=10.0))
        self.heartbeat_timeout_s = heartbeat_timeout_s
        self.max_reconnects = max_reconnects
        self.allow_fetch_fallback = allow_fetch_fallback
        self._transports: Dict[str, StreamTransport] = transports or {
            EVENTSOURCE: EventSourceTransport(self._http),
            FETCH: FetchTransport(self._http),
        }
        self._token_provider = token_provider
        self._active: Optional[StreamHandle] = None

    @property
    def active(self) -> Optional[StreamHandle]:
        return self._active

    def abort(self) -> None:
        if self._active is not None:
            self._active.abort()

    def start(
        self,
        question: str,
        *,
        since: Optional[str] = None,
        until: Optional[str] = None,
        timezone: Optional[str] = None,
        trip_id: Optional[str] = None,
        user_id: Optional[str] = None,
        token: Optional[str] = None,
        use_post: bool = False,
    ) -> StreamHandle:
        """Start streaming an answer; any stream already in flight is aborted first."""
        self.abort()
        params = build_stream_params(
            question, since=since, until=until, timezone=timezone, trip_id=trip_id, user_id=user_id, token=token
        )
        handle = StreamHandle()
        handle.task = asyncio.create_task(self._run(handle, params, use_post))
        self._active = handle
        return handle

    async def _request(self, params: Dict[str, str], use_post: bool) -> StreamRequest:
        params = dict(params)
        if self._token_provider is not None:
            fresh = await self._token_provider()
            if fresh:
                params["token"] = fresh
        url = self.base_url + STREAM_PATH
        if use_post:
            body = {("question" if k == "q" else k): v for k, v in params.items()}
            return StreamRequest(url=url, body=body)
        return StreamRequest(url=url, params=params)

    async def _run(self, handle: StreamHandle, params: Dict[str, str], use_post: bool) -> None:
        try:
            await self._attempts(handle, params, use_post)
        except asyncio.CancelledError:
            handle.update_status("reset")
            handle.emit("aborted", None)
            raise

    async def _attempts(self, handle: StreamHandle, params: Dict[str, str], use_post: bool) -> None:
        state = TransportState(transport=FETCH, fallback_used=True) if use_post else TransportState()
        handle.update_status("start")
        while True:
            handle.answer = ""
            content = {"seen": False}
            try:
                request = await self._request(params, use_post)
                await self._consume(handle, self._transports[state.transport], request, content)
                return
            except HeartbeatTimeout:
                failure, reason = FailureKind.HEARTBEAT, "heartbeat timeout"
                error = ChatStreamError("AI-408", "Stream heartbeat timed out")
            except TransportError as exc:
                failure = FailureKind.SERVER_ERROR if exc.error is not None else FailureKind.CONNECT
                reason = str(exc)
                error = exc.error or ChatStreamError("AI-503", str(exc), exc.status)

            decision = next_transport(
                replace(state, content_seen=content["seen"]),
                failure,
                allow_fetch_fallback=self.allow_fetch_fallback,
                max_reconnects=self.max_reconnects,
            )
            if decision.action != "retry":
                self._fail(handle, error)
                return
            logger.info("chat_stream_reconnect transport=%s reason=%s", decision.state.transport, reason)
            state = decision.state
            handle.reconnects += 1
            handle.update_status("reconnect", reason)
            handle.emit("reconnect", {"transport": state.transport, "reason": reason})

    async def _consume(
        self,
        handle: StreamHandle,
        transport: StreamTransport,
        request: StreamRequest,
        content: Dict[str, bool],
    ) -> None:
        iterator = transport.open(request).__aiter__()
        try:
            while True:
                try:
                    message = await asyncio.wait_for(iterator.__anext__(), timeout=self.heartbeat_timeout_s)
                except StopAsyncIteration:
                    raise TransportError("stream closed before a terminal event") from None
                except asyncio.TimeoutError:
                    raise HeartbeatTimeout() from None
                if self._dispatch(handle, message, content):
                    return
        finally:
            await iterator.aclose()

    def _dispatch(self, handle: StreamHandle, message: SSEMessage, content: Dict[str, bool]) -> bool:
        """Apply one event; True once a terminal event was handled."""
        if message.event == "ping":
            return False
        if message.event == "meta":
            handle.meta = message.json()
            handle.emit("meta", handle.meta)
            return False
        if message.event == "token":
            content["seen"] = True
            handle.answer += message.data
            if handle.status.phase is not StreamPhase.STREAMING:
                handle.update_status("token")
            handle.emit("token", message.data)
            return False
        if message.event == "result":
            content["seen"] = True
            handle.result = message.json()
            handle.update_status("complete")
            handle.emit("result", handle.result)
            return True
        if message.event == "error":
            try:
                error = ChatStreamError.from_payload(message.json())
            except ValueError:
                error = ChatStreamError("AI-500", message.data)
            self._fail(handle, error)
            return True
        return False

    def _fail(self, handle: StreamHandle, error: ChatStreamError) -> None:
        handle.error = error
        handle.update_status("fail", f"{error.code}: {error.message}")
        handle.emit("error", error)

    async def aclose(self) -> None:
        self.abort()
        await self._http.aclose()


async def post_chat(
    client: httpx.AsyncClient,
    base_url: str,
    payload: Dict[str, Any],
    *,
    retries: int = 0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Dict[str, Any]:
    """Single-shot chat request. Retries only errors flagged retriable, with capped backoff."""
    attempt = 0
    while True:
        try:
            resp = await client.post(base_url.rstrip("/") + CHAT_PATH, json=payload)
        except httpx.TimeoutException as exc:
            error = ChatStreamError("AI-408", f"Request timed out: {exc}")
        else:
            if resp.status_code < 400:
                return resp.json()
            try:
                body = resp.json()
            except ValueError:
                body = {"code": f"AI-{resp.status_code}", "message": resp.text[:200]}
            error = ChatStreamError.from_payload(body, resp.status_code)
        if not error.retriable or attempt >= retries:
            raise error
        delay = min(1.5, 0.3 * 2 ** attempt) + random.uniform(0, 0.2)
        attempt += 1
        await sleep(delay)
