"""
Async client for an OpenAI-compatible chat completions API (Groq by default).

One instance per process: it owns a pooled httpx.AsyncClient and knows the
primary and fallback model names. A 400/404 from the provider is surfaced as
ModelUnavailableError so callers can retry once on the fallback model.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import httpx
from langchain_core.messages import BaseMessage

from expense_chat.config import (
    GROQ_BASE_URL,
    GROQ_FALLBACK_MODEL,
    GROQ_MODEL,
    LLM_TIMEOUT_S,
    get_groq_api_key,
)
from expense_chat.services.runtime import log_event

logger = logging.getLogger(__name__)

_ROLE_BY_TYPE = {"system": "system", "human": "user", "ai": "assistant"}
MODEL_UNAVAILABLE_STATUSES = frozenset({400, 404})


class LLMError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ModelUnavailableError(LLMError):
    """The provider rejected the model or the request shape (HTTP 400/404)."""


class LLMConfigError(LLMError):
    pass


def to_chat_messages(messages: Sequence[Any]) -> List[Dict[str, str]]:
    """Accept langchain messages or plain role/content dicts."""
    out: List[Dict[str, str]] = []
    for message in messages:
        if isinstance(message, BaseMessage):
            out.append({"role": _ROLE_BY_TYPE.get(message.type, "user"), "content": str(message.content)})
        else:
            out.append({"role": str(message["role"]), "content": str(message["content"])})
    return out


def _error_for_status(status_code: int, body: str, model: str) -> LLMError:
    snippet = (body or "")[:300]
    if status_code in MODEL_UNAVAILABLE_STATUSES:
        return ModelUnavailableError(f"model {model} unavailable ({status_code}): {snippet}", status_code)
    return LLMError(f"provider error {status_code}: {snippet}", status_code)


class LLMClient:
    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = GROQ_BASE_URL,
        model: str = GROQ_MODEL,
        fallback_model: Optional[str] = GROQ_FALLBACK_MODEL,
        timeout_s: float = LLM_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise LLMConfigError("GROQ_API_KEY is not configured")
        self.model = model
        self.fallback_model = fallback_model if fallback_model and fallback_model != model else None
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            timeout=httpx.Timeout(connect=5.0, read=timeout_s, write=20.0, pool=10.0),
            transport=transport,
        )

    @classmethod
    def from_env(cls) -> "LLMClient":
        return cls(get_groq_api_key())

    async def aclose(self) -> None:
        await self._client.aclose()

    def _payload(self, messages: Sequence[Any], model: str, temperature: float, **extra: Any) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": to_chat_messages(messages),
            "temperature": temperature,
        }
        payload.update(extra)
        return payload

    async def complete(
        self,
        messages: Sequence[Any],
        *,
        model: Optional[str] = None,
        temperature: float = 0.0,
        json_mode: bool = False,
    ) -> str:
        model_name = model or self.model
        extra: Dict[str, Any] = {"stream": False}
        if json_mode:
            extra["response_format"] = {"type": "json_object"}
        started = time.perf_counter()
        try:
            resp = await self._client.post("/chat/completions", json=self._payload(messages, model_name, temperature, **extra))
        except httpx.HTTPError as exc:
            raise LLMError(f"provider request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise _error_for_status(resp.status_code, resp.text, model_name)
        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise LLMError("provider returned an unexpected completion shape") from exc
        log_event(
            logger,
            logging.INFO,
            "llm_completion_ok",
            model=model_name,
            json_mode=json_mode,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return str(content or "")

    async def stream(
        self,
        messages: Sequence[Any],
        *,
        model: Optional[str] = None,
        temperature: float = 0.2,
    ) -> AsyncIterator[str]:
        """Yield content deltas. Status errors are raised before the first token."""
        model_name = model or self.model
        payload = self._payload(messages, model_name, temperature, stream=True)
        try:
            async with self._client.stream("POST", "/chat/completions", json=payload) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise _error_for_status(resp.status_code, body, model_name)
                async for line in resp.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    payload_line = line[5:].strip()
                    if payload_line == "[DONE]":
                        break
                    try:
                        parsed = json.loads(payload_line)
                    except ValueError:
                        continue
                    choices = parsed.get("choices") or []
                    if not choices:
                        continue
                    delta = choices[0].get("delta") or {}
                    token = delta.get("content")
                    if token:
                        yield str(token)
        except httpx.HTTPError as exc:
            raise LLMError(f"provider stream failed: {exc}") from exc

    async def retrieve_model(self, model: Optional[str] = None) -> Dict[str, Any]:
        model_name = model or self.model
        try:
            resp = await self._client.get(f"/models/{model_name}")
        except httpx.HTTPError as exc:
            raise LLMError(f"provider request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise _error_for_status(resp.status_code, resp.text, model_name)
        return resp.json()


async def complete_with_fallback(llm: LLMClient, messages: Sequence[Any], **kwargs: Any) -> Tuple[str, str]:
    """Run a completion on the primary model, retrying once on the fallback model."""
    try:
        return await llm.complete(messages, **kwargs), llm.model
    except ModelUnavailableError as exc:
        if not llm.fallback_model:
            raise
        log_event(
            logger,
            logging.WARNING,
            "llm_model_fallback",
            primary=llm.model,
            fallback=llm.fallback_model,
            status_code=exc.status_code,
        )
        return await llm.complete(messages, model=llm.fallback_model, **kwargs), llm.fallback_model
