"""Process-wide service handles, created lazily on app.state and injected per request."""
import logging

from fastapi import FastAPI, Request

from expense_chat.services.db import DatabaseConfigError, ExpenseStore
from expense_chat.services.errors import QUERY_FAILED, STREAM_ABORTED, ChatQueryError
from expense_chat.services.llm import LLMClient, LLMConfigError

logger = logging.getLogger("deps")


async def get_store(request: Request) -> ExpenseStore:
    state = request.app.state
    store = getattr(state, "expense_store", None)
    if store is None:
        try:
            store = ExpenseStore.from_env()
        except DatabaseConfigError as exc:
            raise ChatQueryError(500, QUERY_FAILED, "Database is not configured") from exc
        state.expense_store = store
    return store


async def get_llm(request: Request) -> LLMClient:
    state = request.app.state
    llm = getattr(state, "llm_client", None)
    if llm is None:
        try:
            llm = LLMClient.from_env()
        except LLMConfigError as exc:
            raise ChatQueryError(500, STREAM_ABORTED, "Language model is not configured") from exc
        state.llm_client = llm
    return llm


async def shutdown_services(app: FastAPI) -> None:
    store = getattr(app.state, "expense_store", None)
    if store is not None:
        await store.dispose()
        app.state.expense_store = None
    llm = getattr(app.state, "llm_client", None)
    if llm is not None:
        await llm.aclose()
        app.state.llm_client = None
    logger.info("services_shutdown")
