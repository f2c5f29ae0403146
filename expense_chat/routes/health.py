"""Read-only health probe: database, model provider and active auth policy."""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from expense_chat.config import allow_anonymous, envs_present, get_auth_mode
from expense_chat.routes.deps import get_llm, get_store
from expense_chat.services.errors import ChatQueryError
from expense_chat.services.llm import LLMError
from expense_chat.services.runtime import log_event

router = APIRouter(prefix="/api/chat", tags=["health"])
logger = logging.getLogger("health_route")


async def _check_db(request: Request) -> Dict[str, Any]:
    try:
        store = await get_store(request)
        await store.ping()
    except ChatQueryError as exc:
        return {"ok": False, "error": exc.message}
    except Exception as exc:
        log_event(logger, logging.WARNING, "health_db_failed", error=str(exc)[:200])
        return {"ok": False, "error": exc.__class__.__name__}
    return {"ok": True, "error": None}


async def _check_llm(request: Request) -> Dict[str, Any]:
    try:
        llm = await get_llm(request)
        await llm.retrieve_model()
    except ChatQueryError as exc:
        return {"ok": False, "error": exc.message}
    except LLMError as exc:
        log_event(logger, logging.WARNING, "health_llm_failed", error=str(exc)[:200])
        return {"ok": False, "error": f"provider status {exc.status_code}" if exc.status_code else "provider unreachable"}
    return {"ok": True, "error": None}


@router.get("/health")
async def chat_health(request: Request):
    db = await _check_db(request)
    llm = await _check_llm(request)
    body = {
        "db": db,
        "llm": llm,
        "policy": {"authMode": get_auth_mode(), "allowAnonymous": allow_anonymous()},
        "envsPresent": envs_present(),
    }
    return JSONResponse(body, status_code=200 if db["ok"] and llm["ok"] else 503)
