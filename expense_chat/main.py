"""
FastAPI backend for the expense chat assistant.
Run with: uvicorn expense_chat.main:app --reload --port 8000
"""
import logging
import os
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from expense_chat.config import get_allowed_origins
from expense_chat.routes.chat import router as chat_router
from expense_chat.routes.deps import shutdown_services
from expense_chat.routes.health import router as health_router
from expense_chat.services.errors import ChatQueryError
from expense_chat.services.runtime import clear_context, set_request_id

app = FastAPI(title="Expense Chat API", version="1.0.0")
logger = logging.getLogger("expense_chat")

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.on_event("shutdown")
async def close_services():
    await shutdown_services(app)


@app.exception_handler(ChatQueryError)
async def chat_query_error_handler(request: Request, exc: ChatQueryError):
    return JSONResponse(exc.to_dict(), status_code=exc.status)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id") or str(uuid.uuid4()))
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("request_failed request_id=%s path=%s", request_id, request.url.path)
        raise
    finally:
        clear_context()
    response.headers["x-request-id"] = request_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["x-request-id"],
)

app.include_router(chat_router)
app.include_router(health_router)


@app.get("/api/health")
def health():
    return {"status": "ok"}
