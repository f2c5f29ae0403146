"""Request-terminating errors and their client-facing codes."""
from typing import Any, Dict

INPUT_ERROR = "AI-400"
AUTH_ERROR = "RLS-401"
STREAM_ABORTED = "AI-500"
ANSWER_FAILED = "AI-502"
QUERY_FAILED = "SQL-500"


class ChatQueryError(Exception):
    """An error that ends the request and is reported to the caller as `{code, message}`."""

    def __init__(self, status: int, code: str, message: str):
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


def input_error(message: str) -> ChatQueryError:
    return ChatQueryError(400, INPUT_ERROR, message)


def auth_error(message: str) -> ChatQueryError:
    return ChatQueryError(401, AUTH_ERROR, message)
