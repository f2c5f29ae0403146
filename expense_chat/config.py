"""
Environment-driven settings shared by the API, the pipeline services and the DB layer.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).parent.parent
load_dotenv(PROJECT_ROOT / ".env")

EXPENSES_TABLE = "ai_expenses"
MAX_LIMIT = 500

# Database
CONNECTION_ENV_KEYS = (
    "DATABASE_URL",
    "SUPABASE_DB_URL",
    "SUPABASE_DB_CONNECTION_STRING",
    "POSTGRES_URL",
)
DB_POOL_SIZE = max(1, int(os.getenv("DB_POOL_SIZE", "10")))
DB_POOL_RECYCLE_S = max(30, int(os.getenv("DB_POOL_RECYCLE_S", "300")))
DB_CONNECT_TIMEOUT_S = max(1.0, float(os.getenv("DB_CONNECT_TIMEOUT_S", "10")))
DB_QUERY_TIMEOUT_S = max(1.0, float(os.getenv("DB_QUERY_TIMEOUT_S", "30")))

# Language model provider (OpenAI-compatible chat completions API)
LLM_PROVIDER = "groq"
GROQ_BASE_URL = os.getenv("GROQ_BASE_URL", "https://api.groq.com/openai/v1").rstrip("/")
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.1-70b-versatile")
GROQ_FALLBACK_MODEL = os.getenv("GROQ_FALLBACK_MODEL", "llama-3.1-8b-instant")
LLM_TIMEOUT_S = max(5.0, float(os.getenv("LLM_TIMEOUT_S", "60")))

# Chat behaviour
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "Asia/Seoul")
PING_INTERVAL_S = max(0.05, float(os.getenv("AI_CHAT_PING_INTERVAL_S", "15")))
TOKEN_TTL_DEFAULT_S = 300
TOKEN_TTL_MAX_S = 900

DEV_ORIGINS = [
    "http://localhost:3000", "http://127.0.0.1:3000",
    "http://localhost:5173", "http://127.0.0.1:5173",
]


def get_groq_api_key() -> str:
    return (os.getenv("GROQ_API_KEY") or "").strip()


def get_jwt_secret() -> str:
    return (os.getenv("JWT_SECRET") or "").strip()


def get_auth_mode() -> str:
    mode = (os.getenv("AI_CHAT_AUTH_MODE") or "anonymous").strip().lower()
    return "jwt" if mode == "jwt" else "anonymous"


def allow_anonymous() -> bool:
    return get_auth_mode() == "anonymous"


def get_allowed_origins() -> list:
    extra = [o.strip() for o in (os.getenv("AI_CHAT_ALLOWED_ORIGINS") or "").split(",") if o.strip()]
    return DEV_ORIGINS + [o for o in extra if o not in DEV_ORIGINS]


def envs_present() -> dict:
    """Which configuration keys are set; values are never reported."""
    keys = ("DATABASE_URL", "GROQ_API_KEY", "GROQ_MODEL", "JWT_SECRET", "DEFAULT_TIMEZONE")
    return {key: bool((os.getenv(key) or "").strip()) for key in keys}
