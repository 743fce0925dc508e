import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env from current directory so PROVIDER and gateway keys are set automatically.
load_dotenv()

SERVICE_VERSION = "2.0.0"


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    provider_name: str
    ai_gateway_url: str
    ai_gateway_api_key: Optional[str]
    ai_model: str
    ai_timeout_seconds: float = 60.0
    functions_base_url: Optional[str]
    functions_api_key: Optional[str]
    db_path: str = "./data/case_agent.db"
    history_limit: int = 20
    cors_origins: str = "*"
    log_level: str = "INFO"

    service_name: str = "case-agent"
    http_port: int = 8000


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Base settings lookup.

    Only defaults live here; `get_settings` below overrides fields from the
    environment on every call.
    """

    return Settings(
        provider_name="stub",
        ai_gateway_url="https://ai.gateway.lovable.dev/v1/chat/completions",
        ai_gateway_api_key=None,
        ai_model="google/gemini-2.5-flash",
        ai_timeout_seconds=60.0,
        functions_base_url=None,
        functions_api_key=None,
        db_path="./data/case_agent.db",
        history_limit=20,
        cors_origins="*",
        log_level="INFO",
    )


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def get_settings() -> Settings:
    """
    Return Settings built from the *current* environment.

    Tests mutate os.environ at runtime via the `env_vars` helper, so we must
    read directly from the environment on each call instead of caching.
    """

    base = _base_settings()
    provider_name = (os.getenv("PROVIDER") or base.provider_name).lower()
    api_key = os.getenv("AI_GATEWAY_API_KEY") or os.getenv("LOVABLE_API_KEY") or None
    functions_base_url = os.getenv("FUNCTIONS_BASE_URL") or None
    if functions_base_url:
        functions_base_url = functions_base_url.rstrip("/")

    return Settings(
        provider_name=provider_name,
        ai_gateway_url=os.getenv("AI_GATEWAY_URL") or base.ai_gateway_url,
        ai_gateway_api_key=api_key,
        ai_model=os.getenv("AI_MODEL") or base.ai_model,
        ai_timeout_seconds=_float_env("AI_TIMEOUT_SECONDS", base.ai_timeout_seconds),
        functions_base_url=functions_base_url,
        functions_api_key=os.getenv("FUNCTIONS_API_KEY") or None,
        db_path=os.getenv("DB_PATH") or base.db_path,
        history_limit=max(1, _int_env("HISTORY_LIMIT", base.history_limit)),
        cors_origins=os.getenv("CORS_ORIGINS") or base.cors_origins,
        log_level=(os.getenv("LOG_LEVEL") or base.log_level).upper(),
        service_name=base.service_name,
        http_port=_int_env("PORT", base.http_port),
    )
