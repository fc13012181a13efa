"""Startup configuration.

Checks that all required environment variables are set before the server
accepts webhooks, so that a missing key causes a clear startup failure
rather than every call silently degrading to the keyword classifier.
"""

import os
import sys
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "OPENAI_API_KEY",
    "VOIP_WEBHOOK_SECRET",
]

OPTIONAL_VARS = [
    "REDIS_URL",
    "CALLBACK_NUMBER",
    "BACKEND_RECORDS_URL",
    "BACKEND_JOBS_URL",
    "BACKEND_WEBHOOK_SECRET",
    "LOG_LEVEL",
]


def validate_config() -> None:
    """Validate environment variables at startup.

    Exits the process with a clear error if any required variable is missing
    or empty.  Logs warnings for missing optional variables.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env (local) or in the deployment's secrets.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        logger.warning("Invalid %s=%r, using %d", name, raw, default)
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        logger.warning("Invalid %s=%r, using %s", name, raw, default)
        return default


@dataclass(frozen=True)
class Settings:
    openai_api_key: str = ""
    webhook_secret: str = ""
    redis_url: str = ""
    state_ttl_seconds: int = 3600
    llm_model: str = "gpt-4o-mini"
    llm_timeout_s: float = 1.5
    max_negotiation_attempts: int = 2
    callback_number: str = ""
    log_level: str = "INFO"
    port: int = 8765

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            webhook_secret=os.getenv("VOIP_WEBHOOK_SECRET", ""),
            redis_url=os.getenv("REDIS_URL", ""),
            state_ttl_seconds=_int_env("STATE_TTL_SECONDS", 3600),
            llm_model=os.getenv("LLM_MODEL", "gpt-4o-mini"),
            llm_timeout_s=_float_env("LLM_TIMEOUT_S", 1.5),
            max_negotiation_attempts=_int_env("MAX_NEGOTIATION_ATTEMPTS", 2),
            callback_number=os.getenv("CALLBACK_NUMBER", ""),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=_int_env("PORT", 8765),
        )
