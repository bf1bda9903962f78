"""Runtime configuration for billing sync.

Settings come from environment variables. A `.env` file at the repo root is
loaded first when present, so local development only needs that file.

Usage:
    from core.config import get_settings

    settings = get_settings()
    client = BillingPlatformClient.from_settings(settings, store)
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parents[1]

env_path = REPO_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)


DEFAULT_API_BASE_URL = "https://next.billabex.com/api/public/v1"
DEFAULT_TOKEN_URL = "https://next.billabex.com/api/oauth/token"
DEFAULT_DB_PATH = REPO_ROOT / "billing_sync.db"
DEFAULT_ERP_DB_PATH = REPO_ROOT / "erp_mirror.db"
DEFAULT_DOCUMENTS_DIR = REPO_ROOT / "documents"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


@dataclass(frozen=True)
class SyncSettings:
    """Settings shared by the engine, the worker and the API.

    Attributes:
        api_base_url: Public API root of the billing platform
        token_url: OAuth token endpoint used by the refresh process
        connection_name: Natural key of the Connection record to use
        source_connection_id: Written into every remote `source` reference
        default_language: Language sent for newly created contacts
        default_currency: Currency used when an account has none
        sandbox_mode: When True, every outgoing email is replaced
        override_email: Replacement address used in sandbox mode
        db_path: SQLite file holding connections, queue and operation log
        erp_db_path: SQLite mirror of the ERP records
        documents_dir: Root folder of the rendered invoice/credit-note PDFs
        token_encryption_key: Base64 AES-256 key for secrets at rest (optional)
    """
    api_base_url: str = DEFAULT_API_BASE_URL
    token_url: str = DEFAULT_TOKEN_URL
    connection_name: str = "default"
    source_connection_id: str = "erp-connector"
    default_language: str = "fr"
    default_currency: str = "EUR"
    sandbox_mode: bool = False
    override_email: Optional[str] = None
    db_path: Path = DEFAULT_DB_PATH
    erp_db_path: Path = DEFAULT_ERP_DB_PATH
    documents_dir: Path = DEFAULT_DOCUMENTS_DIR
    token_encryption_key: Optional[str] = None

    # Retry and rate limiting
    max_queue_retries: int = 5
    rate_limit_max_retries: int = 3
    rate_limit_default_wait: int = 60
    rate_limit_max_wait: float = 120.0
    token_margin_minutes: int = 5
    http_timeout_seconds: int = 30

    # Retention and budgets
    log_retention_days: int = 30
    failed_queue_retention_days: int = 7
    queue_budget_seconds: float = 240.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "SyncSettings":
        """Build settings from the current environment."""
        return cls(
            api_base_url=os.getenv("BILLING_API_BASE_URL", DEFAULT_API_BASE_URL).rstrip("/"),
            token_url=os.getenv("BILLING_OAUTH_TOKEN_URL", DEFAULT_TOKEN_URL),
            connection_name=os.getenv("BILLING_CONNECTION_NAME", "default"),
            source_connection_id=os.getenv("BILLING_SOURCE_CONNECTION_ID", "erp-connector"),
            default_language=os.getenv("BILLING_DEFAULT_LANGUAGE", "fr"),
            default_currency=os.getenv("BILLING_DEFAULT_CURRENCY", "EUR"),
            sandbox_mode=_env_bool("BILLING_SANDBOX_MODE"),
            override_email=os.getenv("BILLING_OVERRIDE_EMAIL") or None,
            db_path=Path(os.getenv("SYNC_DB_PATH", str(DEFAULT_DB_PATH))),
            erp_db_path=Path(os.getenv("ERP_DB_PATH", str(DEFAULT_ERP_DB_PATH))),
            documents_dir=Path(os.getenv("DOCUMENTS_DIR", str(DEFAULT_DOCUMENTS_DIR))),
            token_encryption_key=os.getenv("TOKEN_ENCRYPTION_KEY") or None,
            max_queue_retries=_env_int("SYNC_MAX_RETRIES", 5),
            rate_limit_max_retries=_env_int("RATE_LIMIT_MAX_RETRIES", 3),
            rate_limit_default_wait=_env_int("RATE_LIMIT_DEFAULT_WAIT_SECONDS", 60),
            rate_limit_max_wait=_env_float("RATE_LIMIT_MAX_WAIT_SECONDS", 120.0),
            token_margin_minutes=_env_int("TOKEN_EXPIRY_MARGIN_MINUTES", 5),
            http_timeout_seconds=_env_int("HTTP_TIMEOUT_SECONDS", 30),
            log_retention_days=_env_int("LOG_RETENTION_DAYS", 30),
            failed_queue_retention_days=_env_int("FAILED_QUEUE_RETENTION_DAYS", 7),
            queue_budget_seconds=_env_float("QUEUE_BUDGET_SECONDS", 240.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_json=_env_bool("LOG_JSON"),
        )

    def resolve_email(self, email: Optional[str]) -> Optional[str]:
        """Return the address to send to the billing platform.

        In sandbox mode every address is replaced by the override email so no
        real customer is ever contacted.
        """
        if not email:
            return email
        if self.sandbox_mode and self.override_email:
            return self.override_email
        return email


@lru_cache(maxsize=1)
def get_settings() -> SyncSettings:
    """Get the process-wide settings (read once from the environment)."""
    return SyncSettings.from_env()
