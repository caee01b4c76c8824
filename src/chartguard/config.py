from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name) or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    """Centralized application settings.

    This keeps environment-variable handling in one place so other modules can
    depend on strongly-typed attributes instead of calling os.getenv
    directly. Every field is read when the instance is constructed, so tests
    can build a fresh Settings after adjusting the environment or pass
    explicit values.
    """

    # Hex-encoded 32 byte AES key. Provisioning is external; see
    # services/encryption/envelope.py for the provider interface.
    encryption_key: Optional[str] = field(default_factory=lambda: os.getenv("ENCRYPTION_KEY"))
    # Development only: generate a throwaway key when ENCRYPTION_KEY is absent.
    allow_ephemeral_key: bool = field(default_factory=lambda: _env_bool("ALLOW_EPHEMERAL_KEY"))

    # Extraction oracle selection: "demo" (default) or "llm".
    extraction_backend: str = field(default_factory=lambda: os.getenv("EXTRACTION_BACKEND", "demo"))
    extraction_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("EXTRACTION_TIMEOUT_SECONDS", "20"))
    )
    extraction_workers: int = field(default_factory=lambda: int(os.getenv("EXTRACTION_WORKERS", "4")))

    # Advisory semantic check for escalation: "demo" (default), "llm" or "none".
    escalation_classifier: str = field(default_factory=lambda: os.getenv("ESCALATION_CLASSIFIER", "demo"))
    # Comma-separated list of additional emergency phrases to escalate on.
    escalation_extra_signals: List[str] = field(default_factory=lambda: _env_list("ESCALATION_EXTRA_SIGNALS"))

    # Optional settings for external providers.
    openai_api_key: Optional[str] = field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))
    llm_model: str = field(default_factory=lambda: os.getenv("LLM_MODEL", "gpt-4.1-mini"))

    # Merge behaviour.
    rolling_cap: int = field(default_factory=lambda: int(os.getenv("ROLLING_CAP", "10")))
    # Minimum similarity ratio (0-1) for two MedicalHistory entries to be
    # considered the same fact.
    history_similarity_threshold: float = field(
        default_factory=lambda: float(os.getenv("HISTORY_SIMILARITY_THRESHOLD", "0.9"))
    )
    merge_lock_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("MERGE_LOCK_TIMEOUT_SECONDS", "5"))
    )

    # Audit trail. When AUDIT_ASYNC=false events are written inline.
    audit_async: bool = field(default_factory=lambda: _env_bool("AUDIT_ASYNC", "true"))
    audit_queue_size: int = field(default_factory=lambda: int(os.getenv("AUDIT_QUEUE_SIZE", "1000")))

    # Account lock after repeated escalations.
    lock_alert_count: int = field(default_factory=lambda: int(os.getenv("LOCK_ALERT_COUNT", "3")))
    lock_window_minutes: int = field(default_factory=lambda: int(os.getenv("LOCK_WINDOW_MINUTES", "30")))

    # Optional database configuration for SQL-backed repositories.
    database_url: Optional[str] = field(default_factory=lambda: os.getenv("DATABASE_URL"))
    use_sql_repos: bool = field(default_factory=lambda: _env_bool("USE_SQL_REPOS"))

    # Basic API authentication configuration.
    # When ENABLE_API_AUTH=true, protected endpoints require a valid API key.
    enable_api_auth: bool = field(default_factory=lambda: _env_bool("ENABLE_API_AUTH"))
    # Comma-separated list of allowed API keys when auth is enabled.
    api_keys: Optional[str] = field(default_factory=lambda: os.getenv("API_KEYS"))

    # CORS configuration: comma-separated origins. Default is "*" (allow all)
    # which is acceptable for local development but should be tightened in
    # production.
    cors_allow_origins: str = field(default_factory=lambda: os.getenv("CORS_ALLOW_ORIGINS", "*"))
