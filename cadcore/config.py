# cadcore/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"
    service_name: str = "cadcore"

    # Persistence
    # "memory"   - in-process store (dev, tests, single-instance demos)
    # "postgres" - asyncpg-backed store (shared database of record)
    persistence_backend: Literal["memory", "postgres"] = "memory"
    expected_schema_version: str = "002_dispatch_events.sql"  # Update on deploy when new migrations are added
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000
    pg_idle_in_tx_timeout_ms: int = 30000

    # Circuit breaker around the database (consecutive failures before opening)
    db_breaker_failure_threshold: int = 5
    db_breaker_reset_seconds: float = 30.0

    # Transitions
    # How many times a transition re-reads the record after losing a version
    # race before giving up with ConcurrentModification. Re-reading re-runs
    # validation against fresh state; the write itself is never replayed.
    transition_conflict_retries: int = 3
    unit_history_default_limit: int = 50

    # Event feed (polling transport)
    event_feed_max_events: int = 5000          # In-memory feed ring size
    poll_interval_hint_seconds: int = 5        # Returned to clients as the suggested refresh interval
    event_feed_page_size: int = 200

    # BOLO expiry sweep (advisory; read paths always apply the expiry check)
    bolo_sweep_enabled: bool = False
    bolo_sweep_interval_seconds: float = 30.0

    # Outbound webhook fanout (optional message-bus bridge)
    fanout_webhook_url: str | None = None
    fanout_webhook_token: str | None = None
    fanout_webhook_max_attempts: int = 3
    fanout_webhook_retry_delay_seconds: float = 1.0

    # HTTP
    allowed_origins: list[str] = ["*"]
    enable_request_logging: bool = True
    enable_metrics: bool = True
    actor_header: str = "X-Actor-Id"

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def uses_postgres(self) -> bool:
        return self.persistence_backend == "postgres"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        if not self.uses_postgres:
            missing.append("persistence_backend=postgres")

        if self.uses_postgres and not (self.database_url or self.pgpassword):
            missing.append("database_url or pgpassword")

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if s.persistence_backend == "memory" and not s.app_env == "dev":
        warnings.append(
            f"{s.app_env}: persistence_backend=memory keeps dispatch state in one process only."
        )

    if s.transition_conflict_retries < 1:
        warnings.append(
            "transition_conflict_retries < 1: every lost version race surfaces as ConcurrentModification."
        )

    if s.fanout_webhook_url and not s.fanout_webhook_url.startswith("https://") and s.is_production:
        warnings.append("prod: fanout_webhook_url is not https.")

    if s.fanout_webhook_url and s.fanout_webhook_max_attempts < 1:
        warnings.append("fanout_webhook_max_attempts < 1: webhook fanout will never send.")

    if s.bolo_sweep_enabled and s.bolo_sweep_interval_seconds < 1:
        warnings.append("bolo_sweep_interval_seconds < 1: the sweeper will poll the store continuously.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")


settings = Settings()
validate_or_warn(settings)
