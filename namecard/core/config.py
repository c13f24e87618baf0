from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "namecard"
    # Service name stamped on every log line when no invocation overrides it.
    service_name: str = "namecard"
    log_level: str = "INFO"
    # Render JSON lines in deployed environments and a console view for local dev.
    log_format: str = "json"
    api_port: int = 8000

    # Primary store profile; leave unset to bootstrap from a Secrets Manager secret.
    database_url: str | None = None
    # Optional failover profile used once when the primary rejects credentials.
    database_url_secondary: str | None = None
    # Sign short-lived RDS IAM tokens instead of using the static URL password.
    db_use_iam_auth: bool = False
    # Explicit TLS override; None falls back to managed-hostname detection.
    db_require_tls: bool | None = None
    aws_region: str | None = None
    # Secret bootstrap inputs mirroring the deployed proxy/cluster topology.
    db_secret_arn: str | None = None
    db_proxy_endpoint: str | None = None
    db_cluster_endpoint: str | None = None
    db_prefer_proxy: bool = True
    # Bounded pools keep cold handlers from exhausting store connections.
    db_pool_size: int = 5
    db_max_overflow: int = 5
    db_statement_timeout_ms: int = 0
    # Retry ceiling and linear backoff base for transient store failures.
    db_retry_attempts: int = 10
    db_retry_base_delay_ms: int = 1000
    # Re-sign IAM tokens before their 15 minute lifetime runs out.
    db_iam_token_ttl_s: int = 600

    # Independent lifetimes for the access/refresh halves of a session.
    auth_access_token_ttl_s: int = 3600
    auth_refresh_token_ttl_s: int = 60 * 60 * 24 * 30
    # Server-side pepper mixed into token digests so a leaked table is not replayable.
    token_hash_pepper: str = "dev-token-pepper"
    # bcrypt cost factor; tests lower it to keep hashing fast.
    password_hash_rounds: int = 12

    # Replay window for Idempotency-Key responses.
    idempotency_ttl_s: int = 300
    idempotency_key_max_length: int = 128


@lru_cache
def get_settings() -> Settings:
    return Settings()
