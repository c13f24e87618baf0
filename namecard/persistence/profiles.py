from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import re
from typing import Any

from sqlalchemy.engine import URL, make_url

from namecard.core.config import Settings
from namecard.core.errors import ConfigurationError


logger = logging.getLogger(__name__)

# Managed-database endpoints (RDS instances, Aurora clusters, RDS Proxy) always get TLS.
MANAGED_HOST_PATTERN = re.compile(r"\.(rds|rdsdataservices|proxy-[^.]+)\.amazonaws\.com$", re.IGNORECASE)

DEFAULT_DRIVER = "postgresql+asyncpg"
DEFAULT_PORT = 5432
DEFAULT_DATABASE = "namecard"


@dataclass(frozen=True)
class ConnectionProfile:
    # Immutable so a profile switch always installs a complete descriptor.
    name: str
    host: str | None
    port: int | None
    database: str | None
    username: str | None
    password: str | None = None
    use_dynamic_credentials: bool = False
    require_tls: bool | None = None
    driver: str = DEFAULT_DRIVER

    @classmethod
    def from_url(
        cls,
        name: str,
        url: str,
        *,
        use_dynamic_credentials: bool = False,
        require_tls: bool | None = None,
    ) -> "ConnectionProfile":
        try:
            parsed = make_url(url)
        except Exception as exc:  # noqa: BLE001 - surface a config error instead of a parser trace
            raise ConfigurationError(f"Invalid database URL for profile {name}") from exc
        is_sqlite = parsed.drivername.startswith("sqlite")
        return cls(
            name=name,
            host=parsed.host,
            port=parsed.port or (None if is_sqlite else DEFAULT_PORT),
            database=parsed.database,
            username=parsed.username,
            password=parsed.password,
            use_dynamic_credentials=use_dynamic_credentials and not is_sqlite,
            require_tls=require_tls,
            driver=parsed.drivername,
        )

    @property
    def is_sqlite(self) -> bool:
        return self.driver.startswith("sqlite")

    @property
    def is_memory(self) -> bool:
        return self.is_sqlite and self.database in (None, "", ":memory:")

    def sqlalchemy_url(self) -> URL:
        # Dynamic profiles get their password per connection, never in the URL.
        password = None if self.use_dynamic_credentials else self.password
        return URL.create(
            self.driver,
            username=self.username,
            password=password,
            host=self.host,
            port=self.port,
            database=self.database,
        )

    def describe(self) -> dict[str, Any]:
        # Log-safe view; never includes the password.
        return {
            "profile": self.name,
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "username": self.username,
            "dynamic_credentials": self.use_dynamic_credentials,
        }


def should_enforce_tls(profile: ConnectionProfile) -> bool:
    if profile.is_sqlite:
        return False
    if profile.require_tls is not None:
        return profile.require_tls
    return bool(profile.host and MANAGED_HOST_PATTERN.search(profile.host))


def _read_secret(secret_arn: str, client: Any | None, region: str | None) -> dict[str, Any]:
    if client is None:
        import boto3

        client = boto3.client("secretsmanager", region_name=region)
    response = client.get_secret_value(SecretId=secret_arn)
    raw = response.get("SecretString")
    if raw is None and response.get("SecretBinary") is not None:
        binary = response["SecretBinary"]
        raw = binary.decode("utf-8") if isinstance(binary, (bytes, bytearray)) else str(binary)
    if not raw:
        raise ConfigurationError("Database secret is empty")
    try:
        secret = json.loads(raw)
    except ValueError as exc:
        raise ConfigurationError("Database secret is not valid JSON") from exc
    if not isinstance(secret, dict):
        raise ConfigurationError("Database secret must be a JSON object")
    return secret


def _first(secret: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = secret.get(key)
        if value not in (None, ""):
            return value
    return None


def profiles_from_secret(settings: Settings, *, client: Any | None = None) -> list[ConnectionProfile]:
    # Build proxy/cluster profiles from the deployed DB secret, preferred host first.
    if not settings.db_secret_arn:
        raise ConfigurationError("DB_SECRET_ARN is not configured")
    secret = _read_secret(settings.db_secret_arn, client, settings.aws_region)
    username = _first(secret, "username", "user", "USER", "USERNAME")
    password = _first(secret, "password", "PASSWORD")
    database = _first(secret, "dbname", "DB_NAME") or DEFAULT_DATABASE
    port = int(_first(secret, "port", "PORT") or DEFAULT_PORT)
    cluster_host = settings.db_cluster_endpoint or _first(secret, "host")
    proxy_host = settings.db_proxy_endpoint

    if not username or (not password and not settings.db_use_iam_auth):
        raise ConfigurationError("Database secret is missing credentials")
    candidates: list[ConnectionProfile] = []
    for mode, host in (("proxy", proxy_host), ("cluster", cluster_host)):
        if not host:
            continue
        candidates.append(
            ConnectionProfile(
                name=mode,
                host=str(host),
                port=port,
                database=str(database),
                username=str(username),
                password=str(password) if password else None,
                use_dynamic_credentials=settings.db_use_iam_auth,
                require_tls=settings.db_require_tls,
            )
        )
    if not candidates:
        raise ConfigurationError("No database host available for proxy or cluster")
    preferred = "proxy" if settings.db_prefer_proxy else "cluster"
    candidates.sort(key=lambda profile: 0 if profile.name == preferred else 1)
    logger.info(
        "store.profiles_resolved",
        extra={
            "primary": candidates[0].name,
            "secondary": candidates[1].name if len(candidates) > 1 else None,
            "prefer_proxy": settings.db_prefer_proxy,
        },
    )
    return candidates


def load_connection_profiles(
    settings: Settings,
    *,
    secrets_client: Any | None = None,
) -> tuple[ConnectionProfile, ConnectionProfile | None]:
    # Explicit URLs win; otherwise fall back to the Secrets Manager bootstrap.
    if settings.database_url:
        primary = ConnectionProfile.from_url(
            "primary",
            settings.database_url,
            use_dynamic_credentials=settings.db_use_iam_auth,
            require_tls=settings.db_require_tls,
        )
        secondary = None
        if settings.database_url_secondary:
            secondary = ConnectionProfile.from_url(
                "secondary",
                settings.database_url_secondary,
                use_dynamic_credentials=settings.db_use_iam_auth,
                require_tls=settings.db_require_tls,
            )
        return primary, secondary
    if settings.db_secret_arn:
        profiles = profiles_from_secret(settings, client=secrets_client)
        return profiles[0], (profiles[1] if len(profiles) > 1 else None)
    raise ConfigurationError("DATABASE_URL or DB_SECRET_ARN must be configured")
