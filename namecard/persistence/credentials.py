from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Any, Callable, Protocol

from namecard.core.errors import ConfigurationError
from namecard.persistence.profiles import ConnectionProfile


logger = logging.getLogger(__name__)


class CredentialProvider(Protocol):
    # Pools ask for the current secret per physical connection; derivation stays hidden.
    def current(self) -> str: ...


@dataclass(frozen=True)
class StaticCredential:
    password: str

    def current(self) -> str:
        return self.password


def _default_client_factory(region: str) -> Any:
    import boto3

    return boto3.client("rds", region_name=region)


class RdsIamSigner:
    """Produce RDS IAM auth tokens for one (host, port, username) endpoint.

    Tokens are valid for 15 minutes; the last token is reused until
    ``token_ttl_s`` elapses so a burst of new connections signs once.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str,
        region: str,
        client_factory: Callable[[str], Any] = _default_client_factory,
        token_ttl_s: int = 600,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.region = region
        self._client_factory = client_factory
        self._client: Any | None = None
        self._token_ttl_s = token_ttl_s
        self._time = time_source or time.monotonic
        self._lock = threading.Lock()
        self._token: str | None = None
        self._token_expires_at = 0.0

    def current(self) -> str:
        with self._lock:
            now = self._time()
            if self._token is not None and now < self._token_expires_at:
                return self._token
            if self._client is None:
                self._client = self._client_factory(self.region)
            self._token = self._client.generate_db_auth_token(
                DBHostname=self.host,
                Port=self.port,
                DBUsername=self.username,
                Region=self.region,
            )
            self._token_expires_at = now + self._token_ttl_s
            logger.debug(
                "store.credential_signed",
                extra={"host": self.host, "port": self.port, "username": self.username},
            )
            return self._token


class SignerCache:
    # One signer per endpoint identity for the life of the process.
    def __init__(
        self,
        *,
        region: str | None,
        client_factory: Callable[[str], Any] = _default_client_factory,
        token_ttl_s: int = 600,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._region = region
        self._client_factory = client_factory
        self._token_ttl_s = token_ttl_s
        self._time_source = time_source
        self._lock = threading.Lock()
        self._signers: dict[tuple[str, int, str], RdsIamSigner] = {}

    def get(self, host: str, port: int, username: str) -> RdsIamSigner:
        key = (host, port, username)
        with self._lock:
            signer = self._signers.get(key)
            if signer is not None:
                return signer
            if not self._region:
                raise ConfigurationError("AWS region is not configured; cannot generate IAM auth token")
            signer = RdsIamSigner(
                host=host,
                port=port,
                username=username,
                region=self._region,
                client_factory=self._client_factory,
                token_ttl_s=self._token_ttl_s,
                time_source=self._time_source,
            )
            self._signers[key] = signer
            return signer

    def __len__(self) -> int:
        with self._lock:
            return len(self._signers)


def credential_for(profile: ConnectionProfile, signers: SignerCache) -> CredentialProvider | None:
    # Dynamic profiles sign per connection; static ones reuse the configured password.
    if profile.use_dynamic_credentials:
        if not profile.host or not profile.username:
            raise ConfigurationError(f"Profile {profile.name} needs host and username for IAM auth")
        return signers.get(profile.host, profile.port or 5432, profile.username)
    if profile.password:
        return StaticCredential(profile.password)
    return None
