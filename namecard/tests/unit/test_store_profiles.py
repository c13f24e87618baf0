from __future__ import annotations

import json

import pytest
from sqlalchemy import event

from namecard.core.config import Settings, get_settings
from namecard.core.errors import ConfigurationError
from namecard.persistence.credentials import SignerCache, StaticCredential, credential_for
from namecard.persistence.db import ConnectionRegistry, build_engine
from namecard.persistence.profiles import (
    ConnectionProfile,
    load_connection_profiles,
    profiles_from_secret,
    should_enforce_tls,
)


class StubSecretsClient:
    def __init__(self, secret: dict) -> None:
        self.secret = secret
        self.requested: list[str] = []

    def get_secret_value(self, SecretId: str) -> dict:
        self.requested.append(SecretId)
        return {"SecretString": json.dumps(self.secret)}


class StubRdsClient:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    def generate_db_auth_token(self, **kwargs) -> str:
        self.calls.append(kwargs)
        return f"token-{len(self.calls)}"


def _profile(host: str, *, require_tls: bool | None = None) -> ConnectionProfile:
    return ConnectionProfile(
        name="primary",
        host=host,
        port=5432,
        database="namecard",
        username="app",
        password="secret",
        require_tls=require_tls,
    )


def test_profile_from_url_parses_components() -> None:
    profile = ConnectionProfile.from_url(
        "primary",
        "postgresql+asyncpg://app:pw@db.internal:6543/cards",
        use_dynamic_credentials=True,
    )
    assert (profile.host, profile.port, profile.database, profile.username) == ("db.internal", 6543, "cards", "app")
    # Dynamic profiles never carry the static password into the connect URL.
    assert profile.sqlalchemy_url().password is None
    assert "pw" not in json.dumps(profile.describe())


def test_profile_from_url_rejects_garbage() -> None:
    with pytest.raises(ConfigurationError):
        ConnectionProfile.from_url("primary", "not a url")


def test_tls_enforced_for_managed_hosts() -> None:
    assert should_enforce_tls(_profile("cards.cluster-abc123.us-east-1.rds.amazonaws.com"))
    assert should_enforce_tls(_profile("cards-proxy.proxy-abc123.us-east-1.rds.amazonaws.com"))
    assert not should_enforce_tls(_profile("localhost"))
    assert not should_enforce_tls(_profile("cards.cluster-abc123.us-east-1.rds.amazonaws.com", require_tls=False))
    assert should_enforce_tls(_profile("localhost", require_tls=True))
    assert not should_enforce_tls(ConnectionProfile.from_url("test", "sqlite+aiosqlite://", require_tls=True))


def test_load_profiles_from_urls() -> None:
    settings = Settings(
        database_url="postgresql+asyncpg://app:pw@primary.internal/namecard",
        database_url_secondary="postgresql+asyncpg://app:pw@secondary.internal/namecard",
    )
    primary, secondary = load_connection_profiles(settings)
    assert primary.name == "primary"
    assert primary.host == "primary.internal"
    assert secondary is not None
    assert secondary.host == "secondary.internal"


def test_load_profiles_requires_configuration() -> None:
    settings = Settings(database_url=None, database_url_secondary=None, db_secret_arn=None)
    with pytest.raises(ConfigurationError):
        load_connection_profiles(settings)


def test_secret_bootstrap_orders_proxy_first_by_default() -> None:
    client = StubSecretsClient({"username": "app", "password": "pw", "dbname": "cards", "port": 5432})
    settings = Settings(
        database_url=None,
        db_secret_arn="arn:aws:secretsmanager:us-east-1:123:secret:db",
        db_proxy_endpoint="cards.proxy-abc.us-east-1.rds.amazonaws.com",
        db_cluster_endpoint="cards.cluster-abc.us-east-1.rds.amazonaws.com",
    )
    primary, secondary = load_connection_profiles(settings, secrets_client=client)
    assert primary.name == "proxy"
    assert secondary is not None and secondary.name == "cluster"
    assert primary.database == "cards"
    assert client.requested == ["arn:aws:secretsmanager:us-east-1:123:secret:db"]


def test_secret_bootstrap_can_prefer_cluster() -> None:
    client = StubSecretsClient({"username": "app", "password": "pw", "host": "cluster.internal"})
    settings = Settings(
        database_url=None,
        db_secret_arn="arn:db",
        db_proxy_endpoint="proxy.internal",
        db_prefer_proxy=False,
    )
    profiles = profiles_from_secret(settings, client=client)
    assert [profile.name for profile in profiles] == ["cluster", "proxy"]
    assert profiles[0].host == "cluster.internal"


def test_secret_without_credentials_is_rejected() -> None:
    client = StubSecretsClient({"host": "cluster.internal"})
    settings = Settings(database_url=None, db_secret_arn="arn:db")
    with pytest.raises(ConfigurationError):
        profiles_from_secret(settings, client=client)


def test_signer_cache_reuses_one_signer_per_endpoint() -> None:
    clients: list[StubRdsClient] = []

    def factory(_region: str) -> StubRdsClient:
        client = StubRdsClient()
        clients.append(client)
        return client

    cache = SignerCache(region="us-east-1", client_factory=factory)
    first = cache.get("db.internal", 5432, "app")
    assert cache.get("db.internal", 5432, "app") is first
    assert cache.get("db.internal", 5432, "other") is not first
    assert len(cache) == 2


def test_iam_signer_caches_token_until_ttl_elapses() -> None:
    client = StubRdsClient()
    now = {"t": 0.0}
    cache = SignerCache(
        region="us-east-1",
        client_factory=lambda _region: client,
        token_ttl_s=600,
        time_source=lambda: now["t"],
    )
    signer = cache.get("db.internal", 5432, "app")
    assert signer.current() == "token-1"
    now["t"] = 599.0
    assert signer.current() == "token-1"
    now["t"] = 600.0
    assert signer.current() == "token-2"
    assert client.calls[0] == {
        "DBHostname": "db.internal",
        "Port": 5432,
        "DBUsername": "app",
        "Region": "us-east-1",
    }


def test_signer_cache_requires_region() -> None:
    cache = SignerCache(region=None, client_factory=lambda _region: StubRdsClient())
    with pytest.raises(ConfigurationError):
        cache.get("db.internal", 5432, "app")


def test_credential_for_static_and_dynamic_profiles() -> None:
    cache = SignerCache(region="us-east-1", client_factory=lambda _region: StubRdsClient())
    static = credential_for(_profile("db.internal"), cache)
    assert static == StaticCredential("secret")
    dynamic_profile = ConnectionProfile(
        name="primary",
        host="db.internal",
        port=5432,
        database="namecard",
        username="app",
        use_dynamic_credentials=True,
    )
    provider = credential_for(dynamic_profile, cache)
    assert provider is cache.get("db.internal", 5432, "app")
    assert provider.current() == "token-1"


@pytest.mark.asyncio
async def test_registry_switch_replaces_whole_profile() -> None:
    primary = ConnectionProfile.from_url("primary", "sqlite+aiosqlite://")
    secondary = ConnectionProfile.from_url("secondary", "sqlite+aiosqlite://")
    registry = ConnectionRegistry(primary, secondary)
    first_engine = await registry.get_engine()
    assert await registry.get_engine() is first_engine

    assert await registry.switch_to_secondary() is True
    assert registry.active_profile == secondary
    assert await registry.get_engine() is not first_engine
    # Already on the secondary: no further switch.
    assert await registry.switch_to_secondary() is False
    await registry.dispose()


@pytest.mark.asyncio
async def test_registry_without_secondary_never_switches() -> None:
    registry = ConnectionRegistry(ConnectionProfile.from_url("primary", "sqlite+aiosqlite://"))
    assert await registry.switch_to_secondary() is False
    assert registry.active_profile.name == "primary"


class _ConnectAborted(Exception):
    pass


@pytest.mark.asyncio
async def test_dynamic_profile_injects_signed_credential_per_connection() -> None:
    client = StubRdsClient()
    signers = SignerCache(region="us-east-1", client_factory=lambda _region: client)
    profile = ConnectionProfile(
        name="primary",
        host="db.internal",
        port=5432,
        database="namecard",
        username="app",
        password="stale-static-password",
        use_dynamic_credentials=True,
        require_tls=False,
    )
    engine = build_engine(profile, settings=get_settings(), signers=signers)
    captured: list[dict] = []

    # Registered after the credential listener, so it sees the final connect parameters.
    @event.listens_for(engine.sync_engine, "do_connect")
    def _capture(dialect, conn_rec, cargs, cparams):  # type: ignore[no-untyped-def]
        captured.append(dict(cparams))
        raise _ConnectAborted()

    try:
        with pytest.raises(_ConnectAborted):
            async with engine.connect():
                pass
    finally:
        await engine.dispose()

    assert engine.url.password is None
    assert captured[0]["password"] == signers.get("db.internal", 5432, "app").current()
    assert captured[0]["password"] == "token-1"
    assert client.calls[0]["DBHostname"] == "db.internal"


@pytest.mark.asyncio
async def test_registry_reset_ignores_state_already_replaced() -> None:
    registry = ConnectionRegistry(ConnectionProfile.from_url("primary", "sqlite+aiosqlite://"))
    failed = await registry.checkout()
    assert await registry.reset(failed) is True

    rebuilt = await registry.checkout()
    assert rebuilt is not failed
    # A late report about the discarded engine keeps the rebuilt one.
    assert await registry.reset(failed) is False
    assert await registry.checkout() is rebuilt
    await registry.dispose()
