# tests/conftest.py
from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator, Iterator
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

os.environ.setdefault("PYTEST_RUNNING", "true")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PUBLIC_BASE_URL", "http://test")
os.environ.setdefault("RELAYS_DEFAULT", "wss://relay.one,wss://relay.two,wss://relay.three")

from nostr_stage.api.v1 import dependencies as api_dependencies
from nostr_stage.api.v1.endpoints.auth import create_access_token
from nostr_stage.db.session import Base
from nostr_stage.db.session import get_db as app_get_session
from nostr_stage.main import app as fastapi_app
from nostr_stage.models import Custody, User
from nostr_stage.schemas.event import SignedEvent
from nostr_stage.services.crypto import finalize_event
from nostr_stage.services.custody import KeyCustodyStore
from nostr_stage.services.events import build_http_auth_event
from nostr_stage.services.keys import generate_keypair
from nostr_stage.services.rate_limit import RateLimiter
from nostr_stage.services.relays import RelayOutcome, RelayPool

TEST_DB_URL = "sqlite://"
TEST_ENCRYPTION_KEY = bytes(range(32))
RELAYS = ["wss://relay.one", "wss://relay.two", "wss://relay.three"]


class FakeRelayTransport:
    """In-memory relay transport.

    ``accepting`` lists relays that acknowledge with OK true (None means all).
    Relays in ``errors`` raise the mapped exception; ``delays`` sleeps first.
    """

    def __init__(
        self,
        accepting: set[str] | None = None,
        errors: dict[str, Exception] | None = None,
        delays: dict[str, float] | None = None,
    ) -> None:
        self.accepting = accepting
        self.errors = errors or {}
        self.delays = delays or {}
        self.sent: list[tuple[str, str]] = []
        self.closed: list[str] = []

    async def send(self, relay: str, event: SignedEvent) -> RelayOutcome:
        try:
            self.sent.append((relay, event.id))
            if relay in self.delays:
                await asyncio.sleep(self.delays[relay])
            if relay in self.errors:
                raise self.errors[relay]
            accepted = self.accepting is None or relay in self.accepting
            return RelayOutcome(relay, accepted, "" if accepted else "blocked: test")
        finally:
            self.closed.append(relay)


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for savepoints to nest correctly.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    connection = engine.connect()
    transaction = connection.begin()
    session = Session(
        bind=connection,
        autoflush=False,
        expire_on_commit=False,
        join_transaction_mode="create_savepoint",
    )
    try:
        yield session
    finally:
        session.close()
        if transaction.is_active:
            transaction.rollback()
        connection.close()

        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def custody_store() -> KeyCustodyStore:
    return KeyCustodyStore(TEST_ENCRYPTION_KEY)


@pytest.fixture()
def rate_limiter() -> RateLimiter:
    return RateLimiter()


@pytest.fixture()
def relay_transport() -> FakeRelayTransport:
    return FakeRelayTransport()


@pytest.fixture()
def relay_pool(relay_transport: FakeRelayTransport) -> RelayPool:
    return RelayPool(relay_transport, ack_timeout=1.0)


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_dependencies(
    app: FastAPI,
    db_session: Session,
    custody_store: KeyCustodyStore,
    rate_limiter: RateLimiter,
    relay_pool: RelayPool,
) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    overrides: dict[Callable[..., Any], Callable[..., Any]] = {
        app_get_session: _get_session_override,
        api_dependencies.get_custody_store_dep: lambda: custody_store,
        api_dependencies.get_rate_limiter_dep: lambda: rate_limiter,
        api_dependencies.get_relay_pool_dep: lambda: relay_pool,
    }
    app.dependency_overrides.update(overrides)
    try:
        yield
    finally:
        for dependency in overrides:
            app.dependency_overrides.pop(dependency, None)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def keypair() -> tuple[str, str]:
    """Return ``(secret_hex, pubkey_hex)``."""
    return generate_keypair()


@pytest.fixture()
def sign_http_auth() -> Callable[..., SignedEvent]:
    """Return a helper that signs a kind-27235 event for a URL and method."""

    def _sign(secret: str, pubkey: str, url: str, method: str = "POST", created_at: int | None = None):
        return finalize_event(build_http_auth_event(pubkey, url, method, created_at=created_at), secret)

    return _sign


@pytest.fixture()
def make_user(db_session: Session, custody_store: KeyCustodyStore) -> Callable[..., tuple[User, str]]:
    """Return a factory creating a persisted user and its secret key."""

    def _make(*, platform_held: bool = True, is_admin: bool = False) -> tuple[User, str]:
        secret, pubkey = generate_keypair()
        user = User(
            pubkey=pubkey,
            privkey=custody_store.seal(secret) if platform_held else None,
            custody=(Custody.PLATFORM_HELD if platform_held else Custody.SELF_HELD).value,
            primary_provider="anonymous" if platform_held else "nostr",
            is_admin=is_admin,
        )
        db_session.add(user)
        db_session.commit()
        return user, secret

    return _make


@pytest.fixture()
def auth_headers() -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return _headers


@pytest.fixture()
def transport_factory() -> type[FakeRelayTransport]:
    return FakeRelayTransport
