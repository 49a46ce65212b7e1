# tests/conftest.py
from __future__ import annotations

import hashlib
from collections.abc import AsyncIterator, Callable, Generator, Iterator
from itertools import count
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from anchor_relay.api.dependencies import get_chain_gateway_dep, get_relay_coordinator_dep
from anchor_relay.core.security import create_access_token
from anchor_relay.db.session import Base
from anchor_relay.db.session import get_db as app_get_session
from anchor_relay.main import app as fastapi_app
from anchor_relay.models import Operator, Receipt
from anchor_relay.models.operator import ROLE_ADMIN, ROLE_VIEWER
from anchor_relay.services.chains import ChainGateway, SimulatedChainBackend
from anchor_relay.services.monitor import BridgeMonitor, PollingLimits
from anchor_relay.services.pipeline import RelayCoordinator
from anchor_relay.services.relay import BackoffPolicy, RelayService

TEST_DB_URL = "sqlite://"

REQUIRED_CONFIRMATIONS = {"polygon": 12, "arbitrum": 20, "optimism": 10}
FAILING_CHAINS = {"arbitrum"}

_SEQ = count(1)


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Iterator[sessionmaker[Session]]:
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    try:
        yield factory
    finally:
        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def gateway() -> ChainGateway:
    """Simulated chains: five blocks per lookup, arbitrum rejects submissions."""
    backends = {
        chain: SimulatedChainBackend(
            chain, blocks_per_poll=5, fail_submissions=chain in FAILING_CHAINS
        )
        for chain in REQUIRED_CONFIRMATIONS
    }
    return ChainGateway(backends, REQUIRED_CONFIRMATIONS)


@pytest.fixture()
def no_sleep() -> Callable[[float], Any]:
    async def _sleep(_: float) -> None:
        return None

    return _sleep


@pytest_asyncio.fixture()
async def coordinator(
    gateway: ChainGateway,
    session_factory: sessionmaker[Session],
    no_sleep: Callable[[float], Any],
) -> AsyncIterator[RelayCoordinator]:
    coordinator = RelayCoordinator(
        gateway,
        session_factory=session_factory,
        relay_service=RelayService(
            gateway, BackoffPolicy(base_seconds=0.0, factor=1.0, max_seconds=0.0), sleep=no_sleep
        ),
        monitor=BridgeMonitor(
            gateway,
            PollingLimits(interval_seconds=0.0, max_polls=50, max_duration_seconds=60.0),
            sleep=no_sleep,
        ),
    )
    try:
        yield coordinator
    finally:
        await coordinator.shutdown()


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_session_dependency(
    app: FastAPI, session_factory: sessionmaker[Session]
) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield
    finally:
        app.dependency_overrides.pop(app_get_session, None)


@pytest.fixture()
def override_relay_dependencies(
    app: FastAPI, gateway: ChainGateway, coordinator: RelayCoordinator
) -> Iterator[RelayCoordinator]:
    app.dependency_overrides[get_chain_gateway_dep] = lambda: gateway
    app.dependency_overrides[get_relay_coordinator_dep] = lambda: coordinator
    try:
        yield coordinator
    finally:
        app.dependency_overrides.pop(get_chain_gateway_dep, None)
        app.dependency_overrides.pop(get_relay_coordinator_dep, None)


@pytest_asyncio.fixture()
async def client(app: FastAPI, override_relay_dependencies: RelayCoordinator) -> AsyncIterator[AsyncClient]:
    """Async client sharing the test's event loop with background relay tasks."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


def _make_operator(db: Session, role: str, address: str) -> Operator:
    operator = Operator(wallet_address=address, role=role, display_name=role.title())
    db.add(operator)
    db.commit()
    db.refresh(operator)
    return operator


@pytest.fixture()
def admin(db_session: Session) -> Operator:
    return _make_operator(db_session, ROLE_ADMIN, "0x" + "a" * 40)


@pytest.fixture()
def viewer(db_session: Session) -> Operator:
    return _make_operator(db_session, ROLE_VIEWER, "0x" + "b" * 40)


@pytest.fixture()
def admin_headers(admin: Operator) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(admin.id)}"}


@pytest.fixture()
def viewer_headers(viewer: Operator) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(viewer.id)}"}


def content_hash_for(label: str) -> str:
    """Return a deterministic 0x-prefixed 32-byte hex hash for ``label``."""
    return "0x" + hashlib.sha256(label.encode("utf-8")).hexdigest()


@pytest.fixture()
def make_receipt(db_session: Session, admin: Operator) -> Callable[..., Receipt]:
    def _make(
        subject_id: str = "thread-1",
        content_hash: str | None = None,
        receipt_type: str = "message",
    ) -> Receipt:
        seq = next(_SEQ)
        receipt = Receipt(
            type=receipt_type,
            subject_id=subject_id,
            content_hash=content_hash or content_hash_for(f"receipt-{seq}"),
            proof_blob={"root": f"0x{seq:064x}"},
            immutable_seq=seq,
            created_by=admin.id,
        )
        db_session.add(receipt)
        db_session.commit()
        db_session.refresh(receipt)
        return receipt

    return _make
