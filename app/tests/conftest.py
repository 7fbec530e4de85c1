import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

import pytest
from eth_account import Account
from fastapi.testclient import TestClient

# FORCE model registration
import app.models  # noqa

from app.core.config import Settings
from app.core.deps import get_services
from app.core.security import create_access_token
from app.db.base import Base
from app.db.session import get_db, make_engine, make_session_factory
from app.main import app as fastapi_app
from app.models.participant import Participant
from app.services.auth_service import principal_for
from app.services.container import build_services
from app.services.signers import LocalKeySigner
from app.tests.fakes import FakeLedger
from app.tests.flows import KEYS, TOKEN, ShipmentFlows


ORACLE_KEY = KEYS["O1"][0]


def wallet(name: str) -> str:
    return Account.from_key(KEYS[name][0]).address


@pytest.fixture(scope="function")
def db():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    session = make_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def ledger():
    return FakeLedger(oracles=[wallet("O1")], managers=[wallet("R1"), wallet("A1")])


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        payment_token_address=TOKEN,
        payment_token_decimals=6,
        oracle_private_key=ORACLE_KEY,
        confirmation_timeout_seconds=1,
    )


@pytest.fixture
def services(settings, ledger):
    return build_services(settings, ledger, LocalKeySigner(ORACLE_KEY))


@pytest.fixture
def people(db):
    out = {}
    for pid, (key, role) in KEYS.items():
        p = Participant(
            id=pid,
            role=role.value,
            display_name=f"{role.value.title()} {pid}",
            wallet_address=Account.from_key(key).address,
            kyc_verified=pid != "F2",
            profile_json={},
        )
        db.add(p)
        out[pid] = p
    db.commit()
    return {pid: principal_for(p) for pid, p in out.items()}


@pytest.fixture
def flows(db, services, ledger, people):
    return ShipmentFlows(db, services, ledger, people)


@pytest.fixture
def client(db, services):
    fastapi_app.dependency_overrides[get_db] = lambda: db
    fastapi_app.dependency_overrides[get_services] = lambda: services
    try:
        yield TestClient(fastapi_app)
    finally:
        fastapi_app.dependency_overrides.clear()


@pytest.fixture
def auth(people):
    def _headers(pid: str) -> dict:
        p = people[pid]
        token = create_access_token(
            subject=p.participant_id,
            claims={
                "participant_id": p.participant_id,
                "role": p.role.value,
                "wallet": p.wallet_address,
                "display_name": p.display_name,
            },
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers
