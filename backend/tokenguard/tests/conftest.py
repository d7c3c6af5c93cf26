import os
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

_TEST_DIR = tempfile.mkdtemp(prefix="tokenguard-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/test.db"
os.environ["RUN_MIGRATIONS_ON_STARTUP"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SECRET_KEY"] = "test-signing-secret"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from tokenguard.core import database
from tokenguard.core.database import Base
from tokenguard.core.security import SigningKeyProvider, hash_password
from tokenguard.main import app
from tokenguard.models import User
from tokenguard.services.issuer import TokenIssuer
from tokenguard.services.registry import RefreshTokenRegistry
from tokenguard.services.rotation import RotationEngine
from tokenguard.services.verifier import AccessVerifier

engine = database.engine
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

ISSUER = "tokenguard-tests"
AUDIENCE = "tokenguard-test-clients"
ACCESS_TTL = timedelta(minutes=15)
REFRESH_TTL = timedelta(days=7)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


def build_services(db, clock, signer=None, leeway_seconds=0):
    signer = signer or SigningKeyProvider("unit-test-secret", verification_keys=["unit-test-secret"])
    registry = RefreshTokenRegistry(db, clock=clock, retry_attempts=2, retry_delay_seconds=0)
    issuer = TokenIssuer(
        registry,
        signer,
        access_ttl=ACCESS_TTL,
        refresh_ttl=REFRESH_TTL,
        issuer=ISSUER,
        audience=AUDIENCE,
        clock=clock,
    )
    return SimpleNamespace(
        db=db,
        clock=clock,
        signer=signer,
        registry=registry,
        issuer=issuer,
        rotation=RotationEngine(registry, issuer, leeway_seconds=leeway_seconds, clock=clock),
        verifier=AccessVerifier(signer, issuer=ISSUER, audience=AUDIENCE, leeway_seconds=leeway_seconds, clock=clock),
    )


@pytest.fixture(scope="session", autouse=True)
def setup_database():
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    admin = User(username="admin", hashed_password=hash_password("adminpassword"))
    operator = User(username="operator", hashed_password=hash_password("operatorpassword"))
    dormant = User(username="dormant", hashed_password=hash_password("dormantpassword"), is_active=False)
    db.add_all([admin, operator, dormant])
    db.commit()
    db.close()
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def client():
    app.dependency_overrides[database.get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    return FrozenClock(datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture()
def services(db, clock):
    return build_services(db, clock)


@pytest.fixture()
def user_id(db):
    return db.query(User).filter(User.username == "operator").one().id
