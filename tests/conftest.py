from __future__ import annotations

import os
import sys
from collections.abc import Callable, Iterator, Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite://")
os.environ.setdefault("ENABLE_TRACING", "false")
os.environ.setdefault("VOTER_TOKEN_SECRET", "test-voter-token-secret")

import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from hoa_democracy.api.deps import get_db_session
from hoa_democracy.api.routes.auth import refresh_token_store
from hoa_democracy.main import app
from hoa_democracy.models import Base, Poll, PollType
from hoa_democracy.obs import AuditMiddleware
from hoa_democracy.services.ledger import poll_locks
from hoa_democracy.services.polls import create_poll


class InMemoryS3Client:
    """Simple in-memory S3 stub used by the audit middleware during tests."""

    def __init__(self) -> None:
        self._buckets: dict[str, dict[str, bytes]] = {}

    def head_bucket(self, *, Bucket: str) -> None:
        if Bucket not in self._buckets:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadBucket")

    def create_bucket(self, *, Bucket: str, **_: object) -> None:
        self._buckets.setdefault(Bucket, {})

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, **_: object) -> dict[str, str]:
        bucket = self._buckets.setdefault(Bucket, {})
        bucket[Key] = Body.encode("utf-8") if isinstance(Body, str) else Body
        return {"ETag": "in-memory"}

    @property
    def buckets(self) -> dict[str, dict[str, bytes]]:
        return self._buckets

    def records(self) -> list[bytes]:
        return [line for bucket in self._buckets.values() for blob in bucket.values() for line in blob.splitlines()]


engine = create_engine(
    "sqlite+pysqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture(autouse=True)
def audit_s3_client(monkeypatch: pytest.MonkeyPatch) -> Iterator[InMemoryS3Client]:
    client = InMemoryS3Client()

    def _client_factory(*args: object, **kwargs: object) -> InMemoryS3Client:
        return client

    monkeypatch.setattr("hoa_democracy.obs.audit.boto3.client", _client_factory)
    stack = getattr(app, "middleware_stack", None)
    middleware = getattr(stack, "app", None)
    while middleware is not None and hasattr(middleware, "app"):
        if isinstance(middleware, AuditMiddleware):
            middleware._s3_client = None
            middleware._bucket_ready = False
        middleware = getattr(middleware, "app", None)
    yield client


@pytest.fixture(autouse=True)
def _reset_in_process_state() -> Iterator[None]:
    poll_locks.reset()
    refresh_token_store.reset()
    yield
    poll_locks.reset()
    refresh_token_store.reset()


@pytest.fixture()
def db_session() -> Iterator[Session]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()


PollFactory = Callable[..., Poll]


@pytest.fixture()
def make_poll(db_session: Session) -> PollFactory:
    """Create polls that are open now unless offsets say otherwise."""

    def _make(
        *,
        title: str = "Repave the clubhouse parking lot",
        options: Sequence[str] = ("Yes", "No", "Abstain"),
        start_offset: timedelta = timedelta(hours=-1),
        end_offset: timedelta = timedelta(days=7),
        poll_type: PollType = PollType.INFORMAL,
        is_anonymous: bool = False,
    ) -> Poll:
        now = datetime.now(timezone.utc)
        return create_poll(
            db_session,
            title=title,
            options=list(options),
            start_at=now + start_offset,
            end_at=now + end_offset,
            created_by="admin@example.com",
            poll_type=poll_type,
            is_anonymous=is_anonymous,
        )

    return _make


@pytest.fixture()
def client(db_session: Session, audit_s3_client: InMemoryS3Client) -> Iterator[TestClient]:
    def override_get_db() -> Iterator[Session]:
        try:
            yield db_session
        finally:
            db_session.rollback()

    app.dependency_overrides[get_db_session] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.pop(get_db_session, None)


def _login(client: TestClient, email: str) -> dict[str, str]:
    response = client.post("/api/auth/login", json={"email": email, "password": "changeme"})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture()
def admin_headers(client: TestClient) -> dict[str, str]:
    return _login(client, "admin@example.com")


@pytest.fixture()
def member_headers(client: TestClient) -> dict[str, str]:
    return _login(client, "resident@example.com")


@pytest.fixture()
def login(client: TestClient) -> Callable[[str], dict[str, str]]:
    return lambda email: _login(client, email)
