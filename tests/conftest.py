import os

# Must be set before db.py is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db import Base
import models  # noqa: F401  registers Credential on Base.metadata
from credentials import WHOOP, CredentialRecord, CredentialStore

NOW = 1_700_000_000
TOKEN_URL = "https://whoop.test/oauth/oauth2/token"
API_BASE = "https://whoop.test/developer/v2"


class CountingStore(CredentialStore):
    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.writes = 0

    def update_tokens(self, record):
        self.writes += 1
        return super().update_tokens(record)


@pytest.fixture
def store():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield CountingStore(sessionmaker(bind=engine, future=True))
    engine.dispose()


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def link(store):
    """Store a WHOOP credential for a user."""
    def _link(user_id="u1", access_token="A1", refresh_token="R1", expires_at=NOW + 3600, **kw):
        record = CredentialRecord(
            user_id=user_id,
            provider=WHOOP,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            token_type=kw.get("token_type", "bearer"),
            scope=kw.get("scope", "offline read:recovery"),
        )
        return store.upsert(record)
    return _link


def mock_http(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
