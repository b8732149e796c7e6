import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Must be set before config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["QUOTE_PROVIDER"] = "alphavantage"

sys.path.append(str(Path(__file__).resolve().parents[1]))

from database import Base, engine, SessionLocal  # noqa: E402
from auth_models import User  # noqa: E402
import challenge_service  # noqa: E402
import main  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def prices(monkeypatch):
    """Symbol -> price table standing in for the quote provider."""
    quotes = {}

    def fake_get_quote(symbol):
        return quotes.get(symbol.upper())

    def fake_get_daily_quote(symbol):
        price = fake_get_quote(symbol)
        if price is None:
            return None
        return {"price": price, "open": None, "high": None, "low": None,
                "previous_close": None, "change": None, "change_percent": None}

    monkeypatch.setattr(challenge_service, "get_quote", fake_get_quote)
    monkeypatch.setattr(main, "get_daily_quote", fake_get_daily_quote)
    return quotes


@pytest.fixture
def make_user(db):
    def _make(email="trader@example.com"):
        user = User(email=email, password_hash="not-a-real-hash")
        db.add(user)
        db.commit()
        db.refresh(user)
        return user.id
    return _make


@pytest.fixture
def client():
    return TestClient(main.app)


def login_headers(client, email, password="secret123"):
    client.post("/api/auth/register", json={"email": email, "password": password})
    res = client.post("/api/auth/login", json={"email": email, "password": password})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


@pytest.fixture
def auth_headers(client):
    return login_headers(client, "trader@example.com")


@pytest.fixture
def other_auth_headers(client):
    return login_headers(client, "rival@example.com")
