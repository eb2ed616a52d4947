import os
import tempfile
from pathlib import Path

import pytest

_tmpdir = tempfile.mkdtemp(prefix="aido-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{Path(_tmpdir) / 'test.db'}"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ.setdefault("OPENAI_API_KEY", "sk-test")

from fastapi.testclient import TestClient  # noqa: E402

import answer_once as ao  # noqa: E402
from app import app  # noqa: E402
from db import Base, engine  # noqa: E402


class FakeCompletion:
    """Stands in for the provider call; records what it was given."""

    def __init__(self):
        self.calls = []
        self.reply = "Here are a few venues that seat 100 guests comfortably."
        self.fail = False

    def __call__(self, history, text):
        self.calls.append((list(history), text))
        if self.fail:
            return ao.UpstreamError(reason="boom")
        return ao.Reply(text=self.reply)


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def fake_completion(monkeypatch):
    fake = FakeCompletion()
    monkeypatch.setattr(ao, "complete", fake)
    return fake


@pytest.fixture
def client(fake_completion):
    with TestClient(app) as c:
        yield c


def register(client, email="a@x.com", password="secret123", **extra):
    body = {"firstName": "Ada", "lastName": "Lovelace", "email": email, "password": password}
    body.update(extra)
    return client.post("/api/auth/register", json=body)


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user(client):
    r = register(client)
    assert r.status_code == 201
    return r.json()


@pytest.fixture
def headers(user):
    return auth_headers(user["token"])
