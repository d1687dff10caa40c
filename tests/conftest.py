import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from bsauto.app import create_app
from bsauto.background import TaskRegistry
from bsauto.db import init_db, make_engine
from bsauto.errors import UploadFailed
from bsauto.image_store import _DeleteManyMixin
from bsauto.images import ImageRef, encode_images
from bsauto.models import Vehicle
from bsauto.settings import Settings

ADMIN_PASSWORD = "correct-horse"


class FakeImageStore(_DeleteManyMixin):
    """In-memory image host. ``fail_at`` is the 1-based upload call that fails."""

    def __init__(self, fail_at=None, failing_deletes=()):
        self.fail_at = fail_at
        self.failing_deletes = set(failing_deletes)
        self.upload_calls = 0
        self.uploaded = []
        self.delete_calls = []

    async def upload(self, data, content_type):
        self.upload_calls += 1
        if self.upload_calls == self.fail_at:
            raise UploadFailed("provider exploded")
        pid = f"bs-auto-sales/img{self.upload_calls}"
        self.uploaded.append(pid)
        return ImageRef(f"https://res.cloudinary.com/demo/image/upload/v1/{pid}.jpg", pid)

    async def delete(self, public_id):
        self.delete_calls.append(public_id)
        return public_id not in self.failing_deletes


class FakeMailer:
    configured = True

    def __init__(self):
        self.sent = []

    async def send(self, msg):
        self.sent.append(msg)
        return 202


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'cars.db'}")
    init_db(eng)
    return eng


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        APP_ENV="development",
        DATA_DIR=str(tmp_path),
        ADMIN_PASSWORD=ADMIN_PASSWORD,
        SESSION_SECRET="test-session-secret",
        CORS_ORIGINS="https://bsautosales.example",
    )


@pytest.fixture
def image_store():
    return FakeImageStore()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def app(settings, engine, image_store, mailer):
    return create_app(settings=settings, engine=engine, image_store=image_store, mailer=mailer)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def login(client, password=ADMIN_PASSWORD):
    """Log in and return the CSRF token issued with the session."""
    resp = client.post("/api/admin/login", json={"password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["csrfToken"]


def add_vehicle(engine, images=(), **fields):
    fields.setdefault("year", 2019)
    fields.setdefault("make", "Honda")
    fields.setdefault("model", "Civic")
    with Session(engine) as s:
        v = Vehicle(images_json=encode_images(images), **fields)
        s.add(v)
        s.commit()
        return v.id


def run(coro_fn):
    """Run ``coro_fn(tasks)`` on a fresh loop, then wait for its background tasks."""

    async def main():
        tasks = TaskRegistry()
        try:
            return await coro_fn(tasks)
        finally:
            await tasks.drain()

    return asyncio.run(main())
