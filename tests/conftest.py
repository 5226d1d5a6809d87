import asyncio
import os

os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("CORS_ORIGINS", "")
os.environ.setdefault("WHATSAPP_VERIFY_TOKEN", "test-verify-token")

from fastapi.testclient import TestClient  # noqa: E402
import pytest  # noqa: E402

from autoinvoice.auth import TokenSubject, create_access_token  # noqa: E402
from autoinvoice.db import SessionLocal, create_all, drop_all  # noqa: E402
from autoinvoice.main import app  # noqa: E402
from autoinvoice.store import DocumentStore  # noqa: E402


async def _reset_db() -> None:
    await drop_all()
    await create_all()


@pytest.fixture(autouse=True)
def reset_db() -> None:
    asyncio.run(_reset_db())


@pytest.fixture()
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture()
def with_store():
    """Run ``fn(store)`` in a fresh session: ``with_store(lambda store: store.get_company(id))``."""

    def _run(fn):
        async def _inner():
            async with SessionLocal() as session:
                return await fn(DocumentStore(session))

        return asyncio.run(_inner())

    return _run


@pytest.fixture()
def make_company(with_store):
    def _make(owner_user_id="owner-1", **fields):
        values = {"owner_user_id": owner_user_id, "name": "Kedai Ali", "subscription_plan": "starter"}
        values.update(fields)
        return with_store(lambda store: store.create_company(values))

    return _make


@pytest.fixture()
def auth_headers():
    def _headers(user_id="owner-1"):
        token = create_access_token(TokenSubject(user_id=user_id, email=f"{user_id}@example.com"))
        return {"Authorization": f"Bearer {token}"}

    return _headers
