import os
import tempfile

# Must be in place before venue_ledger.config is imported.
_TMP = tempfile.mkdtemp(prefix="venue_ledger_tests_")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'ledger.db')}"
os.environ["RESOLVE_RATE_PER_MIN"] = "0"
os.environ["NOTIFY_STREAM"] = ""
os.environ["SCAN_TOKEN_SECRET"] = "test_secret"

import httpx
import pytest
import pytest_asyncio

from venue_ledger import main
from venue_ledger.db import Base, SessionLocal, engine


class FakeRedis:
    """The slice of redis.asyncio the app touches, held in dicts."""

    def __init__(self):
        self.kv = {}
        self.hashes = {}
        self.streams = {}

    async def get(self, key):
        return self.kv.get(key)

    async def set(self, key, value):
        self.kv[key] = str(value)

    async def setex(self, key, ttl, value):
        self.kv[key] = value

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    async def expire(self, key, seconds):
        return True

    async def xadd(self, stream, fields):
        entries = self.streams.setdefault(stream, [])
        msg_id = f"{len(entries) + 1}-0"
        entries.append((msg_id, dict(fields)))
        return msg_id


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def fake_redis(monkeypatch):
    r = FakeRedis()
    monkeypatch.setattr(main, "redis", r)
    return r


@pytest_asyncio.fixture(scope="function")
async def client(fake_redis):
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://testserver",
        headers={"X-Operator-Id": "staff_1"},
        timeout=30.0,
    ) as c:
        yield c


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
