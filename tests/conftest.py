"""Shared fixtures: queue, Redis and Celery doubles, and in-memory databases."""
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fundops.core.database import Base
from fundops.models.capital_call import CapitalCall, CapitalCallItem  # noqa: F401
from fundops.models.fund import Deal, DealOwnership, Fund, Investor
from fundops.schemas.notification import NotificationJob


class FakeTaskQueue:
    """Records every call; keeps outstanding jobs keyed by (job type, item id).

    Like the real client, an unavailable queue answers with sentinels.
    """

    def __init__(self, available: bool = True):
        self.available = available
        self.scheduled: list[tuple[NotificationJob, timedelta]] = []
        self.dispatched: list[NotificationJob] = []
        self.cancel_requests: list[tuple[list[str], str]] = []
        self.outstanding: dict[tuple[str, str], str] = {}
        self.calls = 0

    def is_available(self) -> bool:
        return self.available

    async def schedule(self, job, delay):
        self.calls += 1
        if not self.available:
            return None
        self.scheduled.append((job, delay))
        handle = f"{job.type}:{job.capital_call_item_id}:{len(self.scheduled)}"
        self.outstanding[(job.type, job.capital_call_item_id)] = handle
        return handle

    async def cancel(self, handle):
        self.calls += 1
        if not self.available:
            return False
        for key, value in list(self.outstanding.items()):
            if value == handle:
                del self.outstanding[key]
                return True
        return False

    async def cancel_by_correlation(self, job_types, correlation_id):
        self.calls += 1
        if not self.available:
            return 0
        self.cancel_requests.append((list(job_types), correlation_id))
        return sum(
            1 for t in job_types if self.outstanding.pop((t, correlation_id), None) is not None
        )

    async def dispatch(self, job):
        self.calls += 1
        if not self.available:
            return None
        self.dispatched.append(job)
        return f"notice-{len(self.dispatched)}"

    def outstanding_types(self, item_id) -> set[str]:
        return {t for (t, corr) in self.outstanding if corr == str(item_id)}


class FakePipeline:
    """Buffers GETDELs and applies them together, like MULTI/EXEC."""

    def __init__(self, redis):
        self.redis = redis
        self.keys: list[str] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    def getdel(self, key):
        self.keys.append(key)
        return self

    async def execute(self):
        return [self.redis.store.pop(key, None) for key in self.keys]


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttl: dict[str, int] = {}

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.ttl[key] = ex
        return True

    async def get(self, key):
        return self.store.get(key)

    async def eval(self, script, numkeys, key, expected):
        # Only the compare-and-delete script is used
        if self.store.get(key) == expected:
            del self.store[key]
            return 1
        return 0

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class FakeCelery:
    def __init__(self):
        self.sent: list[dict] = []
        self.revoked: list[str] = []
        self.control = SimpleNamespace(revoke=self._revoke)

    def _revoke(self, task_ids):
        self.revoked.extend(task_ids if isinstance(task_ids, list) else [task_ids])

    def send_task(self, name, args=None, countdown=None, task_id=None):
        self.sent.append({"name": name, "args": args, "countdown": countdown, "task_id": task_id})
        return SimpleNamespace(id=task_id or f"notice-{len(self.sent)}")


@pytest.fixture
def queue():
    return FakeTaskQueue()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fake_celery():
    return FakeCelery()


@pytest.fixture
async def db():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def sync_factory():
    """Session factory for the code that runs inside Celery tasks."""
    engine = create_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield sessionmaker(engine, expire_on_commit=False)
    engine.dispose()


@dataclass
class Seed:
    fund: Fund
    deal: Deal
    investors: list[Investor] = field(default_factory=list)


@pytest.fixture
async def seeded(db):
    """A fund with one deal owned 60/40 by two investors."""
    fund = Fund(
        id=uuid.uuid4(),
        name="Harbor Growth Fund I",
        wire_instructions={"bank_name": "First Harbor", "routing_number": "021000021"},
        capital_call_summary_frequency="daily",
    )
    deal = Deal(id=uuid.uuid4(), fund_id=fund.id, name="Maple Street Apartments")
    alice = Investor(id=uuid.uuid4(), fund_id=fund.id, email="alice@example.com", first_name="Alice", last_name="Ng")
    bob = Investor(id=uuid.uuid4(), fund_id=fund.id, email="bob@example.com", first_name="Bob", last_name="Ortiz")
    db.add_all([fund, deal, alice, bob])
    db.add_all([
        DealOwnership(deal_id=deal.id, investor_id=alice.id, ownership_fraction=Decimal("0.6")),
        DealOwnership(deal_id=deal.id, investor_id=bob.id, ownership_fraction=Decimal("0.4")),
    ])
    await db.commit()
    return Seed(fund=fund, deal=deal, investors=[alice, bob])
