"""Test fixtures for multi-tenant knowledge base tests.

Provides:
- A fresh in-memory SQLite database per test (all tables created)
- AuditRecorder and AccessGate bound to that database
- Two provisioned tenants: alpha (BUSINESS) and beta (FREE, custom domain)
- A member factory for adding users with a given role
- FakeProvider, a scripted enrichment provider that counts its calls
- FakeRedis, an in-memory stand-in for the tenant lookup cache
"""

from __future__ import annotations

import asyncio
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = ""
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["OPENAI_API_KEY"] = ""
os.environ["SENTRY_DSN"] = ""
os.environ["ENVIRONMENT"] = "development"
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from collections.abc import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker  # noqa: E402

from src.threadbase.core.access import AccessGate  # noqa: E402
from src.threadbase.core.database import build_engine, init_db  # noqa: E402
from src.threadbase.core.errors import EnrichmentFailure  # noqa: E402
from src.threadbase.core.scoped import TenantScopedAccessor  # noqa: E402
from src.threadbase.schemas.tenant import MemberRole, PlanTier, TenantRead  # noqa: E402
from src.threadbase.services.audit import AuditRecorder  # noqa: E402
from src.threadbase.services.enrichment import EnrichmentProvider  # noqa: E402
from src.threadbase.services.tenant_provisioning import (  # noqa: E402
    get_or_create_user,
    provision_tenant,
)

EMBEDDING = [0.1] * 1536


class FakeProvider(EnrichmentProvider):
    """Scripted provider. Steps listed in `fail` raise, steps in `hang` never finish."""

    def __init__(self, fail: set[str] | None = None, hang: set[str] | None = None) -> None:
        self.fail = fail or set()
        self.hang = hang or set()
        self.calls: list[str] = []

    async def _step(self, name: str) -> None:
        self.calls.append(name)
        if name in self.hang:
            await asyncio.sleep(60)
        if name in self.fail:
            raise EnrichmentFailure(f"{name} failed")

    async def summarize(self, text: str) -> str:
        await self._step("summary")
        return "The team agreed to roll back the deploy."

    async def extract_action_items(self, text: str) -> list[str]:
        await self._step("action_items")
        return ["Roll back the deploy", "Write a postmortem"]

    async def detect_topics(self, text: str) -> list[str]:
        await self._step("topics")
        return ["deploys", "incidents"]

    async def embed(self, text: str) -> list[float]:
        await self._step("embedding")
        return list(EMBEDDING)


class FakeRedis:
    """Dict-backed subset of the redis.asyncio client used by the resolver."""

    def __init__(self, broken: bool = False) -> None:
        self.store: dict[str, str] = {}
        self.broken = broken

    async def get(self, key: str) -> str | None:
        if self.broken:
            raise ConnectionError("redis down")
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        if self.broken:
            raise ConnectionError("redis down")
        self.store[key] = value

    async def delete(self, *keys: str) -> int:
        if self.broken:
            raise ConnectionError("redis down")
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    async def ping(self) -> bool:
        return not self.broken


CONVERSATION = [
    {"author": "alice", "content": "The deploy broke checkout, should we roll back?"},
    {"author": "bob", "content": "Yes, rolling back now. I'll write the postmortem."},
]


@pytest.fixture
def conversation() -> list[dict]:
    return [dict(message) for message in CONVERSATION]


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database with every table created."""
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def audit(session_factory) -> AuditRecorder:
    return AuditRecorder(session_factory)


@pytest.fixture
def gate(session_factory, audit) -> AccessGate:
    return AccessGate(session_factory, audit)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def provider_factory():
    """Build a FakeProvider with failing or hanging steps."""
    return FakeProvider


@pytest.fixture
def redis_factory():
    return FakeRedis


@pytest_asyncio.fixture
async def tenant_alpha(session_factory, audit) -> TenantRead:
    """BUSINESS tenant reachable as alpha.threadbase.io."""
    return await provision_tenant(
        session_factory,
        name="Alpha Corp",
        slug="alpha",
        owner_email="owner@alpha.io",
        owner_name="Alpha Owner",
        plan=PlanTier.BUSINESS,
        audit=audit,
    )


@pytest_asyncio.fixture
async def tenant_beta(session_factory, audit, tenant_alpha) -> TenantRead:
    """FREE tenant with the custom domain kb.beta-corp.com (after alpha for ordering)."""
    return await provision_tenant(
        session_factory,
        name="Beta Corp",
        slug="beta",
        owner_email="owner@beta.io",
        plan=PlanTier.FREE,
        domain="kb.beta-corp.com",
        audit=audit,
    )


async def _owner_id(session_factory, tenant: TenantRead) -> str:
    memberships = await TenantScopedAccessor(session_factory, tenant.id).list_memberships()
    return next(m.user_id for m in memberships if m.role == MemberRole.OWNER)


@pytest_asyncio.fixture
async def alpha_owner_id(session_factory, tenant_alpha) -> str:
    return await _owner_id(session_factory, tenant_alpha)


@pytest_asyncio.fixture
async def beta_owner_id(session_factory, tenant_beta) -> str:
    return await _owner_id(session_factory, tenant_beta)


@pytest.fixture
def add_member(session_factory):
    """Create a user and give it a role in a tenant. Returns the user id."""

    async def _add(tenant: TenantRead, role: MemberRole, email: str | None = None) -> str:
        email = email or f"{role.value.lower()}@{tenant.slug}.io"
        async with session_factory() as session:
            user = await get_or_create_user(session, email)
            await session.commit()
            user_id = str(user.id)
        await TenantScopedAccessor(session_factory, tenant.id).create_membership(user_id, role)
        return user_id

    return _add
