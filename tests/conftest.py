"""Shared test fixtures for the SOC sync test suite."""

import json

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from app.core.config import Settings
from app.core.database import Base
# Import all models so their metadata is registered on Base
import app.models.database  # noqa: F401
import app.models.sync_run  # noqa: F401
from app.services.continuation import LocalDispatcher
from app.services.credentials import CredentialProvider, save_credential
from app.services.pipeline import SyncPipeline
from app.services.soc import SocClient

OWNER = "acme"
SOC_URL = "https://soc.test/WebSoc/exportadados"


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """
    Provide a session factory on a fresh SQLite file database.

    A file (rather than :memory:) lets concurrent sessions share the data.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'soc_sync.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def async_session(session_maker):
    """A single session on the test database."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def settings():
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        soc_api_url=SOC_URL,
        batch_size=50,
        sub_batch_size=25,
        max_concurrent=3,
        execution_budget_seconds=150.0,
        safety_margin_seconds=30.0,
        continuation_mode="local",
    )


def soc_transport(records=None, status_code=200, body=None, calls=None):
    """
    MockTransport standing in for the SOC export endpoint.

    Serves records as a Latin-1 encoded JSON array unless a raw body is given.
    Each request is appended to calls when a list is passed.
    """
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        content = body
        if content is None:
            content = json.dumps(records or [], ensure_ascii=False).encode("latin-1")
        return httpx.Response(status_code, content=content)

    return httpx.MockTransport(handler)


class StepClock:
    """Monotonic clock that advances by a fixed step on every reading."""

    def __init__(self, step: float):
        self.step = step
        self.now = 0.0

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


@pytest.fixture
def make_pipeline(session_maker, settings):
    """Build a SyncPipeline whose SOC calls hit a MockTransport."""
    def factory(transport: httpx.MockTransport, clock=None, **overrides) -> SyncPipeline:
        soc = SocClient(SOC_URL, timeout=5.0, transport=transport)
        kwargs = {}
        if clock is not None:
            kwargs["clock"] = clock
        return SyncPipeline(
            session_maker,
            soc,
            CredentialProvider(session_maker),
            settings.model_copy(update=overrides),
            **kwargs,
        )

    return factory


@pytest_asyncio.fixture
async def credentials(async_session):
    """SOC parameters for every kind of the test owner."""
    for kind in ("company", "employee", "absenteeism"):
        await save_credential(
            async_session,
            OWNER,
            kind,
            {"empresa": "423", "codigo": "25722", "chave": "s3cr3t-key"},
        )


async def run_to_end(pipeline: SyncPipeline, run_id: int):
    """Run a sync and every continuation it dispatches locally."""
    await pipeline.run(run_id)
    if isinstance(pipeline.dispatcher, LocalDispatcher):
        await pipeline.dispatcher.wait()
