"""Tests for ORM model constraints.

Verifies the natural-key UniqueConstraints the upserts rely on raise
IntegrityError on duplicate inserts.
"""

import pytest
from sqlalchemy.exc import IntegrityError

from app.models.database import ApiCredential, Company, Employee
from app.models.sync_run import PENDING, SyncPayload, SyncRun


class TestCompanyConstraints:

    @pytest.mark.asyncio
    async def test_duplicate_code_for_owner_raises(self, async_session):
        """(soc_code, owner) must be unique."""
        async_session.add(Company(owner="acme", soc_code="1"))
        await async_session.commit()

        async_session.add(Company(owner="acme", soc_code="1"))
        with pytest.raises(IntegrityError):
            await async_session.commit()

    @pytest.mark.asyncio
    async def test_same_code_different_owner_allowed(self, async_session):
        async_session.add(Company(owner="acme", soc_code="1"))
        async_session.add(Company(owner="globex", soc_code="1"))
        await async_session.commit()

    @pytest.mark.asyncio
    async def test_placeholder_defaults_to_false(self, async_session):
        company = Company(owner="acme", soc_code="1")
        async_session.add(company)
        await async_session.commit()
        assert company.is_placeholder is False


class TestEmployeeConstraints:

    @pytest.mark.asyncio
    async def test_duplicate_code_for_owner_raises(self, async_session):
        async_session.add(Employee(owner="acme", soc_code="10", full_name="Ana"))
        await async_session.commit()

        async_session.add(Employee(owner="acme", soc_code="10", full_name="Ana Maria"))
        with pytest.raises(IntegrityError):
            await async_session.commit()


class TestApiCredentialConstraints:

    @pytest.mark.asyncio
    async def test_one_credential_per_owner_and_kind(self, async_session):
        values = {"empresa": "1", "codigo": "2", "chave": "3"}
        async_session.add(ApiCredential(owner="acme", kind="company", **values))
        await async_session.commit()

        async_session.add(ApiCredential(owner="acme", kind="company", **values))
        with pytest.raises(IntegrityError):
            await async_session.commit()


class TestSyncRunDefaults:

    @pytest.mark.asyncio
    async def test_defaults(self, async_session):
        run = SyncRun(kind="company", owner="acme", batch_size=50, max_concurrent=3)
        async_session.add(run)
        await async_session.commit()

        assert run.status == PENDING
        assert run.processed_records == 0
        assert run.parallel is False
        assert run.started_at is not None
        assert run.completed_at is None
        assert run.is_terminal is False

    @pytest.mark.asyncio
    async def test_one_payload_per_chain(self, async_session):
        async_session.add(SyncPayload(root_run_id=1, records=[]))
        await async_session.commit()

        async_session.add(SyncPayload(root_run_id=1, records=[{"CODIGO": "1"}]))
        with pytest.raises(IntegrityError):
            await async_session.commit()
