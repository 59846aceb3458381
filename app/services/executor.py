"""Applies batches of SOC records to storage."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional
from sqlalchemy import insert, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.database import Absenteeism, Company, Employee
from app.services.errors import RecordProcessingError
from app.services.transform import TRANSFORMERS

logger = logging.getLogger(__name__)

NATURAL_KEY = ("soc_code", "owner")
PLACEHOLDER_COMPANY_NAME = "Empresa sem nome"


@dataclass
class BatchResult:
    """Record outcome counts of one batch."""

    success: int = 0
    failed: int = 0

    def __add__(self, other: "BatchResult") -> "BatchResult":
        return BatchResult(self.success + other.success, self.failed + other.failed)

    @property
    def processed(self) -> int:
        return self.success + self.failed


# (next batch index, result of the finished batch/group, records in it)
ProgressCallback = Callable[[int, BatchResult, int], Awaitable[None]]
# Receives the index of the batch about to run
StopCheck = Callable[[int], Awaitable[bool]]


def _dialect_insert(session: AsyncSession):
    """Return the INSERT construct supporting ON CONFLICT for the bound dialect."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upsert not supported for dialect {name}")


def _dedupe_by_key(rows: list[dict], key: tuple[str, ...]) -> list[dict]:
    """Collapse rows sharing a key to the last occurrence, keeping first-seen order."""
    by_key: dict[tuple, dict] = {}
    for row in rows:
        by_key[tuple(row[k] for k in key)] = row
    return list(by_key.values())


class BatchExecutor:
    """
    Writes batches for one owner.

    Each batch is cut into sub-batches of at most sub_batch_size rows; every
    sub-batch is its own transaction. A failing sub-batch counts all of its
    records as failed and the next sub-batch is still attempted.
    """

    def __init__(self, session_maker: async_sessionmaker, owner: str, sub_batch_size: int = 25):
        if sub_batch_size < 1:
            raise ValueError("sub_batch_size must be at least 1")
        self.session_maker = session_maker
        self.owner = owner
        self.sub_batch_size = sub_batch_size
        self._writers = {
            "company": self._write_companies,
            "employee": self._write_employees,
            "absenteeism": self._write_absenteeism,
        }

    async def execute(self, batch: list, kind: str) -> BatchResult:
        """Transform and persist one batch. Never raises for record or storage failures."""
        transform = TRANSFORMERS[kind]
        writer = self._writers[kind]
        result = BatchResult()

        rows = []
        for item in batch:
            try:
                if not isinstance(item, dict):
                    raise RecordProcessingError(f"expected an object, got {type(item).__name__}")
                rows.append(transform(item, self.owner))
            except RecordProcessingError as e:
                logger.warning(f"Skipping malformed {kind} record: {e}")
                result.failed += 1

        for start in range(0, len(rows), self.sub_batch_size):
            chunk = rows[start:start + self.sub_batch_size]
            try:
                async with self.session_maker() as session:
                    await writer(session, chunk)
                    await session.commit()
                result.success += len(chunk)
            except Exception as e:
                logger.error(f"Failed to write {len(chunk)} {kind} records: {e}")
                result.failed += len(chunk)

        return result

    async def execute_group(self, batches: list[list], kind: str) -> list[BatchResult]:
        """Run several batches concurrently and wait for all of them."""
        if len(batches) == 1:
            return [await self.execute(batches[0], kind)]

        outcomes = await asyncio.gather(
            *(self.execute(batch, kind) for batch in batches),
            return_exceptions=True,
        )
        results = []
        for batch, outcome in zip(batches, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"{kind} batch of {len(batch)} records failed: {outcome}")
                results.append(BatchResult(failed=len(batch)))
            else:
                results.append(outcome)
        return results

    async def run(
        self,
        batches: list[list],
        kind: str,
        start_index: int = 0,
        *,
        parallel: bool = False,
        max_concurrent: int = 3,
        on_progress: Optional[ProgressCallback] = None,
        should_stop: Optional[StopCheck] = None,
    ) -> tuple[int, BatchResult]:
        """
        Execute batches from start_index onwards.

        Sequential mode runs one batch at a time in index order. Parallel mode
        runs groups of up to max_concurrent batches and reports progress only
        once the whole group is done. should_stop is consulted before every
        batch/group; when it returns True the loop ends early.

        Returns the index of the first batch not executed and the totals of
        the batches that were.
        """
        group_size = max_concurrent if parallel else 1
        if group_size < 1:
            raise ValueError("max_concurrent must be at least 1")

        index = start_index
        totals = BatchResult()
        while index < len(batches):
            if should_stop is not None and await should_stop(index):
                break

            group = batches[index:index + group_size]
            group_result = sum(await self.execute_group(group, kind), BatchResult())
            index += len(group)
            totals += group_result
            logger.debug(f"{kind} batches up to {index}/{len(batches)} done: {group_result}")

            if on_progress is not None:
                await on_progress(index, group_result, sum(len(batch) for batch in group))

        return index, totals

    async def _upsert(self, session: AsyncSession, model, rows: list[dict]) -> None:
        rows = _dedupe_by_key(rows, NATURAL_KEY)
        stmt = _dialect_insert(session)(model.__table__).values(rows)
        update_columns = {k: stmt.excluded[k] for k in rows[0] if k not in NATURAL_KEY}
        update_columns["updated_at"] = datetime.utcnow()
        stmt = stmt.on_conflict_do_update(index_elements=list(NATURAL_KEY), set_=update_columns)
        await session.execute(stmt)

    async def _write_companies(self, session: AsyncSession, rows: list[dict]) -> None:
        await self._upsert(session, Company, rows)

    async def _resolve_companies(self, session: AsyncSession, names: dict[str, str | None]) -> dict[str, int]:
        """Map company SOC codes to ids, inserting placeholders for unknown codes."""
        query = select(Company.soc_code, Company.id).where(
            Company.owner == self.owner, Company.soc_code.in_(names)
        )
        ids = dict((await session.execute(query)).all())

        missing = [code for code in names if code not in ids]
        if missing:
            logger.info(f"Creating {len(missing)} placeholder companies for {self.owner}")
            placeholders = [
                {
                    "owner": self.owner,
                    "soc_code": code,
                    "short_name": names[code] or PLACEHOLDER_COMPANY_NAME,
                    "corporate_name": names[code] or PLACEHOLDER_COMPANY_NAME,
                    "is_placeholder": True,
                }
                for code in missing
            ]
            stmt = _dialect_insert(session)(Company.__table__).values(placeholders)
            await session.execute(stmt.on_conflict_do_nothing(index_elements=list(NATURAL_KEY)))
            ids.update((await session.execute(query)).all())

        return ids

    async def _write_employees(self, session: AsyncSession, rows: list[dict]) -> None:
        names: dict[str, str | None] = {}
        for row in rows:
            if row["company_soc_code"]:
                names.setdefault(row["company_soc_code"], row["company_name"])

        if names:
            company_ids = await self._resolve_companies(session, names)
            for row in rows:
                row["company_id"] = company_ids.get(row["company_soc_code"])

        await self._upsert(session, Employee, rows)

    async def _write_absenteeism(self, session: AsyncSession, rows: list[dict]) -> None:
        """
        Insert absence events, skipping ones already stored for this owner.

        The existence check is read-then-write; two writers racing on the same
        event can still both insert it.
        """
        registrations = {row["employee_registration"] for row in rows if row["employee_registration"]}

        employees: dict[str, tuple[int, int | None]] = {}
        if registrations:
            result = await session.execute(
                select(Employee.employee_registration, Employee.id, Employee.company_id)
                .where(Employee.owner == self.owner, Employee.employee_registration.in_(registrations))
                .order_by(Employee.id)
            )
            for registration, employee_id, company_id in result.all():
                employees.setdefault(registration, (employee_id, company_id))

        existing_result = await session.execute(
            select(
                Absenteeism.employee_registration,
                Absenteeism.start_date,
                Absenteeism.primary_icd,
            ).where(
                Absenteeism.owner == self.owner,
                or_(
                    Absenteeism.employee_registration.in_(registrations),
                    Absenteeism.employee_registration.is_(None),
                ),
            )
        )
        seen = set(existing_result.all())

        to_insert: list[dict[str, Any]] = []
        for row in rows:
            key = (row["employee_registration"], row["start_date"], row["primary_icd"])
            if key in seen:
                logger.debug(f"Skipping duplicate absenteeism record for {row['employee_registration']}")
                continue
            seen.add(key)
            employee = employees.get(row["employee_registration"])
            if employee:
                row["employee_id"], row["company_id"] = employee
            to_insert.append(row)

        if to_insert:
            await session.execute(insert(Absenteeism.__table__), to_insert)
