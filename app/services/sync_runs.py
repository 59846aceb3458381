"""
Persistent sync run state.

Every status change is a conditional UPDATE guarded by the statuses it may
leave, so a cancelled or finished run is never reopened by a slower writer.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional
from sqlalchemy import and_, delete, exists, func, or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import aliased

from app.models.sync_run import (
    CANCELLED,
    CONTINUES,
    IN_PROGRESS,
    NEEDS_CONTINUATION,
    PENDING,
    PROCESSING,
    RUNNING_STATUSES,
    TERMINAL_STATUSES,
    SyncPayload,
    SyncRun,
)

logger = logging.getLogger(__name__)

# Statuses in which batches may still be written
WRITING_STATUSES = (IN_PROGRESS, PROCESSING, CONTINUES)


def _active_clause():
    """
    SQL condition for runs that keep their (owner, kind) slot busy.

    A needs_continuation run stops counting once its continuation row exists;
    from then on the child carries the chain.
    """
    child = aliased(SyncRun)
    has_child = exists().where(child.parent_run_id == SyncRun.id)
    return or_(
        SyncRun.status.in_(RUNNING_STATUSES),
        and_(SyncRun.status == NEEDS_CONTINUATION, ~has_child),
    )


class SyncRunStore:
    """Reads and conditional writes of SyncRun rows. Each call uses its own session."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def create_run(
        self,
        kind: str,
        owner: str,
        *,
        batch_size: int,
        max_concurrent: int,
        parallel: bool = False,
        message: Optional[str] = None,
    ) -> SyncRun:
        """Insert a fresh pending run that roots its own chain."""
        async with self.session_maker() as session:
            run = SyncRun(
                kind=kind,
                owner=owner,
                status=PENDING,
                batch_size=batch_size,
                max_concurrent=max_concurrent,
                parallel=parallel,
                message=message,
            )
            session.add(run)
            await session.flush()
            run.root_run_id = run.id
            await session.commit()
            await session.refresh(run)

        logger.info(f"Created sync run {run.id} ({kind}) for {owner}")
        return run

    async def create_continuation(self, parent: SyncRun, **values: Any) -> SyncRun:
        """Insert the pending child that resumes parent's chain."""
        async with self.session_maker() as session:
            child = SyncRun(
                kind=parent.kind,
                owner=parent.owner,
                status=PENDING,
                batch_size=parent.batch_size,
                max_concurrent=parent.max_concurrent,
                parallel=parent.parallel,
                parent_run_id=parent.id,
                root_run_id=parent.root_run_id or parent.id,
                total_records=parent.total_records,
                total_batches=parent.total_batches,
                **values,
            )
            session.add(child)
            await session.commit()
            await session.refresh(child)

        logger.info(f"Created continuation run {child.id} for sync run {parent.id}")
        return child

    async def get_run(self, run_id: int, owner: Optional[str] = None) -> Optional[SyncRun]:
        async with self.session_maker() as session:
            query = select(SyncRun).where(SyncRun.id == run_id)
            if owner is not None:
                query = query.where(SyncRun.owner == owner)
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def get_child(self, run_id: int) -> Optional[SyncRun]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(SyncRun).where(SyncRun.parent_run_id == run_id).order_by(SyncRun.id.desc()).limit(1)
            )
            return result.scalar_one_or_none()

    async def list_runs(self, owner: str, limit: int = 20) -> list[SyncRun]:
        """Most recent runs first."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(SyncRun)
                .where(SyncRun.owner == owner)
                .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_active(
        self,
        owner: str,
        kind: Optional[str] = None,
        exclude_root: Optional[int] = None,
    ) -> list[SyncRun]:
        async with self.session_maker() as session:
            query = select(SyncRun).where(SyncRun.owner == owner, _active_clause())
            if kind is not None:
                query = query.where(SyncRun.kind == kind)
            if exclude_root is not None:
                query = query.where(SyncRun.root_run_id != exclude_root)
            result = await session.execute(query.order_by(SyncRun.id))
            return list(result.scalars().all())

    async def find_active(
        self,
        owner: str,
        kind: Optional[str] = None,
        exclude_root: Optional[int] = None,
    ) -> Optional[SyncRun]:
        """
        First run keeping the slot busy, or None.

        kind=None checks every kind of the owner. exclude_root skips the
        chain being resumed.
        """
        runs = await self.list_active(owner, kind, exclude_root)
        return runs[0] if runs else None

    async def _conditional_update(
        self,
        run_id: int,
        allowed: Iterable[str],
        values: dict[str, Any],
    ) -> bool:
        values["updated_at"] = datetime.utcnow()
        async with self.session_maker() as session:
            result = await session.execute(
                update(SyncRun)
                .where(SyncRun.id == run_id, SyncRun.status.in_(tuple(allowed)))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def claim(
        self,
        run_id: int,
        from_statuses: Iterable[str],
        to_status: str,
        message: str,
        **values: Any,
    ) -> bool:
        """Move run_id to to_status if it is currently in one of from_statuses."""
        claimed = await self._conditional_update(
            run_id, from_statuses, dict(values, status=to_status, message=message)
        )
        if claimed:
            logger.info(f"Sync run {run_id} -> {to_status}: {message}")
        else:
            logger.info(f"Sync run {run_id} not moved to {to_status}, status changed elsewhere")
        return claimed

    async def record_progress(self, run_id: int, message: str, **values: Any) -> bool:
        """
        Write counters and resume coordinates.

        Returns False when the run is no longer writing, which callers treat
        as a cancellation.
        """
        return await self._conditional_update(run_id, WRITING_STATUSES, dict(values, message=message))

    async def finish(
        self,
        run_id: int,
        status: str,
        message: str,
        error_detail: Optional[str] = None,
        **values: Any,
    ) -> bool:
        """Move a running run to a terminal status."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal status")
        values.update(status=status, message=message, completed_at=datetime.utcnow())
        if error_detail is not None:
            values["error_detail"] = error_detail

        finished = await self._conditional_update(run_id, RUNNING_STATUSES, values)
        if finished:
            logger.info(f"Sync run {run_id} finished with {status}: {message}")
        else:
            logger.warning(f"Sync run {run_id} already left the running states, {status} not recorded")
        return finished

    async def mark_needs_continuation(self, run_id: int, message: str, **values: Any) -> bool:
        """processing -> needs_continuation; only one caller can win."""
        return await self.claim(run_id, (PROCESSING,), NEEDS_CONTINUATION, message, **values)

    async def annotate(
        self,
        run_id: int,
        message: str,
        allowed: Iterable[str] = (PENDING,),
        **values: Any,
    ) -> bool:
        """Update message (and values) of a run still in one of the allowed statuses."""
        return await self._conditional_update(run_id, allowed, dict(values, message=message))

    async def get_status(self, run_id: int) -> Optional[str]:
        async with self.session_maker() as session:
            result = await session.execute(select(SyncRun.status).where(SyncRun.id == run_id))
            return result.scalar_one_or_none()

    async def is_cancelled(self, run_id: int) -> bool:
        return await self.get_status(run_id) == CANCELLED

    async def cancel_run(
        self,
        run_id: int,
        owner: str,
        force: bool = False,
        message: str = "Cancelled by user",
    ) -> tuple[Optional[SyncRun], int]:
        """
        Cancel a run together with the active rows of its chain.

        Already finished chains are left untouched unless force is set, in
        which case run_id itself is overwritten as cancelled.

        Returns the refreshed run (None if unknown) and the number of rows changed.
        """
        run = await self.get_run(run_id, owner)
        if run is None:
            return None, 0

        root_id = run.root_run_id or run.id
        now = datetime.utcnow()
        values = {
            "status": CANCELLED,
            "message": message,
            "updated_at": now,
            "completed_at": func.coalesce(SyncRun.completed_at, now),
        }
        async with self.session_maker() as session:
            active_ids = (
                await session.execute(
                    select(SyncRun.id).where(SyncRun.root_run_id == root_id, _active_clause())
                )
            ).scalars().all()
            targets = and_(
                SyncRun.id.in_(active_ids),
                SyncRun.status.notin_(TERMINAL_STATUSES),
            )
            if force:
                targets = or_(targets, SyncRun.id == run.id)
            result = await session.execute(
                update(SyncRun)
                .where(targets)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        changed = result.rowcount
        if changed:
            logger.info(f"Cancelled {changed} row(s) of sync chain {root_id} via run {run_id}")
        else:
            logger.info(f"Sync run {run_id} already {run.status}, nothing to cancel")
        return await self.get_run(run_id, owner), changed

    async def reset_active(self, owner: str, message: str = "Reset by user") -> list[int]:
        """Cancel every active run of the owner. Returns the affected ids."""
        runs = await self.list_active(owner)
        if not runs:
            return []

        ids = [run.id for run in runs]
        now = datetime.utcnow()
        async with self.session_maker() as session:
            await session.execute(
                update(SyncRun)
                .where(SyncRun.id.in_(ids), SyncRun.status.notin_(TERMINAL_STATUSES))
                .values(status=CANCELLED, message=message, updated_at=now, completed_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.warning(f"Reset {len(ids)} active sync run(s) for {owner}: {ids}")
        return ids

    async def clear_history(self, owner: str) -> int:
        """
        Delete the owner's finished chains and their payloads.

        Chains with any active row are kept whole.
        """
        async with self.session_maker() as session:
            active_roots = set(
                (
                    await session.execute(
                        select(SyncRun.root_run_id).where(SyncRun.owner == owner, _active_clause())
                    )
                ).scalars().all()
            )
            owner_roots = (
                await session.execute(
                    select(SyncRun.root_run_id).where(SyncRun.owner == owner).distinct()
                )
            ).scalars().all()
            finished_roots = [root for root in owner_roots if root not in active_roots]
            if not finished_roots:
                return 0

            result = await session.execute(
                delete(SyncRun)
                .where(SyncRun.owner == owner, SyncRun.root_run_id.in_(finished_roots))
                .execution_options(synchronize_session=False)
            )
            await session.execute(delete(SyncPayload).where(SyncPayload.root_run_id.in_(finished_roots)))
            await session.commit()

        logger.info(f"Deleted {result.rowcount} finished sync run(s) for {owner}")
        return result.rowcount

    async def save_payload(self, root_run_id: int, records: list) -> None:
        """Store the fetched records of a chain, replacing any earlier copy."""
        async with self.session_maker() as session:
            await session.execute(delete(SyncPayload).where(SyncPayload.root_run_id == root_run_id))
            session.add(SyncPayload(root_run_id=root_run_id, records=records))
            await session.commit()

    async def load_payload(self, root_run_id: int) -> Optional[list]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(SyncPayload.records).where(SyncPayload.root_run_id == root_run_id)
            )
            return result.scalar_one_or_none()

    async def stale_continuations(self, older_than: timedelta) -> list[SyncRun]:
        """Pending continuation rows nobody claimed within older_than."""
        cutoff = datetime.utcnow() - older_than
        async with self.session_maker() as session:
            result = await session.execute(
                select(SyncRun)
                .where(
                    SyncRun.status == PENDING,
                    SyncRun.parent_run_id.is_not(None),
                    SyncRun.updated_at < cutoff,
                )
                .order_by(SyncRun.id)
            )
            return list(result.scalars().all())

    async def orphaned_parents(self, older_than: timedelta) -> list[SyncRun]:
        """needs_continuation rows whose child was never created."""
        cutoff = datetime.utcnow() - older_than
        child = aliased(SyncRun)
        async with self.session_maker() as session:
            result = await session.execute(
                select(SyncRun)
                .where(
                    SyncRun.status == NEEDS_CONTINUATION,
                    SyncRun.updated_at < cutoff,
                    ~exists().where(child.parent_run_id == SyncRun.id),
                )
                .order_by(SyncRun.id)
            )
            return list(result.scalars().all())
