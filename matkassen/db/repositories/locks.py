"""
Lease lock repository.

A lock is a single ``processinglock`` row keyed by name. Every operation is
one write statement so that two workers racing for the same lock are
serialized by the database rather than by a read-then-write in Python.
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from matkassen.models.lock import ProcessingLock

logger = logging.getLogger("matkassen.db.locks")


class LockRepository:
    """Acquire and release named leases."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def acquire(self, name: str, holder: str, *, ttl_seconds: int, now: datetime) -> bool:
        """
        Try to take the lease ``name`` for ``holder``.

        Succeeds if nobody holds it, or if the current lease has expired.

        Args:
            name: Lock name
            holder: Token identifying this holder
            ttl_seconds: Lease length
            now: Current UTC time

        Returns:
            bool: True if the lease is now held by ``holder``
        """
        expires_at = now + timedelta(seconds=ttl_seconds)
        try:
            await self.session.execute(
                insert(ProcessingLock).values(
                    id=name,
                    holder=holder,
                    acquired_at=now,
                    expires_at=expires_at,
                )
            )
            await self.session.commit()
            return True
        except IntegrityError:
            await self.session.rollback()

        # Row exists: take it over only if the previous lease ran out
        result = await self.session.execute(
            update(ProcessingLock)
            .where(ProcessingLock.id == name, ProcessingLock.expires_at < now)
            .values(holder=holder, acquired_at=now, expires_at=expires_at, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        if result.rowcount == 1:
            logger.warning(f"Reclaimed expired lock {name}")
            return True
        return False

    async def renew(self, name: str, holder: str, *, ttl_seconds: int, now: datetime) -> bool:
        """
        Push the lease expiry to ``now + ttl_seconds`` if ``holder`` still owns it.

        Returns:
            bool: False if the lease was taken over or removed
        """
        result = await self.session.execute(
            update(ProcessingLock)
            .where(ProcessingLock.id == name, ProcessingLock.holder == holder)
            .values(expires_at=now + timedelta(seconds=ttl_seconds), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def release(self, name: str, holder: str) -> bool:
        """
        Release the lease if ``holder`` still owns it.

        Returns:
            bool: False if the lease had already been taken over or removed
        """
        result = await self.session.execute(
            delete(ProcessingLock)
            .where(ProcessingLock.id == name, ProcessingLock.holder == holder)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1
