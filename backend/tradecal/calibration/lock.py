"""
Advisory single-flight lease for calibration jobs.

One row per job name in job_leases. A lease is held until released or until
it goes stale after ttl_seconds, at which point the next caller takes it over.
A contended caller gets False (or LockUnavailableError from hold()) and is
expected to skip its run.
"""

import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Generator, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tradecal.config import settings
from tradecal.db.models import JobLease
from tradecal.db.session import get_independent_session
from tradecal.log_config import logger
from tradecal.utils.datetime import utcnow
from tradecal.utils.errors import LockUnavailableError


CALIBRATION_LEASE = "calibration_cycle"


class JobLock:
    """Lease on a named job. Commits its own writes on the given session."""

    def __init__(
        self,
        db: Session,
        name: str,
        ttl_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
        holder: Optional[str] = None,
    ):
        self.db = db
        self.name = name
        self.ttl_seconds = ttl_seconds or settings.calibration_lock_ttl_seconds
        self.clock = clock or utcnow
        self.holder = holder or uuid.uuid4().hex
        self.acquired = False

    def _current(self) -> Optional[JobLease]:
        return self.db.execute(select(JobLease).where(JobLease.name == self.name)).scalar_one_or_none()

    def acquire(self) -> bool:
        """Take the lease. Returns False if another live holder has it."""
        now = self.clock()
        expires_at = now + timedelta(seconds=self.ttl_seconds)
        lease = self._current()

        if lease is None:
            try:
                with self.db.begin_nested():
                    self.db.add(JobLease(name=self.name, holder=self.holder, acquired_at=now, expires_at=expires_at))
                    self.db.flush()
            except IntegrityError:
                logger.info(f"Lease '{self.name}' taken concurrently, skipping")
                return False
            self.db.commit()
            self.acquired = True
            return True

        if lease.holder == self.holder:
            lease.expires_at = expires_at
            self.db.commit()
            self.acquired = True
            return True

        if lease.expires_at > now:
            logger.info(f"Lease '{self.name}' held by {lease.holder} until {lease.expires_at}, skipping")
            return False

        # Stale lease: take it over only if nobody refreshed it meanwhile.
        stale_holder = lease.holder
        result = self.db.execute(
            update(JobLease)
            .where(JobLease.name == self.name)
            .where(JobLease.holder == stale_holder)
            .where(JobLease.expires_at <= now)
            .values(holder=self.holder, acquired_at=now, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            logger.info(f"Lease '{self.name}' refreshed by another holder, skipping")
            return False

        self.db.commit()
        self.db.expire_all()
        logger.warning(f"Force-released stale lease '{self.name}' held by {stale_holder}")
        self.acquired = True
        return True

    def refresh(self) -> bool:
        """
        Push the expiry ttl_seconds past now.

        Returns False, and stops counting as held, when the lease went stale
        and another holder took it over.
        """
        if not self.acquired:
            return False
        result = self.db.execute(
            update(JobLease)
            .where(JobLease.name == self.name)
            .where(JobLease.holder == self.holder)
            .values(expires_at=self.clock() + timedelta(seconds=self.ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        if result.rowcount != 1:
            logger.warning(f"Lease '{self.name}' was taken over before refresh")
            self.acquired = False
            return False
        return True

    def release(self) -> None:
        """Drop the lease if this holder still owns it."""
        if not self.acquired:
            return
        self.db.execute(
            delete(JobLease)
            .where(JobLease.name == self.name)
            .where(JobLease.holder == self.holder)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        self.acquired = False

    @contextmanager
    def hold(self) -> Generator["JobLock", None, None]:
        """
        Hold the lease for the body of a with-block.

        Raises:
            LockUnavailableError: another live holder owns the lease
        """
        if not self.acquire():
            current = self._current()
            raise LockUnavailableError(
                f"Job '{self.name}' is already running",
                holder=current.holder if current else None,
                details={"job": self.name},
            )
        try:
            yield self
        finally:
            self.release()


@contextmanager
def job_lease(
    name: str,
    ttl_seconds: Optional[int] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Generator[JobLock, None, None]:
    """
    Hold a named lease on its own session for the body of a with-block.

    Raises:
        LockUnavailableError: another live holder owns the lease
    """
    with get_independent_session() as lock_db:
        with JobLock(lock_db, name, ttl_seconds=ttl_seconds, clock=clock).hold() as lock:
            yield lock
