"""Tests for the advisory job lease."""

from datetime import timedelta

import pytest

from tradecal.calibration.lock import JobLock
from tradecal.db.models import JobLease
from tradecal.utils.errors import LockUnavailableError

NAME = "calibration_cycle"


def _lease(db_session):
    return db_session.query(JobLease).filter(JobLease.name == NAME).one_or_none()


class TestJobLock:
    def test_acquire_and_release(self, db_session, clock):
        lock = JobLock(db_session, NAME, ttl_seconds=300, clock=clock, holder="a")

        assert lock.acquire() is True
        assert _lease(db_session).holder == "a"

        lock.release()
        assert _lease(db_session) is None

    def test_contended_lease_is_refused(self, db_session, clock):
        first = JobLock(db_session, NAME, ttl_seconds=300, clock=clock, holder="a")
        second = JobLock(db_session, NAME, ttl_seconds=300, clock=clock, holder="b")

        assert first.acquire() is True
        assert second.acquire() is False
        assert _lease(db_session).holder == "a"

    def test_same_holder_refreshes(self, db_session, clock):
        lock = JobLock(db_session, NAME, ttl_seconds=300, clock=clock, holder="a")
        lock.acquire()
        clock.advance(seconds=100)

        assert lock.acquire() is True
        assert _lease(db_session).expires_at == clock() + timedelta(seconds=300)

    def test_stale_lease_taken_over(self, db_session, clock):
        first = JobLock(db_session, NAME, ttl_seconds=300, clock=clock, holder="a")
        first.acquire()

        clock.advance(seconds=301)
        second = JobLock(db_session, NAME, ttl_seconds=300, clock=clock, holder="b")

        assert second.acquire() is True
        assert _lease(db_session).holder == "b"

        # the old holder's release must not drop the new lease
        first.release()
        assert _lease(db_session).holder == "b"

    def test_hold_raises_when_contended(self, db_session, clock):
        JobLock(db_session, NAME, ttl_seconds=300, clock=clock, holder="a").acquire()

        with pytest.raises(LockUnavailableError) as exc_info:
            with JobLock(db_session, NAME, ttl_seconds=300, clock=clock, holder="b").hold():
                pass

        assert exc_info.value.holder == "a"

    def test_hold_releases_on_error(self, db_session, clock):
        with pytest.raises(RuntimeError):
            with JobLock(db_session, NAME, ttl_seconds=300, clock=clock, holder="a").hold():
                raise RuntimeError("job failed")

        assert _lease(db_session) is None

    def test_refresh_extends_expiry(self, db_session, clock):
        lock = JobLock(db_session, NAME, ttl_seconds=300, clock=clock, holder="a")
        lock.acquire()
        clock.advance(seconds=250)

        assert lock.refresh() is True
        assert _lease(db_session).expires_at == clock() + timedelta(seconds=300)

        # still live 100s past the original expiry
        clock.advance(seconds=150)
        assert JobLock(db_session, NAME, ttl_seconds=300, clock=clock, holder="b").acquire() is False

    def test_refresh_after_takeover_reports_loss(self, db_session, clock):
        first = JobLock(db_session, NAME, ttl_seconds=300, clock=clock, holder="a")
        first.acquire()
        clock.advance(seconds=301)
        JobLock(db_session, NAME, ttl_seconds=300, clock=clock, holder="b").acquire()

        assert first.refresh() is False
        assert first.acquired is False
        assert _lease(db_session).holder == "b"

    def test_refresh_without_acquire(self, db_session, clock):
        assert JobLock(db_session, NAME, ttl_seconds=300, clock=clock, holder="a").refresh() is False
