"""
Tests for distributed locking utilities.

Tests the DistributedLock class which provides Redis-based mutual exclusion
for the deadline sweep, payment initiation and instruction dispatch.
"""

import pytest

from escrow.exceptions import LockAcquisitionError
from escrow.locks import DistributedLock


class TestDistributedLock:
    """Tests for DistributedLock class."""

    def test_acquire_success(self, mock_redis):
        """Should acquire lock when available."""
        lock = DistributedLock("escrow:deadline-sweep", ttl=300, blocking=False)

        assert lock.acquire() is True
        assert lock.is_held is True
        call_args = mock_redis.set.call_args
        assert call_args[0][0] == "lock:escrow:deadline-sweep"
        assert call_args[1]["nx"] is True
        assert call_args[1]["ex"] == 300

    def test_each_acquisition_uses_a_unique_token(self, mock_redis):
        lock1 = DistributedLock("escrow:instruction:1", blocking=False)
        lock2 = DistributedLock("escrow:instruction:2", blocking=False)

        lock1.acquire()
        lock2.acquire()

        assert lock1._token != lock2._token

    def test_non_blocking_raises_when_held(self, mock_redis):
        """An overlapping sweep fails fast instead of queueing."""
        mock_redis.set.return_value = False
        lock = DistributedLock("escrow:deadline-sweep", blocking=False)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert "already held" in str(exc_info.value)
        assert exc_info.value.error_code == "LOCK_ACQUISITION_FAILED"
        assert lock.is_held is False

    def test_blocking_waits_and_acquires(self, mock_redis):
        mock_redis.set.side_effect = [False, False, True]

        lock = DistributedLock("escrow:initiate:abc", blocking=True, timeout=1.0)

        assert lock.acquire() is True
        assert mock_redis.set.call_count == 3

    def test_blocking_timeout_raises(self, mock_redis):
        mock_redis.set.return_value = False
        lock = DistributedLock("escrow:initiate:abc", blocking=True, timeout=0.1)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert exc_info.value.details["timeout"] == 0.1

    def test_release_only_if_owned(self, mock_redis):
        """The release script returns 0 when the token no longer matches."""
        mock_redis.eval.return_value = 0
        lock = DistributedLock("escrow:deadline-sweep", blocking=False)
        lock.acquire()

        assert lock.release() is False
        assert lock.is_held is False

    def test_release_without_acquire_returns_false(self, mock_redis):
        lock = DistributedLock("escrow:deadline-sweep", blocking=False)

        assert lock.release() is False
        mock_redis.eval.assert_not_called()

    def test_context_manager_releases_on_exception(self, mock_redis):
        with pytest.raises(ValueError, match="boom"):
            with DistributedLock("escrow:instruction:1"):
                raise ValueError("boom")

        mock_redis.eval.assert_called_once()

    def test_extend_passes_new_ttl(self, mock_redis):
        lock = DistributedLock("escrow:deadline-sweep", ttl=300, blocking=False)
        lock.acquire()

        assert lock.extend(additional_ttl=600) is True
        # eval(EXTEND_SCRIPT, 1, key, token, ttl)
        assert mock_redis.eval.call_args[0][4] == 600

    def test_extend_without_lock_returns_false(self, mock_redis):
        lock = DistributedLock("escrow:deadline-sweep")

        assert lock.extend() is False
        mock_redis.eval.assert_not_called()
