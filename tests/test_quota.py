"""
Tests for the reference quota ledger.
"""

from datetime import timedelta

import pytest

from conftest import T0
from msgrelay.errors import QuotaError


class TestCanConsume:
    """Read-only estimates."""

    def test_balance_available(self, ledger):
        check = ledger.can_consume("t1", 1)
        assert check.can_consume is True
        assert check.remaining == 100

    def test_no_plan(self, ledger):
        check = ledger.can_consume("unknown")
        assert check.can_consume is False
        assert check.reason == "no_active_plan"

    def test_expired_plan(self, ledger):
        ledger.set_balance("t2", 10, expires_at=T0 - timedelta(days=1))
        assert ledger.can_consume("t2").reason == "plan_expired"

    def test_insufficient(self, ledger):
        ledger.set_balance("t2", 1)
        check = ledger.can_consume("t2", 2)
        assert check.can_consume is False
        assert check.reason == "insufficient_quota"

    def test_estimate_changes_nothing(self, ledger):
        ledger.can_consume("t1", 5)
        assert ledger.remaining("t1") == 100


class TestTryConsume:
    """Idempotent deductions."""

    def test_consumes_once_per_key(self, ledger):
        first = ledger.try_consume("t1", 1, "quota_k1", {"message_record_id": 1})
        second = ledger.try_consume("t1", 1, "quota_k1")

        assert first.consumed is True
        assert first.remaining == 99
        assert second.consumed is False
        assert second.skipped is True
        assert second.reason == "idempotent"
        assert ledger.remaining("t1") == 99
        assert ledger.is_consumed("quota_k1") is True

    def test_distinct_keys_each_consume(self, ledger):
        ledger.try_consume("t1", 1, "quota_a")
        ledger.try_consume("t1", 2, "quota_b")
        assert ledger.remaining("t1") == 97

    def test_insufficient_balance_raises(self, ledger):
        ledger.set_balance("t2", 0)
        with pytest.raises(QuotaError):
            ledger.try_consume("t2", 1, "quota_k1")
        assert ledger.is_consumed("quota_k1") is False

    def test_no_plan_raises(self, ledger):
        with pytest.raises(QuotaError):
            ledger.try_consume("nobody", 1, "quota_k1")

    def test_expired_plan_raises(self, ledger):
        ledger.set_balance("t2", 10, expires_at=T0)
        with pytest.raises(QuotaError):
            ledger.try_consume("t2", 1, "quota_k1")
        assert ledger.remaining("t2") == 10
