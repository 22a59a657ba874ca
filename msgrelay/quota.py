"""
QuotaLedger: the balance-deduction collaborator consulted by the send path.

``DatabaseQuotaLedger`` is the reference implementation backed by the
tenant_quotas / quota_consumptions tables. Deductions are idempotent on
their key: the consumption row is unique per key and the balance update is
conditional on enough remaining quota, both inside one transaction.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from msgrelay.clock import Clock, SystemClock
from msgrelay.errors import QuotaError
from msgrelay.models import QuotaConsumption, TenantQuota

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaCheck:
    can_consume: bool
    reason: Optional[str] = None
    remaining: int = 0
    required: int = 1


@dataclass(frozen=True)
class ConsumeResult:
    consumed: bool
    skipped: bool = False
    reason: Optional[str] = None
    remaining: Optional[int] = None


class QuotaLedger(Protocol):
    def can_consume(self, tenant_id: str, amount: int = 1) -> QuotaCheck:
        ...

    def try_consume(
        self,
        tenant_id: str,
        amount: int,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConsumeResult:
        ...


class DatabaseQuotaLedger:
    def __init__(self, session_factory: Callable[[], Session], clock: Optional[Clock] = None):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def set_balance(self, tenant_id: str, remaining: int, expires_at=None) -> None:
        """Top up or overwrite a tenant balance."""
        with self._session_factory() as db:
            row = db.get(TenantQuota, str(tenant_id))
            if row is None:
                row = TenantQuota(tenant_id=str(tenant_id))
                db.add(row)
            row.remaining = remaining
            row.expires_at = expires_at
            db.commit()

    def remaining(self, tenant_id: str) -> int:
        with self._session_factory() as db:
            row = db.get(TenantQuota, str(tenant_id))
            return row.remaining if row else 0

    def can_consume(self, tenant_id: str, amount: int = 1) -> QuotaCheck:
        """Read-only estimate; takes no lock and changes nothing."""
        with self._session_factory() as db:
            row = db.get(TenantQuota, str(tenant_id))
            if row is None:
                return QuotaCheck(False, "no_active_plan", 0, amount)
            if row.expires_at is not None and row.expires_at <= self._clock.now():
                return QuotaCheck(False, "plan_expired", row.remaining, amount)
            if row.remaining < amount:
                return QuotaCheck(False, "insufficient_quota", row.remaining, amount)
            return QuotaCheck(True, None, row.remaining, amount)

    def is_consumed(self, idempotency_key: str) -> bool:
        with self._session_factory() as db:
            return (
                db.query(QuotaConsumption.id)
                .filter(QuotaConsumption.idempotency_key == idempotency_key)
                .first()
                is not None
            )

    def try_consume(
        self,
        tenant_id: str,
        amount: int,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConsumeResult:
        """
        Deduct ``amount`` exactly once per ``idempotency_key``.

        Raises:
            QuotaError: no plan, expired plan, or insufficient balance.
        """
        if self.is_consumed(idempotency_key):
            logger.info(f"Quota consume skipped (idempotent): key={idempotency_key}")
            return ConsumeResult(consumed=False, skipped=True, reason="idempotent")

        with self._session_factory() as db:
            try:
                row = db.query(TenantQuota).filter(TenantQuota.tenant_id == str(tenant_id)).with_for_update().first()
                if row is None:
                    raise QuotaError(f"no active plan for tenant {tenant_id}")
                if row.expires_at is not None and row.expires_at <= self._clock.now():
                    raise QuotaError(f"plan expired for tenant {tenant_id}")

                affected = (
                    db.query(TenantQuota)
                    .filter(TenantQuota.tenant_id == str(tenant_id), TenantQuota.remaining >= amount)
                    .update({TenantQuota.remaining: TenantQuota.remaining - amount}, synchronize_session=False)
                )
                if affected == 0:
                    raise QuotaError(f"insufficient quota for tenant {tenant_id}: need {amount}")

                db.add(QuotaConsumption(
                    idempotency_key=idempotency_key,
                    tenant_id=str(tenant_id),
                    amount=amount,
                    extra=metadata or None,
                    created_at=self._clock.now(),
                ))
                db.commit()
            except IntegrityError:
                # A concurrent consumer committed the same key first; our deduction rolls back
                db.rollback()
                logger.info(f"Quota consume lost race (idempotent): key={idempotency_key}")
                return ConsumeResult(consumed=False, skipped=True, reason="idempotent")
            except QuotaError:
                db.rollback()
                raise

            remaining = db.get(TenantQuota, str(tenant_id)).remaining

        logger.info(f"Quota consumed: tenant={tenant_id}, amount={amount}, key={idempotency_key}")
        return ConsumeResult(consumed=True, remaining=remaining)
