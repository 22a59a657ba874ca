"""
MessageRecord store and lifecycle state machine.

Every mutation here is either an insert guarded by the unique
idempotency_key or a single-row conditional UPDATE whose WHERE clause
encodes the expected current state. Zero affected rows means another
worker got there first. Functions flush but never commit; the caller owns
the unit of work.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from msgrelay.models import EventType, MessageRecord, MessageStatus, MessageType

logger = logging.getLogger(__name__)

CONTENT_PREVIEW_CHARS = 500

# Allowed status changes driven by inbound callbacks, keyed by current status
EVENT_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    MessageStatus.PENDING: (MessageStatus.SENT, MessageStatus.FAILED),
    MessageStatus.SENDING: (MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.FAILED),
    MessageStatus.SENT: (MessageStatus.DELIVERED, MessageStatus.READ),
    MessageStatus.DELIVERED: (MessageStatus.READ,),
    MessageStatus.READ: (),
    MessageStatus.FAILED: (MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ),
    MessageStatus.EXPIRED: (),
}

STATUS_LEVELS: Dict[str, int] = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENDING: 1,
    MessageStatus.FAILED: 1,
    MessageStatus.SENT: 2,
    MessageStatus.DELIVERED: 3,
    MessageStatus.READ: 4,
    MessageStatus.EXPIRED: 5,
}

EVENT_TARGET_STATUS: Dict[str, str] = {
    EventType.SENT: MessageStatus.SENT,
    EventType.DELIVERED: MessageStatus.DELIVERED,
    EventType.READ: MessageStatus.READ,
    EventType.FAILED: MessageStatus.FAILED,
    EventType.REJECTED: MessageStatus.FAILED,
    EventType.EXPIRED: MessageStatus.EXPIRED,
}


# =============================================================================
# Idempotency keys
# =============================================================================

def campaign_key(campaign_id, target_id) -> str:
    return f"msg_campaign_{campaign_id}_{target_id}"


def inbox_key(conversation_id, nonce: Optional[str] = None) -> str:
    return f"msg_inbox_{conversation_id}_{nonce or uuid.uuid4()}"


def api_key(tenant_id, request_id: str) -> str:
    return f"msg_api_{tenant_id}_{request_id}"


def quota_key(idempotency_key: str) -> str:
    """Second key scoped to the quota ledger, derived from the message key."""
    return f"quota_{idempotency_key}"


def content_hash(recipient: str, content: str) -> str:
    return hashlib.md5(f"{recipient}|{content}".encode("utf-8")).hexdigest()


# =============================================================================
# Attributes and transitions
# =============================================================================

@dataclass
class MessageAttributes:
    """Everything needed to create a MessageRecord if none exists yet."""
    tenant_id: str
    recipient: str
    content: str = ""
    message_type: str = MessageType.TEXT
    template_name: Optional[str] = None
    message_params: Optional[Dict[str, Any]] = None
    campaign_id: Optional[str] = None
    campaign_target_id: Optional[str] = None
    conversation_id: Optional[str] = None
    max_retries: int = 3
    message_cost: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_columns(self) -> Dict[str, Any]:
        return {
            "tenant_id": str(self.tenant_id),
            "recipient": self.recipient,
            "message_type": self.message_type,
            "template_name": self.template_name,
            "content_preview": self.content[:CONTENT_PREVIEW_CHARS],
            "content_hash": content_hash(self.recipient, self.content),
            "message_params": self.message_params,
            "campaign_id": str(self.campaign_id) if self.campaign_id is not None else None,
            "campaign_target_id": str(self.campaign_target_id) if self.campaign_target_id is not None else None,
            "conversation_id": str(self.conversation_id) if self.conversation_id is not None else None,
            "max_retries": self.max_retries,
            "message_cost": self.message_cost,
            "extra": self.metadata or None,
        }


def check_transition(current: str, target: str) -> Tuple[bool, Optional[str]]:
    """
    Validate an event-driven status change.

    Returns (allowed, reason); reason is same_status, backward_transition
    or invalid_transition when the change is rejected.

    >>> check_transition("sent", "delivered")
    (True, None)
    >>> check_transition("delivered", "sent")
    (False, 'backward_transition')
    """
    if target in EVENT_TRANSITIONS.get(current, ()):
        return True, None
    if current == target:
        return False, "same_status"
    if STATUS_LEVELS.get(target, 0) < STATUS_LEVELS.get(current, 0):
        return False, "backward_transition"
    return False, "invalid_transition"


def retry_delay_seconds(retry_count: int, base: int, multiplier: int, throttle_factor: float = 1.0) -> int:
    """Exponential backoff: 30s, 60s, 120s ... scaled by the tenant throttle factor."""
    return int(base * (multiplier ** retry_count) * max(throttle_factor, 0.0))


def is_claim_stale(record: MessageRecord, now: datetime, stale_seconds: int) -> bool:
    if record.status != MessageStatus.SENDING:
        return False
    if record.processing_claimed_at is None:
        return True
    return record.processing_claimed_at < now - timedelta(seconds=stale_seconds)


# =============================================================================
# Store operations
# =============================================================================

def get_record(db: Session, record_id: int, lock: bool = False) -> Optional[MessageRecord]:
    query = db.query(MessageRecord).filter(MessageRecord.id == record_id)
    if lock:
        query = query.with_for_update()
    return query.first()


def get_record_by_key(db: Session, idempotency_key: str) -> Optional[MessageRecord]:
    return db.query(MessageRecord).filter(MessageRecord.idempotency_key == idempotency_key).first()


def get_record_by_provider_id(db: Session, provider_message_id: str, lock: bool = False) -> Optional[MessageRecord]:
    query = db.query(MessageRecord).filter(MessageRecord.provider_message_id == provider_message_id)
    if lock:
        query = query.with_for_update()
    return query.first()


def find_or_create_record(
    db: Session,
    idempotency_key: str,
    attributes: MessageAttributes,
    now: datetime,
) -> Tuple[MessageRecord, bool]:
    """
    Return (record, created). Concurrent callers racing on the same key
    converge on one row: the loser's insert violates the unique constraint
    and it re-reads the winner. Commits on insert.
    """
    existing = get_record_by_key(db, idempotency_key)
    if existing:
        return existing, False

    record = MessageRecord(
        idempotency_key=idempotency_key,
        status=MessageStatus.PENDING,
        retry_count=0,
        is_retryable=False,
        quota_consumed=False,
        created_at=now,
        updated_at=now,
        **attributes.to_columns(),
    )
    try:
        db.add(record)
        db.commit()
        db.refresh(record)
        logger.info(f"MessageRecord created: id={record.id}, key={idempotency_key}")
        return record, True
    except IntegrityError:
        # idempotency_key already exists - another worker inserted it first
        db.rollback()
        existing = get_record_by_key(db, idempotency_key)
        if existing is None:
            raise
        logger.info(f"MessageRecord insert race lost, using existing: key={idempotency_key}")
        return existing, False


def claim_record(db: Session, record_id: int, claim_id: str, now: datetime, stale_seconds: int) -> bool:
    """
    Atomically move a record into ``sending``.

    Eligible: pending; failed + retryable + attempts left; or sending with
    a claim older than the staleness window. Not gated by retry_after.
    """
    stale_cutoff = now - timedelta(seconds=stale_seconds)
    affected = (
        db.query(MessageRecord)
        .filter(
            MessageRecord.id == record_id,
            or_(
                MessageRecord.status == MessageStatus.PENDING,
                and_(
                    MessageRecord.status == MessageStatus.FAILED,
                    MessageRecord.is_retryable.is_(True),
                    MessageRecord.retry_count < MessageRecord.max_retries,
                ),
                and_(
                    MessageRecord.status == MessageStatus.SENDING,
                    or_(
                        MessageRecord.processing_claimed_at.is_(None),
                        MessageRecord.processing_claimed_at < stale_cutoff,
                    ),
                ),
            ),
        )
        .update(
            {
                MessageRecord.status: MessageStatus.SENDING,
                MessageRecord.processing_claim_id: claim_id,
                MessageRecord.processing_claimed_at: now,
                MessageRecord.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    return affected > 0


def mark_sent(
    db: Session,
    record_id: int,
    provider_message_id: str,
    provider_name: Optional[str],
    http_status: Optional[int],
    now: datetime,
) -> bool:
    """Record provider acceptance; refuses to touch an already-successful record."""
    affected = (
        db.query(MessageRecord)
        .filter(
            MessageRecord.id == record_id,
            MessageRecord.status.in_(
                (MessageStatus.SENDING, MessageStatus.PENDING, MessageStatus.FAILED)
            ),
        )
        .update(
            {
                MessageRecord.status: MessageStatus.SENT,
                MessageRecord.status_detail: None,
                MessageRecord.provider_message_id: provider_message_id,
                MessageRecord.provider_name: provider_name,
                MessageRecord.provider_http_status: http_status,
                MessageRecord.sent_at: now,
                MessageRecord.processing_claim_id: None,
                MessageRecord.processing_claimed_at: None,
                MessageRecord.error_code: None,
                MessageRecord.error_message: None,
                MessageRecord.is_retryable: False,
                MessageRecord.retry_after: None,
                MessageRecord.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    return affected > 0


def mark_failed(
    db: Session,
    record_id: int,
    error_code: str,
    error_message: str,
    retryable: bool,
    now: datetime,
    backoff_base: int,
    backoff_multiplier: int,
    throttle_factor: float = 1.0,
    http_status: Optional[int] = None,
    provider_message_id: Optional[str] = None,
) -> Optional[MessageRecord]:
    """
    Record a failed attempt under a row lock.

    Increments retry_count. While attempts remain a retryable failure gets
    a retry_after; otherwise the failure is final (failed_at set,
    is_retryable cleared). A successfully sent record is never failed;
    None is returned in that case.
    """
    record = get_record(db, record_id, lock=True)
    if record is None or record.is_successfully_sent:
        return None

    attempts_before = record.retry_count or 0
    record.status = MessageStatus.FAILED
    record.error_code = error_code
    record.error_message = (error_message or "")[:2000]
    record.provider_http_status = http_status
    if provider_message_id and not record.provider_message_id:
        record.provider_message_id = provider_message_id
    record.retry_count = min(attempts_before + 1, record.max_retries)
    record.processing_claim_id = None
    record.processing_claimed_at = None
    record.updated_at = now

    if retryable and attempts_before + 1 < record.max_retries:
        record.is_retryable = True
        record.retry_after = now + timedelta(
            seconds=retry_delay_seconds(attempts_before, backoff_base, backoff_multiplier, throttle_factor)
        )
        record.status_detail = "retry_scheduled"
    else:
        record.is_retryable = False
        record.retry_after = None
        record.failed_at = now
        record.status_detail = "final_failure" if retryable else "permanent_error"

    db.flush()
    return record


def mark_quota_consumed(db: Session, record_id: int, quota_idempotency_key: str, now: datetime) -> bool:
    affected = (
        db.query(MessageRecord)
        .filter(
            MessageRecord.id == record_id,
            MessageRecord.quota_consumed.is_(False),
            MessageRecord.status.in_(MessageStatus.SUCCESS),
        )
        .update(
            {
                MessageRecord.quota_consumed: True,
                MessageRecord.quota_idempotency_key: quota_idempotency_key,
                MessageRecord.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    return affected > 0


# =============================================================================
# Housekeeping queries
# =============================================================================

def list_retryable(db: Session, now: datetime, tenant_id: Optional[str] = None, limit: int = 100) -> List[MessageRecord]:
    """Failed records whose retry is due, oldest schedule first."""
    query = db.query(MessageRecord).filter(
        MessageRecord.status == MessageStatus.FAILED,
        MessageRecord.is_retryable.is_(True),
        MessageRecord.retry_count < MessageRecord.max_retries,
        or_(MessageRecord.retry_after.is_(None), MessageRecord.retry_after <= now),
    )
    if tenant_id:
        query = query.filter(MessageRecord.tenant_id == str(tenant_id))
    return query.order_by(MessageRecord.retry_after.asc()).limit(limit).all()


def list_stale_claims(db: Session, now: datetime, stale_seconds: int, limit: int = 100) -> List[MessageRecord]:
    cutoff = now - timedelta(seconds=stale_seconds)
    return (
        db.query(MessageRecord)
        .filter(
            MessageRecord.status == MessageStatus.SENDING,
            MessageRecord.processing_claimed_at < cutoff,
        )
        .limit(limit)
        .all()
    )


def expire_stale_pending(db: Session, now: datetime, older_than: timedelta) -> int:
    """Pending records nobody picked up within the window become expired."""
    cutoff = now - older_than
    hours = int(older_than.total_seconds() // 3600)
    return (
        db.query(MessageRecord)
        .filter(MessageRecord.status == MessageStatus.PENDING, MessageRecord.created_at < cutoff)
        .update(
            {
                MessageRecord.status: MessageStatus.EXPIRED,
                MessageRecord.status_detail: f"Expired after {hours} hours without processing",
                MessageRecord.failed_at: now,
                MessageRecord.is_retryable: False,
                MessageRecord.updated_at: now,
            },
            synchronize_session=False,
        )
    )


def tenant_stats(db: Session, tenant_id: str) -> Dict[str, Any]:
    rows = (
        db.query(MessageRecord.status, func.count(MessageRecord.id))
        .filter(MessageRecord.tenant_id == str(tenant_id))
        .group_by(MessageRecord.status)
        .all()
    )
    counts = {status: count for status, count in rows}
    total = sum(counts.values())
    succeeded = sum(counts.get(s, 0) for s in MessageStatus.SUCCESS)
    return {
        "total": total,
        "sent": succeeded,
        "pending": counts.get(MessageStatus.PENDING, 0),
        "sending": counts.get(MessageStatus.SENDING, 0),
        "failed": counts.get(MessageStatus.FAILED, 0),
        "expired": counts.get(MessageStatus.EXPIRED, 0),
        "success_rate": round(succeeded / total * 100, 2) if total else 0.0,
    }
