"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from msgrelay.clock import SystemClock
from msgrelay.storage import Base


def _utcnow():
    return SystemClock().now()


class MessageStatus:
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    EXPIRED = "expired"

    SUCCESS = (SENT, DELIVERED, READ)
    ALL = (PENDING, SENDING, SENT, DELIVERED, READ, FAILED, EXPIRED)


class MessageType:
    TEXT = "text"
    TEMPLATE = "template"
    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"
    LOCATION = "location"
    CONTACT = "contact"
    INTERACTIVE = "interactive"

    ALL = (TEXT, TEMPLATE, IMAGE, DOCUMENT, AUDIO, VIDEO, LOCATION, CONTACT, INTERACTIVE)


class EventType:
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    REJECTED = "rejected"
    EXPIRED = "expired"

    ALL = (SENT, DELIVERED, READ, FAILED, REJECTED, EXPIRED)


class ProcessResult:
    PROCESSED = "processed"
    IGNORED = "ignored"
    STORED_ORPHAN = "stored_orphan"
    DUPLICATE = "duplicate"


class MessageRecord(Base):
    """
    One row per logical message.

    Table: message_records
    Unique: idempotency_key (deduplicates every send attempt of the same message)
    """
    __tablename__ = "message_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(128), nullable=False, unique=True)

    tenant_id = Column(String(64), nullable=False, index=True)
    campaign_id = Column(String(64), nullable=True, index=True)
    campaign_target_id = Column(String(64), nullable=True)
    conversation_id = Column(String(64), nullable=True)

    recipient = Column(String(32), nullable=False, index=True)
    message_type = Column(String(20), nullable=False, default=MessageType.TEXT)
    template_name = Column(String(255), nullable=True)
    content_preview = Column(Text, nullable=True)  # first 500 chars only
    content_hash = Column(String(32), nullable=True, index=True)
    message_params = Column(JSON, nullable=True)
    extra = Column("metadata", JSON, nullable=True)

    status = Column(String(20), nullable=False, default=MessageStatus.PENDING, index=True)
    status_detail = Column(String(255), nullable=True)

    provider_name = Column(String(50), nullable=True)
    provider_message_id = Column(String(128), nullable=True, index=True)
    provider_http_status = Column(Integer, nullable=True)

    error_code = Column(String(50), nullable=True, index=True)
    error_message = Column(Text, nullable=True)
    is_retryable = Column(Boolean, nullable=False, default=False)

    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    retry_after = Column(DateTime, nullable=True)

    processing_claim_id = Column(String(64), nullable=True)
    processing_claimed_at = Column(DateTime, nullable=True)

    quota_consumed = Column(Boolean, nullable=False, default=False)
    quota_idempotency_key = Column(String(140), nullable=True)
    message_cost = Column(Integer, nullable=False, default=1)

    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_message_records_retryable", "status", "retry_count", "retry_after"),
        Index("ix_message_records_claims", "status", "processing_claimed_at"),
        Index("ix_message_records_tenant_status", "tenant_id", "status"),
    )

    @property
    def is_successfully_sent(self) -> bool:
        return self.status in MessageStatus.SUCCESS

    @property
    def link_refs(self) -> list:
        """Business objects this message reports its status to."""
        refs = []
        if self.campaign_target_id:
            refs.append(("campaign_target", self.campaign_target_id))
        if self.conversation_id:
            refs.append(("inbox_message", self.conversation_id))
        return refs


class DeliveryEvent(Base):
    """
    Append-only log of every inbound provider callback.

    Table: delivery_events
    Rows are never updated. Orphans are resolved by appending a row whose
    reconciled_from_id points at the orphan.
    """
    __tablename__ = "delivery_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_name = Column(String(50), nullable=False)
    event_key = Column(String(255), nullable=False, index=True)
    event_id = Column(String(255), nullable=True)
    provider_message_id = Column(String(128), nullable=True, index=True)
    message_record_id = Column(Integer, ForeignKey("message_records.id"), nullable=True, index=True)
    tenant_id = Column(String(64), nullable=True)

    event_type = Column(String(20), nullable=False)
    event_timestamp = Column(DateTime, nullable=False)
    received_at = Column(DateTime, nullable=False, default=_utcnow, index=True)
    recipient = Column(String(32), nullable=True)
    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    raw_payload = Column(JSON, nullable=True)
    signature = Column(String(255), nullable=True)

    status_before = Column(String(20), nullable=True)
    status_after = Column(String(20), nullable=True)
    status_changed = Column(Boolean, nullable=False, default=False)
    is_out_of_order = Column(Boolean, nullable=False, default=False)
    process_result = Column(String(20), nullable=False)
    process_note = Column(String(255), nullable=True)

    delivery_time_seconds = Column(Float, nullable=True)
    read_time_seconds = Column(Float, nullable=True)

    reconciled_from_id = Column(Integer, ForeignKey("delivery_events.id"), nullable=True, index=True)


class ProcessedEventKey(Base):
    """
    Authoritative idempotency guard for inbound events.

    Table: processed_event_keys
    Primary Key: event_key (a concurrent duplicate fails the insert)
    """
    __tablename__ = "processed_event_keys"

    event_key = Column(String(255), primary_key=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)


class TenantQuota(Base):
    """Remaining message quota per tenant (reference ledger)."""
    __tablename__ = "tenant_quotas"

    tenant_id = Column(String(64), primary_key=True)
    remaining = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime, nullable=True)


class QuotaConsumption(Base):
    """One row per quota deduction, unique on its idempotency key."""
    __tablename__ = "quota_consumptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(140), nullable=False, unique=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    extra = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
