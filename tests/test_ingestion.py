"""
Tests for EventIngestionPipeline.

Tests cover:
- Applying delivery callbacks and timing metrics
- Duplicate callbacks (cache and database guard)
- Out-of-order callbacks never moving status backwards
- Freshness window, orphans, rejections
- Failure and rejection callbacks
"""

import json
from datetime import timedelta

from conftest import T0, compute_signature, fetch_events, fetch_record
from msgrelay import records
from msgrelay.models import MessageStatus
from msgrelay.records import STATUS_LEVELS, MessageAttributes
from msgrelay.storage import SessionLocal


def sent_record(key="k1", pmid="wamid.1", sent_at=T0, **overrides):
    values = {"tenant_id": "t1", "recipient": "+6281234567890", "content": "hello"}
    values.update(overrides)
    with SessionLocal() as db:
        record, _ = records.find_or_create_record(db, key, MessageAttributes(**values), T0)
        records.mark_sent(db, record.id, pmid, "generic", 200, sent_at)
        db.commit()


def pending_record(key="k1", pmid="wamid.1", **overrides):
    values = {"tenant_id": "t1", "recipient": "+6281234567890", "content": "hello"}
    values.update(overrides)
    with SessionLocal() as db:
        record, _ = records.find_or_create_record(db, key, MessageAttributes(**values), T0)
        record.provider_message_id = pmid
        db.commit()


def callback(status, at, pmid="wamid.1", **extra):
    payload = {"message_id": pmid, "status": status, "timestamp": at.isoformat() + "Z"}
    payload.update(extra)
    return payload


class TestProcessing:
    """Callbacks that move a message forward."""

    def test_delivered_after_sent(self, pipeline):
        sent_record()
        result = pipeline.ingest(callback("delivered", T0 + timedelta(seconds=30)), "generic")

        assert result.accepted is True
        assert result.action == "processed"
        assert result.status_before == "sent"
        assert result.status_after == "delivered"
        assert result.status_changed is True
        assert result.event_key == "generic:wamid.1:delivered"

        record = fetch_record("k1")
        assert record.status == MessageStatus.DELIVERED
        assert record.delivered_at == T0 + timedelta(seconds=30)

        events = fetch_events(provider_message_id="wamid.1")
        assert len(events) == 1
        assert events[0].message_record_id == record.id
        assert events[0].tenant_id == "t1"
        assert events[0].delivery_time_seconds == 30.0
        assert events[0].process_result == "processed"

    def test_read_records_read_time(self, pipeline):
        sent_record()
        pipeline.ingest(callback("delivered", T0 + timedelta(seconds=30)), "generic")
        pipeline.ingest(callback("read", T0 + timedelta(seconds=90)), "generic")

        record = fetch_record("k1")
        assert record.status == MessageStatus.READ
        assert record.read_at == T0 + timedelta(seconds=90)
        assert fetch_events(event_type="read")[0].read_time_seconds == 60.0

    def test_status_propagated_to_linked_objects(self, pipeline, propagator):
        sent_record(campaign_id="c1", campaign_target_id="tg1")
        pipeline.ingest(callback("delivered", T0 + timedelta(seconds=30)), "generic")

        assert propagator.calls == [(("campaign_target", "tg1"), "delivered", T0 + timedelta(seconds=30))]

    def test_status_vocabulary_is_normalized(self, pipeline):
        sent_record()
        result = pipeline.ingest(callback("SEEN", T0 + timedelta(seconds=30)), "generic")
        assert result.status_after == "read"


class TestDuplicates:
    """The same callback delivered more than once."""

    def test_repeated_callback_processed_once(self, pipeline, propagator):
        sent_record(campaign_id="c1", campaign_target_id="tg1")
        payload = callback("delivered", T0 + timedelta(seconds=30))

        results = [pipeline.ingest(payload, "generic") for _ in range(3)]
        assert [r.action for r in results] == ["processed", "ignored", "ignored"]
        assert [r.reason for r in results[1:]] == ["duplicate", "duplicate"]
        assert len(propagator.calls) == 1

        events = fetch_events(event_key="generic:wamid.1:delivered")
        assert [e.process_result for e in events] == ["processed", "duplicate", "duplicate"]
        assert all(e.message_record_id is not None for e in events)

    def test_database_guard_catches_duplicate_after_cache_loss(self, pipeline):
        sent_record()
        payload = callback("delivered", T0 + timedelta(seconds=30))
        pipeline.ingest(payload, "generic")
        pipeline.cache.clear()

        result = pipeline.ingest(payload, "generic")
        assert result.reason == "duplicate"
        assert fetch_record("k1").status == MessageStatus.DELIVERED

    def test_provider_event_id_used_as_key(self, pipeline):
        sent_record()
        first = pipeline.ingest(callback("delivered", T0 + timedelta(seconds=30), event_id="evt-1"), "generic")
        resent = pipeline.ingest(callback("delivered", T0 + timedelta(seconds=31), event_id="evt-1"), "generic")

        assert first.event_key == "generic:evt-1"
        assert resent.reason == "duplicate"


class TestOrdering:
    """Out-of-order callbacks."""

    def test_read_before_delivered(self, pipeline):
        sent_record()
        read = pipeline.ingest(callback("read", T0 + timedelta(seconds=40)), "generic")
        delivered = pipeline.ingest(callback("delivered", T0 + timedelta(seconds=30)), "generic")

        assert read.action == "processed"
        assert delivered.action == "ignored"
        assert delivered.reason == "backward_transition"
        assert delivered.status_after == "read"

        record = fetch_record("k1")
        assert record.status == MessageStatus.READ
        assert record.delivered_at is None

        late = fetch_events(event_type="delivered")[0]
        assert late.is_out_of_order is True
        assert late.process_result == "ignored"

    def test_status_never_moves_backwards(self, pipeline):
        sent_record()
        sequence = ["delivered", "sent", "read", "delivered", "failed", "sent"]
        levels = []
        for offset, status in enumerate(sequence, start=1):
            pipeline.ingest(callback(status, T0 + timedelta(seconds=offset)), "generic")
            levels.append(STATUS_LEVELS[fetch_record("k1").status])

        assert levels == sorted(levels)
        assert fetch_record("k1").status == MessageStatus.READ

    def test_same_status_ignored(self, pipeline):
        sent_record()
        result = pipeline.ingest(callback("sent", T0 + timedelta(seconds=5)), "generic")
        assert result.action == "ignored"
        assert result.reason == "same_status"

    def test_expired_callback_never_applies(self, pipeline):
        sent_record()
        result = pipeline.ingest(callback("expired", T0 + timedelta(seconds=5)), "generic")
        assert result.reason == "invalid_transition"
        assert fetch_record("k1").status == MessageStatus.SENT


class TestFreshness:
    """Events older than the freshness window."""

    def test_old_event_ignored(self, pipeline):
        sent_record()
        result = pipeline.ingest(callback("delivered", T0 - timedelta(days=8)), "generic")

        assert result.accepted is True
        assert result.action == "ignored"
        assert result.reason == "event_too_old"
        assert fetch_record("k1").status == MessageStatus.SENT

        events = fetch_events(provider_message_id="wamid.1")
        assert len(events) == 1
        assert events[0].process_note == "event_too_old"
        assert events[0].message_record_id is None

    def test_event_inside_window_applies(self, pipeline):
        sent_record(sent_at=T0 - timedelta(days=6, hours=23))
        result = pipeline.ingest(callback("delivered", T0 - timedelta(days=6)), "generic")
        assert result.action == "processed"


class TestOrphans:
    """Callbacks for provider ids no record carries yet."""

    def test_unknown_message_stored_as_orphan(self, pipeline):
        result = pipeline.ingest(callback("delivered", T0, pmid="wamid.unknown"), "generic")

        assert result.accepted is True
        assert result.action == "stored_orphan"
        assert result.reason == "message_not_found"
        assert result.message_record_id is None

        events = fetch_events(provider_message_id="wamid.unknown")
        assert [e.process_result for e in events] == ["stored_orphan"]

    def test_repeated_orphan_is_duplicate(self, pipeline):
        payload = callback("delivered", T0, pmid="wamid.unknown")
        pipeline.ingest(payload, "generic")
        pipeline.cache.clear()

        assert pipeline.ingest(payload, "generic").reason == "duplicate"


class TestRejections:
    """Callbacks refused before any state change."""

    def test_unknown_provider(self, pipeline):
        result = pipeline.ingest(callback("delivered", T0), "carrier-pigeon")
        assert result.accepted is False
        assert result.action == "rejected"
        assert result.reason == "unknown_provider"

    def test_malformed_payload(self, pipeline):
        result = pipeline.ingest({"status": "delivered"}, "generic")
        assert result.accepted is False
        assert result.reason == "invalid_payload"
        assert fetch_events() == []

    def test_invalid_json_body(self, pipeline):
        body = b"{not json"
        result = pipeline.ingest(body, "generic", signature=compute_signature(body.decode(), "testsecret"))
        assert result.reason == "invalid_payload"

    def test_bad_signature(self, pipeline):
        sent_record()
        body = json.dumps(callback("delivered", T0 + timedelta(seconds=30)))
        result = pipeline.ingest(body.encode(), "generic", signature="deadbeef")

        assert result.reason == "invalid_signature"
        assert fetch_record("k1").status == MessageStatus.SENT

    def test_missing_signature(self, pipeline):
        body = json.dumps(callback("delivered", T0))
        assert pipeline.ingest(body.encode(), "generic").reason == "invalid_signature"

    def test_signed_body_accepted(self, pipeline):
        sent_record()
        body = json.dumps(callback("delivered", T0 + timedelta(seconds=30)))
        signature = "sha256=" + compute_signature(body, "testsecret")

        result = pipeline.ingest(body.encode(), "generic", signature=signature)
        assert result.action == "processed"

    def test_malformed_then_corrected_event_is_processed(self, pipeline):
        """A rejected callback leaves no trace that would block its corrected retry."""
        sent_record()
        broken = pipeline.ingest({"event_id": "evt-1", "status": "delivered"}, "generic")
        fixed = pipeline.ingest(callback("delivered", T0 + timedelta(seconds=30), event_id="evt-1"), "generic")

        assert broken.reason == "invalid_payload"
        assert fixed.action == "processed"
        assert fetch_record("k1").status == MessageStatus.DELIVERED

    def test_unusable_timestamps_are_invalid_payloads(self, pipeline):
        sent_record()
        for value in ("nan", "1e20"):
            result = pipeline.ingest(
                {"message_id": "wamid.1", "status": "delivered", "timestamp": value}, "generic"
            )
            assert result.accepted is False
            assert result.reason == "invalid_payload"

        assert fetch_events() == []
        assert fetch_record("k1").status == MessageStatus.SENT

    def test_meta_errors_without_objects_still_processed(self, pipeline):
        sent_record()
        payload = {"entry": [{"changes": [{"value": {"statuses": [{
            "id": "wamid.1",
            "status": "delivered",
            "timestamp": "1736935230",
            "errors": ["boom"],
        }]}}]}]}

        result = pipeline.ingest(payload, "meta")
        assert result.action == "processed"
        assert fetch_record("k1").status == MessageStatus.DELIVERED

    def test_unexpected_normalize_error_is_contained(self, pipeline, monkeypatch):
        adapter = pipeline.registry.get("generic")

        def explode(payload, received_at):
            raise KeyError("surprise")

        monkeypatch.setattr(adapter, "normalize", explode)
        result = pipeline.ingest(callback("delivered", T0), "generic")

        assert result.accepted is False
        assert result.action == "rejected"
        assert result.reason == "processing_error"
        assert fetch_events() == []

    def test_processing_error_rolls_back(self, pipeline):
        class BrokenCache:
            def seen(self, key):
                raise RuntimeError("cache down")

            def mark(self, key):
                pass

        sent_record()
        pipeline.cache = BrokenCache()
        result = pipeline.ingest(callback("delivered", T0 + timedelta(seconds=30)), "generic")

        assert result.accepted is False
        assert result.reason == "processing_error"
        assert result.event_key == "generic:wamid.1:delivered"
        assert fetch_events() == []
        assert fetch_record("k1").status == MessageStatus.SENT


class TestFailureCallbacks:
    """failed / rejected callbacks and late success."""

    def test_late_success_overrides_failure(self, pipeline):
        sent_record(pmid="wamid.1")
        with SessionLocal() as db:
            record = records.get_record_by_key(db, "k1")
            record.status = MessageStatus.FAILED
            record.is_retryable = True
            record.error_code = "TIMEOUT"
            db.commit()

        result = pipeline.ingest(callback("sent", T0 + timedelta(seconds=10)), "generic")

        assert result.action == "processed"
        assert result.status_before == "failed"
        record = fetch_record("k1")
        assert record.status == MessageStatus.SENT
        assert record.error_code is None
        assert record.is_retryable is False

    def test_rejected_is_permanent_and_propagated(self, pipeline, propagator):
        pending_record(campaign_id="c1", campaign_target_id="tg1")
        result = pipeline.ingest(
            callback("rejected", T0 + timedelta(seconds=5), error_message="Message undeliverable"),
            "generic",
        )

        assert result.action == "processed"
        assert result.status_after == "failed"
        record = fetch_record("k1")
        assert record.error_code == "REJECTED"
        assert record.is_retryable is False
        assert propagator.calls == [(("campaign_target", "tg1"), "failed", T0 + timedelta(seconds=5))]

    def test_retryable_failure_not_propagated(self, pipeline, propagator):
        pending_record(campaign_id="c1", campaign_target_id="tg1")
        pipeline.ingest(
            callback("failed", T0 + timedelta(seconds=5), error_message="Request timed out"),
            "generic",
        )

        record = fetch_record("k1")
        assert record.status == MessageStatus.FAILED
        assert record.error_code == "TIMEOUT"
        assert record.is_retryable is True
        assert record.retry_count == 1
        assert propagator.calls == []

    def test_failure_after_delivery_ignored(self, pipeline):
        sent_record()
        pipeline.ingest(callback("delivered", T0 + timedelta(seconds=30)), "generic")
        result = pipeline.ingest(callback("failed", T0 + timedelta(seconds=40)), "generic")

        assert result.reason == "backward_transition"
        record = fetch_record("k1")
        assert record.status == MessageStatus.DELIVERED
        assert record.error_code is None

    def test_callback_for_earlier_attempt_lands_during_retry(self, pipeline):
        """A reclaimed record still accepts callbacks for the id an earlier attempt got."""
        values = {"tenant_id": "t1", "recipient": "+6281234567890", "content": "hello"}
        with SessionLocal() as db:
            record, _ = records.find_or_create_record(db, "k1", MessageAttributes(**values), T0)
            records.mark_failed(
                db, record.id, "TIMEOUT", "timed out", True, T0, 30, 2, provider_message_id="wamid.1"
            )
            db.commit()
            assert records.claim_record(db, record.id, "claim-2", T0 + timedelta(seconds=60), 300)
            db.commit()

        result = pipeline.ingest(callback("delivered", T0 + timedelta(seconds=70)), "generic")

        assert result.action == "processed"
        assert result.status_before == MessageStatus.SENDING
        record = fetch_record("k1")
        assert record.status == MessageStatus.DELIVERED
        assert record.processing_claim_id is None
