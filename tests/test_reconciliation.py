"""
Tests for ReconciliationSweep.

Tests cover:
- Linking orphans once their record carries the provider message id
- Replaying several orphans in event-time order
- Sweeps being repeatable without double-linking
- Orphans that stay orphaned, and the lookback window
"""

from datetime import timedelta

from conftest import T0, fetch_events, fetch_record
from msgrelay import records
from msgrelay.dedup import mark_processed
from msgrelay.models import MessageStatus
from msgrelay.reconciliation import reconcile_marker
from msgrelay.records import MessageAttributes
from msgrelay.storage import SessionLocal


def sent_record(key="k1", pmid="wamid.1", **overrides):
    values = {"tenant_id": "t1", "recipient": "+6281234567890", "content": "hello"}
    values.update(overrides)
    with SessionLocal() as db:
        record, _ = records.find_or_create_record(db, key, MessageAttributes(**values), T0)
        records.mark_sent(db, record.id, pmid, "generic", 200, T0)
        db.commit()


def callback(status, at, pmid="wamid.1"):
    return {"message_id": pmid, "status": status, "timestamp": at.isoformat() + "Z"}


class TestSweep:
    """Orphan linking."""

    def test_orphan_linked_after_record_appears(self, pipeline, sweep, clock, propagator):
        pipeline.ingest(callback("delivered", T0 + timedelta(seconds=20)), "generic")
        sent_record(campaign_id="c1", campaign_target_id="tg1")
        clock.advance(minutes=5)

        report = sweep.run()

        assert report.scanned == 1
        assert report.linked == 1
        assert report.applied == 1
        assert report.still_orphaned == 0

        record = fetch_record("k1")
        assert record.status == MessageStatus.DELIVERED
        assert record.delivered_at == T0 + timedelta(seconds=20)

        orphan, linked = fetch_events(provider_message_id="wamid.1")
        assert orphan.process_result == "stored_orphan"
        assert orphan.message_record_id is None
        assert linked.reconciled_from_id == orphan.id
        assert linked.message_record_id == record.id
        assert linked.process_result == "processed"
        assert linked.process_note == "reconciled"
        assert linked.received_at == T0 + timedelta(minutes=5)
        assert propagator.calls == [(("campaign_target", "tg1"), "delivered", T0 + timedelta(seconds=20))]

    def test_second_sweep_finds_nothing(self, pipeline, sweep):
        pipeline.ingest(callback("delivered", T0 + timedelta(seconds=20)), "generic")
        sent_record()
        sweep.run()

        report = sweep.run()
        assert report.scanned == 0
        assert report.linked == 0
        assert len(fetch_events(provider_message_id="wamid.1")) == 2

    def test_replay_order_matches_live_order(self, pipeline, sweep):
        """read arriving first still ends at read with delivered_at kept."""
        pipeline.ingest(callback("read", T0 + timedelta(seconds=60), pmid="wamid.orphan"), "generic")
        pipeline.ingest(callback("delivered", T0 + timedelta(seconds=20), pmid="wamid.orphan"), "generic")
        sent_record(key="k-orphan", pmid="wamid.orphan")

        sent_record(key="k-live", pmid="wamid.live")
        pipeline.ingest(callback("delivered", T0 + timedelta(seconds=20), pmid="wamid.live"), "generic")
        pipeline.ingest(callback("read", T0 + timedelta(seconds=60), pmid="wamid.live"), "generic")

        report = sweep.run()
        assert report.linked == 2
        assert report.applied == 2

        reconciled = fetch_record("k-orphan")
        live = fetch_record("k-live")
        assert reconciled.status == live.status == MessageStatus.READ
        assert reconciled.delivered_at == live.delivered_at
        assert reconciled.read_at == live.read_at

    def test_stale_orphan_linked_without_change(self, pipeline, sweep):
        pipeline.ingest(callback("sent", T0 + timedelta(seconds=1)), "generic")
        sent_record()

        report = sweep.run()
        assert report.linked == 1
        assert report.applied == 0

        linked = fetch_events(provider_message_id="wamid.1")[-1]
        assert linked.process_result == "ignored"
        assert linked.process_note == "same_status"
        assert linked.reconciled_from_id is not None

    def test_orphan_without_record_stays(self, pipeline, sweep):
        pipeline.ingest(callback("delivered", T0, pmid="wamid.nobody"), "generic")

        report = sweep.run()
        assert report.scanned == 1
        assert report.linked == 0
        assert report.still_orphaned == 1
        assert sweep.run().scanned == 1

    def test_orphans_outside_window_skipped(self, pipeline, sweep, clock):
        pipeline.ingest(callback("delivered", T0), "generic")
        sent_record()
        clock.advance(hours=25)

        assert sweep.run().scanned == 0
        assert sweep.run(window=timedelta(hours=48)).linked == 1

    def test_marker_blocks_double_link(self, pipeline, sweep):
        """A concurrent sweep that already committed the marker wins."""
        pipeline.ingest(callback("delivered", T0 + timedelta(seconds=20)), "generic")
        sent_record()
        orphan = fetch_events(provider_message_id="wamid.1")[0]

        with SessionLocal() as db:
            mark_processed(db, reconcile_marker(orphan.id), T0)
            db.commit()

        report = sweep.run()
        assert report.linked == 0
        assert report.still_orphaned == 1
        assert fetch_record("k1").status == MessageStatus.SENT
