"""
ReconciliationSweep: links orphan delivery events to the MessageRecord that
now carries their provider message id.

Callbacks can beat the send path's own bookkeeping (the provider answers the
webhook before ``mark_sent`` commits). Those events are stored as orphans;
the sweep replays them in event-time order through the same transition
logic as live ingestion and appends one linked row per orphan.
"""

import logging
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy import exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from msgrelay import records
from msgrelay.clock import Clock, SystemClock
from msgrelay.config import Settings, get_settings
from msgrelay.dedup import mark_processed
from msgrelay.ingestion import apply_event, event_from_row, event_row, observe_timing
from msgrelay.logging_utils import log_context
from msgrelay.metrics import record_orphans_reconciled
from msgrelay.models import DeliveryEvent, ProcessResult
from msgrelay.propagation import LoggingStatusPropagator, StatusPropagator, propagate
from msgrelay.schemas import ReconciliationReport
from msgrelay.storage import SessionLocal

logger = logging.getLogger(__name__)


def reconcile_marker(orphan_id: int) -> str:
    """Processed-key guarding one orphan against being linked twice."""
    return f"reconcile:{orphan_id}"


class ReconciliationSweep:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        propagator: Optional[StatusPropagator] = None,
        batch_size: int = 500,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.propagator = propagator or LoggingStatusPropagator()
        self.batch_size = batch_size

    def pending_orphans(self, db: Session, window: timedelta) -> list:
        """Orphans received within ``window`` that have no linked row yet, oldest event first."""
        linked = aliased(DeliveryEvent)
        since = self.clock.now() - window
        return (
            db.query(DeliveryEvent)
            .filter(
                DeliveryEvent.process_result == ProcessResult.STORED_ORPHAN,
                DeliveryEvent.message_record_id.is_(None),
                DeliveryEvent.received_at >= since,
                ~exists().where(linked.reconciled_from_id == DeliveryEvent.id),
            )
            .order_by(DeliveryEvent.event_timestamp.asc(), DeliveryEvent.id.asc())
            .limit(self.batch_size)
            .all()
        )

    def run(self, window: Optional[timedelta] = None) -> ReconciliationReport:
        if window is None:
            window = timedelta(hours=self.settings.RECONCILE_WINDOW_HOURS)

        report = ReconciliationReport()
        with self.session_factory() as db:
            orphan_ids = [row.id for row in self.pending_orphans(db, window)]
            report.scanned = len(orphan_ids)

            for orphan_id in orphan_ids:
                with log_context(orphan_event_id=orphan_id):
                    try:
                        linked, applied = self._reconcile_one(db, orphan_id)
                    except Exception:
                        db.rollback()
                        logger.exception(f"Reconciliation failed for orphan event id={orphan_id}")
                        linked, applied = False, False

                if linked:
                    report.linked += 1
                    if applied:
                        report.applied += 1
                else:
                    report.still_orphaned += 1

        record_orphans_reconciled(report.linked)
        logger.info(
            "Reconciliation sweep finished",
            extra={
                "scanned": report.scanned,
                "linked": report.linked,
                "applied": report.applied,
                "still_orphaned": report.still_orphaned,
            },
        )
        return report

    def _reconcile_one(self, db: Session, orphan_id: int) -> tuple:
        """Returns (linked, applied)."""
        orphan = db.get(DeliveryEvent, orphan_id)
        record = records.get_record_by_provider_id(db, orphan.provider_message_id, lock=True)
        if record is None:
            return False, False

        now = self.clock.now()
        event = event_from_row(orphan)
        application = apply_event(db, record, event, self.settings, now)
        row = event_row(
            orphan.provider_name,
            orphan.event_key,
            event,
            now,
            application.process_result,
            record=record,
            application=application,
            note="reconciled" if application.status_changed else None,
            signature=orphan.signature,
            reconciled_from_id=orphan.id,
        )
        db.add(row)
        mark_processed(db, reconcile_marker(orphan.id), now)
        try:
            db.commit()
        except IntegrityError:
            # Another sweep linked this orphan first
            db.rollback()
            logger.info(f"Orphan already reconciled elsewhere: id={orphan_id}")
            return False, False

        if application.status_changed:
            observe_timing(application)
            if application.propagate_status:
                propagate(self.propagator, record.link_refs, application.propagate_status, event.event_timestamp)

        logger.info(
            f"Orphan linked: orphan_id={orphan_id}, record_id={record.id}, "
            f"{application.status_before} -> {application.status_after}"
        )
        return True, application.status_changed
