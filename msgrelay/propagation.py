"""
Narrow interface for pushing canonical status to linked business objects
(campaign targets, inbox messages). Propagation is a side effect: callers
log failures and never roll back the MessageRecord transition.
"""

import logging
from datetime import datetime
from typing import Iterable, Protocol, Tuple

logger = logging.getLogger(__name__)

LinkRef = Tuple[str, str]  # (kind, id), e.g. ("campaign_target", "42")


class StatusPropagator(Protocol):
    def update_linked_status(self, link: LinkRef, canonical_status: str, timestamp: datetime) -> None:
        ...


class LoggingStatusPropagator:
    """Default propagator when no business-object store is wired in."""

    def update_linked_status(self, link: LinkRef, canonical_status: str, timestamp: datetime) -> None:
        kind, link_id = link
        logger.info(
            "Linked status update",
            extra={"link_kind": kind, "link_id": link_id, "status": canonical_status, "at": timestamp.isoformat()},
        )


def propagate(propagator: StatusPropagator, links: Iterable[LinkRef], canonical_status: str, timestamp: datetime) -> int:
    """Notify every link; returns how many updates succeeded."""
    delivered = 0
    for link in links:
        try:
            propagator.update_linked_status(link, canonical_status, timestamp)
            delivered += 1
        except Exception as e:
            logger.warning(f"Linked status update failed link={link} status={canonical_status}: {e}")
    return delivered
