"""
Per-tenant throttle factors as an explicitly owned, versioned snapshot.

Factors are computed elsewhere (abuse scoring, risk rules); this module
only holds the latest snapshot and applies it. A factor of 1.0 means no
slowdown, 2.0 doubles every retry delay.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional

from msgrelay.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

DEFAULT_FACTOR = 1.0


@dataclass(frozen=True)
class ThrottleSnapshot:
    version: int
    factors: Mapping[str, float] = field(default_factory=dict)
    loaded_at: Optional[datetime] = None

    def factor_for(self, tenant_id: str) -> float:
        return self.factors.get(str(tenant_id), DEFAULT_FACTOR)


class ThrottlePolicy:
    """
    Holds the current snapshot; ``refresh`` swaps in a new one built from
    the loader. Readers always see one complete snapshot.
    """

    def __init__(self, loader: Optional[Callable[[], Dict[str, float]]] = None, clock: Optional[Clock] = None):
        self._loader = loader
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._snapshot = ThrottleSnapshot(version=0)

    @property
    def snapshot(self) -> ThrottleSnapshot:
        return self._snapshot

    def refresh(self, factors: Optional[Dict[str, float]] = None) -> ThrottleSnapshot:
        if factors is None:
            factors = self._loader() if self._loader else {}
        cleaned = {str(k): float(v) for k, v in factors.items() if v is not None and float(v) >= 0}
        with self._lock:
            self._snapshot = ThrottleSnapshot(
                version=self._snapshot.version + 1,
                factors=cleaned,
                loaded_at=self._clock.now(),
            )
        logger.info(f"Throttle snapshot refreshed: version={self._snapshot.version}, tenants={len(cleaned)}")
        return self._snapshot

    def factor_for(self, tenant_id: str) -> float:
        return self._snapshot.factor_for(tenant_id)
