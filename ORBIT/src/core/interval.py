"""Per-lumi shared state written by the event workers.

An ``IntervalState`` is created when a lumi section opens, written by any
number of worker threads while it is open, and handed to the consistency
step once it closes. After ``close`` it is read-only.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional, Sequence

from ORBIT.config import Config
from ORBIT.src.core.types import BeamType, Estimate, SourceKey, VertexSample
from ORBIT.src.drivers.providers import EstimateProvider

logger = logging.getLogger(__name__)


class IntervalProtocolError(RuntimeError):
    """Raised when an interval is used outside its open/close lifecycle."""


class IntervalState:
    def __init__(self, lumi: int):
        self.lumi = lumi
        self._lock = threading.Lock()
        self._estimates: dict[SourceKey, Estimate] = {}
        self._vertices: list[tuple[VertexSample, ...]] = []
        self._closed = False
        self._online_missing_logged = False

    @property
    def closed(self) -> bool:
        return self._closed

    def estimate(self, key: SourceKey) -> Optional[Estimate]:
        with self._lock:
            return self._estimates.get(key)

    def estimates(self) -> dict[SourceKey, Estimate]:
        with self._lock:
            return dict(self._estimates)

    def vertex_batches(self) -> list[tuple[VertexSample, ...]]:
        with self._lock:
            return list(self._vertices)

    def vertex_samples(self) -> list[VertexSample]:
        with self._lock:
            return [v for batch in self._vertices for v in batch]

    @property
    def event_count(self) -> int:
        with self._lock:
            return len(self._vertices)

    def claim_online_warning(self) -> bool:
        """True for the first caller only, so the warning is logged once per lumi."""
        with self._lock:
            if self._online_missing_logged:
                return False
            self._online_missing_logged = True
            return True

    # Writers return False instead of touching a closed state.
    def _append(self, samples: Sequence[VertexSample]) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._vertices.append(tuple(samples))
            return True

    def _install(self, key: SourceKey, estimate: Estimate, only_if_absent: bool = False) -> bool:
        with self._lock:
            if self._closed:
                return False
            if only_if_absent and key in self._estimates:
                return True
            self._estimates[key] = estimate
            return True

    def _seal(self) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            return True

    def __repr__(self) -> str:
        keys = ",".join(k.value for k in self._estimates)
        return f"IntervalState(lumi={self.lumi}, sources=[{keys}], events={len(self._vertices)}, closed={self._closed})"


def classify_online(estimate: Estimate) -> Estimate:
    """Scaler estimates are only meaningful when they carry a transverse width."""
    kind = BeamType.TRACKER if estimate.sigma_x != 0 else BeamType.FAKE
    return estimate._replace(kind=kind)


class IntervalCache:
    """Registry of open intervals, keyed by lumi number."""

    def __init__(self, config: Config, database: Optional[EstimateProvider] = None):
        self.config = config
        self.database = database
        self._lock = threading.Lock()
        self._open: dict[int, IntervalState] = {}

    def misuse(self, msg: str) -> None:
        if self.config.STRICT_PROTOCOL:
            raise IntervalProtocolError(msg)
        logger.error("%s (ignored)", msg)

    def _lookup(self, lumi: int) -> Optional[Estimate]:
        if self.database is None:
            return None
        try:
            spot = self.database.lookup(lumi)
        except Exception:
            logger.exception("Database BeamSpot lookup failed at lumi: %d", lumi)
            return None
        if spot is None:
            logger.info("Database BeamSpot is not valid at lumi: %d", lumi)
        return spot

    def open(self, lumi: int) -> IntervalState:
        """Resolve the database estimate, then publish the new interval."""
        with self._lock:
            if lumi in self._open:
                self.misuse(f"Lumi {lumi} is already open")
                return self._open[lumi]

        state = IntervalState(lumi)
        spot = self._lookup(lumi)
        if spot is not None:
            state._install(SourceKey.DATABASE, spot)

        with self._lock:
            existing = self._open.get(lumi)
            if existing is not None:
                self.misuse(f"Lumi {lumi} is already open")
                return existing
            self._open[lumi] = state
        return state

    def get(self, lumi: int) -> Optional[IntervalState]:
        with self._lock:
            return self._open.get(lumi)

    def open_lumis(self) -> list[int]:
        with self._lock:
            return sorted(self._open)

    def record_event(self, state: IntervalState, samples: Sequence[VertexSample]) -> None:
        if not state._append(samples):
            self.misuse(f"Event recorded against closed lumi {state.lumi}")

    def set_source_estimate(
        self, state: IntervalState, key: SourceKey, estimate: Estimate, only_if_absent: bool = False
    ) -> None:
        if not state._install(key, estimate, only_if_absent=only_if_absent):
            self.misuse(f"{key.value} estimate set on closed lumi {state.lumi}")

    def close(self, state: IntervalState) -> IntervalState:
        if not state._seal():
            self.misuse(f"Lumi {state.lumi} closed twice")
            return state
        with self._lock:
            if self._open.get(state.lumi) is state:
                del self._open[state.lumi]
        return state
