"""End-of-run display ranges for the lumi-based series."""

from __future__ import annotations

import logging
from typing import Optional

from ORBIT.config import Config
from ORBIT.src.core.catalog import Scope, SeriesKind
from ORBIT.src.core.series import Series, SeriesStore
from ORBIT.src.core.types import Variable

logger = logging.getLogger(__name__)


class RunAccumulator:
    """Lumi numbers processed in the current run."""

    def __init__(self):
        self._lumis: list[int] = []

    def add(self, lumi: int) -> None:
        self._lumis.append(lumi)

    def __len__(self) -> int:
        return len(self._lumis)

    def __bool__(self) -> bool:
        return bool(self._lumis)

    @property
    def lumis(self) -> list[int]:
        return sorted(self._lumis)

    def domain(self) -> Optional[tuple[int, int]]:
        if not self._lumis:
            return None
        return min(self._lumis), max(self._lumis)


class RangeNormalizer:
    """Shared display ranges for the lumi-based series.

    Series of the same variable and scope are pooled by kind: all absolute
    series get one y range, all difference series another. A group with no
    content, or a single value, keeps each series' own content range widened
    by a fixed margin. The result depends only on the content, so running it
    twice gives the same bounds.
    """

    def __init__(self, config: Config):
        self.config = config

    def padding(self, kind: SeriesKind) -> float:
        if kind is SeriesKind.DIFFERENCE:
            return self.config.DIFFERENCE_PADDING
        return self.config.ABSOLUTE_PADDING

    @staticmethod
    def groups(store: SeriesStore) -> dict[tuple[Variable, Scope, SeriesKind], list[Series]]:
        grouped: dict[tuple[Variable, Scope, SeriesKind], list[Series]] = {}
        for series in store.active_series():
            if not series.category.is_time_series:
                continue
            key = (series.variable, series.category.scope, series.category.kind)
            grouped.setdefault(key, []).append(series)
        return grouped

    def group_bounds(self, kind: SeriesKind, members: list[Series]) -> Optional[tuple[float, float]]:
        """Padded y range over every value in the group, or None when degenerate."""
        values = [v for s in members for v in s.values()]
        if not values:
            return None
        lo, hi = min(values), max(values)
        if hi == lo:
            return None
        k = self.padding(kind)
        return lo - k * (hi - lo), hi + k * (hi - lo)

    def fallback_bounds(self, series: Series) -> tuple[float, float]:
        lo, hi = series.content_bounds()
        margin = self.config.DEGENERATE_MARGIN
        return lo - margin, hi + margin

    def normalize(self, store: SeriesStore, run: RunAccumulator) -> bool:
        domain = run.domain()
        if domain is None:
            logger.info("No lumi processed; leaving series ranges untouched")
            return False
        first, last = domain

        count = 0
        for (variable, scope, kind), members in self.groups(store).items():
            shared = self.group_bounds(kind, members)
            if shared is None:
                logger.debug("Degenerate %s %s %s group, widening by margin", variable.value, scope.value, kind.value)
            for series in members:
                series.y_min, series.y_max = shared if shared is not None else self.fallback_bounds(series)
                series.x_min = first - 0.5
                series.x_max = last + 0.5
                count += 1
        logger.info("Normalized %d series over lumis [%d, %d]", count, first, last)
        return True
