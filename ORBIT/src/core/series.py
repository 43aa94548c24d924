"""Lumi-indexed series storage for every catalog entry."""

from __future__ import annotations

import logging
from typing import Iterable, Iterator, NamedTuple, Optional

from ORBIT.config import Config
from ORBIT.src.core.catalog import CATALOG, CatalogEntry, Category, Scope
from ORBIT.src.core.histograms import Histogram1D
from ORBIT.src.core.types import Variable

logger = logging.getLogger(__name__)


class Point(NamedTuple):
    bin: int
    value: float
    error: Optional[float]


class Series:
    """One (variable, category) series with its display bounds."""

    def __init__(self, entry: CatalogEntry, first_bin: int, last_bin: int):
        self.entry = entry
        self.first_bin = first_bin
        self.last_bin = last_bin
        self._bins: dict[int, tuple[tuple[float, Optional[float]], ...]] = {}
        self.y_min: Optional[float] = None
        self.y_max: Optional[float] = None
        self.x_min: float = first_bin - 0.5
        self.x_max: float = last_bin + 0.5

    @property
    def variable(self) -> Variable:
        return self.entry.variable

    @property
    def category(self) -> Category:
        return self.entry.category

    @property
    def active(self) -> bool:
        return self.entry.active

    def in_range(self, bin_no: int) -> bool:
        return self.first_bin <= bin_no <= self.last_bin

    def set_bin(self, bin_no: int, values: Iterable[tuple[float, Optional[float]]]) -> bool:
        """Replace the content of one bin. Returns False when the bin is off-range."""
        if not self.in_range(bin_no):
            logger.debug("Dropping %s %s entry at lumi %d (outside [%d, %d])",
                         self.variable.value, self.category.label, bin_no, self.first_bin, self.last_bin)
            return False
        content = tuple((float(v), None if e is None else float(e)) for v, e in values)
        if content:
            self._bins[bin_no] = content
        else:
            self._bins.pop(bin_no, None)
        return True

    def has_bin(self, bin_no: int) -> bool:
        return bin_no in self._bins

    def points(self) -> list[Point]:
        return [Point(b, v, e) for b in sorted(self._bins) for v, e in self._bins[b]]

    def values(self) -> list[float]:
        return [v for content in self._bins.values() for v, _ in content]

    def __len__(self) -> int:
        return len(self._bins)

    def content_bounds(self) -> tuple[float, float]:
        vals = self.values()
        if not vals:
            return 0.0, 0.0
        return min(vals), max(vals)

    def display_bounds(self) -> tuple[float, float]:
        """Current y bounds; derived from the content until explicitly set."""
        if self.y_min is not None and self.y_max is not None:
            return self.y_min, self.y_max
        return self.content_bounds()


class SeriesStore:
    def __init__(self, config: Config):
        self.config = config
        self._series: dict[tuple[Variable, Category], Series] = {
            key: Series(entry, config.FIRST_LUMI, config.LAST_LUMI) for key, entry in CATALOG.items()
        }
        # Run-wide distributions, booked once per active run-scope entry
        self._distributions: dict[tuple[Variable, Category], Histogram1D] = {
            key: Histogram1D(entry.name, entry.title, *entry.binning)
            for key, entry in CATALOG.items()
            if entry.active and entry.category.scope is Scope.RUN and entry.binning is not None
        }

    def series(self, variable: Variable, category: Category) -> Series:
        return self._series[(variable, category)]

    def __iter__(self) -> Iterator[Series]:
        return iter(self._series.values())

    def active_series(self) -> list[Series]:
        return [s for s in self._series.values() if s.active]

    def append(
        self, variable: Variable, category: Category, bin_no: int, value: float, error: Optional[float] = None
    ) -> bool:
        """Write a single point at ``bin_no``, overwriting any prior content."""
        return self.fill(variable, category, bin_no, [(value, error)])

    def fill(
        self, variable: Variable, category: Category, bin_no: int, points: Iterable[tuple[float, Optional[float]]]
    ) -> bool:
        series = self._series[(variable, category)]
        if not series.active:
            raise ValueError(f"{variable.value} '{category.label}' is reserved and not filled")
        return series.set_bin(bin_no, points)

    def query(self, variable: Variable, category: Category) -> list[Point]:
        return self._series[(variable, category)].points()

    def distribution(self, variable: Variable, category: Category) -> Optional[Histogram1D]:
        return self._distributions.get((variable, category))

    def distributions(self) -> list[tuple[CatalogEntry, Histogram1D]]:
        return [(CATALOG[key], hist) for key, hist in self._distributions.items()]

    def fill_distribution(self, variable: Variable, category: Category, values: Iterable[float]) -> int:
        """Accumulate values into a run-scope distribution. Returns the number filled."""
        hist = self._distributions.get((variable, category))
        if hist is None:
            return 0
        n = 0
        for value in values:
            hist.fill(value)
            n += 1
        return n
