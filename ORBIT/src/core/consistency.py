"""Interval-close merge of all beam-spot sources into the series store."""

from __future__ import annotations

import logging
import math
from typing import NamedTuple, Optional

from ORBIT.src.core.catalog import CATALOG, Category, Scope
from ORBIT.src.core.fitters import BeamSpotFitter
from ORBIT.src.core.interval import IntervalProtocolError, IntervalState
from ORBIT.src.core.series import SeriesStore
from ORBIT.src.core.types import Estimate, SourceKey, Variable, VertexSample

logger = logging.getLogger(__name__)

Measurement = tuple[float, float]


class IntervalSummary(NamedTuple):
    """Everything known about one closed lumi, fitter results included."""

    lumi: int
    estimates: dict[SourceKey, Estimate]
    vertices: tuple[VertexSample, ...]


def quadrature(a: float, b: float) -> float:
    return math.sqrt(a * a + b * b)


def project(estimates: dict[SourceKey, Estimate], variable: Variable) -> dict[SourceKey, Measurement]:
    """Value and error per source, keeping only physically meaningful estimates."""
    return {key: est.measure(variable) for key, est in estimates.items() if est.is_valid}


def evaluate(
    category: Category, results: dict[SourceKey, Measurement], vertices: list[Measurement]
) -> Optional[list[tuple[float, Optional[float]]]]:
    """Points to write for one category, or None when an operand is missing."""
    spec = category.spec
    if spec.requires_fit and SourceKey.VERTEX_FIT not in results:
        return None

    sub = None
    if spec.subtrahend is not None:
        sub = results.get(spec.subtrahend)
        if sub is None:
            return None

    if spec.per_vertex:
        if not vertices:
            return None
        return [(value - sub[0], quadrature(error, sub[1])) for value, error in vertices]

    top = results.get(spec.minuend)
    if top is None:
        return None
    if sub is None:
        return [(top[0], top[1] if spec.with_error else None)]
    error = quadrature(top[1], sub[1]) if spec.with_error else None
    return [(top[0] - sub[0], error)]


class ConsistencyEngine:
    def __init__(
        self,
        store: SeriesStore,
        beam_fitter: Optional[BeamSpotFitter] = None,
        vertex_fitter: Optional[BeamSpotFitter] = None,
    ):
        self.store = store
        self.beam_fitter = beam_fitter
        self.vertex_fitter = vertex_fitter

    def _run_fitter(self, fitter: Optional[BeamSpotFitter], key: SourceKey, lumi: int) -> Optional[Estimate]:
        if fitter is None:
            return None
        try:
            result = fitter.fit()
        except Exception:
            logger.exception("%s fit failed at lumi %d", key.value, lumi)
            result = None
        finally:
            fitter.reset()
        if result is None:
            logger.info("No %s beam spot at lumi %d (insufficient data)", key.value, lumi)
        return result

    def summarize(self, state: IntervalState) -> IntervalSummary:
        """Run both fitters and freeze the interval's sources."""
        if not state.closed:
            raise IntervalProtocolError(f"Lumi {state.lumi} must be closed before it is summarized")
        estimates = state.estimates()
        for fitter, key in ((self.beam_fitter, SourceKey.BEAM_FIT), (self.vertex_fitter, SourceKey.VERTEX_FIT)):
            result = self._run_fitter(fitter, key, state.lumi)
            if result is not None:
                estimates[key] = result
        return IntervalSummary(state.lumi, estimates, tuple(state.vertex_samples()))

    def fill(self, summary: IntervalSummary) -> int:
        """Write every computable category at the summary's bin. Returns the number of series written."""
        written = 0
        for variable in Variable:
            results = project(summary.estimates, variable)
            vertices = [m for m in (v.measure(variable) for v in summary.vertices) if m is not None]
            for category in Category:
                if not CATALOG[(variable, category)].active:
                    continue
                points = evaluate(category, results, vertices)
                if points is None:
                    continue
                if category.scope is Scope.RUN:
                    self.store.fill_distribution(variable, category, (value for value, _ in points))
                if self.store.fill(variable, category, summary.lumi, points):
                    written += 1
        logger.debug("Lumi %d: %d series filled from sources %s", summary.lumi, written,
                     ",".join(k.value for k in summary.estimates) or "-")
        return written

    def process(self, state: IntervalState) -> IntervalSummary:
        summary = self.summarize(state)
        self.fill(summary)
        return summary
