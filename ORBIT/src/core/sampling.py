"""Per-event track and vertex sampling."""

from __future__ import annotations

import logging
from typing import Sequence

from ORBIT.config import Config
from ORBIT.src.core.fitters import BeamSpotFitter
from ORBIT.src.core.histograms import Histogram1D, Profile
from ORBIT.src.core.interval import IntervalCache, IntervalState, classify_online
from ORBIT.src.core.types import Event, SourceKey, Vertex, VertexSample

logger = logging.getLogger(__name__)


def select_vertices(vertices: Sequence[Vertex], min_tracks: int) -> list[VertexSample]:
    return [v.sample() for v in vertices if not v.is_fake and v.n_tracks >= min_tracks]


class EventSampler:
    """Feeds one event into the fitters, the open interval and the run distributions."""

    def __init__(self, config: Config, cache: IntervalCache, fitters: Sequence[BeamSpotFitter] = ()):
        self.config = config
        self.cache = cache
        self.fitters = list(fitters)
        self.d0_phi = Profile("hD0Phi0", "d_{0} vs. #phi_{0} (All Tracks)", 63, -3.15, 3.15, -0.5, 0.5)
        self.dxy_bs = Histogram1D("hDxyBS", "dxy_{0} w.r.t. Beam spot (All Tracks)", 100, -0.1, 0.1)

    def process(self, event: Event, state: IntervalState) -> None:
        for fitter in self.fitters:
            fitter.submit(event)

        db = state.estimate(SourceKey.DATABASE)
        if db is not None:
            for track in event.tracks:
                self.d0_phi.fill(track.phi, -track.dxy)
                self.dxy_bs.fill(-track.dxy_to(db.x, db.y))

        if event.vertices is not None:
            samples = select_vertices(event.vertices, self.config.VERTEX_MIN_TRACKS)
            self.cache.record_event(state, samples)

        if state.estimate(SourceKey.ONLINE) is None:
            if event.online is not None:
                self.cache.set_source_estimate(
                    state, SourceKey.ONLINE, classify_online(event.online), only_if_absent=True
                )
            elif state.claim_online_warning():
                logger.warning("No BeamSpot from scalers is available for lumi %d", state.lumi)
