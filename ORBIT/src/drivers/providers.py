import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional

import numpy as np

from ORBIT.config import Config
from ORBIT.src.core.types import BeamType, Estimate, Event, Track, Vertex

logger = logging.getLogger(__name__)

_ESTIMATE_FIELDS = Estimate._fields[:-1]


def estimate_from_dict(data: Mapping[str, Any]) -> Estimate:
    """Build an Estimate from a conditions/scaler payload.

    ``beam_type`` follows the conditions convention: 2 is a tracker
    measurement, anything else is fake.
    """
    values = {name: float(data.get(name, 0.0)) for name in _ESTIMATE_FIELDS}
    if "beam_type" in data:
        kind = BeamType.TRACKER if int(data["beam_type"]) == 2 else BeamType.FAKE
    else:
        kind = BeamType.UNKNOWN
    return Estimate(kind=kind, **values)


def estimate_to_dict(estimate: Estimate) -> dict[str, Any]:
    out: dict[str, Any] = {name: getattr(estimate, name) for name in _ESTIMATE_FIELDS}
    out["beam_type"] = estimate.kind.value
    return out


class EstimateProvider(ABC):
    @abstractmethod
    def lookup(self, lumi: int) -> Optional[Estimate]: pass


class StaticProvider(EstimateProvider):
    def __init__(self, estimates: Optional[Mapping[int, Estimate]] = None):
        self.estimates = dict(estimates or {})

    def lookup(self, lumi: int) -> Optional[Estimate]:
        return self.estimates.get(lumi)


class JsonConditionsProvider(EstimateProvider):
    """Database beam spots from a JSON payload keyed by first valid lumi.

    A payload stays valid until the next one starts, so lumi 7 resolves to
    the entry keyed "5" when the file holds "1", "5" and "10".
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._iovs: Optional[list[tuple[int, Estimate]]] = None

    def _load(self) -> list[tuple[int, Estimate]]:
        raw = json.loads(self.path.read_text())
        iovs = [(int(lumi), estimate_from_dict(payload)) for lumi, payload in raw.items()]
        iovs.sort(key=lambda item: item[0])
        logger.info("Loaded %d beam-spot payloads from %s", len(iovs), self.path)
        return iovs

    def lookup(self, lumi: int) -> Optional[Estimate]:
        if self._iovs is None:
            self._iovs = self._load()
        found = None
        for since, estimate in self._iovs:
            if since > lumi:
                break
            found = estimate
        return found


def _track_from(raw: Any) -> Track:
    if isinstance(raw, Mapping):
        return Track(float(raw["pt"]), float(raw["phi"]), float(raw["dxy"]), float(raw["dz"]))
    pt, phi, dxy, dz = raw
    return Track(float(pt), float(phi), float(dxy), float(dz))


def _vertex_from(raw: Mapping[str, Any]) -> Vertex:
    return Vertex(
        float(raw["x"]), float(raw["y"]), float(raw["z"]),
        float(raw.get("x_err", 0.0)), float(raw.get("y_err", 0.0)), float(raw.get("z_err", 0.0)),
        int(raw.get("n_tracks", 0)), bool(raw.get("is_fake", False)),
    )


def event_from_dict(data: Mapping[str, Any]) -> Event:
    vertices = data.get("vertices")
    online = data.get("online")
    return Event(
        lumi=int(data["lumi"]),
        tracks=tuple(_track_from(t) for t in data.get("tracks", ())),
        vertices=None if vertices is None else tuple(_vertex_from(v) for v in vertices),
        online=None if online is None else estimate_from_dict(online),
    )


def read_events(path: Path) -> Iterator[Event]:
    """Yield events from a newline-delimited JSON file, skipping bad lines."""
    with Path(path).open() as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield event_from_dict(json.loads(line))
            except (ValueError, KeyError, TypeError):
                logger.warning("Skipping malformed event on line %d of %s", line_no, path)


class SimulatedBeamline(EstimateProvider):
    """Synthetic collisions around a slowly drifting beam spot.

    ``lookup`` plays the conditions database: it reports the beam position
    with a one-lumi lag, so the vertex fit always sits a little off it.
    """

    def __init__(self, config: Optional[Config] = None, seed: Optional[int] = None):
        self.config = config or Config()
        self.rng = np.random.default_rng(seed)
        self.missing_online_lumis: set[int] = set()

    def beam_at(self, lumi: int) -> tuple[float, float, float]:
        drift = self.config.SIM_DRIFT_PER_LUMI * lumi
        return self.config.SIM_BEAM_X + drift, self.config.SIM_BEAM_Y - 0.5 * drift, self.config.SIM_BEAM_Z

    def _estimate(self, lumi: int, kind: BeamType) -> Estimate:
        x, y, z = self.beam_at(lumi)
        cfg = self.config
        return Estimate(
            x, y, z, cfg.SIM_WIDTH_X, cfg.SIM_WIDTH_Y, cfg.SIM_WIDTH_Z,
            x_err=0.0002, y_err=0.0002, z_err=0.05,
            sigma_x_err=0.0001, sigma_y_err=0.0001, sigma_z_err=0.05,
            kind=kind,
        )

    def lookup(self, lumi: int) -> Optional[Estimate]:
        return self._estimate(max(lumi - 1, self.config.FIRST_LUMI), BeamType.TRACKER)

    def online_estimate(self, lumi: int) -> Optional[Estimate]:
        if lumi in self.missing_online_lumis:
            return None
        est = self._estimate(lumi, BeamType.UNKNOWN)
        noise = self.rng.normal(0.0, 0.0001, 2)
        return est._replace(x=est.x + float(noise[0]), y=est.y + float(noise[1]))

    def generate_event(self, lumi: int) -> Event:
        cfg = self.config
        bx, by, bz = self.beam_at(lumi)

        n_tracks = int(self.rng.poisson(cfg.SIM_TRACKS_PER_EVENT))
        phi = self.rng.uniform(-np.pi, np.pi, n_tracks)
        pt = self.rng.exponential(2.0, n_tracks) + 0.3
        ox = self.rng.normal(bx, cfg.SIM_WIDTH_X, n_tracks)
        oy = self.rng.normal(by, cfg.SIM_WIDTH_Y, n_tracks)
        # Tracks from (ox, oy) have dxy = -ox sin(phi) + oy cos(phi) at the origin
        dxy = -ox * np.sin(phi) + oy * np.cos(phi) + self.rng.normal(0.0, cfg.SIM_D0_RESOLUTION, n_tracks)
        dz = self.rng.normal(bz, cfg.SIM_WIDTH_Z, n_tracks)
        tracks = tuple(Track(float(a), float(b), float(c), float(d)) for a, b, c, d in zip(pt, phi, dxy, dz))

        n_vtx = int(self.rng.poisson(cfg.SIM_VERTICES_PER_EVENT))
        res = cfg.SIM_VERTEX_RESOLUTION
        vertices = []
        for _ in range(n_vtx):
            vertices.append(Vertex(
                float(self.rng.normal(bx, np.hypot(cfg.SIM_WIDTH_X, res))),
                float(self.rng.normal(by, np.hypot(cfg.SIM_WIDTH_Y, res))),
                float(self.rng.normal(bz, cfg.SIM_WIDTH_Z)),
                res, res, 2.0 * res,
                int(self.rng.integers(2, 60)),
                bool(self.rng.random() < 0.05),
            ))

        return Event(lumi=lumi, tracks=tracks, vertices=tuple(vertices), online=self.online_estimate(lumi))

    def generate_events(self, lumi: int, count: int) -> list[Event]:
        return [self.generate_event(lumi) for _ in range(count)]
