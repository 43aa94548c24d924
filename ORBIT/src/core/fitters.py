"""Beam-spot fitters fed event by event during a lumi section.

Both fitters accept ``submit`` from several worker threads at once. ``fit``
and ``reset`` are called by the closing thread only.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np

from ORBIT.config import Config
from ORBIT.src.core.types import BeamType, Estimate, Event

logger = logging.getLogger(__name__)


class BeamSpotFitter(ABC):
    @abstractmethod
    def submit(self, event: Event) -> None: pass

    @abstractmethod
    def fit(self) -> Optional[Estimate]:
        """Return the beam spot, or None when there is not enough data."""

    @abstractmethod
    def reset(self) -> None: pass


class TrackBeamFitter(BeamSpotFitter):
    """Transverse position from the d0-phi correlation of the tracks.

    A track produced at (x0, y0) has an impact parameter w.r.t. the origin of
    ``d0 = -x0 sin(phi) + y0 cos(phi)``; the linear least-squares solution over
    all selected tracks gives the beam position.
    """

    def __init__(self, config: Config):
        self.config = config
        self._lock = threading.Lock()
        self._phi: list[float] = []
        self._d0: list[float] = []
        self._z: list[float] = []

    def submit(self, event: Event) -> None:
        selected = [t for t in event.tracks if t.pt >= self.config.TRACK_MIN_PT]
        if not selected:
            return
        with self._lock:
            for t in selected:
                self._phi.append(t.phi)
                self._d0.append(t.dxy)
                self._z.append(t.dz)

    @property
    def track_count(self) -> int:
        with self._lock:
            return len(self._phi)

    def fit(self) -> Optional[Estimate]:
        with self._lock:
            phi = np.array(self._phi, dtype=np.float64)
            d0 = np.array(self._d0, dtype=np.float64)
            z = np.array(self._z, dtype=np.float64)

        n = len(phi)
        if n < max(3, self.config.TRACK_FIT_MIN_TRACKS):
            logger.debug("Track fit skipped: %d tracks", n)
            return None

        design = np.column_stack((-np.sin(phi), np.cos(phi)))
        coeffs, _, rank, _ = np.linalg.lstsq(design, d0, rcond=None)
        if rank < 2:
            logger.debug("Track fit skipped: degenerate phi coverage")
            return None
        x0, y0 = float(coeffs[0]), float(coeffs[1])

        resid = d0 - design @ coeffs
        dof = n - 2
        s2 = float(resid @ resid) / dof
        cov = s2 * np.linalg.inv(design.T @ design)
        width = float(np.sqrt(s2))

        z0 = float(np.mean(z))
        sigma_z = float(np.std(z, ddof=1))

        return Estimate(
            x0, y0, z0, width, width, sigma_z,
            x_err=float(np.sqrt(cov[0, 0])),
            y_err=float(np.sqrt(cov[1, 1])),
            z_err=sigma_z / np.sqrt(n),
            sigma_x_err=width / np.sqrt(2.0 * dof),
            sigma_y_err=width / np.sqrt(2.0 * dof),
            sigma_z_err=sigma_z / np.sqrt(2.0 * (n - 1)),
            kind=BeamType.TRACKER,
        )

    def reset(self) -> None:
        with self._lock:
            self._phi.clear()
            self._d0.clear()
            self._z.clear()


class VertexBeamFitter(BeamSpotFitter):
    """Beam position as the error-weighted mean of good primary vertices."""

    def __init__(self, config: Config):
        self.config = config
        self._lock = threading.Lock()
        self._points: list[tuple[float, float, float, float, float, float]] = []

    def submit(self, event: Event) -> None:
        if event.vertices is None:
            return
        good = [
            (v.x, v.y, v.z, v.x_err, v.y_err, v.z_err)
            for v in event.vertices
            if not v.is_fake and v.n_tracks >= self.config.VERTEX_MIN_TRACKS
        ]
        if good:
            with self._lock:
                self._points.extend(good)

    @property
    def vertex_count(self) -> int:
        with self._lock:
            return len(self._points)

    @staticmethod
    def _weighted(values: np.ndarray, errors: np.ndarray) -> tuple[float, float]:
        if np.all(errors > 0):
            w = 1.0 / errors**2
            return float(np.sum(w * values) / np.sum(w)), float(1.0 / np.sqrt(np.sum(w)))
        return float(np.mean(values)), float(np.std(values, ddof=1) / np.sqrt(len(values)))

    def fit(self) -> Optional[Estimate]:
        with self._lock:
            pts = np.array(self._points, dtype=np.float64)

        n = len(pts)
        if n < max(2, self.config.PV_FIT_MIN_VERTICES):
            logger.debug("Vertex fit skipped: %d vertices", n)
            return None

        x, x_err = self._weighted(pts[:, 0], pts[:, 3])
        y, y_err = self._weighted(pts[:, 1], pts[:, 4])
        z, z_err = self._weighted(pts[:, 2], pts[:, 5])

        # Observed spread minus the mean vertex resolution, floored at zero
        widths = []
        for col in range(3):
            spread2 = float(np.var(pts[:, col], ddof=1))
            resol2 = float(np.mean(pts[:, col + 3] ** 2))
            widths.append(float(np.sqrt(max(0.0, spread2 - resol2))))
        width_err = [w / np.sqrt(2.0 * (n - 1)) for w in widths]

        return Estimate(
            x, y, z, widths[0], widths[1], widths[2],
            x_err=x_err, y_err=y_err, z_err=z_err,
            sigma_x_err=width_err[0], sigma_y_err=width_err[1], sigma_z_err=width_err[2],
            kind=BeamType.TRACKER,
        )

    def reset(self) -> None:
        with self._lock:
            self._points.clear()
