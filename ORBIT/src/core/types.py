"""Shared core data structures used across sampling, consistency and reporting."""

from __future__ import annotations

import math
from enum import Enum
from typing import NamedTuple, Optional


class Variable(Enum):
    X = "x"
    Y = "y"
    Z = "z"
    SIGMA_X = "sigmaX"
    SIGMA_Y = "sigmaY"
    SIGMA_Z = "sigmaZ"

    @property
    def is_width(self) -> bool:
        return self in (Variable.SIGMA_X, Variable.SIGMA_Y, Variable.SIGMA_Z)


class SourceKey(Enum):
    DATABASE = "DB"
    ONLINE = "SC"
    BEAM_FIT = "BF"
    VERTEX_FIT = "PV"


class BeamType(Enum):
    UNKNOWN = 0
    FAKE = 1
    TRACKER = 2


class Estimate(NamedTuple):
    """Beam-spot position and width, each with its error (cm)."""

    x: float
    y: float
    z: float
    sigma_x: float
    sigma_y: float
    sigma_z: float
    x_err: float = 0.0
    y_err: float = 0.0
    z_err: float = 0.0
    sigma_x_err: float = 0.0
    sigma_y_err: float = 0.0
    sigma_z_err: float = 0.0
    kind: BeamType = BeamType.UNKNOWN

    @property
    def is_valid(self) -> bool:
        return self.kind is BeamType.TRACKER

    def measure(self, variable: Variable) -> tuple[float, float]:
        if variable is Variable.X:
            return self.x, self.x_err
        if variable is Variable.Y:
            return self.y, self.y_err
        if variable is Variable.Z:
            return self.z, self.z_err
        if variable is Variable.SIGMA_X:
            return self.sigma_x, self.sigma_x_err
        if variable is Variable.SIGMA_Y:
            return self.sigma_y, self.sigma_y_err
        return self.sigma_z, self.sigma_z_err


class VertexSample(NamedTuple):
    x: float
    y: float
    z: float
    x_err: float
    y_err: float
    z_err: float

    def measure(self, variable: Variable) -> Optional[tuple[float, float]]:
        """Return (value, error) for a position variable, None for widths."""
        if variable is Variable.X:
            return self.x, self.x_err
        if variable is Variable.Y:
            return self.y, self.y_err
        if variable is Variable.Z:
            return self.z, self.z_err
        return None


class Vertex(NamedTuple):
    x: float
    y: float
    z: float
    x_err: float
    y_err: float
    z_err: float
    n_tracks: int
    is_fake: bool = False

    def sample(self) -> VertexSample:
        return VertexSample(self.x, self.y, self.z, self.x_err, self.y_err, self.z_err)


class Track(NamedTuple):
    """Helix parameters at the point of closest approach to the origin."""

    pt: float
    phi: float
    dxy: float
    dz: float

    def dxy_to(self, x: float, y: float) -> float:
        # Transverse impact parameter with respect to (x, y)
        return self.dxy + x * math.sin(self.phi) - y * math.cos(self.phi)


class Event(NamedTuple):
    lumi: int
    tracks: tuple[Track, ...] = ()
    vertices: Optional[tuple[Vertex, ...]] = None
    online: Optional[Estimate] = None


EMPTY_ESTIMATE = Estimate(0.0, 0.0, 0.0, 0.0, 0.0, 0.0)
