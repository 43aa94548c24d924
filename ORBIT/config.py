"""Monitor configuration with simple JSON persistence."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class Config:
    MONITOR_NAME: str = "AlcaBeamMonitor"

    # Lumi-section binning of the time series
    FIRST_LUMI: int = 1
    LAST_LUMI: int = 3000

    # Selection
    VERTEX_MIN_TRACKS: int = 10
    TRACK_MIN_PT: float = 1.0

    # Fitter statistics
    TRACK_FIT_MIN_TRACKS: int = 50
    PV_FIT_MIN_VERTICES: int = 10

    # End-of-run range normalization
    ABSOLUTE_PADDING: float = 0.1
    DIFFERENCE_PADDING: float = 2.0
    DEGENERATE_MARGIN: float = 0.01

    # Processing
    WORKER_COUNT: int = 4
    STRICT_PROTOCOL: bool = True
    OUTPUT_DIR: str = "plots"

    # Simulation (cm)
    SIM_BEAM_X: float = 0.0950
    SIM_BEAM_Y: float = -0.0620
    SIM_BEAM_Z: float = 0.35
    SIM_WIDTH_X: float = 0.0012
    SIM_WIDTH_Y: float = 0.0010
    SIM_WIDTH_Z: float = 3.6
    SIM_DRIFT_PER_LUMI: float = 0.00002
    SIM_VERTEX_RESOLUTION: float = 0.0015
    SIM_D0_RESOLUTION: float = 0.0030
    SIM_TRACKS_PER_EVENT: int = 12
    SIM_VERTICES_PER_EVENT: int = 2

    @staticmethod
    def default_path() -> Path:
        return Path.home() / ".orbit_config.json"

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        cfg = cls()
        cfg_path = path or cls.default_path()
        if not cfg_path.exists():
            return cfg

        try:
            data = json.loads(cfg_path.read_text())
        except Exception:
            logger.exception("Failed to read config file: %s", cfg_path)
            return cfg

        for f in fields(cfg):
            if f.name not in data:
                continue
            raw = data[f.name]
            try:
                if f.type in (bool, "bool"):
                    val = bool(raw)
                elif f.type in (int, "int"):
                    val = int(raw)
                elif f.type in (float, "float"):
                    val = float(raw)
                else:
                    val = raw
                setattr(cfg, f.name, val)
            except Exception:
                logger.warning("Ignoring invalid config value for %s", f.name)

        cfg.normalize()
        return cfg

    def save(self, path: Optional[Path] = None) -> None:
        cfg_path = path or self.default_path()
        cfg_path.write_text(json.dumps(asdict(self), indent=2, sort_keys=True))

    def normalize(self) -> None:
        if self.FIRST_LUMI > self.LAST_LUMI:
            self.FIRST_LUMI, self.LAST_LUMI = self.LAST_LUMI, self.FIRST_LUMI
        self.WORKER_COUNT = max(1, self.WORKER_COUNT)
        self.VERTEX_MIN_TRACKS = max(0, self.VERTEX_MIN_TRACKS)
        if self.DEGENERATE_MARGIN <= 0:
            self.DEGENERATE_MARGIN = 0.01
