"""CSV, JSON and PNG export of a finished run."""

from __future__ import annotations

import csv
import json
import logging
from pathlib import Path
from typing import Optional

import matplotlib
import matplotlib.pyplot as plt
import numpy as np

from ORBIT.config import Config
from ORBIT.src.core.catalog import Category, Scope, folder
from ORBIT.src.core.sampling import EventSampler
from ORBIT.src.core.series import Series, SeriesStore
from ORBIT.src.core.types import Variable

matplotlib.use("Agg")

logger = logging.getLogger(__name__)


class ReportWriter:
    def __init__(self, config: Config, output_dir: Optional[Path] = None):
        self.config = config
        self.output_dir = Path(output_dir or config.OUTPUT_DIR)

    def write(self, store: SeriesStore, sampler: Optional[EventSampler] = None, plots: bool = True) -> list[Path]:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        written = [self.write_csv(store), self.write_ranges(store)]
        if plots:
            written.extend(self.plot_series(store))
            written.extend(self.plot_distributions(store))
            if sampler is not None:
                written.append(self.plot_track_distributions(sampler))
        logger.info("Report written to %s (%d files)", self.output_dir, len(written))
        return written

    def write_csv(self, store: SeriesStore) -> Path:
        csv_path = self.output_dir / "beamspot_series.csv"
        with csv_path.open("w", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(["Folder", "Variable", "Category", "Lumi", "Value_cm", "Error_cm"])
            for series in store.active_series():
                where = folder(self.config.MONITOR_NAME, series.category)
                for p in series.points():
                    writer.writerow([
                        where, series.variable.value, series.category.label, p.bin, p.value,
                        "" if p.error is None else p.error,
                    ])
        return csv_path

    def write_ranges(self, store: SeriesStore) -> Path:
        ranges = {}
        for series in store.active_series():
            if not series.category.is_time_series:
                continue
            y_lo, y_hi = series.display_bounds()
            ranges[series.entry.name] = {
                "variable": series.variable.value,
                "category": series.category.label,
                "y": [y_lo, y_hi],
                "x": [series.x_min, series.x_max],
                "entries": len(series),
            }
        path = self.output_dir / "beamspot_ranges.json"
        path.write_text(json.dumps(ranges, indent=2, sort_keys=True))
        return path

    def _plot_one(self, ax, series: Series) -> None:
        pts = series.points()
        if pts:
            lumis = [p.bin for p in pts]
            vals = [p.value for p in pts]
            errs = [0.0 if p.error is None else p.error for p in pts]
            ax.errorbar(lumis, vals, yerr=errs, fmt=".", ms=4, lw=1.0)
        ax.set_title(series.entry.title)
        ax.set_xlabel("Lumisection")
        ax.set_ylabel(series.entry.axis_title)
        ax.set_xlim(series.x_min, series.x_max)
        y_lo, y_hi = series.display_bounds()
        if y_hi > y_lo:
            ax.set_ylim(y_lo, y_hi)
        ax.grid(True, linestyle="-", alpha=0.6)

    def plot_series(self, store: SeriesStore) -> list[Path]:
        paths = []
        for variable in Variable:
            panels = [
                store.series(variable, c)
                for c in Category
                if c.scope is not Scope.RUN and store.series(variable, c).active
            ]
            fig, axes = plt.subplots(len(panels), 1, figsize=(10, 3 * len(panels)), squeeze=False)
            for ax, series in zip(axes[:, 0], panels):
                self._plot_one(ax, series)
            plt.tight_layout()
            plot_path = self.output_dir / f"lumibased_{variable.value}.png"
            plt.savefig(plot_path)
            plt.close(fig)
            paths.append(plot_path)
        return paths

    def plot_distributions(self, store: SeriesStore) -> list[Path]:
        """One figure per variable with every run-wide distribution booked for it."""
        by_variable: dict[Variable, list] = {}
        for entry, hist in store.distributions():
            by_variable.setdefault(entry.variable, []).append((entry, hist))

        paths = []
        for variable, panels in by_variable.items():
            fig, axes = plt.subplots(len(panels), 1, figsize=(10, 3 * len(panels)), squeeze=False)
            for ax, (entry, hist) in zip(axes[:, 0], panels):
                ax.step(hist.centers(), hist.contents(), where="mid")
                ax.set_title(f"{entry.title} ({hist.entries} entries)")
                ax.set_xlabel(entry.axis_title)
                ax.set_ylabel("Entries")
                ax.set_xlim(float(hist.edges[0]), float(hist.edges[-1]))
                ax.grid(True, alpha=0.6)
            plt.tight_layout()
            plot_path = self.output_dir / f"run_{variable.value}.png"
            plt.savefig(plot_path)
            plt.close(fig)
            paths.append(plot_path)
        return paths

    def plot_track_distributions(self, sampler: EventSampler) -> Path:
        fig, (ax1, ax2) = plt.subplots(2, 1, figsize=(10, 10))

        prof = sampler.d0_phi
        filled = prof.sum_w > 0
        ax1.errorbar(prof.centers()[filled], prof.means()[filled], yerr=prof.errors()[filled], fmt="bo", ms=3)
        ax1.set_title(prof.title)
        ax1.set_xlabel("#phi_{0} (rad)")
        ax1.set_ylabel("d_{0} (cm)")
        ax1.grid(True, alpha=0.6)

        hist = sampler.dxy_bs
        ax2.step(hist.centers(), hist.contents(), where="mid", color="r")
        ax2.set_title(hist.title)
        ax2.set_xlabel("dxy_{0} w.r.t. Beam spot (cm)")
        ax2.set_ylabel("Entries")
        ax2.set_xlim(float(np.min(hist.edges)), float(np.max(hist.edges)))
        ax2.grid(True, alpha=0.6)

        plt.tight_layout()
        plot_path = self.output_dir / "track_distributions.png"
        plt.savefig(plot_path)
        plt.close(fig)
        return plot_path
