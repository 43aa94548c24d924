"""Fixed-binning accumulators shared by the event workers."""

from __future__ import annotations

import threading

import numpy as np


class Histogram1D:
    def __init__(self, name: str, title: str, nbins: int, low: float, high: float):
        self.name = name
        self.title = title
        self.edges = np.linspace(low, high, nbins + 1)
        self.counts = np.zeros(nbins + 2, dtype=np.int64)  # [underflow, bins..., overflow]
        self._lock = threading.Lock()

    @property
    def nbins(self) -> int:
        return len(self.edges) - 1

    def find_bin(self, x: float) -> int:
        if x < self.edges[0]:
            return 0
        if x >= self.edges[-1]:
            return self.nbins + 1
        return int(np.searchsorted(self.edges, x, side="right"))

    def fill(self, x: float) -> None:
        idx = self.find_bin(x)
        with self._lock:
            self.counts[idx] += 1

    @property
    def entries(self) -> int:
        return int(self.counts.sum())

    def contents(self) -> np.ndarray:
        with self._lock:
            return self.counts[1:-1].copy()

    def centers(self) -> np.ndarray:
        return 0.5 * (self.edges[:-1] + self.edges[1:])


class Profile:
    """Mean of y per x bin; y values outside [y_low, y_high] are ignored."""

    def __init__(self, name: str, title: str, nbins: int, low: float, high: float, y_low: float, y_high: float):
        self.name = name
        self.title = title
        self.edges = np.linspace(low, high, nbins + 1)
        self.y_low = y_low
        self.y_high = y_high
        self.sum_w = np.zeros(nbins, dtype=np.float64)
        self.sum_y = np.zeros(nbins, dtype=np.float64)
        self.sum_y2 = np.zeros(nbins, dtype=np.float64)
        self._lock = threading.Lock()

    @property
    def nbins(self) -> int:
        return len(self.edges) - 1

    def fill(self, x: float, y: float) -> bool:
        if not (self.y_low <= y <= self.y_high):
            return False
        if x < self.edges[0] or x >= self.edges[-1]:
            return False
        idx = int(np.searchsorted(self.edges, x, side="right")) - 1
        with self._lock:
            self.sum_w[idx] += 1.0
            self.sum_y[idx] += y
            self.sum_y2[idx] += y * y
        return True

    @property
    def entries(self) -> int:
        return int(self.sum_w.sum())

    def means(self) -> np.ndarray:
        with self._lock:
            sum_w = self.sum_w.copy()
            sum_y = self.sum_y.copy()
        out = np.zeros_like(sum_y)
        np.divide(sum_y, sum_w, out=out, where=sum_w > 0)
        return out

    def errors(self) -> np.ndarray:
        """Error on the mean per bin (spread / sqrt(n))."""
        with self._lock:
            sum_w = self.sum_w.copy()
            sum_y = self.sum_y.copy()
            sum_y2 = self.sum_y2.copy()
        out = np.zeros_like(sum_y)
        filled = sum_w > 0
        mean = np.divide(sum_y, sum_w, out=np.zeros_like(sum_y), where=filled)
        var = np.divide(sum_y2, sum_w, out=np.zeros_like(sum_y), where=filled) - mean**2
        np.divide(np.sqrt(np.clip(var, 0.0, None)), np.sqrt(sum_w), out=out, where=filled)
        return out

    def centers(self) -> np.ndarray:
        return 0.5 * (self.edges[:-1] + self.edges[1:])
