"""Worker threads and run orchestration for lumi-section processing."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Optional

from ORBIT.config import Config
from ORBIT.src.core.consistency import ConsistencyEngine, IntervalSummary
from ORBIT.src.core.fitters import BeamSpotFitter, TrackBeamFitter, VertexBeamFitter
from ORBIT.src.core.interval import IntervalCache, IntervalProtocolError
from ORBIT.src.core.normalizer import RangeNormalizer, RunAccumulator
from ORBIT.src.core.sampling import EventSampler
from ORBIT.src.core.series import SeriesStore
from ORBIT.src.core.types import Event
from ORBIT.src.drivers.providers import EstimateProvider

logger = logging.getLogger(__name__)


class WorkerState:
    IDLE = "IDLE"
    PROCESSING = "PROCESSING"
    STOPPING = "STOPPING"
    ERROR = "ERROR"


class EventWorker(threading.Thread):
    def __init__(self, name: str, events: "queue.Queue[Event]", run: "MonitorRun"):
        super().__init__(name=name, daemon=True)
        self.events = events
        self.run_ref = run
        self.running = True
        self.state = WorkerState.IDLE
        self.processed = 0
        self.failed = 0

    def stop(self) -> None:
        self.running = False
        self.state = WorkerState.STOPPING

    def run(self) -> None:
        while self.running:
            try:
                event = self.events.get(timeout=0.05)
            except queue.Empty:
                continue
            try:
                self.state = WorkerState.PROCESSING
                self.run_ref.process_event(event)
                self.processed += 1
                self.state = WorkerState.IDLE
            except Exception:
                self.failed += 1
                self.state = WorkerState.ERROR
                logger.exception("Worker %s failed on an event of lumi %d", self.name, event.lumi)
            finally:
                self.events.task_done()


class MonitorRun:
    """Drives one run: lumi open/close, event dispatch and end-of-run ranges."""

    def __init__(
        self,
        config: Config,
        database: Optional[EstimateProvider] = None,
        beam_fitter: Optional[BeamSpotFitter] = None,
        vertex_fitter: Optional[BeamSpotFitter] = None,
        workers: Optional[int] = None,
    ):
        self.config = config
        self.cache = IntervalCache(config, database)
        self.store = SeriesStore(config)
        self.beam_fitter = beam_fitter if beam_fitter is not None else TrackBeamFitter(config)
        self.vertex_fitter = vertex_fitter if vertex_fitter is not None else VertexBeamFitter(config)
        self.sampler = EventSampler(config, self.cache, (self.beam_fitter, self.vertex_fitter))
        self.engine = ConsistencyEngine(self.store, self.beam_fitter, self.vertex_fitter)
        self.normalizer = RangeNormalizer(config)
        self.processed = RunAccumulator()
        self.last_summary: Optional[IntervalSummary] = None

        self._events: "queue.Queue[Event]" = queue.Queue()
        count = workers if workers is not None else config.WORKER_COUNT
        self.workers = [EventWorker(f"event-worker-{i}", self._events, self) for i in range(max(1, count))]
        for w in self.workers:
            w.start()

    def begin_lumi(self, lumi: int) -> None:
        self.cache.open(lumi)

    def submit(self, event: Event) -> None:
        self._events.put(event)

    def process_event(self, event: Event) -> None:
        state = self.cache.get(event.lumi)
        if state is None:
            raise IntervalProtocolError(f"Event for lumi {event.lumi} arrived while it is not open")
        self.sampler.process(event, state)

    def end_lumi(self, lumi: int) -> Optional[IntervalSummary]:
        # Barrier: no worker may still hold an event of this lumi
        self._events.join()
        state = self.cache.get(lumi)
        if state is None:
            self.cache.misuse(f"Lumi {lumi} is not open")
            return None
        self.cache.close(state)
        self.processed.add(lumi)
        summary = self.engine.process(state)
        self.last_summary = summary
        return summary

    def end_run(self) -> bool:
        self._events.join()
        return self.normalizer.normalize(self.store, self.processed)

    def stop(self) -> None:
        for w in self.workers:
            w.stop()
        for w in self.workers:
            w.join(timeout=1.0)

    def __enter__(self) -> "MonitorRun":
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
