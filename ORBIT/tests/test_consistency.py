import math
import unittest
from pathlib import Path
import tempfile
import sys
import threading

import numpy as np

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ORBIT.config import Config
from ORBIT.src.core.catalog import Category
from ORBIT.src.core.consistency import ConsistencyEngine, IntervalSummary, evaluate, project
from ORBIT.src.core.fitters import BeamSpotFitter, TrackBeamFitter, VertexBeamFitter
from ORBIT.src.core.interval import IntervalCache, IntervalProtocolError
from ORBIT.src.core.report import ReportWriter
from ORBIT.src.core.sampling import EventSampler, select_vertices
from ORBIT.src.core.series import SeriesStore
from ORBIT.src.core.types import BeamType, Estimate, Event, SourceKey, Track, Variable, Vertex, VertexSample
from ORBIT.src.core.worker import MonitorRun
from ORBIT.src.drivers.providers import SimulatedBeamline, StaticProvider


def spot(x=0.0, x_err=0.001, kind=BeamType.TRACKER, sigma_x=0.0012, **kw):
    return Estimate(x, 0.0, 0.0, sigma_x, 0.001, 3.5, x_err=x_err, y_err=0.001, z_err=0.01,
                    sigma_x_err=0.0001, sigma_y_err=0.0001, sigma_z_err=0.05, kind=kind, **kw)


class FixedFitter(BeamSpotFitter):
    """Returns a preset result and counts what it was fed."""

    def __init__(self, result=None):
        self.result = result
        self.submitted = 0
        self.resets = 0
        self._lock = threading.Lock()

    def submit(self, event):
        with self._lock:
            self.submitted += 1

    def fit(self):
        return self.result

    def reset(self):
        self.resets += 1


class ExplodingFitter(FixedFitter):
    def fit(self):
        raise np.linalg.LinAlgError("singular matrix")


def close_with(cache, lumi, samples=(), sources=None):
    state = cache.open(lumi)
    for key, est in (sources or {}).items():
        cache.set_source_estimate(state, key, est)
    for s in samples:
        cache.record_event(state, [s])
    return cache.close(state)


class TestEndToEnd(unittest.TestCase):
    def setUp(self):
        self.cfg = Config()
        self.store = SeriesStore(self.cfg)
        db = spot(x=0.01, x_err=0.001)
        self.cache = IntervalCache(self.cfg, StaticProvider({5: db}))
        self.pv_fitter = FixedFitter(spot(x=0.012, x_err=0.002))
        self.engine = ConsistencyEngine(self.store, FixedFitter(None), self.pv_fitter)
        samples = [VertexSample(x, 0.0, 0.0, 0.003, 0.003, 0.003) for x in (0.011, 0.013, 0.009)]
        self.state = close_with(self.cache, 5, samples)

    def test_lumi_five(self):
        self.engine.process(self.state)

        fit_diff = self.store.query(Variable.X, Category.PV_FIT_MINUS_DB)
        self.assertEqual(len(fit_diff), 1)
        self.assertEqual(fit_diff[0].bin, 5)
        self.assertAlmostEqual(fit_diff[0].value, 0.002, places=12)
        self.assertIsNone(fit_diff[0].error)

        per_vertex = self.store.query(Variable.X, Category.LUMI_VERTEX_MINUS_DB)
        self.assertEqual([p.bin for p in per_vertex], [5, 5, 5])
        for p, expected in zip(per_vertex, (0.001, 0.003, -0.001)):
            self.assertAlmostEqual(p.value, expected, places=12)
            self.assertAlmostEqual(p.error, math.sqrt(0.003**2 + 0.001**2), places=12)

        lumi_fit_diff = self.store.query(Variable.X, Category.LUMI_PV_FIT_MINUS_DB)
        self.assertAlmostEqual(lumi_fit_diff[0].value, 0.002, places=12)
        self.assertAlmostEqual(lumi_fit_diff[0].error, math.sqrt(0.002**2 + 0.001**2), places=12)

    def test_missing_sources_leave_gaps(self):
        self.engine.process(self.state)
        for category in (Category.LUMI_ONLINE, Category.LUMI_BEAM_FIT, Category.LUMI_ONLINE_MINUS_DB,
                         Category.LUMI_VERTEX_MINUS_SC, Category.PV_FIT_MINUS_BF, Category.VERTEX_MINUS_SC):
            self.assertEqual(self.store.query(Variable.X, category), [], category)

    def test_fitters_are_reset(self):
        self.engine.process(self.state)
        self.assertEqual(self.pv_fitter.resets, 1)

    def test_closed_state_is_not_mutated(self):
        summary = self.engine.process(self.state)
        self.assertIn(SourceKey.VERTEX_FIT, summary.estimates)
        self.assertNotIn(SourceKey.VERTEX_FIT, self.state.estimates())

    def test_refill_is_idempotent(self):
        summary = self.engine.process(self.state)
        before = {c: self.store.query(Variable.X, c) for c in Category}
        self.engine.fill(summary)
        after = {c: self.store.query(Variable.X, c) for c in Category}
        self.assertEqual(before, after)

    def test_open_state_is_rejected(self):
        state = self.cache.open(6)
        with self.assertRaises(IntervalProtocolError):
            self.engine.process(state)


class TestConsistencyEngine(unittest.TestCase):
    def setUp(self):
        self.cfg = Config()
        self.store = SeriesStore(self.cfg)
        self.cache = IntervalCache(self.cfg)

    def test_zero_events_fill_nothing(self):
        engine = ConsistencyEngine(self.store, FixedFitter(None), FixedFitter(None))
        engine.process(close_with(self.cache, 1))
        for series in self.store:
            self.assertEqual(series.points(), [])

    def test_pairwise_difference_and_quadrature(self):
        sources = {SourceKey.DATABASE: spot(x=0.01, x_err=0.004), SourceKey.ONLINE: spot(x=0.02, x_err=0.003)}
        engine = ConsistencyEngine(self.store)
        engine.process(close_with(self.cache, 2, sources=sources))
        (p,) = self.store.query(Variable.X, Category.LUMI_ONLINE_MINUS_DB)
        self.assertAlmostEqual(p.value, 0.02 - 0.01, places=15)
        self.assertAlmostEqual(p.error, 0.005, places=12)

    def test_fake_sources_are_excluded(self):
        sources = {SourceKey.DATABASE: spot(x=0.01, kind=BeamType.FAKE)}
        engine = ConsistencyEngine(self.store)
        engine.process(close_with(self.cache, 3, [VertexSample(0.1, 0, 0, 0.01, 0.01, 0.01)], sources))
        self.assertEqual(self.store.query(Variable.X, Category.COORDINATE), [])
        self.assertEqual(self.store.query(Variable.X, Category.LUMI_DATABASE), [])
        self.assertEqual(self.store.query(Variable.X, Category.LUMI_VERTEX_MINUS_DB), [])

    def test_width_differences_stay_empty(self):
        sources = {SourceKey.DATABASE: spot(), SourceKey.ONLINE: spot()}
        engine = ConsistencyEngine(self.store, vertex_fitter=FixedFitter(spot(sigma_x=0.002)))
        engine.process(close_with(self.cache, 4, sources=sources))
        self.assertEqual(len(self.store.query(Variable.SIGMA_X, Category.LUMI_DATABASE)), 1)
        self.assertEqual(len(self.store.query(Variable.SIGMA_X, Category.COORDINATE)), 1)
        self.assertAlmostEqual(self.store.query(Variable.SIGMA_X, Category.LUMI_VERTEX_FIT)[0].value, 0.002)
        self.assertEqual(self.store.query(Variable.SIGMA_X, Category.LUMI_PV_FIT_MINUS_DB), [])
        self.assertEqual(self.store.query(Variable.SIGMA_X, Category.LUMI_ONLINE_MINUS_DB), [])

    def test_run_scope_vertex_difference_needs_fit(self):
        sources = {SourceKey.DATABASE: spot(x=0.01)}
        samples = [VertexSample(0.02, 0, 0, 0.01, 0.01, 0.01)]
        engine = ConsistencyEngine(self.store)
        engine.process(close_with(self.cache, 5, samples, sources))
        self.assertEqual(self.store.query(Variable.X, Category.VERTEX_MINUS_DB), [])
        self.assertEqual(len(self.store.query(Variable.X, Category.LUMI_VERTEX_MINUS_DB)), 1)

    def test_fitter_failure_degrades_to_missing(self):
        engine = ConsistencyEngine(self.store, ExplodingFitter(), FixedFitter(None))
        with self.assertLogs("ORBIT.src.core.consistency", level="ERROR"):
            summary = engine.process(close_with(self.cache, 6))
        self.assertNotIn(SourceKey.BEAM_FIT, summary.estimates)

    def test_other_lumis_unaffected(self):
        engine = ConsistencyEngine(self.store)
        engine.process(close_with(self.cache, 7, sources={SourceKey.DATABASE: spot(x=0.07)}))
        engine.process(close_with(self.cache, 8))
        points = self.store.query(Variable.X, Category.LUMI_DATABASE)
        self.assertEqual([p.bin for p in points], [7])

    def test_run_distributions_accumulate_over_lumis(self):
        samples = [VertexSample(x, 0.0, 0.0, 0.003, 0.003, 0.003) for x in (0.011, 0.013, 0.009)]
        engine = ConsistencyEngine(self.store, vertex_fitter=FixedFitter(spot(x=0.012)))
        engine.process(close_with(self.cache, 1, samples, {SourceKey.DATABASE: spot(x=0.01)}))
        engine.process(close_with(self.cache, 2, samples, {SourceKey.DATABASE: spot(x=0.02)}))

        coordinate = self.store.distribution(Variable.X, Category.COORDINATE)
        self.assertEqual(coordinate.entries, 2)
        self.assertEqual(coordinate.counts[coordinate.find_bin(0.01)], 1)
        self.assertEqual(coordinate.counts[coordinate.find_bin(0.02)], 1)

        self.assertEqual(self.store.distribution(Variable.X, Category.PV_FIT_MINUS_DB).entries, 2)
        per_vertex = self.store.distribution(Variable.X, Category.VERTEX_MINUS_DB)
        self.assertEqual(per_vertex.entries, 6)
        self.assertEqual(self.store.distribution(Variable.X, Category.VERTEX_MINUS_SC).entries, 0)

    def test_run_distributions_skip_missing_operands(self):
        engine = ConsistencyEngine(self.store)
        engine.process(close_with(self.cache, 1, sources={SourceKey.DATABASE: spot(x=0.01, kind=BeamType.FAKE)}))
        self.assertEqual(self.store.distribution(Variable.X, Category.COORDINATE).entries, 0)

    def test_evaluate_requires_both_operands(self):
        results = project({SourceKey.VERTEX_FIT: spot(x=0.1)}, Variable.X)
        self.assertIsNone(evaluate(Category.LUMI_PV_FIT_MINUS_SC, results, []))
        self.assertIsNone(evaluate(Category.LUMI_VERTEX_MINUS_DB, results, [(0.1, 0.01)]))
        self.assertEqual(evaluate(Category.LUMI_VERTEX_FIT, results, []), [(0.1, 0.001)])

    def test_summary_fill_directly(self):
        engine = ConsistencyEngine(self.store)
        summary = IntervalSummary(9, {SourceKey.BEAM_FIT: spot(x=0.3)}, ())
        engine.fill(summary)
        self.assertAlmostEqual(self.store.query(Variable.X, Category.LUMI_BEAM_FIT)[0].value, 0.3)


class TestEventSampler(unittest.TestCase):
    def setUp(self):
        self.cfg = Config()
        self.db = spot(x=0.05)
        self.cache = IntervalCache(self.cfg, StaticProvider({1: self.db}))
        self.fitter = FixedFitter()
        self.sampler = EventSampler(self.cfg, self.cache, [self.fitter])

    def test_vertex_selection(self):
        vertices = (
            Vertex(0.1, 0.0, 0.0, 0.001, 0.001, 0.002, 25),
            Vertex(0.2, 0.0, 0.0, 0.001, 0.001, 0.002, 9),
            Vertex(0.3, 0.0, 0.0, 0.001, 0.001, 0.002, 40, is_fake=True),
        )
        self.assertEqual([s.x for s in select_vertices(vertices, 10)], [0.1])

    def test_process_records_and_installs_online(self):
        state = self.cache.open(1)
        online = spot(x=0.051, kind=BeamType.UNKNOWN)
        event = Event(1, (Track(2.0, 0.3, 0.01, 1.0),), (Vertex(0.1, 0, 0, 0.001, 0.001, 0.002, 20),), online)
        self.sampler.process(event, state)
        self.assertEqual(self.fitter.submitted, 1)
        self.assertEqual(state.event_count, 1)
        self.assertEqual(state.estimate(SourceKey.ONLINE).kind, BeamType.TRACKER)
        self.assertEqual(self.sampler.dxy_bs.entries, 1)
        self.assertEqual(self.sampler.d0_phi.entries, 1)

    def test_first_online_estimate_wins(self):
        state = self.cache.open(1)
        self.sampler.process(Event(1, online=spot(x=0.1)), state)
        self.sampler.process(Event(1, online=spot(x=0.2)), state)
        self.assertAlmostEqual(state.estimate(SourceKey.ONLINE).x, 0.1)

    def test_missing_online_warns_once(self):
        state = self.cache.open(1)
        with self.assertLogs("ORBIT.src.core.sampling", level="WARNING") as logs:
            for _ in range(3):
                self.sampler.process(Event(1, vertices=()), state)
        self.assertEqual(len(logs.records), 1)
        self.assertEqual(state.event_count, 3)

    def test_tracks_need_database(self):
        cache = IntervalCache(self.cfg, StaticProvider({}))
        sampler = EventSampler(self.cfg, cache)
        state = cache.open(2)
        sampler.process(Event(2, (Track(2.0, 0.3, 0.01, 1.0),), online=spot()), state)
        self.assertEqual(sampler.dxy_bs.entries, 0)
        self.assertEqual(sampler.d0_phi.entries, 0)

    def test_missing_vertex_collection_records_nothing(self):
        state = self.cache.open(1)
        self.sampler.process(Event(1, online=spot()), state)
        self.assertEqual(state.event_count, 0)


class TestFitters(unittest.TestCase):
    def test_track_fit_recovers_position(self):
        cfg = Config()
        x0, y0 = 0.095, -0.062
        phi = np.linspace(-np.pi, np.pi, 200, endpoint=False)
        tracks = tuple(
            Track(2.0, float(p), float(-x0 * np.sin(p) + y0 * np.cos(p)), float(0.3 + 0.01 * (i % 5)))
            for i, p in enumerate(phi)
        )
        fitter = TrackBeamFitter(cfg)
        fitter.submit(Event(1, tracks))
        fitter.submit(Event(1, (Track(0.2, 0.0, 5.0, 0.0),)))  # below pt cut
        self.assertEqual(fitter.track_count, 200)
        est = fitter.fit()
        self.assertAlmostEqual(est.x, x0, places=9)
        self.assertAlmostEqual(est.y, y0, places=9)
        self.assertAlmostEqual(est.z, 0.32, places=9)
        self.assertEqual(est.kind, BeamType.TRACKER)
        fitter.reset()
        self.assertIsNone(fitter.fit())

    def test_track_fit_needs_statistics(self):
        fitter = TrackBeamFitter(Config())
        fitter.submit(Event(1, (Track(2.0, 0.1, 0.01, 0.0), Track(2.0, 1.1, 0.02, 0.0))))
        self.assertIsNone(fitter.fit())

    def test_vertex_fit(self):
        cfg = Config()
        vertices = tuple(
            Vertex(0.1 + (0.002 if i % 2 else -0.002), -0.05, 1.0, 0.001, 0.001, 0.01, 30)
            for i in range(20)
        )
        junk = (Vertex(5.0, 5.0, 5.0, 0.001, 0.001, 0.01, 3), Vertex(5.0, 5.0, 5.0, 0.001, 0.001, 0.01, 30, True))
        fitter = VertexBeamFitter(cfg)
        fitter.submit(Event(1, vertices=vertices + junk))
        self.assertEqual(fitter.vertex_count, 20)
        est = fitter.fit()
        self.assertAlmostEqual(est.x, 0.1, places=9)
        self.assertAlmostEqual(est.y, -0.05, places=9)
        self.assertAlmostEqual(est.x_err, 0.001 / math.sqrt(20), places=12)
        self.assertGreater(est.sigma_x, 0.0)
        self.assertEqual(est.sigma_y, 0.0)

    def test_vertex_fit_needs_statistics(self):
        fitter = VertexBeamFitter(Config())
        fitter.submit(Event(1, vertices=(Vertex(0.1, 0, 0, 0.001, 0.001, 0.01, 30),)))
        self.assertIsNone(fitter.fit())


class TestMonitorRun(unittest.TestCase):
    def test_parallel_events_all_recorded(self):
        cfg = Config()
        pv = FixedFitter(None)
        with MonitorRun(cfg, StaticProvider({}), FixedFitter(None), pv, workers=8) as run:
            run.begin_lumi(1)
            for i in range(1000):
                run.submit(Event(1, vertices=(Vertex(float(i), 0, 0, 0.001, 0.001, 0.01, 20),), online=spot()))
            summary = run.end_lumi(1)
        self.assertEqual(sorted(v.x for v in summary.vertices), [float(i) for i in range(1000)])
        self.assertEqual(pv.submitted, 1000)

    def test_simulated_run(self):
        cfg = Config()
        beamline = SimulatedBeamline(cfg, seed=7)
        with MonitorRun(cfg, beamline, workers=4) as run:
            for lumi in (1, 2, 3):
                run.begin_lumi(lumi)
                for event in beamline.generate_events(lumi, 150):
                    run.submit(event)
                run.end_lumi(lumi)
            self.assertTrue(run.end_run())

        db_points = run.store.query(Variable.X, Category.LUMI_DATABASE)
        self.assertEqual([p.bin for p in db_points], [1, 2, 3])
        pv_points = run.store.query(Variable.X, Category.LUMI_VERTEX_FIT)
        self.assertEqual(len(pv_points), 3)
        for p in pv_points:
            self.assertAlmostEqual(p.value, beamline.beam_at(p.bin)[0], delta=0.001)
        bf_points = run.store.query(Variable.Y, Category.LUMI_BEAM_FIT)
        for p in bf_points:
            self.assertAlmostEqual(p.value, beamline.beam_at(p.bin)[1], delta=0.001)

        series = run.store.series(Variable.X, Category.LUMI_DATABASE)
        self.assertEqual((series.x_min, series.x_max), (0.5, 3.5))
        self.assertLess(series.y_min, series.y_max)
        self.assertEqual(len(run.processed), 3)

    def test_end_lumi_of_unknown_lumi(self):
        with MonitorRun(Config(), workers=1) as run:
            with self.assertRaises(IntervalProtocolError):
                run.end_lumi(42)

    def test_end_run_without_lumis(self):
        with MonitorRun(Config(), workers=1) as run:
            self.assertFalse(run.end_run())


class TestReportWriter(unittest.TestCase):
    def test_csv_and_ranges(self):
        cfg = Config()
        store = SeriesStore(cfg)
        store.append(Variable.X, Category.LUMI_DATABASE, 3, 0.1, 0.01)
        store.fill(Variable.Z, Category.LUMI_VERTEX_MINUS_SC, 3, [(0.5, 0.1), (-0.5, 0.1)])
        store.append(Variable.X, Category.PV_FIT_MINUS_DB, 3, 0.002)
        with tempfile.TemporaryDirectory() as td:
            paths = ReportWriter(cfg, Path(td)).write(store, plots=False)
            rows = paths[0].read_text().strip().splitlines()
            ranges = paths[1].read_text()
        self.assertEqual(rows[0], "Folder,Variable,Category,Lumi,Value_cm,Error_cm")
        self.assertEqual(len(rows), 5)
        self.assertIn("AlcaBeamMonitor/Validation,z,Lumibased PrimaryVertex-Online,3,0.5,0.1", rows)
        self.assertIn("AlcaBeamMonitor/Debug,x,PrimaryVertex fit-DataBase,3,0.002,", rows)
        self.assertIn("hxLumibased DataBase", ranges)

    def test_plots(self):
        cfg = Config()
        cache = IntervalCache(cfg, StaticProvider({1: spot(x=0.05)}))
        sampler = EventSampler(cfg, cache)
        state = cache.open(1)
        sampler.process(Event(1, (Track(2.0, 0.3, 0.01, 1.0),), online=spot()), state)
        store = SeriesStore(cfg)
        store.append(Variable.X, Category.LUMI_DATABASE, 1, 0.05, 0.001)
        with tempfile.TemporaryDirectory() as td:
            paths = ReportWriter(cfg, Path(td)).write(store, sampler)
            self.assertTrue(all(p.exists() for p in paths))
            self.assertEqual(len(paths), 2 + 2 * len(Variable) + 1)
            self.assertTrue((Path(td) / "run_x.png").exists())


if __name__ == "__main__":
    unittest.main()
