import sys
import argparse
import logging
from itertools import groupby
from pathlib import Path
from typing import Iterable

from ORBIT.config import Config
from ORBIT.src.core.report import ReportWriter
from ORBIT.src.core.types import Event
from ORBIT.src.core.worker import MonitorRun
from ORBIT.src.drivers.providers import (
    EstimateProvider,
    JsonConditionsProvider,
    SimulatedBeamline,
    read_events,
)

logger = logging.getLogger("ORBIT")


def process_stream(run: MonitorRun, events: Iterable[Event]) -> int:
    """Feed a lumi-ordered event stream; each change of lumi closes the previous one."""
    lumis = 0
    for lumi, group in groupby(events, key=lambda e: e.lumi):
        run.begin_lumi(lumi)
        for event in group:
            run.submit(event)
        summary = run.end_lumi(lumi)
        lumis += 1
        if summary is not None:
            logger.info("Lumi %d closed: sources %s, %d vertices", lumi,
                        ",".join(sorted(k.value for k in summary.estimates)) or "-", len(summary.vertices))
    return lumis


def simulated_events(beamline: SimulatedBeamline, n_lumis: int, per_lumi: int, first: int) -> Iterable[Event]:
    for lumi in range(first, first + n_lumis):
        yield from beamline.generate_events(lumi, per_lumi)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Beam-spot consistency monitor")
    parser.add_argument("--sim", action="store_true", help="Generate synthetic collisions")
    parser.add_argument("--events", type=Path, help="Newline-delimited JSON event file")
    parser.add_argument("--db", type=Path, help="JSON beam-spot conditions payload")
    parser.add_argument("--lumis", type=int, default=20, help="Simulated lumi sections")
    parser.add_argument("--events-per-lumi", type=int, default=200, help="Simulated events per lumi")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--output", type=Path, default=None)
    parser.add_argument("--no-plots", action="store_true")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.sim and args.events is None:
        parser.error("either --sim or --events is required")

    config = Config.load(args.config)

    beamline = SimulatedBeamline(config, seed=args.seed) if args.sim else None
    database: EstimateProvider
    if args.db is not None:
        database = JsonConditionsProvider(args.db)
    elif beamline is not None:
        database = beamline
    else:
        parser.error("--db is required with --events")

    if beamline is not None:
        events = simulated_events(beamline, args.lumis, args.events_per_lumi, config.FIRST_LUMI)
    else:
        events = read_events(args.events)

    with MonitorRun(config, database, workers=args.workers) as run:
        n = process_stream(run, events)
        run.end_run()
        ReportWriter(config, args.output).write(run.store, run.sampler, plots=not args.no_plots)

    logger.info("Processed %d lumi sections", n)
    return 0


if __name__ == "__main__":
    sys.exit(main())
