"""
Batch command line entry point.

Example:
    busflow --data-dir data/ --depot 1 --day 2024-03-04 \\
        --setting capacity --coverage all_trips_with_demand --output result.json
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from busflow.config import Config, ConfigurationError, SolverConfig
from busflow.loader import load_instance
from busflow.models import CoverageMode, ProblemMode, Setting
from busflow.pipeline import resolve_travel_times, run_instance
from busflow.services.reporting import log_solution_summary
from busflow.travel_times import TravelTimeLookup, fetch_osrm_travel_times

logger = logging.getLogger(__name__)


def _parse_availability(values: List[str]) -> dict:
    availability = {}
    for value in values:
        capacity_class, _, count = value.partition("=")
        if not count:
            raise argparse.ArgumentTypeError(f"expected CLASS=COUNT, got {value!r}")
        availability[capacity_class] = int(count)
    return availability


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bus fleet scheduling on a time-expanded network")
    parser.add_argument("--data-dir", required=True, help="Directory with depots/routes/vehicles/demand CSV files")
    parser.add_argument("--depot", type=int, required=True, help="Depot id to solve")
    parser.add_argument("--day", default=None, help="Service day to solve")
    parser.add_argument("--setting", choices=[s.value for s in Setting],
                        default=Setting.UNCAPACITATED.value, help="Model family")
    parser.add_argument("--coverage", choices=[c.value for c in CoverageMode],
                        default=CoverageMode.ALL_TRIPS.value, help="What must be served")
    parser.add_argument("--problem-mode", choices=[p.value for p in ProblemMode],
                        default=ProblemMode.MINIMIZE_FLEET.value, help="Objective family")
    parser.add_argument("--service-level", type=float, default=None,
                        help="Required served share for maximize_coverage")
    parser.add_argument("--availability", nargs="*", default=[],
                        help="Per capacity class limits as CLASS=COUNT")
    parser.add_argument("--solver", default=Config.SOLVER, help="Solver backend (cbc, highs)")
    parser.add_argument("--time-limit", type=int, default=Config.TIME_LIMIT_SECONDS,
                        help="Solver time limit in seconds")
    parser.add_argument("--mip-gap", type=float, default=Config.MIP_GAP or None,
                        help="Relative MIP gap")
    parser.add_argument("--osrm", action="store_true",
                        help="Fetch travel times from OSRM instead of haversine estimates")
    parser.add_argument("--output", type=str, default=None, help="Write the result as JSON")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        instance = load_instance(
            args.data_dir,
            args.depot,
            day=args.day,
            setting=Setting(args.setting),
            coverage_mode=CoverageMode(args.coverage),
            problem_mode=ProblemMode(args.problem_mode),
            service_level=args.service_level,
            fleet_availability=_parse_availability(args.availability),
        )
        if args.osrm:
            travel = TravelTimeLookup(fetch_osrm_travel_times(instance.routes, instance.depot))
        else:
            travel = resolve_travel_times(instance)

        solver_config = SolverConfig(
            solver=args.solver,
            time_limit_seconds=args.time_limit or None,
            mip_gap=args.mip_gap,
            threads=Config.THREADS or None,
            msg=Config.SOLVER_MSG,
            cbc_path=Config.CBC_PATH or None,
        )
        result = run_instance(instance, solver_config, travel)
    except (ConfigurationError, FileNotFoundError, ValueError, argparse.ArgumentTypeError) as e:
        logger.error(f"Cannot run instance: {e}")
        return 2

    summary = log_solution_summary(result.solution, result.network)
    if args.output:
        payload = result.to_dict()
        payload["summary"] = summary
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        logger.info(f"Result written to {args.output}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
