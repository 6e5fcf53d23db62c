"""
Build -> Solve -> Decode pipeline for one (depot, day, setting) instance.
"""

import logging
import time as time_module
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from busflow.breaks import BreakSets, classify_break_opportunities
from busflow.config import Config, SolverConfig
from busflow.decoder import Solution, decode_solution
from busflow.models import SchedulingInstance
from busflow.network import Network, build_network, validate_instance
from busflow.optimizer import FleetModel, build_model, solve_model
from busflow.travel_times import TravelTimeLookup, compute_travel_times

logger = logging.getLogger(__name__)


@dataclass
class InstanceResult:
    network: Network
    break_sets: BreakSets
    model: FleetModel
    solution: Solution
    phase_time_sec: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "network": self.network.summary(),
            "break_opportunities": self.break_sets.counts(),
            "phase_time_sec": dict(self.phase_time_sec),
            "solution": self.solution.to_dict(),
        }


def _record_phase_time(phases: Dict[str, float], name: str, started_at: float) -> None:
    phases[name] = round(max(0.0, time_module.perf_counter() - started_at), 3)


def resolve_travel_times(instance: SchedulingInstance) -> TravelTimeLookup:
    """The instance's own table, or one computed from stop locations when it has none."""
    if instance.travel_times:
        return TravelTimeLookup(instance.travel_times)
    logger.info("Instance has no travel times, computing them from stop locations")
    return TravelTimeLookup(compute_travel_times(instance.routes, instance.depot, Config.AVERAGE_SPEED_KMH))


def run_instance(
    instance: SchedulingInstance,
    solver_config: Optional[SolverConfig] = None,
    travel: Optional[TravelTimeLookup] = None,
) -> InstanceResult:
    """Run one instance end to end. ConfigurationError propagates to the caller."""
    validate_instance(instance)
    phases: Dict[str, float] = {}
    travel = travel if travel is not None else resolve_travel_times(instance)

    started_at = time_module.perf_counter()
    network = build_network(instance, travel)
    _record_phase_time(phases, "build_network", started_at)

    started_at = time_module.perf_counter()
    if network.is_capacitated:
        break_sets = classify_break_opportunities(network, travel)
    else:
        break_sets = BreakSets()
    _record_phase_time(phases, "classify_breaks", started_at)

    started_at = time_module.perf_counter()
    model = build_model(network, instance, travel, break_sets)
    _record_phase_time(phases, "build_model", started_at)

    result = solve_model(model, solver_config)
    phases["solve"] = result.solve_time

    started_at = time_module.perf_counter()
    solution = decode_solution(
        network,
        travel,
        model.arc_values(result.values),
        status=result.status,
        objective_value=result.objective_value,
        solve_time=result.solve_time,
        break_sets=break_sets,
        pattern_values=model.pattern_values(result.values),
    )
    _record_phase_time(phases, "decode", started_at)

    logger.info(
        f"Instance depot={instance.depot.depot_id} day={instance.day} setting={instance.setting.value}: "
        f"status {solution.status.value}, {solution.vehicles_used} vehicles"
    )
    return InstanceResult(network, break_sets, model, solution, phases)
