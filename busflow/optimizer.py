"""
Optimization-problem builder.

Builds the pulp model over a time-expanded network:

- uncapacitated: a min-cost flow LP (continuous arc flows, every service arc
  carries exactly one unit, fleet size = flow out of the depot),
- capacity / capacity_breaks: a MILP with one binary per vehicle-specific arc,
  segment-keyed flow conservation, coverage, capacity and break constraints.

Solving is delegated to busflow.services.solver.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import pulp

from busflow.breaks import BREAK_15, BREAK_30, BREAK_45, BreakSets
from busflow.config import SolverConfig
from busflow.models import Arc, ArcKind, Node, ProblemMode, SchedulingInstance, Setting
from busflow.network import Network
from busflow.services.solver import SolveResult, solve
from busflow.travel_times import TravelTimeLookup
from busflow.type_defs import RouteKey, VariableValues

logger = logging.getLogger(__name__)

FLOW_ARC_KINDS = (ArcKind.SERVICE, ArcKind.INTRA_TRIP, ArcKind.INTER_TRIP)


@dataclass
class FleetModel:
    """A built pulp problem plus the variable maps needed to read it back."""
    problem: pulp.LpProblem
    network: Network
    flows: Dict[Arc, pulp.LpVariable] = field(default_factory=dict)
    patterns: Dict[str, pulp.LpVariable] = field(default_factory=dict)
    constraint_counts: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def add(self, constraint, family: str) -> None:
        """Add a named constraint; names are <family>_<n>."""
        index = self.constraint_counts[family]
        self.constraint_counts[family] = index + 1
        self.problem += constraint, f"{family}_{index}"

    def arc_values(self, values: VariableValues) -> Dict[Arc, float]:
        return {arc: float(values.get(var.name, 0.0)) for arc, var in self.flows.items()}

    def pattern_values(self, values: VariableValues) -> Dict[str, float]:
        return {vid: float(values.get(var.name, 0.0)) for vid, var in self.patterns.items()}


# ============================================================
# UNCAPACITATED MODEL
# ============================================================

def _build_uncapacitated(model: FleetModel) -> None:
    network = model.network
    for i, arc in enumerate(network.arcs):
        model.flows[arc] = pulp.LpVariable(f"x_{i}", lowBound=0, cat="Continuous")

    model.problem += pulp.lpSum(model.flows[a] for a in network.depot_start_arcs)

    incoming: Dict[Node, List[pulp.LpVariable]] = defaultdict(list)
    outgoing: Dict[Node, List[pulp.LpVariable]] = defaultdict(list)
    flow_nodes: Dict[Node, None] = {}
    for arc in network.arcs:
        outgoing[arc.start].append(model.flows[arc])
        incoming[arc.end].append(model.flows[arc])
        if arc.kind in FLOW_ARC_KINDS:
            flow_nodes[arc.start] = None
            flow_nodes[arc.end] = None

    for node in flow_nodes:
        model.add(pulp.lpSum(incoming[node]) == pulp.lpSum(outgoing[node]), "flow")

    for arc in network.service_arcs:
        model.add(model.flows[arc] == 1, "service")


# ============================================================
# CAPACITY MODEL
# ============================================================

def _add_segment_conservation(model: FleetModel) -> None:
    inbound: Dict[Tuple[str, int], List[pulp.LpVariable]] = defaultdict(list)
    outbound: Dict[Tuple[str, int], List[pulp.LpVariable]] = defaultdict(list)
    for arc, var in model.flows.items():
        if arc.kind is ArcKind.SERVICE:
            continue
        outbound[(arc.vehicle_id, arc.demand_ids[0])].append(var)
        inbound[(arc.vehicle_id, arc.demand_ids[1])].append(var)

    for arc in model.network.service_arcs:
        key = (arc.vehicle_id, arc.demand_ids[0])
        model.add(pulp.lpSum(inbound[key]) == model.flows[arc], "flow_in")
        model.add(pulp.lpSum(outbound[key]) == model.flows[arc], "flow_out")


def _add_coverage(
    model: FleetModel, instance: SchedulingInstance
) -> Tuple[Optional[pulp.LpAffineExpression], float]:
    """Coverage rows; in maximize_coverage also returns (served passengers, total passengers)."""
    groups: Dict[Tuple[Node, Node, int], List[pulp.LpVariable]] = defaultdict(list)
    for arc in model.network.service_arcs:
        groups[(arc.start, arc.end, arc.demand_ids[0])].append(model.flows[arc])

    maximize = instance.problem_mode is ProblemMode.MAXIMIZE_COVERAGE
    for variables in groups.values():
        if maximize:
            model.add(pulp.lpSum(variables) <= 1, "cover")
        else:
            model.add(pulp.lpSum(variables) == 1, "cover")

    if maximize:
        total = instance.total_demand
        served = pulp.lpSum(arc.load * model.flows[arc] for arc in model.network.service_arcs)
        if total > 0:
            model.add(served >= instance.service_level * total, "service_level")
        return served, total
    return None, 0.0


def _add_single_pull_out(model: FleetModel) -> None:
    starts: Dict[str, List[pulp.LpVariable]] = defaultdict(list)
    for arc in model.network.depot_start_arcs:
        starts[arc.vehicle_id].append(model.flows[arc])
    for variables in starts.values():
        model.add(pulp.lpSum(variables) <= 1, "depot_once")


def _add_mutual_exclusion(model: FleetModel, travel: TravelTimeLookup) -> None:
    """
    A vehicle cannot leave a trip towards another one while it still has to
    finish a segment of the first trip that ends too late to make the connection.
    """
    network = model.network
    service_by_trip: Dict[Tuple[str, RouteKey], List[Arc]] = defaultdict(list)
    for arc in network.service_arcs:
        service_by_trip[(arc.vehicle_id, arc.start.route_key)].append(arc)

    for inter in network.inter_trip_arcs:
        target_time = network.scheduled_time(inter.end)
        if target_time is None:
            continue
        for service in service_by_trip.get((inter.vehicle_id, inter.start.route_key), []):
            if service.demand_ids[0] == inter.demand_ids[0]:
                continue
            service_end = network.scheduled_time(service.end)
            minutes = travel.get(service.end.stop_id, inter.end.stop_id)
            if service_end is None or minutes is None:
                continue
            if service_end + minutes > target_time:
                model.add(model.flows[service] + model.flows[inter] <= 1, "exclusive")


def _add_capacity(model: FleetModel) -> None:
    network = model.network
    by_trip: Dict[Tuple[str, RouteKey], List[Arc]] = defaultdict(list)
    for arc in network.service_arcs:
        by_trip[(arc.vehicle_id, arc.start.route_key)].append(arc)

    for (vehicle_id, route_key), arcs in by_trip.items():
        vehicle = network.vehicle(vehicle_id)
        route = network.routes.get(route_key)
        if vehicle is None or route is None:
            continue
        for position in range(1, route.num_stops):
            spanning = [
                a for a in arcs
                if a.start.stop_sequence <= position and a.end.stop_sequence >= position + 1
            ]
            # Skip pairs that cannot overflow even with every arc selected
            if sum(a.load for a in spanning) <= vehicle.capacity:
                continue
            model.add(
                pulp.lpSum(a.load * model.flows[a] for a in spanning) <= vehicle.capacity,
                "capacity",
            )


def _add_fleet_availability(model: FleetModel, instance: SchedulingInstance) -> None:
    if not instance.fleet_availability:
        return
    classes = {v.vehicle_id: v.capacity_class for v in model.network.vehicles}
    dispatched: Dict[str, List[pulp.LpVariable]] = defaultdict(list)
    for arc in model.network.depot_start_arcs:
        capacity_class = classes.get(arc.vehicle_id)
        if capacity_class in instance.fleet_availability:
            dispatched[capacity_class].append(model.flows[arc])
    for capacity_class, variables in dispatched.items():
        model.add(pulp.lpSum(variables) <= instance.fleet_availability[capacity_class], "class")


def _add_break_constraints(model: FleetModel, break_sets: BreakSets) -> None:
    """
    z_k = 1 selects the single 45-minute break, z_k = 0 the 15 + 30 split.
    A vehicle that is not dispatched (used_k = 0) needs no break.
    """
    starts: Dict[str, List[pulp.LpVariable]] = defaultdict(list)
    for arc in model.network.depot_start_arcs:
        starts[arc.vehicle_id].append(model.flows[arc])

    for i, vehicle_id in enumerate(break_sets.vehicles):
        if not starts.get(vehicle_id):
            continue
        z = pulp.LpVariable(f"z_{i}", cat="Binary")
        model.patterns[vehicle_id] = z
        used = pulp.lpSum(starts[vehicle_id])
        phi = break_sets.for_vehicle(vehicle_id)
        model.add(pulp.lpSum(model.flows[a] for a in phi[BREAK_45]) >= used + z - 1, "break45")
        model.add(pulp.lpSum(model.flows[a] for a in phi[BREAK_15]) >= used - z, "break15")
        model.add(pulp.lpSum(model.flows[a] for a in phi[BREAK_30]) >= used - z, "break30")


def _build_capacitated(
    model: FleetModel,
    instance: SchedulingInstance,
    travel: TravelTimeLookup,
    break_sets: Optional[BreakSets],
) -> None:
    network = model.network
    for i, arc in enumerate(network.arcs):
        model.flows[arc] = pulp.LpVariable(f"x_{i}", cat="Binary")

    fleet = pulp.lpSum(model.flows[a] for a in network.depot_start_arcs)

    _add_segment_conservation(model)
    served, total = _add_coverage(model, instance)
    _add_single_pull_out(model)
    _add_mutual_exclusion(model, travel)
    _add_capacity(model)
    _add_fleet_availability(model, instance)
    if network.setting is Setting.CAPACITY_BREAKS and break_sets is not None:
        _add_break_constraints(model, break_sets)

    if served is not None:
        # Primary term dominates: carried passengers never outweigh one vehicle
        model.problem += fleet - served * (1.0 / (total + 1.0))
    else:
        model.problem += fleet


# ============================================================
# PUBLIC API
# ============================================================

def build_model(
    network: Network,
    instance: SchedulingInstance,
    travel: TravelTimeLookup,
    break_sets: Optional[BreakSets] = None,
) -> FleetModel:
    """Build the pulp problem for *network* according to the instance's setting and mode."""
    model = FleetModel(
        problem=pulp.LpProblem(f"fleet_{network.setting.value}", pulp.LpMinimize),
        network=network,
    )
    if network.is_capacitated:
        _build_capacitated(model, instance, travel, break_sets)
    else:
        _build_uncapacitated(model)

    logger.info(
        f"Built model with {len(model.flows)} arc variables, {len(model.patterns)} pattern variables, "
        f"constraints {dict(model.constraint_counts)}"
    )
    return model


def solve_model(model: FleetModel, config: Optional[SolverConfig] = None) -> SolveResult:
    return solve(model.problem, config)
