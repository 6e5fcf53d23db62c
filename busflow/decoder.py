"""
Solution decoder.

Turns the arc values of a solved model back into vehicle itineraries:
paths are followed from each depot pull-out, every forward arc inside a trip
is expanded into stop-to-stop hops, and the schedule is replayed to get a
start time and a passenger load for each hop.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from busflow.breaks import PATTERN_SINGLE, PATTERN_SPLIT, BreakSets, is_compliant
from busflow.models import Arc, ArcKind, Node, PassengerDemand, Route, SolverStatus
from busflow.network import Network
from busflow.travel_times import TravelTimeLookup
from busflow.type_defs import RouteKey

logger = logging.getLogger(__name__)

# Arc values above this count as selected
SELECTED_THRESHOLD: float = 0.5


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class VehicleItinerary:
    vehicle_id: str
    arcs: List[Arc]
    timestamps: List[float]
    loads: List[float]
    depot_departure: Optional[float] = None
    depot_arrival: Optional[float] = None
    operational_duration: float = 0.0
    waiting_time: float = 0.0
    served_demand_ids: List[int] = field(default_factory=list)
    returned_to_depot: bool = True
    pull_out_break_allowance: Optional[int] = None
    pull_in_break_allowance: Optional[int] = None
    break_usage: Dict[str, int] = field(default_factory=dict)
    break_pattern: Optional[str] = None
    break_compliant: bool = True

    @property
    def service_arcs(self) -> List[Arc]:
        return [a for a in self.arcs if a.kind is ArcKind.SERVICE]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vehicle_id": self.vehicle_id,
            "arcs": [
                {
                    "kind": arc.kind.value,
                    "from_stop": arc.start.stop_id,
                    "to_stop": arc.end.stop_id,
                    "from_route": list(arc.start.route_key),
                    "to_route": list(arc.end.route_key),
                    "from_position": arc.start.stop_sequence,
                    "to_position": arc.end.stop_sequence,
                    "time": round(ts, 2),
                    "load": load,
                }
                for arc, ts, load in zip(self.arcs, self.timestamps, self.loads)
            ],
            "depot_departure": self.depot_departure,
            "depot_arrival": self.depot_arrival,
            "operational_duration": round(self.operational_duration, 2),
            "waiting_time": round(self.waiting_time, 2),
            "served_demand_ids": list(self.served_demand_ids),
            "returned_to_depot": self.returned_to_depot,
            "pull_out_break_allowance": self.pull_out_break_allowance,
            "pull_in_break_allowance": self.pull_in_break_allowance,
            "break_usage": dict(self.break_usage),
            "break_pattern": self.break_pattern,
            "break_compliant": self.break_compliant,
        }


@dataclass
class Solution:
    status: SolverStatus
    objective_value: Optional[float] = None
    solve_time: float = 0.0
    itineraries: List[VehicleItinerary] = field(default_factory=list)
    num_demands: int = 0
    unservable_demand_ids: List[int] = field(default_factory=list)

    @property
    def vehicles_used(self) -> int:
        return len(self.itineraries)

    def itinerary(self, vehicle_id: str) -> Optional[VehicleItinerary]:
        for itinerary in self.itineraries:
            if itinerary.vehicle_id == vehicle_id:
                return itinerary
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "objective_value": self.objective_value,
            "solve_time": self.solve_time,
            "vehicles_used": self.vehicles_used,
            "num_demands": self.num_demands,
            "unservable_demand_ids": list(self.unservable_demand_ids),
            "itineraries": [i.to_dict() for i in self.itineraries],
        }


# ============================================================
# ARC EXPANSION
# ============================================================

def expand_arc(arc: Arc, routes: Dict[RouteKey, Route]) -> List[Arc]:
    """
    Split a forward arc inside one trip into consecutive stop-to-stop hops.

    Depot arcs, cross-trip arcs, zero-length and backward arcs are returned
    unchanged, as is any arc whose trip cannot be resolved.
    """
    if arc.start.is_depot or arc.end.is_depot or not arc.same_trip:
        return [arc]
    first, last = arc.start.stop_sequence, arc.end.stop_sequence
    if last <= first:
        return [arc]
    route = routes.get(arc.start.route_key)
    if route is None or not (route.has_position(first) and route.has_position(last)):
        logger.warning(f"Cannot expand arc on unknown trip {arc.start.route_key}")
        return [arc]

    rid, tid, tseq = arc.start.route_key
    nodes = [Node(route.stop_at(p), rid, tid, tseq, p) for p in range(first, last + 1)]
    return [
        Arc(a, b, arc.vehicle_id, arc.demand_ids, arc.load, arc.kind)
        for a, b in zip(nodes, nodes[1:])
    ]


# ============================================================
# PATH FOLLOWING
# ============================================================

def _successors_by_node(arcs: List[Arc]) -> Dict[Node, List[Arc]]:
    grouped: Dict[Node, List[Arc]] = defaultdict(list)
    for arc in sorted(arcs, key=Arc.sort_key):
        grouped[arc.start].append(arc)
    return grouped


def follow_path(
    first_arc: Arc,
    successors: Dict[Node, List[Arc]],
    remaining: Dict[Arc, float],
    max_steps: int,
) -> List[Arc]:
    """
    Walk selected arcs from a depot pull-out until the depot is reached.

    The next arc must start where the current one ends and continue from the
    demand segment the current one ends in. A successor that was already
    visited means the selection contains a cycle and the walk stops there.
    """
    path = [first_arc]
    visited: Set[Arc] = {first_arc}

    for _ in range(max_steps):
        current = path[-1]
        if current.kind is ArcKind.DEPOT_END:
            return path
        matches = [
            arc for arc in successors.get(current.end, [])
            if arc.demand_ids[0] == current.demand_ids[1]
            and remaining.get(arc, 0.0) > SELECTED_THRESHOLD
        ]
        fresh = [arc for arc in matches if arc not in visited]
        if not fresh:
            if matches:
                logger.warning(f"Cycle detected at {current.end} for vehicle {current.vehicle_id!r}, stopping")
            break
        if len(fresh) > 1:
            logger.debug(f"{len(fresh)} successors at {current.end}, taking the first")
        path.append(fresh[0])
        visited.add(fresh[0])
    else:
        logger.warning(f"Path for vehicle {first_arc.vehicle_id!r} hit the step limit of {max_steps}")

    if path[-1].kind is not ArcKind.DEPOT_END:
        logger.warning(f"Path for vehicle {first_arc.vehicle_id!r} does not return to the depot")
    return path


def _uncapacitated_paths(network: Network, arc_values: Dict[Arc, float]) -> List[List[Arc]]:
    """Decompose the integral flow into depot-to-depot paths, one per bus."""
    remaining = {arc: value for arc, value in arc_values.items() if value > SELECTED_THRESHOLD}
    successors = _successors_by_node(list(remaining))
    starts = sorted((a for a in remaining if a.kind is ArcKind.DEPOT_START), key=Arc.sort_key)
    max_steps = len(network.arcs)

    paths: List[List[Arc]] = []
    for start in starts:
        while remaining.get(start, 0.0) > SELECTED_THRESHOLD:
            path = follow_path(start, successors, remaining, max_steps)
            for arc in path:
                remaining[arc] -= 1.0
            paths.append(path)
    return paths


def _capacitated_paths(network: Network, arc_values: Dict[Arc, float]) -> Dict[str, List[Arc]]:
    selected = {arc: value for arc, value in arc_values.items() if value > SELECTED_THRESHOLD}
    successors = _successors_by_node(list(selected))
    max_steps = len(network.arcs)

    starts_by_vehicle: Dict[str, List[Arc]] = defaultdict(list)
    for arc in sorted(selected, key=Arc.sort_key):
        if arc.kind is ArcKind.DEPOT_START:
            starts_by_vehicle[arc.vehicle_id].append(arc)

    paths: Dict[str, List[Arc]] = {}
    for vehicle in network.vehicles:
        starts = starts_by_vehicle.get(vehicle.vehicle_id, [])
        if not starts:
            continue
        if len(starts) > 1:
            logger.warning(f"Vehicle {vehicle.vehicle_id!r} has {len(starts)} depot pull-outs, using the first")
        paths[vehicle.vehicle_id] = follow_path(starts[0], successors, selected, max_steps)
    return paths


# ============================================================
# SCHEDULE REPLAY
# ============================================================

def _served_demands(path: List[Arc], network: Network) -> List[PassengerDemand]:
    ids: Dict[int, None] = {}
    for arc in path:
        if arc.kind is ArcKind.SERVICE:
            segment = network.segments.get(arc.demand_ids[0])
            if segment is not None:
                for demand_id in segment.demand_ids:
                    ids[demand_id] = None
    by_id = {d.demand_id: d for d in network.demands}
    return [by_id[i] for i in ids if i in by_id]


def _hop_load(hop: Arc, served: List[PassengerDemand]) -> float:
    if hop.start.is_depot or hop.end.is_depot or not hop.same_trip or hop.is_backward:
        return 0.0
    passengers = sum(
        d.passengers for d in served
        if d.route_key == hop.start.route_key
        and d.origin.stop_sequence <= hop.start.stop_sequence
        and d.destination.stop_sequence >= hop.end.stop_sequence
    )
    return float(passengers)


def _depot_minutes(travel: TravelTimeLookup, origin: int, destination: int) -> float:
    minutes = travel.depot(origin, destination)
    if minutes is None:
        logger.warning(f"No depot travel time {origin} -> {destination}, assuming 0")
        return 0.0
    return minutes


def _time_or(network: Network, node: Node, fallback: float) -> float:
    scheduled = network.scheduled_time(node)
    return fallback if scheduled is None else scheduled


def build_itinerary(
    vehicle_id: str,
    path: List[Arc],
    network: Network,
    travel: TravelTimeLookup,
    break_sets: Optional[BreakSets] = None,
    pattern_value: Optional[float] = None,
) -> VehicleItinerary:
    """Expand *path* and replay the timetable over it."""
    depot_id = network.depot.depot_id
    hops = [hop for arc in path for hop in expand_arc(arc, network.routes)]
    served = _served_demands(path, network)

    first = hops[0]
    if first.kind is ArcKind.DEPOT_START:
        t = _time_or(network, first.end, 0.0) - _depot_minutes(travel, depot_id, first.end.stop_id)
    else:
        t = _time_or(network, first.start, 0.0)
    departure = t
    waiting = 0.0
    timestamps: List[float] = []

    for hop in hops:
        timestamps.append(t)
        if hop.kind is ArcKind.DEPOT_START:
            # Waiting at the depot before the first stop is not counted
            t = max(t + _depot_minutes(travel, depot_id, hop.end.stop_id), _time_or(network, hop.end, t))
        elif hop.kind is ArcKind.DEPOT_END:
            t = t + _depot_minutes(travel, hop.start.stop_id, depot_id)
        elif hop.same_trip:
            if hop.is_backward:
                t = _time_or(network, hop.end, t)
            else:
                scheduled_dep = _time_or(network, hop.start, t)
                wait = max(0.0, scheduled_dep - t)
                waiting += wait
                t = t + wait + (_time_or(network, hop.end, scheduled_dep) - scheduled_dep)
        else:
            minutes = travel.get(hop.start.stop_id, hop.end.stop_id)
            if minutes is None:
                logger.warning(f"No travel time {hop.start.stop_id} -> {hop.end.stop_id}, assuming 0")
                minutes = 0.0
            arrival = t + minutes
            wait = max(0.0, _time_or(network, hop.end, arrival) - arrival)
            waiting += wait
            t = arrival + wait

    returned = path[-1].kind is ArcKind.DEPOT_END
    itinerary = VehicleItinerary(
        vehicle_id=vehicle_id,
        arcs=hops,
        timestamps=timestamps,
        loads=[_hop_load(hop, served) for hop in hops],
        depot_departure=departure if first.kind is ArcKind.DEPOT_START else None,
        depot_arrival=t if returned else None,
        operational_duration=t - departure,
        waiting_time=waiting,
        served_demand_ids=[d.demand_id for d in served],
        returned_to_depot=returned,
        # Break minutes the slack of each depot leg allows
        pull_out_break_allowance=network.depot_break_allowances.get(path[0]),
        pull_in_break_allowance=network.depot_break_allowances.get(path[-1]) if returned else None,
    )

    if break_sets is not None and vehicle_id in break_sets.phi_45:
        itinerary.break_usage = break_sets.usage(vehicle_id, path)
        if pattern_value is not None:
            itinerary.break_pattern = PATTERN_SINGLE if pattern_value > SELECTED_THRESHOLD else PATTERN_SPLIT
            itinerary.break_compliant = is_compliant(itinerary.break_pattern, itinerary.break_usage)
    return itinerary


# ============================================================
# PUBLIC API
# ============================================================

def decode_solution(
    network: Network,
    travel: TravelTimeLookup,
    arc_values: Dict[Arc, float],
    status: SolverStatus = SolverStatus.OPTIMAL,
    objective_value: Optional[float] = None,
    solve_time: float = 0.0,
    break_sets: Optional[BreakSets] = None,
    pattern_values: Optional[Dict[str, float]] = None,
) -> Solution:
    """
    Build the Solution for a solved model.

    Only optimal results are decoded; any other status yields a Solution
    without itineraries.
    """
    solution = Solution(
        status=status,
        objective_value=objective_value,
        solve_time=solve_time,
        num_demands=network.num_demands,
        unservable_demand_ids=[d.demand_id for d in network.unservable_demands],
    )
    if status is not SolverStatus.OPTIMAL:
        logger.warning(f"Solver status {status.value}, no itineraries decoded")
        return solution

    pattern_values = pattern_values or {}
    if network.is_capacitated:
        for vehicle_id, path in _capacitated_paths(network, arc_values).items():
            solution.itineraries.append(build_itinerary(
                vehicle_id, path, network, travel, break_sets, pattern_values.get(vehicle_id),
            ))
    else:
        for i, path in enumerate(_uncapacitated_paths(network, arc_values), start=1):
            solution.itineraries.append(build_itinerary(f"B{i}", path, network, travel))

    logger.info(f"Decoded {solution.vehicles_used} vehicle itineraries")
    return solution
