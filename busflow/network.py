"""
Time-expanded network builder.

Turns one scheduling instance into the set of nodes and arcs the optimizer
works on:

- SERVICE arcs carry the trip pieces that must (or may) be served,
- DEPOT_START / DEPOT_END arcs pull out of and back into the depot,
- INTRA_TRIP arcs continue on the same trip,
- INTER_TRIP arcs deadhead to another trip when the schedule allows it.

In the uncapacitated setting arcs are shared by the whole fleet; in the
capacity settings every arc belongs to one vehicle and is tagged with the
demand segments it links, which is what flow conservation keys on.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from busflow.config import ConfigurationError
from busflow.models import (
    DEPOT_SEGMENT,
    UNASSIGNED_VEHICLE,
    Arc,
    ArcKind,
    CoverageMode,
    Depot,
    Node,
    PassengerDemand,
    ProblemMode,
    Route,
    SchedulingInstance,
    Setting,
    Vehicle,
)
from busflow.travel_times import TravelTimeLookup
from busflow.type_defs import PositionInterval, RouteKey

logger = logging.getLogger(__name__)

# ============================================================
# CONFIGURATION
# ============================================================

# Break minutes a depot leg can absorb, largest first
DEPOT_BREAK_ALLOWANCES: Tuple[int, ...] = (45, 30, 15, 0)


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass(frozen=True)
class DemandSegment:
    """A contiguous piece of one trip that has to be driven as a unit."""
    segment_id: int
    origin: Node
    destination: Node
    origin_time: float
    destination_time: float
    passengers: float = 0.0
    demand_ids: Tuple[int, ...] = ()

    @property
    def route_key(self) -> RouteKey:
        return self.origin.route_key

    @property
    def positions(self) -> PositionInterval:
        return (self.origin.stop_sequence, self.destination.stop_sequence)


@dataclass
class Network:
    """Nodes, arcs and demand segments of one (depot, day, setting) instance."""
    setting: Setting
    coverage_mode: CoverageMode
    depot: Depot
    vehicles: List[Vehicle]
    routes: Dict[RouteKey, Route]
    # Resolved demands; visit stop_sequence holds the 1-based route position
    demands: List[PassengerDemand]
    num_demands: int
    segments: Dict[int, DemandSegment] = field(default_factory=dict)
    arcs: List[Arc] = field(default_factory=list)
    nodes: List[Node] = field(default_factory=list)
    depot_break_allowances: Dict[Arc, int] = field(default_factory=dict)
    unservable_demands: List[PassengerDemand] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_capacitated(self) -> bool:
        return self.setting.is_capacitated

    def arcs_of_kind(self, kind: ArcKind) -> List[Arc]:
        return [arc for arc in self.arcs if arc.kind is kind]

    @property
    def service_arcs(self) -> List[Arc]:
        return self.arcs_of_kind(ArcKind.SERVICE)

    @property
    def depot_start_arcs(self) -> List[Arc]:
        return self.arcs_of_kind(ArcKind.DEPOT_START)

    @property
    def depot_end_arcs(self) -> List[Arc]:
        return self.arcs_of_kind(ArcKind.DEPOT_END)

    @property
    def intra_trip_arcs(self) -> List[Arc]:
        return self.arcs_of_kind(ArcKind.INTRA_TRIP)

    @property
    def inter_trip_arcs(self) -> List[Arc]:
        return self.arcs_of_kind(ArcKind.INTER_TRIP)

    def arcs_by_vehicle(self) -> Dict[str, List[Arc]]:
        grouped: Dict[str, List[Arc]] = defaultdict(list)
        for arc in self.arcs:
            grouped[arc.vehicle_id].append(arc)
        return dict(grouped)

    def vehicle(self, vehicle_id: str) -> Optional[Vehicle]:
        for vehicle in self.vehicles:
            if vehicle.vehicle_id == vehicle_id:
                return vehicle
        return None

    def scheduled_time(self, node: Node) -> Optional[float]:
        """Scheduled minutes at a node; None for depot nodes or unknown positions."""
        if node.is_depot:
            return None
        route = self.routes.get(node.route_key)
        if route is None or not route.has_position(node.stop_sequence):
            return None
        return route.time_at(node.stop_sequence)

    def summary(self) -> Dict[str, Any]:
        return {
            "setting": self.setting.value,
            "coverage_mode": self.coverage_mode.value,
            "nodes": len(self.nodes),
            "segments": len(self.segments),
            "arcs": len(self.arcs),
            "arcs_by_kind": {kind.value: len(self.arcs_of_kind(kind)) for kind in ArcKind},
            "unservable_demands": len(self.unservable_demands),
            **self.diagnostics,
        }


# ============================================================
# VALIDATION
# ============================================================

def validate_instance(instance: SchedulingInstance) -> None:
    """Fail fast on combinations the model cannot express."""
    if not instance.routes:
        raise ConfigurationError("Must have at least one route")
    if not instance.vehicles:
        raise ConfigurationError("Must have at least one vehicle")

    if instance.setting.is_capacitated and instance.coverage_mode is CoverageMode.DEMAND_SEGMENTS:
        raise ConfigurationError(
            f"Coverage mode {instance.coverage_mode.value} is not supported in setting {instance.setting.value}"
        )

    if instance.problem_mode is ProblemMode.MAXIMIZE_COVERAGE:
        if not instance.setting.is_capacitated:
            raise ConfigurationError("maximize_coverage requires a capacity setting")
        if instance.service_level is None:
            raise ConfigurationError("maximize_coverage requires a service_level")
        if not 0.0 <= instance.service_level <= 1.0:
            raise ConfigurationError(f"service_level must be within [0, 1], got {instance.service_level}")

    seen = set()
    for vehicle in instance.vehicles:
        if vehicle.vehicle_id in seen:
            raise ConfigurationError(f"Duplicate vehicle id {vehicle.vehicle_id!r}")
        seen.add(vehicle.vehicle_id)

    for capacity_class, count in instance.fleet_availability.items():
        if count < 0:
            raise ConfigurationError(f"Negative availability for capacity class {capacity_class!r}")


# ============================================================
# UTILITY FUNCTIONS
# ============================================================

def merge_demand_intervals(intervals: Iterable[PositionInterval]) -> List[PositionInterval]:
    """Merge position intervals that overlap or touch: [(1,3),(2,5),(8,9)] -> [(1,5),(8,9)]."""
    merged: List[PositionInterval] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def break_allowance(slack: float) -> int:
    """Largest depot break allowance that fits in *slack* (slack >= 0)."""
    for allowance in DEPOT_BREAK_ALLOWANCES:
        if allowance <= slack:
            return allowance
    return 0


def _index_routes(routes: Iterable[Route]) -> Dict[RouteKey, Route]:
    index: Dict[RouteKey, Route] = {}
    for route in routes:
        if route.key in index:
            logger.warning(f"Duplicate route {route.key}, keeping the first occurrence")
            continue
        index[route.key] = route
    return index


def _resolve_demands(
    demands: Iterable[PassengerDemand],
    routes: Dict[RouteKey, Route],
) -> List[PassengerDemand]:
    """
    Demands whose trip and stops exist, with visit stop numbers replaced by
    1-based route positions. The rest are logged and skipped.
    """
    resolved: List[PassengerDemand] = []
    for demand in demands:
        route = routes.get(demand.route_key)
        if route is None:
            logger.warning(f"Demand {demand.demand_id}: route {demand.route_key} not found, skipped")
            continue
        o_pos = route.position_of(demand.origin.stop_sequence)
        d_pos = route.position_of(demand.destination.stop_sequence)
        if o_pos is None or d_pos is None:
            logger.warning(
                f"Demand {demand.demand_id}: stop numbers {demand.origin.stop_sequence}->"
                f"{demand.destination.stop_sequence} not on route {route.key}, skipped"
            )
            continue
        if route.stop_at(o_pos) != demand.origin.stop_id or route.stop_at(d_pos) != demand.destination.stop_id:
            logger.warning(
                f"Demand {demand.demand_id}: stops {demand.origin.stop_id}->{demand.destination.stop_id} "
                f"do not match route {route.key} stops {route.stop_at(o_pos)}->{route.stop_at(d_pos)}, skipped"
            )
            continue
        resolved.append(demand.model_copy(update={
            "origin": demand.origin.model_copy(update={"stop_sequence": o_pos}),
            "destination": demand.destination.model_copy(update={"stop_sequence": d_pos}),
        }))
    return resolved


def _make_segment(
    segment_id: int,
    route: Route,
    origin_pos: int,
    destination_pos: int,
    passengers: float = 0.0,
    demand_ids: Tuple[int, ...] = (),
) -> DemandSegment:
    rid, tid, tseq = route.key
    return DemandSegment(
        segment_id=segment_id,
        origin=Node(route.stop_at(origin_pos), rid, tid, tseq, origin_pos),
        destination=Node(route.stop_at(destination_pos), rid, tid, tseq, destination_pos),
        origin_time=route.time_at(origin_pos),
        destination_time=route.time_at(destination_pos),
        passengers=passengers,
        demand_ids=demand_ids,
    )


def _group_demands_by_route(demands: Iterable[PassengerDemand]) -> Dict[RouteKey, List[PassengerDemand]]:
    grouped: Dict[RouteKey, List[PassengerDemand]] = defaultdict(list)
    for demand in demands:
        grouped[demand.route_key].append(demand)
    return grouped


# ============================================================
# SEGMENTS
# ============================================================

def _uncapacitated_segments(
    coverage_mode: CoverageMode,
    routes: Dict[RouteKey, Route],
    demands: List[PassengerDemand],
) -> List[DemandSegment]:
    by_route = _group_demands_by_route(demands)
    segments: List[DemandSegment] = []

    for key, route in routes.items():
        on_route = by_route.get(key, [])
        if coverage_mode is CoverageMode.ALL_TRIPS or (
            coverage_mode is CoverageMode.ALL_TRIPS_WITH_DEMAND and on_route
        ):
            segments.append(_make_segment(
                len(segments) + 1, route, 1, route.num_stops,
                passengers=sum(d.passengers for d in on_route),
                demand_ids=tuple(d.demand_id for d in on_route),
            ))
        elif coverage_mode is CoverageMode.DEMAND_SEGMENTS:
            intervals = [(d.origin.stop_sequence, d.destination.stop_sequence) for d in on_route]
            for start, end in merge_demand_intervals(intervals):
                inside = [
                    d for d in on_route
                    if d.origin.stop_sequence >= start and d.destination.stop_sequence <= end
                ]
                segments.append(_make_segment(
                    len(segments) + 1, route, start, end,
                    passengers=sum(d.passengers for d in inside),
                    demand_ids=tuple(d.demand_id for d in inside),
                ))
    return segments


def _capacitated_segments(
    coverage_mode: CoverageMode,
    routes: Dict[RouteKey, Route],
    demands: List[PassengerDemand],
) -> List[DemandSegment]:
    segments: List[DemandSegment] = []
    for demand in demands:
        route = routes[demand.route_key]
        segments.append(_make_segment(
            len(segments) + 1, route,
            demand.origin.stop_sequence, demand.destination.stop_sequence,
            passengers=demand.passengers,
            demand_ids=(demand.demand_id,),
        ))

    if coverage_mode is CoverageMode.ALL_TRIPS:
        # Trips without demand still have to be driven
        with_demand = {d.route_key for d in demands}
        for key, route in routes.items():
            if key not in with_demand:
                segments.append(_make_segment(len(segments) + 1, route, 1, route.num_stops))
    return segments


# ============================================================
# ARCS
# ============================================================

def _service_arc(segment: DemandSegment, vehicle_id: str) -> Arc:
    return Arc(
        start=segment.origin,
        end=segment.destination,
        vehicle_id=vehicle_id,
        demand_ids=(segment.segment_id, segment.segment_id),
        load=segment.passengers,
        kind=ArcKind.SERVICE,
    )


def _depot_arcs(
    segment: DemandSegment,
    depot_id: int,
    vehicle_id: str,
    window_start: float,
    window_end: float,
    travel: TravelTimeLookup,
    allowances: Dict[Arc, int],
    diagnostics: Dict[str, Any],
) -> List[Arc]:
    """Pull-out to the segment origin and pull-in from its destination, within the shift window."""
    depot_node = Node.depot_node(depot_id, segment.route_key)
    arcs: List[Arc] = []

    out_minutes = travel.depot(depot_id, segment.origin.stop_id)
    if out_minutes is None:
        diagnostics["missing_travel_times"] += 1
        logger.debug(f"No depot travel time {depot_id} -> {segment.origin.stop_id}")
    else:
        slack = segment.origin_time - window_start - out_minutes
        if slack >= 0:
            arc = Arc(depot_node, segment.origin, vehicle_id,
                      (DEPOT_SEGMENT, segment.segment_id), 0.0, ArcKind.DEPOT_START)
            allowances[arc] = break_allowance(slack)
            arcs.append(arc)

    in_minutes = travel.depot(segment.destination.stop_id, depot_id)
    if in_minutes is None:
        diagnostics["missing_travel_times"] += 1
        logger.debug(f"No depot travel time {segment.destination.stop_id} -> {depot_id}")
    else:
        slack = window_end - segment.destination_time - in_minutes
        if slack >= 0:
            arc = Arc(segment.destination, depot_node, vehicle_id,
                      (segment.segment_id, DEPOT_SEGMENT), 0.0, ArcKind.DEPOT_END)
            allowances[arc] = break_allowance(slack)
            arcs.append(arc)
    return arcs


def _inter_trip_arc(
    first: DemandSegment,
    second: DemandSegment,
    vehicle_id: str,
    travel: TravelTimeLookup,
    diagnostics: Dict[str, Any],
) -> Optional[Arc]:
    minutes = travel.get(first.destination.stop_id, second.origin.stop_id)
    if minutes is None:
        diagnostics["missing_travel_times"] += 1
        logger.debug(f"No travel time {first.destination.stop_id} -> {second.origin.stop_id}")
        return None
    if first.destination_time + minutes > second.origin_time:
        return None
    return Arc(first.destination, second.origin, vehicle_id,
               (first.segment_id, second.segment_id), 0.0, ArcKind.INTER_TRIP)


def _link_arc(first: DemandSegment, second: DemandSegment, vehicle_id: str, kind: ArcKind) -> Arc:
    return Arc(first.destination, second.origin, vehicle_id,
               (first.segment_id, second.segment_id), 0.0, kind)


def _uncapacitated_arcs(network: Network, travel: TravelTimeLookup) -> List[Arc]:
    segments = list(network.segments.values())
    window_start = min(v.shift_start for v in network.vehicles)
    window_end = max(v.shift_end for v in network.vehicles)
    arcs: List[Arc] = []

    for segment in segments:
        arcs.append(_service_arc(segment, UNASSIGNED_VEHICLE))
        arcs.extend(_depot_arcs(
            segment, network.depot.depot_id, UNASSIGNED_VEHICLE, window_start, window_end,
            travel, network.depot_break_allowances, network.diagnostics,
        ))

    for first in segments:
        for second in segments:
            if first is second:
                continue
            if first.route_key == second.route_key:
                if (second.origin.stop_sequence >= first.destination.stop_sequence
                        and second.origin_time >= first.destination_time):
                    arcs.append(_link_arc(first, second, UNASSIGNED_VEHICLE, ArcKind.INTRA_TRIP))
            else:
                arc = _inter_trip_arc(first, second, UNASSIGNED_VEHICLE, travel, network.diagnostics)
                if arc is not None:
                    arcs.append(arc)
    return arcs


def _feasible_vehicles(segment: DemandSegment, vehicles: List[Vehicle]) -> List[Vehicle]:
    return [
        v for v in vehicles
        if segment.origin_time >= v.shift_start and segment.destination_time <= v.shift_end
    ]


def _report_unservable(segment: DemandSegment, network: Network, demands_by_id: Dict[int, PassengerDemand]) -> None:
    if not segment.demand_ids:
        logger.warning(
            f"Trip {segment.route_key} ({segment.origin_time:.0f}-{segment.destination_time:.0f}) "
            f"does not fit in any vehicle shift"
        )
        return
    for demand_id in segment.demand_ids:
        demand = demands_by_id[demand_id]
        network.unservable_demands.append(demand)
        logger.warning(
            f"Demand {demand_id} on route {segment.route_key} from stop {segment.origin.stop_id} "
            f"at {segment.origin_time:.0f} to stop {segment.destination.stop_id} "
            f"at {segment.destination_time:.0f} cannot be served by any vehicle shift"
        )


def _capacitated_arcs(network: Network, travel: TravelTimeLookup) -> List[Arc]:
    demands_by_id = {d.demand_id: d for d in network.demands}
    served_by: Dict[str, List[DemandSegment]] = defaultdict(list)
    arcs: List[Arc] = []

    for segment in network.segments.values():
        vehicles = _feasible_vehicles(segment, network.vehicles)
        if not vehicles:
            _report_unservable(segment, network, demands_by_id)
            continue
        for vehicle in vehicles:
            served_by[vehicle.vehicle_id].append(segment)
            arcs.append(_service_arc(segment, vehicle.vehicle_id))
            arcs.extend(_depot_arcs(
                segment, network.depot.depot_id, vehicle.vehicle_id,
                vehicle.shift_start, vehicle.shift_end,
                travel, network.depot_break_allowances, network.diagnostics,
            ))

    if network.unservable_demands:
        logger.warning(f"{len(network.unservable_demands)} demands cannot be served by any vehicle")

    for vehicle in network.vehicles:
        segments = served_by.get(vehicle.vehicle_id, [])

        by_trip: Dict[RouteKey, List[DemandSegment]] = defaultdict(list)
        for segment in segments:
            by_trip[segment.route_key].append(segment)
        for trip_segments in by_trip.values():
            ordered = sorted(trip_segments, key=lambda s: (s.positions, s.segment_id))
            # Unconditional: a later pair may run backwards in position
            for i, first in enumerate(ordered):
                for second in ordered[i + 1:]:
                    arcs.append(_link_arc(first, second, vehicle.vehicle_id, ArcKind.INTRA_TRIP))

        for first in segments:
            for second in segments:
                if first.route_key == second.route_key:
                    continue
                arc = _inter_trip_arc(first, second, vehicle.vehicle_id, travel, network.diagnostics)
                if arc is not None:
                    arcs.append(arc)
    return arcs


# ============================================================
# BUILDER
# ============================================================

def build_network(
    instance: SchedulingInstance,
    travel: Optional[TravelTimeLookup] = None,
) -> Network:
    """
    Build the time-expanded network for one instance.

    Raises ConfigurationError for unsupported setting/mode combinations.
    Data problems (missing travel times, bad positions, unknown routes) are
    logged and the affected arc or demand is skipped.
    """
    validate_instance(instance)
    if travel is None:
        travel = TravelTimeLookup(instance.travel_times)

    routes = _index_routes(instance.routes)
    demands = _resolve_demands(instance.demands, routes)

    network = Network(
        setting=instance.setting,
        coverage_mode=instance.coverage_mode,
        depot=instance.depot,
        vehicles=list(instance.vehicles),
        routes=routes,
        demands=demands,
        num_demands=len(instance.demands),
        diagnostics={"missing_travel_times": 0, "skipped_demands": len(instance.demands) - len(demands)},
    )

    if network.is_capacitated:
        segments = _capacitated_segments(instance.coverage_mode, routes, demands)
    else:
        segments = _uncapacitated_segments(instance.coverage_mode, routes, demands)
    network.segments = {s.segment_id: s for s in segments}

    if network.is_capacitated:
        arcs = _capacitated_arcs(network, travel)
    else:
        arcs = _uncapacitated_arcs(network, travel)
    network.arcs = list(dict.fromkeys(arcs))

    nodes: Dict[Node, None] = {}
    for segment in segments:
        nodes[segment.origin] = None
        nodes[segment.destination] = None
    for arc in network.arcs:
        nodes[arc.start] = None
        nodes[arc.end] = None
    network.nodes = list(nodes)

    if network.diagnostics["missing_travel_times"]:
        logger.warning(
            "Skipped %s arcs with missing travel times", network.diagnostics["missing_travel_times"]
        )
    logger.info(
        f"Built {instance.setting.value} network: {len(network.segments)} segments, "
        f"{len(network.nodes)} nodes, {len(network.arcs)} arcs"
    )
    return network
