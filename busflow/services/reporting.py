"""
Solution reporting.

Human-readable summaries of a decoded solution: per-vehicle operations,
break compliance, demand fulfillment and fleet utilization. Everything is
written through the module logger; summarize_solution returns the same
figures as a JSON-friendly dict.
"""

import logging
from collections import defaultdict
from typing import Any, Dict, List

from busflow.breaks import PATTERN_SINGLE, PATTERN_SPLIT
from busflow.decoder import Solution, VehicleItinerary
from busflow.models import Arc, ArcKind
from busflow.network import Network

logger = logging.getLogger(__name__)

MINUTES_PER_DAY: int = 1440
TOP_UNSERVED_STOPS: int = 10


# ============================================================
# FORMATTING
# ============================================================

def format_time(minutes: float) -> str:
    """Clock time over the three-day window: "D-1 23:30", "08:05", "D+1 00:15"."""
    total = int(round(minutes))
    prefix = ""
    if total < 0:
        total += MINUTES_PER_DAY
        prefix = "D-1 "
    elif total >= MINUTES_PER_DAY:
        total -= MINUTES_PER_DAY
        prefix = "D+1 "
    return f"{prefix}{total // 60:02d}:{total % 60:02d}"


def format_duration(minutes: float) -> str:
    total = int(round(minutes))
    return f"{total // 60}h {total % 60:02d}m"


def arc_description(arc: Arc) -> str:
    if arc.kind is ArcKind.DEPOT_START:
        return f"Depot -> stop {arc.end.stop_id} (route {arc.end.route_id})"
    if arc.kind is ArcKind.DEPOT_END:
        return f"Stop {arc.start.stop_id} (route {arc.start.route_id}) -> depot"
    if arc.kind is ArcKind.SERVICE:
        return f"Service route {arc.start.route_id}: stop {arc.start.stop_id} -> {arc.end.stop_id}"
    if arc.kind is ArcKind.INTRA_TRIP:
        return f"Continue route {arc.start.route_id}: stop {arc.start.stop_id} -> {arc.end.stop_id}"
    if arc.kind is ArcKind.INTER_TRIP:
        return (
            f"Deadhead route {arc.start.route_id} stop {arc.start.stop_id} -> "
            f"route {arc.end.route_id} stop {arc.end.stop_id}"
        )
    raise ValueError(f"Unknown arc kind {arc.kind!r}")


# ============================================================
# FIGURES
# ============================================================

def active_time(itinerary: VehicleItinerary) -> float:
    return max(0.0, itinerary.operational_duration - itinerary.waiting_time)


def fleet_utilization(solution: Solution) -> float:
    """Share of operational time spent moving, over all vehicles."""
    operational = sum(i.operational_duration for i in solution.itineraries)
    if operational <= 0:
        return 0.0
    return sum(active_time(i) for i in solution.itineraries) / operational


def demand_fulfillment(solution: Solution, network: Network) -> Dict[str, Any]:
    served_ids = {d for i in solution.itineraries for d in i.served_demand_ids}
    total = network.num_demands
    served = len(served_ids)
    unserved = [d for d in network.demands if d.demand_id not in served_ids]

    by_origin: Dict[int, List[float]] = defaultdict(list)
    by_destination: Dict[int, List[float]] = defaultdict(list)
    for demand in unserved:
        by_origin[demand.origin.stop_id].append(demand.passengers)
        by_destination[demand.destination.stop_id].append(demand.passengers)

    def _top(grouped: Dict[int, List[float]]) -> List[Dict[str, Any]]:
        ranked = sorted(grouped.items(), key=lambda item: len(item[1]), reverse=True)
        return [
            {"stop_id": stop_id, "requests": len(values), "passengers": round(sum(values), 1)}
            for stop_id, values in ranked[:TOP_UNSERVED_STOPS]
        ]

    return {
        "total_demands": total,
        "served_demands": served,
        "unserved_demands": total - served,
        "served_pct": round(100.0 * served / total, 1) if total else 0.0,
        "served_passengers": round(sum(d.passengers for d in network.demands if d.demand_id in served_ids), 1),
        "unserved_passengers": round(sum(d.passengers for d in unserved), 1),
        "unservable_demand_ids": list(solution.unservable_demand_ids),
        "top_unserved_origins": _top(by_origin),
        "top_unserved_destinations": _top(by_destination),
    }


def break_summary(solution: Solution) -> Dict[str, Any]:
    with_pattern = [i for i in solution.itineraries if i.break_pattern is not None]
    return {
        "vehicles_with_breaks": len(with_pattern),
        "single_45": sum(1 for i in with_pattern if i.break_pattern == PATTERN_SINGLE),
        "split_15_30": sum(1 for i in with_pattern if i.break_pattern == PATTERN_SPLIT),
        "non_compliant": [i.vehicle_id for i in with_pattern if not i.break_compliant],
    }


def summarize_solution(solution: Solution, network: Network) -> Dict[str, Any]:
    return {
        "status": solution.status.value,
        "objective_value": solution.objective_value,
        "solve_time": solution.solve_time,
        "vehicles_used": solution.vehicles_used,
        "total_operational_minutes": round(sum(i.operational_duration for i in solution.itineraries), 1),
        "total_waiting_minutes": round(sum(i.waiting_time for i in solution.itineraries), 1),
        "fleet_utilization": round(fleet_utilization(solution), 3),
        "demand": demand_fulfillment(solution, network),
        "breaks": break_summary(solution),
        "network": network.summary(),
    }


# ============================================================
# LOGGING
# ============================================================

def log_itinerary(itinerary: VehicleItinerary) -> None:
    logger.info("-" * 60)
    logger.info(
        f"Vehicle {itinerary.vehicle_id}: {len(itinerary.service_arcs)} service hops, "
        f"operational {format_duration(itinerary.operational_duration)}, "
        f"waiting {format_duration(itinerary.waiting_time)}"
    )
    for arc, ts, load in zip(itinerary.arcs, itinerary.timestamps, itinerary.loads):
        logger.info(f"  {format_time(ts)}  {arc_description(arc)}  load={load:g}")
    if itinerary.pull_out_break_allowance is not None or itinerary.pull_in_break_allowance is not None:
        logger.info(
            f"  Depot break allowance: pull-out {itinerary.pull_out_break_allowance} min, "
            f"pull-in {itinerary.pull_in_break_allowance} min"
        )
    if not itinerary.returned_to_depot:
        logger.warning(f"Vehicle {itinerary.vehicle_id} does not return to the depot")
    if itinerary.break_pattern is not None:
        state = "compliant" if itinerary.break_compliant else "NOT compliant"
        logger.info(f"  Break pattern {itinerary.break_pattern} ({state}), usage {itinerary.break_usage}")


def log_solution_summary(solution: Solution, network: Network) -> Dict[str, Any]:
    """Log the full solution analysis and return the summary dict."""
    summary = summarize_solution(solution, network)
    logger.info("=" * 60)
    logger.info(
        f"Solution status {summary['status']}, vehicles used {summary['vehicles_used']}, "
        f"solve time {summary['solve_time']}s"
    )
    for itinerary in solution.itineraries:
        log_itinerary(itinerary)

    demand = summary["demand"]
    if demand["total_demands"]:
        logger.info(
            f"Demands served {demand['served_demands']}/{demand['total_demands']} "
            f"({demand['served_pct']}%), unserved passengers {demand['unserved_passengers']}"
        )
        for origin in demand["top_unserved_origins"]:
            logger.info(
                f"  Unserved origin stop {origin['stop_id']}: {origin['requests']} requests, "
                f"{origin['passengers']} passengers"
            )

    breaks = summary["breaks"]
    if breaks["vehicles_with_breaks"]:
        logger.info(
            f"Breaks: {breaks['single_45']} single 45-minute, {breaks['split_15_30']} split 15+30"
        )
        if breaks["non_compliant"]:
            logger.warning(f"Vehicles without a compliant break: {breaks['non_compliant']}")

    logger.info(f"Fleet utilization {summary['fleet_utilization'] * 100:.1f}%")
    logger.info("=" * 60)
    return summary
