"""
CSV ingestion.

Reads depots, trips, vehicles and passenger demand from a data directory and
assembles one SchedulingInstance per (depot, day).

Expected files and columns:

- depots.csv:   id, name, lat, lon
- routes.csv:   day, depot, route_id, trip_id, trip_sequence, stop_sequence,
                stop_id, stop_name, arrival_minutes, lat, lon
- vehicles.csv: vehicle_id, depot, capacity, shift_start, shift_end[, capacity_class]
- demand.csv:   demand_id, depot_id, date, route_id, trip_id, trip_sequence,
                origin_stop_sequence, origin_stop_id, destination_stop_sequence,
                destination_stop_id, passengers
"""

import logging
import os
from typing import Dict, List, Optional

import pandas as pd

from busflow.models import (
    CoverageMode,
    Depot,
    DemandVisit,
    PassengerDemand,
    ProblemMode,
    Route,
    SchedulingInstance,
    Setting,
    Vehicle,
)

logger = logging.getLogger(__name__)

DEPOTS_FILE = "depots.csv"
ROUTES_FILE = "routes.csv"
VEHICLES_FILE = "vehicles.csv"
DEMAND_FILE = "demand.csv"

ROUTE_GROUP_COLUMNS = ["day", "depot", "route_id", "trip_id", "trip_sequence"]


def _read_csv(path: str) -> pd.DataFrame:
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Data file not found at {path}")
    df = pd.read_csv(path)
    if df.empty:
        logger.warning(f"Data file is empty: {path}")
    return df


def _require_columns(df: pd.DataFrame, columns: List[str], path: str) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"{path}: missing columns {missing}")


def load_depots(path: str) -> List[Depot]:
    df = _read_csv(path)
    _require_columns(df, ["id", "name"], path)
    depots = []
    for _, row in df.iterrows():
        location = None
        if "lat" in df.columns and pd.notna(row.get("lat")) and pd.notna(row.get("lon")):
            location = (float(row["lat"]), float(row["lon"]))
        depots.append(Depot(depot_id=int(row["id"]), name=str(row["name"]), location=location))
    logger.info(f"Loaded {len(depots)} depots from {path}")
    return depots


def load_routes(path: str, depot: Optional[str] = None, day: Optional[str] = None) -> List[Route]:
    """
    One Route per (day, depot, route_id, trip_id, trip_sequence) group, stops
    ordered by stop_sequence. Groups that fail validation are logged and skipped.
    """
    df = _read_csv(path)
    _require_columns(df, ROUTE_GROUP_COLUMNS + ["stop_sequence", "stop_id", "arrival_minutes"], path)
    if depot is not None:
        df = df[df["depot"].astype(str) == str(depot)]
    if day is not None:
        df = df[df["day"].astype(str) == str(day)]

    has_names = "stop_name" in df.columns
    has_locations = "lat" in df.columns and "lon" in df.columns
    routes: List[Route] = []
    for group_key, group_df in df.groupby(ROUTE_GROUP_COLUMNS, sort=False):
        ordered = group_df.sort_values("stop_sequence")
        try:
            routes.append(Route(
                route_id=int(ordered["route_id"].iloc[0]),
                trip_id=int(ordered["trip_id"].iloc[0]),
                trip_sequence=int(ordered["trip_sequence"].iloc[0]),
                stop_ids=[int(v) for v in ordered["stop_id"]],
                stop_sequence=[int(v) for v in ordered["stop_sequence"]],
                stop_times=[float(v) for v in ordered["arrival_minutes"]],
                stop_names=[str(v) for v in ordered["stop_name"]] if has_names else [],
                locations=(
                    [(float(a), float(b)) for a, b in zip(ordered["lat"], ordered["lon"])]
                    if has_locations else []
                ),
            ))
        except ValueError as e:
            logger.error(f"Failed to process route group {group_key}: {e}")
    logger.info(f"Loaded {len(routes)} routes from {path}")
    return routes


def load_vehicles(path: str, depot: Optional[str] = None) -> List[Vehicle]:
    df = _read_csv(path)
    _require_columns(df, ["vehicle_id", "capacity", "shift_start", "shift_end"], path)
    if depot is not None and "depot" in df.columns:
        df = df[df["depot"].astype(str) == str(depot)]

    vehicles = []
    for _, row in df.iterrows():
        capacity_class = row.get("capacity_class") if "capacity_class" in df.columns else None
        vehicles.append(Vehicle(
            vehicle_id=str(row["vehicle_id"]),
            capacity=float(row["capacity"]),
            shift_start=float(row["shift_start"]),
            shift_end=float(row["shift_end"]),
            capacity_class=str(capacity_class) if pd.notna(capacity_class) else None,
        ))
    logger.info(f"Loaded {len(vehicles)} vehicles from {path}")
    return vehicles


def load_demands(path: str, depot_id: Optional[int] = None, day: Optional[str] = None) -> List[PassengerDemand]:
    df = _read_csv(path)
    _require_columns(df, [
        "demand_id", "depot_id", "route_id", "trip_id", "trip_sequence",
        "origin_stop_sequence", "origin_stop_id",
        "destination_stop_sequence", "destination_stop_id", "passengers",
    ], path)
    if depot_id is not None:
        df = df[df["depot_id"] == depot_id]
    if day is not None and "date" in df.columns:
        df = df[df["date"].astype(str) == str(day)]

    demands = []
    for _, row in df.iterrows():
        trip = {
            "route_id": int(row["route_id"]),
            "trip_id": int(row["trip_id"]),
            "trip_sequence": int(row["trip_sequence"]),
        }
        try:
            demands.append(PassengerDemand(
                demand_id=int(row["demand_id"]),
                origin=DemandVisit(
                    stop_sequence=int(row["origin_stop_sequence"]),
                    stop_id=int(row["origin_stop_id"]),
                    **trip,
                ),
                destination=DemandVisit(
                    stop_sequence=int(row["destination_stop_sequence"]),
                    stop_id=int(row["destination_stop_id"]),
                    **trip,
                ),
                passengers=float(row["passengers"]),
                depot_id=int(row["depot_id"]),
                date=str(row["date"]) if "date" in df.columns and pd.notna(row["date"]) else None,
            ))
        except ValueError as e:
            logger.error(f"Failed to parse demand row {row['demand_id']}: {e}")
    logger.info(f"Loaded {len(demands)} passenger demands from {path}")
    return demands


def load_instance(
    data_dir: str,
    depot_id: int,
    day: Optional[str] = None,
    setting: Setting = Setting.UNCAPACITATED,
    coverage_mode: CoverageMode = CoverageMode.ALL_TRIPS,
    problem_mode: ProblemMode = ProblemMode.MINIMIZE_FLEET,
    service_level: Optional[float] = None,
    fleet_availability: Optional[Dict[str, int]] = None,
) -> SchedulingInstance:
    """Assemble the instance of one depot and day from a data directory."""
    depots = load_depots(os.path.join(data_dir, DEPOTS_FILE))
    depot = next((d for d in depots if d.depot_id == depot_id), None)
    if depot is None:
        raise ValueError(f"Depot {depot_id} not found in {data_dir}")

    demand_path = os.path.join(data_dir, DEMAND_FILE)
    demands = load_demands(demand_path, depot_id, day) if os.path.isfile(demand_path) else []

    return SchedulingInstance(
        depot=depot,
        day=day,
        routes=load_routes(os.path.join(data_dir, ROUTES_FILE), depot.name, day),
        vehicles=load_vehicles(os.path.join(data_dir, VEHICLES_FILE), depot.name),
        demands=demands,
        setting=setting,
        coverage_mode=coverage_mode,
        problem_mode=problem_mode,
        service_level=service_level,
        fleet_availability=fleet_availability or {},
    )
