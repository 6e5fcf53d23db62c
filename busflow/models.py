"""
Domain model for busflow.

Input records (stops, trips, vehicles, demand) are pydantic models validated
on construction. Network values (nodes, arcs) are frozen dataclasses so they
can be used as dictionary keys and set members.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from busflow.type_defs import Coordinates, RouteKey, SegmentPair

# Vehicle id carried by arcs of the uncapacitated setting
UNASSIGNED_VEHICLE: str = ""

# Segment id standing for the depot in an arc's demand_ids pair
DEPOT_SEGMENT: int = 0


# ============================================================
# ENUMS
# ============================================================

class Setting(str, Enum):
    """Which model family to build."""

    UNCAPACITATED = "uncapacitated"
    CAPACITY = "capacity"
    CAPACITY_BREAKS = "capacity_breaks"

    @property
    def is_capacitated(self) -> bool:
        return self is not Setting.UNCAPACITATED


class CoverageMode(str, Enum):
    """What must be served."""

    ALL_TRIPS = "all_trips"
    ALL_TRIPS_WITH_DEMAND = "all_trips_with_demand"
    DEMAND_SEGMENTS = "demand_segments"


class ProblemMode(str, Enum):
    MINIMIZE_FLEET = "minimize_fleet"
    MAXIMIZE_COVERAGE = "maximize_coverage"


class SolverStatus(str, Enum):
    OPTIMAL = "optimal"
    INFEASIBLE = "infeasible"
    TIME_LIMIT = "time_limit"
    OTHER = "other"


class ArcKind(str, Enum):
    """Kind of a network arc. Every branch on kind must handle all five."""

    SERVICE = "service"
    DEPOT_START = "depot_start"
    DEPOT_END = "depot_end"
    INTRA_TRIP = "intra_trip"
    INTER_TRIP = "inter_trip"


# ============================================================
# INPUT RECORDS
# ============================================================

class Stop(BaseModel):
    stop_id: int
    name: str = ""
    location: Optional[Coordinates] = None


class Depot(BaseModel):
    depot_id: int
    name: str = ""
    location: Optional[Coordinates] = None


class Route(BaseModel):
    """
    One scheduled trip instance.

    Parallel arrays are indexed by 1-based position (``stop_times[p - 1]``).
    ``stop_sequence`` keeps the original stop numbering of the timetable,
    which may have gaps; ``position_of`` maps a stop number to its position.
    """

    route_id: int = Field(..., description="Line identifier")
    trip_id: int = Field(..., description="Trip identifier within the line")
    trip_sequence: int = Field(..., description="Occurrence of the trip within the day")
    stop_ids: List[int] = Field(..., min_length=2)
    stop_sequence: List[int]
    stop_times: List[float] = Field(..., description="Scheduled absolute minutes")
    stop_names: List[str] = Field(default_factory=list)
    locations: List[Coordinates] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_parallel_arrays(self) -> "Route":
        n = len(self.stop_ids)
        if len(self.stop_sequence) != n or len(self.stop_times) != n:
            raise ValueError(
                f"route {self.key}: stop_ids, stop_sequence and stop_times must have equal length"
            )
        if self.stop_names and len(self.stop_names) != n:
            raise ValueError(f"route {self.key}: stop_names length mismatch")
        if self.locations and len(self.locations) != n:
            raise ValueError(f"route {self.key}: locations length mismatch")
        for earlier, later in zip(self.stop_times, self.stop_times[1:]):
            if later < earlier:
                raise ValueError(f"route {self.key}: stop_times must be non-decreasing")
        for earlier, later in zip(self.stop_sequence, self.stop_sequence[1:]):
            if later <= earlier:
                raise ValueError(f"route {self.key}: stop_sequence must be strictly increasing")
        return self

    @property
    def key(self) -> RouteKey:
        return (self.route_id, self.trip_id, self.trip_sequence)

    @property
    def num_stops(self) -> int:
        return len(self.stop_ids)

    def has_position(self, position: int) -> bool:
        return 1 <= position <= len(self.stop_ids)

    def position_of(self, stop_number: int) -> Optional[int]:
        """1-based position of a timetable stop number, None if the trip has no such stop."""
        try:
            return self.stop_sequence.index(stop_number) + 1
        except ValueError:
            return None

    def time_at(self, position: int) -> float:
        """Scheduled time at a 1-based position."""
        if not self.has_position(position):
            raise IndexError(f"position {position} out of range for route {self.key}")
        return self.stop_times[position - 1]

    def stop_at(self, position: int) -> int:
        if not self.has_position(position):
            raise IndexError(f"position {position} out of range for route {self.key}")
        return self.stop_ids[position - 1]

    def name_at(self, position: int) -> str:
        if self.stop_names and self.has_position(position):
            return self.stop_names[position - 1]
        return str(self.stop_at(position))


class TravelTime(BaseModel):
    origin_stop: int
    destination_stop: int
    minutes: float = Field(..., ge=0)
    is_depot_travel: bool = False


class Vehicle(BaseModel):
    vehicle_id: str = Field(..., min_length=1)
    capacity: float = Field(..., ge=0)
    shift_start: float
    shift_end: float
    capacity_class: Optional[str] = None

    @model_validator(mode="after")
    def validate_shift(self) -> "Vehicle":
        if self.shift_end < self.shift_start:
            raise ValueError(f"vehicle {self.vehicle_id}: shift_end before shift_start")
        return self

    @property
    def shift_duration(self) -> float:
        return self.shift_end - self.shift_start


class DemandVisit(BaseModel):
    """Where a passenger boards or alights on one trip instance."""

    route_id: int
    trip_id: int
    trip_sequence: int
    stop_sequence: int = Field(..., description="Stop number in the route's stop_sequence numbering")
    stop_id: int

    @property
    def route_key(self) -> RouteKey:
        return (self.route_id, self.trip_id, self.trip_sequence)


class PassengerDemand(BaseModel):
    demand_id: int
    origin: DemandVisit
    destination: DemandVisit
    passengers: float = Field(1.0, ge=0)
    depot_id: int
    date: Optional[str] = None

    @model_validator(mode="after")
    def validate_same_trip(self) -> "PassengerDemand":
        if self.origin.route_key != self.destination.route_key:
            raise ValueError(f"demand {self.demand_id}: origin and destination on different trips")
        if self.origin.stop_sequence >= self.destination.stop_sequence:
            raise ValueError(f"demand {self.demand_id}: origin must precede destination")
        return self

    @property
    def route_key(self) -> RouteKey:
        return self.origin.route_key


class SchedulingInstance(BaseModel):
    """One (depot, day) problem together with the chosen setting and modes."""

    depot: Depot
    day: Optional[str] = None
    routes: List[Route] = Field(default_factory=list)
    vehicles: List[Vehicle] = Field(default_factory=list)
    travel_times: List[TravelTime] = Field(default_factory=list)
    demands: List[PassengerDemand] = Field(default_factory=list)
    setting: Setting = Setting.UNCAPACITATED
    coverage_mode: CoverageMode = CoverageMode.ALL_TRIPS
    problem_mode: ProblemMode = ProblemMode.MINIMIZE_FLEET
    service_level: Optional[float] = Field(None, description="Required served share in maximize_coverage")
    fleet_availability: Dict[str, int] = Field(
        default_factory=dict, description="Capacity class -> vehicles that may be dispatched"
    )

    @property
    def total_demand(self) -> float:
        return sum(d.passengers for d in self.demands)


# ============================================================
# NETWORK VALUES
# ============================================================

@dataclass(frozen=True, order=True)
class Node:
    """A visit event: a stop at a position of one trip. Position 0 is the trip's depot node."""
    stop_id: int
    route_id: int
    trip_id: int
    trip_sequence: int
    stop_sequence: int

    @property
    def route_key(self) -> RouteKey:
        return (self.route_id, self.trip_id, self.trip_sequence)

    @property
    def is_depot(self) -> bool:
        return self.stop_sequence == 0

    @classmethod
    def depot_node(cls, depot_id: int, route_key: RouteKey) -> "Node":
        return cls(depot_id, route_key[0], route_key[1], route_key[2], 0)


@dataclass(frozen=True)
class Arc:
    start: Node
    end: Node
    vehicle_id: str
    demand_ids: SegmentPair
    load: float
    kind: ArcKind

    @property
    def same_trip(self) -> bool:
        return self.start.route_key == self.end.route_key

    @property
    def is_backward(self) -> bool:
        return self.same_trip and self.end.stop_sequence < self.start.stop_sequence

    def sort_key(self) -> Tuple:
        return (self.vehicle_id, self.kind.value, self.start, self.end, self.demand_ids)
