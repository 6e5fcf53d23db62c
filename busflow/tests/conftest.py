"""
Pytest configuration and shared fixtures for busflow tests.

The base scenario has two trips served from one depot:

    route A (1,1,1): stop 1 @ 20 -> stop 2 @ 30
    route B (2,1,1): stop 3 @ 50 -> stop 4 @ 60

depot -> first stops takes 15 min, last stops -> depot 5 min, and the
deadhead 2 -> 3 takes 10 min, so one vehicle can run A then B.
"""
import os
import sys
from typing import List

import pytest

# Add repository root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from busflow.models import (
    CoverageMode,
    Depot,
    DemandVisit,
    PassengerDemand,
    Route,
    SchedulingInstance,
    Setting,
    TravelTime,
    Vehicle,
)
from busflow.travel_times import TravelTimeLookup

DEPOT_ID = 100


# ============================================================
# HELPERS
# ============================================================

def make_route(route_id: int, stop_ids: List[int], times: List[float], trip_id: int = 1, trip_sequence: int = 1) -> Route:
    return Route(
        route_id=route_id,
        trip_id=trip_id,
        trip_sequence=trip_sequence,
        stop_ids=stop_ids,
        stop_sequence=list(range(1, len(stop_ids) + 1)),
        stop_times=times,
    )


def make_demand(demand_id: int, route: Route, origin_pos: int, dest_pos: int, passengers: float = 1.0) -> PassengerDemand:
    rid, tid, tseq = route.key
    return PassengerDemand(
        demand_id=demand_id,
        origin=DemandVisit(route_id=rid, trip_id=tid, trip_sequence=tseq,
                           stop_sequence=origin_pos, stop_id=route.stop_at(origin_pos)),
        destination=DemandVisit(route_id=rid, trip_id=tid, trip_sequence=tseq,
                                stop_sequence=dest_pos, stop_id=route.stop_at(dest_pos)),
        passengers=passengers,
        depot_id=DEPOT_ID,
    )


def make_travel(stop_pairs: dict, depot_out: dict, depot_in: dict) -> List[TravelTime]:
    records = [
        TravelTime(origin_stop=o, destination_stop=d, minutes=m)
        for (o, d), m in stop_pairs.items()
    ]
    records += [
        TravelTime(origin_stop=DEPOT_ID, destination_stop=s, minutes=m, is_depot_travel=True)
        for s, m in depot_out.items()
    ]
    records += [
        TravelTime(origin_stop=s, destination_stop=DEPOT_ID, minutes=m, is_depot_travel=True)
        for s, m in depot_in.items()
    ]
    return records


# ============================================================
# FIXTURES FOR INPUT RECORDS
# ============================================================

@pytest.fixture
def depot() -> Depot:
    """Create the depot fixture."""
    return Depot(depot_id=DEPOT_ID, name="Central", location=(42.2400, -8.7200))


@pytest.fixture
def route_a() -> Route:
    return make_route(1, [1, 2], [20, 30])


@pytest.fixture
def route_b() -> Route:
    return make_route(2, [3, 4], [50, 60])


@pytest.fixture
def two_routes(route_a, route_b) -> List[Route]:
    return [route_a, route_b]


@pytest.fixture
def travel_records() -> List[TravelTime]:
    return make_travel(
        stop_pairs={(2, 3): 10, (4, 1): 10},
        depot_out={1: 15, 3: 15},
        depot_in={2: 5, 4: 5},
    )


@pytest.fixture
def travel(travel_records) -> TravelTimeLookup:
    return TravelTimeLookup(travel_records)


@pytest.fixture
def vehicles() -> List[Vehicle]:
    return [
        Vehicle(vehicle_id="V1", capacity=40, shift_start=0, shift_end=200),
        Vehicle(vehicle_id="V2", capacity=40, shift_start=0, shift_end=200),
    ]


@pytest.fixture
def demands(route_a, route_b) -> List[PassengerDemand]:
    return [
        make_demand(1, route_a, 1, 2, passengers=10),
        make_demand(2, route_b, 1, 2, passengers=5),
    ]


# ============================================================
# FIXTURES FOR INSTANCES
# ============================================================

@pytest.fixture
def uncapacitated_instance(depot, two_routes, vehicles, travel_records) -> SchedulingInstance:
    return SchedulingInstance(
        depot=depot,
        day="2024-03-04",
        routes=two_routes,
        vehicles=vehicles,
        travel_times=travel_records,
        setting=Setting.UNCAPACITATED,
        coverage_mode=CoverageMode.ALL_TRIPS,
    )


@pytest.fixture
def capacity_instance(depot, two_routes, vehicles, travel_records, demands) -> SchedulingInstance:
    return SchedulingInstance(
        depot=depot,
        day="2024-03-04",
        routes=two_routes,
        vehicles=vehicles,
        travel_times=travel_records,
        demands=demands,
        setting=Setting.CAPACITY,
        coverage_mode=CoverageMode.ALL_TRIPS_WITH_DEMAND,
    )


# ============================================================
# FIXTURES FOR CSV DATA
# ============================================================

DEPOTS_CSV = """id,name,lat,lon
100,Central,42.2200,-8.7300
200,North,42.3000,-8.7000
"""

ROUTES_CSV = """day,depot,route_id,trip_id,trip_sequence,stop_sequence,stop_id,stop_name,arrival_minutes,lat,lon
2024-03-04,Central,1,1,1,2,2,Plaza,30,42.2328,-8.7226
2024-03-04,Central,1,1,1,1,1,Station,20,42.2406,-8.7207
2024-03-04,Central,2,1,1,1,3,Market,50,42.2350,-8.7150
2024-03-04,Central,2,1,1,2,4,Port,60,42.2380,-8.7100
2024-03-04,Central,3,1,1,1,5,Broken,90,42.2300,-8.7000
2024-03-04,Central,3,1,1,2,6,Broken,80,42.2310,-8.7010
2024-03-05,Central,1,1,1,1,1,Station,20,42.2406,-8.7207
2024-03-05,Central,1,1,1,2,2,Plaza,30,42.2328,-8.7226
2024-03-04,North,9,1,1,1,7,Far,20,42.3000,-8.7000
2024-03-04,North,9,1,1,2,8,Farther,40,42.3100,-8.7000
"""

VEHICLES_CSV = """vehicle_id,depot,capacity,shift_start,shift_end,capacity_class
V1,Central,40,0,600,small
V2,Central,60,300,900,
V9,North,40,0,600,small
"""

DEMAND_CSV = """demand_id,depot_id,date,route_id,trip_id,trip_sequence,origin_stop_sequence,origin_stop_id,destination_stop_sequence,destination_stop_id,passengers
1,100,2024-03-04,1,1,1,1,1,2,2,10
2,100,2024-03-04,2,1,1,1,3,2,4,5
3,100,2024-03-05,1,1,1,1,1,2,2,3
4,100,2024-03-04,2,1,1,2,4,1,3,2
5,200,2024-03-04,9,1,1,1,7,2,8,4
"""


@pytest.fixture
def data_dir(tmp_path):
    (tmp_path / "depots.csv").write_text(DEPOTS_CSV)
    (tmp_path / "routes.csv").write_text(ROUTES_CSV)
    (tmp_path / "vehicles.csv").write_text(VEHICLES_CSV)
    (tmp_path / "demand.csv").write_text(DEMAND_CSV)
    return tmp_path


# ============================================================
# PYTEST CONFIGURATION
# ============================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "optimizer: marks tests that call the MILP solver")
