"""
Tests for the optimization-problem builder.

Structure tests only build the pulp model; tests marked ``optimizer`` solve
small instances with the bundled CBC solver.
"""
from collections import defaultdict

import pulp
import pytest

from busflow.breaks import PATTERN_SINGLE, classify_break_opportunities
from busflow.config import SolverConfig
from busflow.models import (
    ArcKind,
    CoverageMode,
    ProblemMode,
    SchedulingInstance,
    Setting,
    SolverStatus,
    Vehicle,
)
from busflow.network import build_network
from busflow.optimizer import build_model, solve_model
from busflow.pipeline import run_instance
from busflow.travel_times import TravelTimeLookup

from conftest import make_demand, make_route, make_travel

SOLVER = SolverConfig(solver="cbc", time_limit_seconds=60)


def _model(instance, with_breaks=False):
    travel = TravelTimeLookup(instance.travel_times)
    network = build_network(instance, travel)
    break_sets = classify_break_opportunities(network, travel) if with_breaks else None
    return build_model(network, instance, travel, break_sets)


def _long_shift_instance(depot, shift_end=300):
    route_a = make_route(1, [1, 2], [80, 100])
    route_b = make_route(2, [3, 4], [155, 170])
    return SchedulingInstance(
        depot=depot,
        routes=[route_a, route_b],
        vehicles=[
            Vehicle(vehicle_id="V1", capacity=40, shift_start=0, shift_end=shift_end),
            Vehicle(vehicle_id="V2", capacity=40, shift_start=0, shift_end=shift_end),
        ],
        travel_times=make_travel({(2, 3): 10}, depot_out={1: 15, 3: 15}, depot_in={2: 5, 4: 5}),
        demands=[make_demand(1, route_a, 1, 2, 4), make_demand(2, route_b, 1, 2, 6)],
        setting=Setting.CAPACITY_BREAKS,
        coverage_mode=CoverageMode.ALL_TRIPS_WITH_DEMAND,
    )


# ============================================================
# UNCAPACITATED MODEL TESTS
# ============================================================

class TestUncapacitatedModel:
    """Test suite for the flow LP."""

    def test_variables_continuous(self, uncapacitated_instance):
        model = _model(uncapacitated_instance)
        assert len(model.flows) == 7
        assert all(var.cat == pulp.LpContinuous for var in model.flows.values())
        assert all(var.lowBound == 0 for var in model.flows.values())

    def test_constraint_families(self, uncapacitated_instance):
        """Test one conservation row per service node and one unit row per service arc."""
        model = _model(uncapacitated_instance)
        assert model.constraint_counts["service"] == 2
        assert model.constraint_counts["flow"] == 4
        assert model.patterns == {}

    def test_objective_counts_pull_outs(self, uncapacitated_instance):
        model = _model(uncapacitated_instance)
        starts = {model.flows[a].name for a in model.network.depot_start_arcs}
        objective_vars = {var.name for var in model.problem.objective.keys()}
        assert objective_vars == starts


# ============================================================
# CAPACITY MODEL TESTS
# ============================================================

class TestCapacityModel:
    """Test suite for the vehicle-specific MILP."""

    def test_variables_binary(self, capacity_instance):
        model = _model(capacity_instance)
        assert all(var.cat == pulp.LpInteger and var.upBound == 1 for var in model.flows.values())

    def test_constraint_families(self, capacity_instance):
        model = _model(capacity_instance)
        counts = model.constraint_counts
        assert counts["flow_in"] == 4
        assert counts["flow_out"] == 4
        assert counts["cover"] == 2
        assert counts["depot_once"] == 2
        assert counts["capacity"] == 0
        assert counts["exclusive"] == 0

    def test_mutual_exclusion(self, depot):
        """Test a late-ending segment excludes leaving the trip from an earlier one."""
        route_a = make_route(1, [1, 2, 5], [20, 30, 45])
        route_b = make_route(2, [3, 4], [50, 60])
        instance = SchedulingInstance(
            depot=depot,
            routes=[route_a, route_b],
            vehicles=[Vehicle(vehicle_id="V1", capacity=40, shift_start=0, shift_end=200)],
            travel_times=make_travel(
                {(2, 3): 10, (5, 3): 10},
                depot_out={1: 15, 2: 15, 3: 15},
                depot_in={2: 5, 5: 5, 4: 5},
            ),
            demands=[
                make_demand(1, route_a, 2, 3),
                make_demand(2, route_a, 1, 2),
                make_demand(3, route_b, 1, 2),
            ],
            setting=Setting.CAPACITY,
            coverage_mode=CoverageMode.ALL_TRIPS_WITH_DEMAND,
        )
        model = _model(instance)
        (inter,) = model.network.inter_trip_arcs
        assert inter.demand_ids == (2, 3)
        assert model.constraint_counts["exclusive"] == 1

    def test_capacity_rows_only_where_overflow_possible(self, depot):
        route = make_route(1, [1, 2, 3], [10, 20, 30])
        instance = SchedulingInstance(
            depot=depot,
            routes=[route],
            vehicles=[Vehicle(vehicle_id="V1", capacity=15, shift_start=-100, shift_end=200)],
            travel_times=make_travel({}, depot_out={1: 5, 2: 5}, depot_in={3: 5}),
            demands=[make_demand(1, route, 1, 3, 10), make_demand(2, route, 2, 3, 10)],
            setting=Setting.CAPACITY,
            coverage_mode=CoverageMode.ALL_TRIPS_WITH_DEMAND,
        )
        model = _model(instance)
        assert model.constraint_counts["capacity"] == 1

    def test_fleet_availability(self, capacity_instance):
        vehicles = [v.model_copy(update={"capacity_class": "small"}) for v in capacity_instance.vehicles]
        instance = capacity_instance.model_copy(
            update={"vehicles": vehicles, "fleet_availability": {"small": 1}}
        )
        model = _model(instance)
        assert model.constraint_counts["class"] == 1

    def test_maximize_coverage_rows(self, capacity_instance):
        instance = capacity_instance.model_copy(
            update={"problem_mode": ProblemMode.MAXIMIZE_COVERAGE, "service_level": 0.5}
        )
        model = _model(instance)
        assert model.constraint_counts["service_level"] == 1
        assert model.constraint_counts["cover"] == 2

    def test_break_pattern_variables(self, depot):
        model = _model(_long_shift_instance(depot), with_breaks=True)
        assert set(model.patterns) == {"V1", "V2"}
        assert model.constraint_counts["break45"] == 2
        assert model.constraint_counts["break15"] == 2
        assert model.constraint_counts["break30"] == 2

    def test_breaks_ignored_in_plain_capacity_setting(self, depot):
        instance = _long_shift_instance(depot).model_copy(update={"setting": Setting.CAPACITY})
        model = _model(instance, with_breaks=True)
        assert model.patterns == {}


# ============================================================
# SOLVE TESTS
# ============================================================

@pytest.mark.optimizer
class TestSolve:
    """Test suite solving small instances end to end."""

    def test_uncapacitated_flow_properties(self, uncapacitated_instance):
        """Test unit service flow and conservation on the solved LP."""
        model = _model(uncapacitated_instance)
        result = solve_model(model, SOLVER)
        assert result.status is SolverStatus.OPTIMAL
        assert result.objective_value == pytest.approx(1.0)

        values = model.arc_values(result.values)
        for arc in model.network.service_arcs:
            assert values[arc] == pytest.approx(1.0)

        balance = defaultdict(float)
        for arc, value in values.items():
            balance[arc.start] -= value
            balance[arc.end] += value
        for arc in model.network.arcs:
            if arc.kind in (ArcKind.SERVICE, ArcKind.INTRA_TRIP, ArcKind.INTER_TRIP):
                assert balance[arc.start] == pytest.approx(0.0, abs=1e-6)
                assert balance[arc.end] == pytest.approx(0.0, abs=1e-6)

    def test_capacity_single_vehicle(self, capacity_instance):
        result = run_instance(capacity_instance, SOLVER)
        solution = result.solution
        assert solution.status is SolverStatus.OPTIMAL
        assert solution.vehicles_used == 1
        (itinerary,) = solution.itineraries
        assert sorted(itinerary.served_demand_ids) == [1, 2]
        assert itinerary.returned_to_depot

    def test_capacity_infeasible(self, capacity_instance):
        """Test a demand larger than every vehicle makes full coverage infeasible."""
        small = [v.model_copy(update={"capacity": 8}) for v in capacity_instance.vehicles]
        result = run_instance(capacity_instance.model_copy(update={"vehicles": small}), SOLVER)
        assert result.solution.status is SolverStatus.INFEASIBLE
        assert result.solution.itineraries == []

    def test_maximize_coverage_partial_service(self, capacity_instance):
        """Test coverage mode serves what fits and meets the service level."""
        small = [v.model_copy(update={"capacity": 8}) for v in capacity_instance.vehicles]
        instance = capacity_instance.model_copy(update={
            "vehicles": small,
            "problem_mode": ProblemMode.MAXIMIZE_COVERAGE,
            "service_level": 0.3,
        })
        solution = run_instance(instance, SOLVER).solution
        assert solution.status is SolverStatus.OPTIMAL
        assert solution.vehicles_used == 1
        assert solution.itineraries[0].served_demand_ids == [2]
        assert solution.objective_value == pytest.approx(1 - 5 / 16)

    def test_break_pattern_selected(self, depot):
        """Test the only feasible plan uses one vehicle with the single 45-minute break."""
        solution = run_instance(_long_shift_instance(depot), SOLVER).solution
        assert solution.status is SolverStatus.OPTIMAL
        assert solution.vehicles_used == 1
        (itinerary,) = solution.itineraries
        assert itinerary.break_pattern == PATTERN_SINGLE
        assert itinerary.break_compliant
        assert itinerary.break_usage["45"] == 1
