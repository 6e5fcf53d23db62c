"""
Tests for busflow domain models.
"""
import pytest
from pydantic import ValidationError

from busflow.models import (
    Arc,
    ArcKind,
    DemandVisit,
    Node,
    PassengerDemand,
    Route,
    SchedulingInstance,
    Setting,
    Stop,
    Vehicle,
)

from conftest import make_route


# ============================================================
# ROUTE TESTS
# ============================================================

class TestRoute:
    """Test suite for Route model."""

    def test_route_creation(self, route_a):
        """Test creating a valid route."""
        assert route_a.key == (1, 1, 1)
        assert route_a.num_stops == 2
        assert route_a.time_at(1) == 20
        assert route_a.stop_at(2) == 2

    def test_route_parallel_arrays_must_match(self):
        """Test unequal parallel arrays are rejected."""
        with pytest.raises(ValidationError):
            Route(route_id=1, trip_id=1, trip_sequence=1,
                  stop_ids=[1, 2, 3], stop_sequence=[1, 2], stop_times=[0, 5, 10])

    def test_route_optional_arrays_must_match_when_given(self):
        """Test stop names of the wrong length are rejected."""
        with pytest.raises(ValidationError):
            Route(route_id=1, trip_id=1, trip_sequence=1,
                  stop_ids=[1, 2], stop_sequence=[1, 2], stop_times=[0, 5],
                  stop_names=["only one"])

    def test_route_times_non_decreasing(self):
        """Test decreasing stop times are rejected."""
        with pytest.raises(ValidationError):
            make_route(1, [1, 2, 3], [10, 5, 20])

    def test_route_needs_two_stops(self):
        """Test a single-stop trip is rejected."""
        with pytest.raises(ValidationError):
            make_route(1, [1], [10])

    def test_route_times_outside_day_allowed(self):
        """Test the three-day window accepts negative and next-day times."""
        route = make_route(1, [1, 2], [-30, 1450])
        assert route.time_at(1) == -30
        assert route.time_at(2) == 1450

    def test_position_out_of_range(self, route_a):
        """Test out-of-range positions raise IndexError."""
        assert not route_a.has_position(0)
        assert not route_a.has_position(3)
        with pytest.raises(IndexError):
            route_a.time_at(3)

    def test_name_at_falls_back_to_stop_id(self, route_a):
        assert route_a.name_at(1) == "1"

    def test_position_of_gapped_numbering(self):
        """Test stop numbers with gaps map to consecutive positions."""
        route = Route(route_id=1, trip_id=1, trip_sequence=1,
                      stop_ids=[10, 11, 12], stop_sequence=[1, 3, 5], stop_times=[0, 10, 20])
        assert route.position_of(3) == 2
        assert route.position_of(5) == 3
        assert route.position_of(2) is None
        assert route.stop_at(route.position_of(3)) == 11

    def test_stop_sequence_must_increase(self):
        with pytest.raises(ValidationError):
            Route(route_id=1, trip_id=1, trip_sequence=1,
                  stop_ids=[1, 2, 3], stop_sequence=[1, 3, 3], stop_times=[0, 5, 10])


# ============================================================
# VEHICLE AND DEMAND TESTS
# ============================================================

class TestVehicle:
    """Test suite for Vehicle model."""

    def test_shift_duration(self):
        vehicle = Vehicle(vehicle_id="V1", capacity=50, shift_start=360, shift_end=720)
        assert vehicle.shift_duration == 360

    def test_shift_end_before_start_rejected(self):
        with pytest.raises(ValidationError):
            Vehicle(vehicle_id="V1", capacity=50, shift_start=720, shift_end=360)

    def test_negative_capacity_rejected(self):
        with pytest.raises(ValidationError):
            Vehicle(vehicle_id="V1", capacity=-1, shift_start=0, shift_end=10)


class TestPassengerDemand:
    """Test suite for PassengerDemand model."""

    def _visit(self, position, route_id=1):
        return DemandVisit(route_id=route_id, trip_id=1, trip_sequence=1, stop_sequence=position, stop_id=position)

    def test_valid_demand(self):
        demand = PassengerDemand(demand_id=1, origin=self._visit(1), destination=self._visit(3),
                                 passengers=4, depot_id=100)
        assert demand.route_key == (1, 1, 1)

    def test_origin_must_precede_destination(self):
        with pytest.raises(ValidationError):
            PassengerDemand(demand_id=1, origin=self._visit(3), destination=self._visit(3), depot_id=100)

    def test_visits_must_share_trip(self):
        with pytest.raises(ValidationError):
            PassengerDemand(demand_id=1, origin=self._visit(1), destination=self._visit(2, route_id=2),
                            depot_id=100)


class TestSchedulingInstance:
    """Test suite for SchedulingInstance model."""

    def test_defaults(self, depot):
        instance = SchedulingInstance(depot=depot)
        assert instance.setting is Setting.UNCAPACITATED
        assert instance.routes == []
        assert instance.total_demand == 0

    def test_total_demand(self, capacity_instance):
        assert capacity_instance.total_demand == 15

    def test_setting_from_string(self, depot):
        instance = SchedulingInstance(depot=depot, setting="capacity_breaks")
        assert instance.setting is Setting.CAPACITY_BREAKS
        assert instance.setting.is_capacitated


# ============================================================
# NETWORK VALUE TESTS
# ============================================================

class TestNodeAndArc:
    """Test suite for Node and Arc values."""

    def test_node_structural_equality(self):
        assert Node(1, 1, 1, 1, 1) == Node(1, 1, 1, 1, 1)
        assert hash(Node(1, 1, 1, 1, 1)) == hash(Node(1, 1, 1, 1, 1))

    def test_depot_node(self):
        node = Node.depot_node(100, (2, 1, 1))
        assert node.is_depot
        assert node.route_key == (2, 1, 1)
        assert node.stop_id == 100

    def test_arc_direction_helpers(self):
        forward = Arc(Node(1, 1, 1, 1, 1), Node(2, 1, 1, 1, 2), "V1", (1, 2), 0.0, ArcKind.INTRA_TRIP)
        backward = Arc(Node(2, 1, 1, 1, 2), Node(1, 1, 1, 1, 1), "V1", (2, 1), 0.0, ArcKind.INTRA_TRIP)
        cross = Arc(Node(2, 1, 1, 1, 2), Node(3, 2, 1, 1, 1), "V1", (1, 3), 0.0, ArcKind.INTER_TRIP)
        assert forward.same_trip and not forward.is_backward
        assert backward.is_backward
        assert not cross.same_trip and not cross.is_backward

    def test_arcs_usable_as_keys(self):
        arc = Arc(Node(1, 1, 1, 1, 1), Node(2, 1, 1, 1, 2), "", (1, 1), 3.0, ArcKind.SERVICE)
        same = Arc(Node(1, 1, 1, 1, 1), Node(2, 1, 1, 1, 2), "", (1, 1), 3.0, ArcKind.SERVICE)
        assert {arc: 1}[same] == 1


class TestStop:
    """Test suite for Stop model."""

    def test_stop_location_optional(self):
        assert Stop(stop_id=1).location is None
        assert Stop(stop_id=2, name="Plaza", location=(42.23, -8.72)).location == (42.23, -8.72)
