"""
Type definitions for busflow.

This module contains type aliases used across the package.
"""

from typing import Dict, Tuple

# =============================================================================
# Basic type aliases
# =============================================================================

# Coordinates as (lat, lon) tuples
Coordinates = Tuple[float, float]

# (route_id, trip_id, trip_sequence) identifying one scheduled trip instance
RouteKey = Tuple[int, int, int]

# Directed travel-time table: {(origin_stop, destination_stop): minutes}
TravelTimeTable = Dict[Tuple[int, int], float]

# =============================================================================
# Network types
# =============================================================================

# (start segment id, end segment id); 0 stands for the depot
SegmentPair = Tuple[int, int]

# Merged stop-position interval on one trip
PositionInterval = Tuple[int, int]

# =============================================================================
# Solver types
# =============================================================================

# Solved variable values keyed by variable name
VariableValues = Dict[str, float]
