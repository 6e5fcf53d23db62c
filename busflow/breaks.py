"""
Driver break opportunities.

A vehicle whose shift is longer than LONG_SHIFT_MINUTES must take either one
45-minute break or a split 15 + 30 minute break. Breaks are taken while
deadheading between trips, so each inter-trip arc of a long-shift vehicle is
checked against the three break windows below.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from busflow.models import Arc, ArcKind
from busflow.network import Network
from busflow.travel_times import TravelTimeLookup

logger = logging.getLogger(__name__)

# ============================================================
# CONFIGURATION
# ============================================================

LONG_SHIFT_MINUTES: int = 270

SINGLE_BREAK_MINUTES: int = 45
SPLIT_FIRST_BREAK_MINUTES: int = 15
SPLIT_SECOND_BREAK_MINUTES: int = 30

# Latest shift offset for the single break and the gap allowed after any break
MAX_DRIVE_BEFORE_BREAK: int = 270
MAX_DRIVE_AFTER_BREAK: int = 270
# The 15-minute part must start within the first 3 hours
SPLIT_FIRST_LATEST_OFFSET: int = 180
# The 30-minute part must start between 3h and 4h45 into the shift
SPLIT_SECOND_EARLIEST_OFFSET: int = 180
SPLIT_SECOND_LATEST_OFFSET: int = 285

BREAK_45 = "45"
BREAK_15 = "15"
BREAK_30 = "30"

PATTERN_SINGLE = "single_45"
PATTERN_SPLIT = "split_15_30"


@dataclass
class BreakSets:
    """Break-eligible inter-trip arcs per vehicle (Phi45, Phi15, Phi30)."""
    phi_45: Dict[str, List[Arc]] = field(default_factory=dict)
    phi_15: Dict[str, List[Arc]] = field(default_factory=dict)
    phi_30: Dict[str, List[Arc]] = field(default_factory=dict)

    @property
    def vehicles(self) -> List[str]:
        return list(self.phi_45)

    def for_vehicle(self, vehicle_id: str) -> Dict[str, List[Arc]]:
        return {
            BREAK_45: self.phi_45.get(vehicle_id, []),
            BREAK_15: self.phi_15.get(vehicle_id, []),
            BREAK_30: self.phi_30.get(vehicle_id, []),
        }

    def usage(self, vehicle_id: str, arcs: List[Arc]) -> Dict[str, int]:
        """How many of *arcs* fall in each break set of the vehicle."""
        chosen = set(arcs)
        return {
            name: sum(1 for arc in eligible if arc in chosen)
            for name, eligible in self.for_vehicle(vehicle_id).items()
        }

    def counts(self) -> Dict[str, int]:
        return {
            BREAK_45: sum(len(v) for v in self.phi_45.values()),
            BREAK_15: sum(len(v) for v in self.phi_15.values()),
            BREAK_30: sum(len(v) for v in self.phi_30.values()),
        }


def requires_break(shift_start: float, shift_end: float) -> bool:
    return shift_end - shift_start > LONG_SHIFT_MINUTES


def is_compliant(pattern: Optional[str], usage: Dict[str, int]) -> bool:
    if pattern == PATTERN_SINGLE:
        return usage.get(BREAK_45, 0) >= 1
    if pattern == PATTERN_SPLIT:
        return usage.get(BREAK_15, 0) >= 1 and usage.get(BREAK_30, 0) >= 1
    return True


def classify_break_opportunities(network: Network, travel: TravelTimeLookup) -> BreakSets:
    """
    Classify every inter-trip arc of a long-shift vehicle into Phi45/Phi15/Phi30.

    With ``dep``/``arr`` the scheduled times at the arc ends and
    ``slack = arr - dep``:

    - Phi45: slack >= travel + 45, dep - shift_start <= 270, shift_end - arr <= 270
    - Phi15: slack >= travel + 15, dep - shift_start <= 180
    - Phi30: slack >= travel + 30, 180 <= dep - shift_start <= 285, shift_end - arr <= 270

    An arc may belong to several sets.
    """
    sets = BreakSets()
    inter_by_vehicle = {
        vid: [a for a in arcs if a.kind is ArcKind.INTER_TRIP]
        for vid, arcs in network.arcs_by_vehicle().items()
    }

    for vehicle in network.vehicles:
        if not requires_break(vehicle.shift_start, vehicle.shift_end):
            continue
        vid = vehicle.vehicle_id
        phi_45: List[Arc] = []
        phi_15: List[Arc] = []
        phi_30: List[Arc] = []

        for arc in inter_by_vehicle.get(vid, []):
            dep = network.scheduled_time(arc.start)
            arr = network.scheduled_time(arc.end)
            minutes = travel.get(arc.start.stop_id, arc.end.stop_id)
            if dep is None or arr is None or minutes is None:
                logger.debug(f"Cannot classify break opportunity for arc {arc}")
                continue
            slack = arr - dep
            offset = dep - vehicle.shift_start
            remaining = vehicle.shift_end - arr

            if (slack >= minutes + SINGLE_BREAK_MINUTES
                    and offset <= MAX_DRIVE_BEFORE_BREAK
                    and remaining <= MAX_DRIVE_AFTER_BREAK):
                phi_45.append(arc)
            if slack >= minutes + SPLIT_FIRST_BREAK_MINUTES and offset <= SPLIT_FIRST_LATEST_OFFSET:
                phi_15.append(arc)
            if (slack >= minutes + SPLIT_SECOND_BREAK_MINUTES
                    and SPLIT_SECOND_EARLIEST_OFFSET <= offset <= SPLIT_SECOND_LATEST_OFFSET
                    and remaining <= MAX_DRIVE_AFTER_BREAK):
                phi_30.append(arc)

        sets.phi_45[vid] = phi_45
        sets.phi_15[vid] = phi_15
        sets.phi_30[vid] = phi_30

    counts = sets.counts()
    logger.info(
        f"Break opportunities for {len(sets.vehicles)} long-shift vehicles: "
        f"45={counts[BREAK_45]}, 15={counts[BREAK_15]}, 30={counts[BREAK_30]}"
    )
    return sets
