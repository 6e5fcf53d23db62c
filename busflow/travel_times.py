"""
Travel-time tables between stops and the depot.

Instances normally ship their own directed travel-time records. When they do
not, tables can be derived from stop coordinates either with the haversine
distance at an average speed or through the OSRM table API.
"""

import logging
import math
from typing import Dict, Iterable, List, Optional, Tuple

import requests

from busflow.config import Config
from busflow.models import Depot, Route, TravelTime
from busflow.type_defs import Coordinates, TravelTimeTable

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM: float = 6371.0

# Keep src + dest below OSRM's default 100 coordinate limit
OSRM_CHUNK_SIZE: int = 40


# ============================================================
# LOOKUP
# ============================================================

class TravelTimeLookup:
    """
    Directed travel-time lookup.

    Depot legs are kept apart from stop-to-stop legs so a depot id that
    collides with a stop id cannot shadow a regular entry.
    """

    def __init__(self, records: Iterable[TravelTime] = ()):
        self._stops: TravelTimeTable = {}
        self._depot: TravelTimeTable = {}
        for record in records:
            self.add(record)

    def add(self, record: TravelTime) -> None:
        table = self._depot if record.is_depot_travel else self._stops
        table[(record.origin_stop, record.destination_stop)] = float(record.minutes)

    def get(self, origin: int, destination: int) -> Optional[float]:
        """Stop-to-stop minutes, 0 for the same stop, None when unknown."""
        minutes = self._stops.get((origin, destination))
        if minutes is None and origin == destination:
            return 0.0
        return minutes

    def depot(self, origin: int, destination: int) -> Optional[float]:
        """Minutes of a depot leg (depot -> stop or stop -> depot)."""
        minutes = self._depot.get((origin, destination))
        if minutes is None:
            minutes = self._stops.get((origin, destination))
        return minutes

    def __len__(self) -> int:
        return len(self._stops) + len(self._depot)

    def to_records(self) -> List[TravelTime]:
        records = [
            TravelTime(origin_stop=o, destination_stop=d, minutes=m)
            for (o, d), m in self._stops.items()
        ]
        records.extend(
            TravelTime(origin_stop=o, destination_stop=d, minutes=m, is_depot_travel=True)
            for (o, d), m in self._depot.items()
        )
        return records


# ============================================================
# HAVERSINE TABLES
# ============================================================

def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance in km between two coordinates using haversine formula."""
    lat1_r, lon1_r = math.radians(lat1), math.radians(lon1)
    lat2_r, lon2_r = math.radians(lat2), math.radians(lon2)
    dlat = lat2_r - lat1_r
    dlon = lon2_r - lon1_r
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def travel_minutes(distance_km: float, speed_kmh: float) -> float:
    if speed_kmh <= 0:
        raise ValueError("speed_kmh must be positive")
    return distance_km / speed_kmh * 60.0


def collect_stop_locations(routes: Iterable[Route]) -> Dict[int, Coordinates]:
    """First known location of every stop id, in route order."""
    locations: Dict[int, Coordinates] = {}
    for route in routes:
        if not route.locations:
            continue
        for stop_id, location in zip(route.stop_ids, route.locations):
            locations.setdefault(stop_id, location)
    return locations


def compute_travel_times(
    routes: Iterable[Route],
    depot: Depot,
    speed_kmh: Optional[float] = None,
) -> List[TravelTime]:
    """
    All-pairs travel times over the stops of *routes* plus the depot.

    Pairs touching the depot are flagged as depot travel. Stops without a
    location are left out and will be reported missing by the network builder.
    """
    speed = speed_kmh or Config.AVERAGE_SPEED_KMH
    points: List[Tuple[int, Coordinates, bool]] = [
        (stop_id, loc, False) for stop_id, loc in collect_stop_locations(routes).items()
    ]
    if depot.location is not None:
        points.append((depot.depot_id, depot.location, True))
    else:
        logger.warning(f"Depot {depot.depot_id} has no location, depot legs not computed")

    records: List[TravelTime] = []
    for origin_id, origin_loc, origin_is_depot in points:
        for dest_id, dest_loc, dest_is_depot in points:
            if origin_is_depot and dest_is_depot:
                continue
            distance = haversine_km(origin_loc[0], origin_loc[1], dest_loc[0], dest_loc[1])
            records.append(TravelTime(
                origin_stop=origin_id,
                destination_stop=dest_id,
                minutes=travel_minutes(distance, speed),
                is_depot_travel=origin_is_depot or dest_is_depot,
            ))
    logger.info("Computed %s haversine travel times at %.1f km/h", len(records), speed)
    return records


# ============================================================
# OSRM TABLES
# ============================================================

def _fetch_osrm_chunk(
    table_url: str,
    sources: List[Coordinates],
    destinations: List[Coordinates],
    timeout: int,
) -> Optional[List[List[Optional[float]]]]:
    """One OSRM table request; durations in minutes or None on failure."""
    coords = [f"{lon},{lat}" for lat, lon in sources] + [f"{lon},{lat}" for lat, lon in destinations]
    src_str = ";".join(str(i) for i in range(len(sources)))
    dest_str = ";".join(str(len(sources) + j) for j in range(len(destinations)))
    url = f"{table_url}/{';'.join(coords)}?sources={src_str}&destinations={dest_str}&annotations=duration"
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        logger.warning(f"OSRM table request failed: {e}")
        return None

    if response.status_code != 200:
        logger.warning(f"OSRM HTTP Error: {response.status_code}")
        return None
    data = response.json()
    if data.get("code") != "Ok" or "durations" not in data:
        logger.warning(f"OSRM Table Error: {data.get('code')}")
        return None
    return [
        [None if seconds is None else seconds / 60.0 for seconds in row]
        for row in data["durations"]
    ]


def fetch_osrm_travel_times(
    routes: Iterable[Route],
    depot: Depot,
    table_url: Optional[str] = None,
    timeout: Optional[int] = None,
    speed_kmh: Optional[float] = None,
) -> List[TravelTime]:
    """
    Travel times from the OSRM table service, requested in chunks.

    Cells OSRM cannot answer (failed chunk or null duration) fall back to the
    haversine estimate so the table stays complete.
    """
    url = table_url or Config.OSRM_TABLE_URL
    request_timeout = timeout or Config.OSRM_TIMEOUT
    speed = speed_kmh or Config.AVERAGE_SPEED_KMH

    ids: List[int] = []
    coords: List[Coordinates] = []
    flags: List[bool] = []
    for stop_id, loc in collect_stop_locations(routes).items():
        ids.append(stop_id)
        coords.append(loc)
        flags.append(False)
    if depot.location is not None:
        ids.append(depot.depot_id)
        coords.append(depot.location)
        flags.append(True)

    n = len(coords)
    matrix: List[List[Optional[float]]] = [[None] * n for _ in range(n)]
    fallback_count = 0
    for i in range(0, n, OSRM_CHUNK_SIZE):
        src_chunk = coords[i:i + OSRM_CHUNK_SIZE]
        for j in range(0, n, OSRM_CHUNK_SIZE):
            dest_chunk = coords[j:j + OSRM_CHUNK_SIZE]
            logger.debug(f"Fetching matrix chunk {i}-{i + len(src_chunk)} x {j}-{j + len(dest_chunk)}")
            durations = _fetch_osrm_chunk(url, src_chunk, dest_chunk, request_timeout)
            if durations is None:
                continue
            for r, row in enumerate(durations):
                for c, minutes in enumerate(row):
                    matrix[i + r][j + c] = minutes

    records: List[TravelTime] = []
    for a in range(n):
        for b in range(n):
            if flags[a] and flags[b]:
                continue
            minutes = matrix[a][b]
            if minutes is None:
                fallback_count += 1
                distance = haversine_km(coords[a][0], coords[a][1], coords[b][0], coords[b][1])
                minutes = travel_minutes(distance, speed)
            records.append(TravelTime(
                origin_stop=ids[a],
                destination_stop=ids[b],
                minutes=minutes,
                is_depot_travel=flags[a] or flags[b],
            ))
    if fallback_count:
        logger.warning("OSRM returned no duration for %s pairs, used haversine fallback", fallback_count)
    return records
