"""Stop identity index: stop names, stop IDs (SID) and location IDs (SLID)."""

import csv
import io
import json
import logging
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from .errors import ConfigurationError
from .models import GeoLocation, StopIdentity

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

StopRecord = Union[StopIdentity, Mapping[str, Any]]


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _parse_coordinate(value: Any, field_name: str, stop_id: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Stop {stop_id} has invalid {field_name}: {value!r}") from e


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class StopIndex:
    """
    Resolves between stop names, stop IDs and location IDs.

    A stop name is not unique: one name usually maps to several SIDs (one per
    sign or direction), and several SIDs can share a single physical location
    (SLID). The index is built once and is read-only afterwards.
    """

    def __init__(self):
        """Initialize an empty, unloaded index."""
        self.stops: Dict[str, StopIdentity] = {}  # stop_id -> StopIdentity
        self.sids_by_name: Dict[str, List[str]] = {}  # name -> [stop_ids]
        self.sids_by_location: Dict[str, List[str]] = {}  # location_id -> [stop_ids]
        self._loaded = False

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    # --- Loading ---

    def load_all(self, records: Iterable[StopRecord]) -> Set[StopIdentity]:
        """
        Build the lookup indices from stop records.

        Args:
            records: StopIdentity objects or mappings with keys name, stop_id,
                     location_id, lat and lon. Record order defines the order of
                     sids_for_name().

        Returns:
            The set of loaded stop identities.

        Raises:
            ConfigurationError: If a record is malformed or a stop ID appears
                                twice with different names. The index is left
                                unloaded.
        """
        self.clear()

        stops: Dict[str, StopIdentity] = {}
        sids_by_name: Dict[str, List[str]] = {}
        sids_by_location: Dict[str, List[str]] = {}

        for record in records:
            stop = self._to_identity(record)
            existing = stops.get(stop.stop_id)
            if existing is not None:
                if existing.name != stop.name:
                    raise ConfigurationError(
                        f"Stop {stop.stop_id} is registered as both '{existing.name}' and '{stop.name}'"
                    )
                logger.debug(f"Ignoring duplicate record for stop {stop.stop_id}")
                continue

            stops[stop.stop_id] = stop
            sids_by_name.setdefault(stop.name, []).append(stop.stop_id)
            if stop.location_id:
                sids_by_location.setdefault(stop.location_id, []).append(stop.stop_id)

        self.stops = stops
        self.sids_by_name = sids_by_name
        self.sids_by_location = sids_by_location
        self._loaded = True
        logger.info(
            f"Loaded {len(self.stops)} stops under {len(self.sids_by_name)} names "
            f"and {len(self.sids_by_location)} locations"
        )
        return set(self.stops.values())

    def load_from_json(self, path: str) -> Set[StopIdentity]:
        """
        Load a stop database of the form
        {"by_sid": {sid: {"name", "lat", "lon", "slid"}}, "by_name": {name: [sid, ...]}}.
        """
        logger.info(f"Loading stop database from {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read stop database {path}: {e}")
            raise ConfigurationError(f"Cannot read stop database {path}: {e}") from e
        return self.load_all(self._parse_stop_database(data))

    def load_from_gtfs_stops(self, stops_path: str) -> Set[StopIdentity]:
        """Load GTFS stops.txt; parent_station becomes the location ID."""
        logger.info(f"Loading GTFS stops from {stops_path}")
        try:
            with open(stops_path, "r", encoding="utf-8-sig") as f:
                content = f.read()
        except OSError as e:
            logger.error(f"Failed to read {stops_path}: {e}")
            raise ConfigurationError(f"Cannot read {stops_path}: {e}") from e
        return self.load_all(self._parse_gtfs_stops(content))

    @staticmethod
    def _parse_stop_database(data: Any) -> List[Dict[str, Any]]:
        if not isinstance(data, dict):
            raise ConfigurationError("Stop database must be a JSON object")
        by_sid = data.get("by_sid")
        by_name = data.get("by_name")
        if not isinstance(by_sid, dict) or not isinstance(by_name, dict):
            raise ConfigurationError("Stop database must contain 'by_sid' and 'by_name' objects")

        records: List[Dict[str, Any]] = []
        seen: Set[str] = set()

        # by_name drives the order in which SIDs are returned for a name
        for name, sids in by_name.items():
            if not isinstance(sids, list):
                raise ConfigurationError(f"by_name entry for '{name}' must be a list")
            for sid in sids:
                sid = str(sid)
                info = by_sid.get(sid)
                if not isinstance(info, dict):
                    raise ConfigurationError(f"Stop {sid} listed under '{name}' is missing from by_sid")
                listed_name = info.get("name")
                if listed_name and listed_name != name:
                    raise ConfigurationError(
                        f"Stop {sid} is registered as both '{listed_name}' and '{name}'"
                    )
                records.append(
                    {
                        "name": name,
                        "stop_id": sid,
                        "location_id": info.get("slid"),
                        "lat": info.get("lat"),
                        "lon": info.get("lon"),
                    }
                )
                seen.add(sid)

        for sid, info in by_sid.items():
            if sid in seen:
                continue
            if not isinstance(info, dict) or not info.get("name"):
                logger.debug(f"Skipping unnamed stop {sid}")
                continue
            records.append(
                {
                    "name": info["name"],
                    "stop_id": str(sid),
                    "location_id": info.get("slid"),
                    "lat": info.get("lat"),
                    "lon": info.get("lon"),
                }
            )
        return records

    @staticmethod
    def _parse_gtfs_stops(csv_content: str) -> List[Dict[str, Any]]:
        """Parse stops.txt rows into stop records."""
        reader = csv.DictReader(io.StringIO(csv_content))
        if not reader.fieldnames or "stop_id" not in reader.fieldnames or "stop_name" not in reader.fieldnames:
            raise ConfigurationError("stops.txt must have stop_id and stop_name columns")

        records = []
        for row in reader:
            stop_id = (row.get("stop_id") or "").strip()
            parent_station = (row.get("parent_station") or "").strip()
            location_type = (row.get("location_type") or "").strip()

            if parent_station:
                location_id = parent_station
            elif location_type == "1":
                # A parent station is its own location
                location_id = stop_id
            else:
                location_id = None

            records.append(
                {
                    "name": (row.get("stop_name") or "").strip(),
                    "stop_id": stop_id,
                    "location_id": location_id,
                    "lat": row.get("stop_lat"),
                    "lon": row.get("stop_lon"),
                }
            )
        return records

    @staticmethod
    def _to_identity(record: StopRecord) -> StopIdentity:
        if isinstance(record, StopIdentity):
            name, stop_id = record.name, record.stop_id
            location_id, lat, lon = record.location_id, record.lat, record.lon
        else:
            name = record.get("name")
            stop_id = record.get("stop_id")
            location_id = record.get("location_id")
            lat = record.get("lat")
            lon = record.get("lon")

        if _blank(stop_id):
            raise ConfigurationError(f"Stop record without a stop_id: {record!r}")
        stop_id = str(stop_id)
        if _blank(name):
            raise ConfigurationError(f"Stop {stop_id} has no name")

        if _blank(lat) != _blank(lon):
            raise ConfigurationError(f"Stop {stop_id} has only one of lat/lon")
        if _blank(lat):
            lat = lon = None
        else:
            lat = _parse_coordinate(lat, "lat", stop_id)
            lon = _parse_coordinate(lon, "lon", stop_id)

        return StopIdentity(
            name=str(name),
            stop_id=stop_id,
            location_id=None if _blank(location_id) else str(location_id),
            lat=lat,
            lon=lon,
        )

    def _require_loaded(self) -> None:
        if not self._loaded:
            raise ConfigurationError("Stop index is not loaded")

    # --- Queries ---

    def sids_for_name(self, name: str) -> List[str]:
        """All stop IDs registered under an exact stop name; [] if unknown."""
        self._require_loaded()
        return list(self.sids_by_name.get(name, []))

    def representative_sids(self, name: str) -> List[str]:
        """
        One stop ID per distinct location sharing a name.

        Signs registered separately at the same physical location would return
        the same live arrivals, so only the first SID of each location is kept.
        Stops without a location ID are always kept.
        """
        seen_locations: Set[str] = set()
        representatives: List[str] = []

        for sid in self.sids_for_name(name):
            location_id = self.stops[sid].location_id
            if location_id:
                if location_id in seen_locations:
                    continue
                seen_locations.add(location_id)
            representatives.append(sid)
        return representatives

    def location_id_for_sid(self, stop_id: str) -> Optional[str]:
        self._require_loaded()
        stop = self.stops.get(stop_id)
        return stop.location_id if stop else None

    def names_matching_sids(self, stop_ids: Iterable[str]) -> Set[str]:
        """
        Names of the given stops and of every stop sharing their location.

        Live arrivals are tagged by SID while route sequences list stop names,
        so this is the bridge used to find a SID on a route.
        """
        self._require_loaded()
        names: Set[str] = set()
        for sid in stop_ids:
            stop = self.stops.get(sid)
            if stop is None:
                continue
            names.add(stop.name)
            if stop.location_id:
                for sibling in self.sids_by_location.get(stop.location_id, []):
                    names.add(self.stops[sibling].name)
        return names

    def related_sids(self, stop_id: str) -> List[str]:
        """The stop ID and every other stop ID at the same location."""
        self._require_loaded()
        stop = self.stops.get(stop_id)
        if stop is None or not stop.location_id:
            return [stop_id]
        return list(self.sids_by_location[stop.location_id])

    def geo_for_sid(self, stop_id: str) -> Optional[GeoLocation]:
        self._require_loaded()
        stop = self.stops.get(stop_id)
        return stop.geo if stop else None

    def all_names(self) -> List[str]:
        self._require_loaded()
        return list(self.sids_by_name.keys())

    def search_names(self, query: str) -> List[str]:
        """Stop names containing query (case-insensitive), for autocomplete."""
        self._require_loaded()
        query_lower = query.strip().lower()
        if not query_lower:
            return []
        return [name for name in self.sids_by_name if query_lower in name.lower()]

    def nearest_stop_name(self, lat: float, lon: float) -> Optional[str]:
        """Name of the stop closest to a coordinate, or None if no stop has coordinates."""
        nearest: Optional[str] = None
        min_distance = math.inf

        for name in self.all_names():
            sids = self.representative_sids(name)
            if not sids:
                continue
            geo = self.stops[sids[0]].geo
            if geo is None:
                continue
            distance = haversine_km(lat, lon, geo.lat, geo.lon)
            if distance < min_distance:
                min_distance = distance
                nearest = name
        return nearest

    def clear(self) -> None:
        """Drop all loaded data; queries fail until the next load."""
        self.stops = {}
        self.sids_by_name = {}
        self.sids_by_location = {}
        self._loaded = False
