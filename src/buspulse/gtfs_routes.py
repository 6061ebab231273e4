"""Route definitions built from GTFS static files."""

import csv
import io
import logging
import os
from typing import Dict, List, Optional, Tuple

from .errors import ConfigurationError
from .models import INBOUND, OUTBOUND, RouteDetail, RouteStop

logger = logging.getLogger(__name__)


class GTFSRouteSource:
    """
    Serves RouteDetail objects and stop-to-route membership from GTFS data.

    For every route and direction the longest trip is taken as the
    representative stop sequence (the first one seen wins ties).
    """

    def __init__(self):
        """Initialize an empty route source."""
        self.route_names: Dict[str, str] = {}  # route_id -> display name
        self.details: Dict[str, RouteDetail] = {}  # route_id -> RouteDetail
        self.routes_by_stop: Dict[str, List[str]] = {}  # stop_id -> [route_ids]

    def load_from_dir(self, gtfs_dir: str) -> None:
        """Load routes.txt, trips.txt, stop_times.txt and stops.txt from a directory."""
        self.load_from_files(
            os.path.join(gtfs_dir, "routes.txt"),
            os.path.join(gtfs_dir, "trips.txt"),
            os.path.join(gtfs_dir, "stop_times.txt"),
            os.path.join(gtfs_dir, "stops.txt"),
        )

    def load_from_files(self, routes_path: str, trips_path: str, stop_times_path: str, stops_path: str) -> None:
        """Load GTFS data from local CSV files."""
        logger.info("Loading GTFS route data from local files")
        contents = []
        for path in (routes_path, trips_path, stop_times_path, stops_path):
            try:
                with open(path, "r", encoding="utf-8-sig") as f:
                    contents.append(f.read())
            except OSError as e:
                logger.error(f"Failed to read {path}: {e}")
                raise ConfigurationError(f"Cannot read {path}: {e}") from e
        self.load_from_text(*contents)

    def load_from_text(self, routes_csv: str, trips_csv: str, stop_times_csv: str, stops_csv: str) -> None:
        self._load_routes(routes_csv)
        trips = self._load_trips(trips_csv)
        stop_names = self._load_stop_names(stops_csv)
        self._load_stop_times(stop_times_csv, trips, stop_names)
        logger.info(f"Loaded {len(self.details)} routes serving {len(self.routes_by_stop)} stops")

    def _load_routes(self, csv_content: str) -> None:
        """Parse routes.txt."""
        self.route_names = {}
        reader = csv.DictReader(io.StringIO(csv_content))
        for row in reader:
            route_id = row["route_id"]
            route_name = row.get("route_short_name") or row.get("route_long_name") or route_id
            self.route_names[route_id] = route_name

    @staticmethod
    def _load_trips(csv_content: str) -> Dict[str, Tuple[str, str, str]]:
        """Parse trips.txt into trip_id -> (route_id, direction, headsign), in file order."""
        trips = {}
        reader = csv.DictReader(io.StringIO(csv_content))
        for row in reader:
            direction = INBOUND if (row.get("direction_id") or "").strip() == "1" else OUTBOUND
            trips[row["trip_id"]] = (row["route_id"], direction, (row.get("trip_headsign") or "").strip())
        return trips

    @staticmethod
    def _load_stop_names(csv_content: str) -> Dict[str, str]:
        reader = csv.DictReader(io.StringIO(csv_content))
        return {row["stop_id"]: row["stop_name"] for row in reader}

    def _load_stop_times(
        self,
        csv_content: str,
        trips: Dict[str, Tuple[str, str, str]],
        stop_names: Dict[str, str],
    ) -> None:
        """Parse stop_times.txt and pick each route's representative trip per direction."""
        stops_by_trip: Dict[str, List[Tuple[int, str]]] = {}
        reader = csv.DictReader(io.StringIO(csv_content))
        for row in reader:
            trip_id = row["trip_id"]
            if trip_id not in trips:
                continue
            try:
                sequence = int(row["stop_sequence"])
            except (KeyError, ValueError):
                logger.debug(f"Skipping stop_times row with bad stop_sequence for trip {trip_id}")
                continue
            stops_by_trip.setdefault(trip_id, []).append((sequence, row["stop_id"]))

        # (route_id, direction) -> (trip_id, stop_ids)
        best: Dict[Tuple[str, str], Tuple[str, List[str]]] = {}
        routes_by_stop: Dict[str, List[str]] = {}

        # Iterate in trips.txt order so ties keep the first trip
        for trip_id, (route_id, direction, _) in trips.items():
            if route_id not in self.route_names or trip_id not in stops_by_trip:
                continue
            stop_ids = [stop_id for _, stop_id in sorted(stops_by_trip[trip_id])]
            current = best.get((route_id, direction))
            if current is None or len(stop_ids) > len(current[1]):
                best[(route_id, direction)] = (trip_id, stop_ids)
            for stop_id in stop_ids:
                served = routes_by_stop.setdefault(stop_id, [])
                if route_id not in served:
                    served.append(route_id)

        details: Dict[str, RouteDetail] = {}
        for route_id, route_name in self.route_names.items():
            outbound = best.get((route_id, OUTBOUND))
            inbound = best.get((route_id, INBOUND))
            if outbound is None and inbound is None:
                continue
            detail = RouteDetail(route_id=route_id, route_name=route_name)
            if outbound is not None:
                detail.outbound_stops = self._route_stops(outbound[1], stop_names)
                detail.outbound_label = trips[outbound[0]][2] or detail.outbound_label
            if inbound is not None:
                detail.inbound_stops = self._route_stops(inbound[1], stop_names)
                detail.inbound_label = trips[inbound[0]][2] or detail.inbound_label
            details[route_id] = detail

        self.details = details
        self.routes_by_stop = routes_by_stop

    @staticmethod
    def _route_stops(stop_ids: List[str], stop_names: Dict[str, str]) -> List[RouteStop]:
        stops = []
        for stop_id in stop_ids:
            name = stop_names.get(stop_id)
            if name is None:
                logger.warning(f"Stop {stop_id} is missing from stops.txt")
                name = stop_id
            stops.append(RouteStop(name=name, stop_id=stop_id))
        return stops

    def get_route_detail(self, route_id: str) -> Optional[RouteDetail]:
        return self.details.get(route_id)

    def route_ids_at_stop(self, stop_id: str) -> List[str]:
        return list(self.routes_by_stop.get(stop_id, []))
