"""Direct bus route planning between two named stops."""

import json
import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, replace
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .models import (
    INBOUND,
    OUTBOUND,
    ArrivalPrediction,
    GeoLocation,
    PathStop,
    PlannedRoute,
    RouteDetail,
    RouteStop,
    format_eta,
)
from .poller import Generation
from .stop_index import StopIndex
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "BUS_ROUTE_CACHE_"
DEFAULT_MINUTES_PER_STOP = 2.5
DEFAULT_BOARDING_BUFFER_MINUTES = 1


class RouteDataSource(Protocol):
    """Supplies route definitions and stop-to-route membership."""

    def get_route_detail(self, route_id: str) -> Optional[RouteDetail]:
        ...

    def route_ids_at_stop(self, stop_id: str) -> List[str]:
        ...


class LiveArrivalSource(Protocol):
    """Supplies live ETA predictions at a stop."""

    def fetch_arrivals_at_stop(self, stop_id: str) -> List[ArrivalPrediction]:
        ...


def find_path_indices(stops: Sequence[RouteStop], from_name: str, to_name: str) -> Optional[Tuple[int, int]]:
    """
    Indices (i, j) of the first `from_name` and the first `to_name` after it.

    Later occurrences of either name are never considered, even on loop routes
    where they would give a shorter ride.
    """
    start = next((i for i, stop in enumerate(stops) if stop.name == from_name), None)
    if start is None:
        return None
    for j in range(start + 1, len(stops)):
        if stops[j].name == to_name:
            return start, j
    return None


class RoutePlanner:
    """
    Finds bus routes that connect two stop names without a transfer.

    Candidate routes are those serving both an origin SID and a destination
    SID. Each candidate's outbound and inbound stop sequences are checked
    independently, so a route can contribute up to two results. Results keep
    the order in which routes were discovered; sort them with
    buspulse.route_sorter for display.
    """

    def __init__(
        self,
        stop_index: StopIndex,
        route_source: RouteDataSource,
        arrival_source: Optional[LiveArrivalSource] = None,
        cache_store: Optional[KeyValueStore] = None,
        minutes_per_stop: float = DEFAULT_MINUTES_PER_STOP,
        boarding_buffer_minutes: float = DEFAULT_BOARDING_BUFFER_MINUTES,
        max_workers: int = 4,
    ):
        """
        Initialize the planner.

        Args:
            stop_index: Loaded stop index.
            route_source: Route definitions and stop-to-route membership.
            arrival_source: Optional live feed used to fill in origin ETAs.
            cache_store: Optional store for planned results; cached trips are
                         returned with refreshed ETAs instead of being re-planned.
            minutes_per_stop: Average ride time between consecutive stops.
            boarding_buffer_minutes: Fixed time added to every ride estimate.
            max_workers: Thread count for concurrent upstream fetches.
        """
        self.stop_index = stop_index
        self.route_source = route_source
        self.arrival_source = arrival_source
        self.cache_store = cache_store
        self.minutes_per_stop = minutes_per_stop
        self.boarding_buffer_minutes = boarding_buffer_minutes
        self.max_workers = max_workers

        self._route_cache: Dict[str, RouteDetail] = {}
        self._route_cache_lock = threading.Lock()
        self._generations: Dict[Tuple[str, str], Generation] = {}
        self._generations_lock = threading.Lock()

    # --- Planning ---

    def plan(self, from_name: str, to_name: str) -> List[PlannedRoute]:
        """
        Plan direct rides from one stop name to another.

        Returns:
            Planned routes in discovery order; [] if either name is unknown or
            no route connects them.
        """
        if self.cache_store is not None:
            cached = self._read_cached_plan(from_name, to_name)
            if cached:
                logger.debug(f"Using cached plan for {from_name} -> {to_name}")
                return self.refresh_arrivals(cached)

        routes = self._plan_uncached(from_name, to_name)

        if self.cache_store is not None and routes:
            self._write_cached_plan(from_name, to_name, routes)
        return routes

    def plan_latest(self, from_name: str, to_name: str) -> Optional[List[PlannedRoute]]:
        """
        Plan, but only return the result if no newer plan_latest() call for the
        same pair of stops started meanwhile.

        Returns:
            The planned routes, or None when the result was superseded.
        """
        counter = self._generation_for(from_name, to_name)
        generation = counter.advance()
        routes = self.plan(from_name, to_name)
        if not counter.is_current(generation):
            logger.debug(f"Discarding superseded plan {generation} for {from_name} -> {to_name}")
            return None
        return routes

    def _generation_for(self, from_name: str, to_name: str) -> Generation:
        key = (from_name, to_name)
        with self._generations_lock:
            counter = self._generations.get(key)
            if counter is None:
                counter = self._generations[key] = Generation()
            return counter

    def _plan_uncached(self, from_name: str, to_name: str) -> List[PlannedRoute]:
        origin_sids = self.stop_index.sids_for_name(from_name)
        dest_sids = self.stop_index.sids_for_name(to_name)
        if not origin_sids or not dest_sids:
            logger.info(f"No stops found for {from_name!r} or {to_name!r}")
            return []

        candidates = self._candidate_route_ids(origin_sids, dest_sids)
        if not candidates:
            logger.info(f"No route serves both {from_name} and {to_name}")
            return []

        details = self._map(self._get_route_detail_safe, [route_id for route_id, _ in candidates])

        results: List[PlannedRoute] = []
        for (route_id, found_at_sid), detail in zip(candidates, details):
            if detail is None:
                continue
            for direction in (OUTBOUND, INBOUND):
                planned = self._plan_direction(detail, direction, from_name, to_name, found_at_sid)
                if planned is not None:
                    results.append(planned)

        if results:
            results = self.refresh_arrivals(results)

        logger.info(f"Planned {len(results)} routes from {from_name} to {to_name}")
        return results

    def _candidate_route_ids(self, origin_sids: Sequence[str], dest_sids: Sequence[str]) -> List[Tuple[str, str]]:
        """Routes serving both ends, as (route_id, origin_sid) in discovery order."""
        dest_routes = set()
        for sid in dest_sids:
            dest_routes.update(self._route_ids_at_stop_safe(sid))

        candidates: List[Tuple[str, str]] = []
        seen = set()
        for sid in origin_sids:
            for route_id in self._route_ids_at_stop_safe(sid):
                if route_id in dest_routes and route_id not in seen:
                    seen.add(route_id)
                    candidates.append((route_id, sid))
        return candidates

    def _plan_direction(
        self,
        detail: RouteDetail,
        direction: str,
        from_name: str,
        to_name: str,
        found_at_sid: str,
    ) -> Optional[PlannedRoute]:
        stops = detail.stops_for(direction)
        indices = find_path_indices(stops, from_name, to_name)
        if indices is None:
            return None

        start, end = indices
        path = [PathStop(name=s.name, stop_id=s.stop_id, geo=self._geo_for_route_stop(s)) for s in stops[start:end + 1]]
        stop_count = len(path) - 1
        return PlannedRoute(
            route_id=detail.route_id,
            route_name=detail.route_name,
            direction=direction,
            direction_label=detail.label_for(direction),
            origin_stop_id=path[0].stop_id or found_at_sid,
            path_stops=path,
            stop_count=stop_count,
            estimated_duration_minutes=self.estimate_duration(stop_count),
        )

    def _geo_for_route_stop(self, stop: RouteStop) -> Optional[GeoLocation]:
        if stop.stop_id:
            geo = self.stop_index.geo_for_sid(stop.stop_id)
            if geo is not None:
                return geo
        sids = self.stop_index.representative_sids(stop.name)
        return self.stop_index.geo_for_sid(sids[0]) if sids else None

    def estimate_duration(self, stop_count: int) -> int:
        """Ride time in whole minutes for a number of stops travelled."""
        if stop_count <= 0:
            return 0
        return math.ceil(stop_count * self.minutes_per_stop + self.boarding_buffer_minutes)

    # --- Direction inference ---

    def infer_direction(self, detail: RouteDetail, stop_id: str) -> Optional[str]:
        """
        Which direction of a route passes a stop ID.

        A direction listing the exact stop ID wins, then one listing a stop at
        the same location, then one listing a name used at that location.
        Two-way routes usually list the same stop name in both directions, so
        the name match is only a last resort.
        """
        for direction in (OUTBOUND, INBOUND):
            if any(stop.stop_id == stop_id for stop in detail.stops_for(direction)):
                return direction

        location_id = self.stop_index.location_id_for_sid(stop_id)
        if location_id:
            for direction in (OUTBOUND, INBOUND):
                for stop in detail.stops_for(direction):
                    if stop.stop_id and self.stop_index.location_id_for_sid(stop.stop_id) == location_id:
                        return direction

        names = self.stop_index.names_matching_sids([stop_id])
        if not names:
            return None
        for direction in (OUTBOUND, INBOUND):
            if any(stop.name in names for stop in detail.stops_for(direction)):
                return direction
        return None

    # --- Live arrivals ---

    def refresh_arrivals(self, routes: Sequence[PlannedRoute]) -> List[PlannedRoute]:
        """Copies of planned routes with current ETAs; one live fetch per origin stop."""
        if self.arrival_source is None:
            return list(routes)
        origin_sids = list(dict.fromkeys(r.origin_stop_id for r in routes if r.origin_stop_id))
        arrivals = self._fetch_arrivals(origin_sids)
        return [self._with_eta(route, arrivals) for route in routes]

    def _fetch_arrivals(self, stop_ids: Sequence[str]) -> Dict[str, List[ArrivalPrediction]]:
        results = self._map(self._fetch_arrivals_safe, list(stop_ids))
        return dict(zip(stop_ids, results))

    def _fetch_arrivals_safe(self, stop_id: str) -> List[ArrivalPrediction]:
        try:
            return list(self.arrival_source.fetch_arrivals_at_stop(stop_id))
        except Exception as e:
            logger.warning(f"Failed to fetch arrivals at stop {stop_id}: {e}")
            return []

    @staticmethod
    def _with_eta(route: PlannedRoute, arrivals: Dict[str, List[ArrivalPrediction]]) -> PlannedRoute:
        eta = None
        for prediction in arrivals.get(route.origin_stop_id, []):
            if prediction.route_id == route.route_id and prediction.next_eta is not None:
                eta = prediction.next_eta
                break
        return replace(route, eta_minutes=eta, arrival_time_text=format_eta(eta))

    # --- Route details ---

    def get_route_detail(self, route_id: str) -> Optional[RouteDetail]:
        """Route detail from the session cache, fetching it on first use."""
        with self._route_cache_lock:
            cached = self._route_cache.get(route_id)
        if cached is not None:
            return cached

        detail = self.route_source.get_route_detail(route_id)
        if detail is not None:
            with self._route_cache_lock:
                self._route_cache[route_id] = detail
        return detail

    def _get_route_detail_safe(self, route_id: str) -> Optional[RouteDetail]:
        try:
            detail = self.get_route_detail(route_id)
        except Exception as e:
            logger.warning(f"Failed to fetch route {route_id}, skipping: {e}")
            return None
        if detail is None:
            logger.warning(f"Route {route_id} not found, skipping")
        return detail

    def _route_ids_at_stop_safe(self, stop_id: str) -> List[str]:
        try:
            return list(self.route_source.route_ids_at_stop(stop_id))
        except Exception as e:
            logger.warning(f"Failed to list routes at stop {stop_id}: {e}")
            return []

    def clear_route_cache(self) -> None:
        with self._route_cache_lock:
            self._route_cache.clear()

    def _map(self, fn, items: List) -> List:
        """Apply fn to items concurrently, keeping input order."""
        if len(items) <= 1 or self.max_workers <= 1:
            return [fn(item) for item in items]
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(items))) as pool:
            return list(pool.map(fn, items))

    # --- Plan cache ---

    @staticmethod
    def _cache_key(from_name: str, to_name: str) -> str:
        return f"{CACHE_KEY_PREFIX}{from_name}_{to_name}"

    def _write_cached_plan(self, from_name: str, to_name: str, routes: Iterable[PlannedRoute]) -> None:
        payload = [asdict(replace(r, arrival_time_text="", eta_minutes=None)) for r in routes]
        try:
            self.cache_store.set(self._cache_key(from_name, to_name), json.dumps(payload))
        except Exception as e:
            logger.warning(f"Failed to cache plan for {from_name} -> {to_name}: {e}")

    def _read_cached_plan(self, from_name: str, to_name: str) -> List[PlannedRoute]:
        raw = self.cache_store.get(self._cache_key(from_name, to_name))
        if not raw:
            return []
        try:
            return [_planned_route_from_dict(item) for item in json.loads(raw)]
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"Ignoring unreadable cached plan for {from_name} -> {to_name}: {e}")
            return []


def _planned_route_from_dict(data: dict) -> PlannedRoute:
    path = [
        PathStop(
            name=stop["name"],
            stop_id=stop.get("stop_id"),
            geo=GeoLocation(**stop["geo"]) if stop.get("geo") else None,
        )
        for stop in data["path_stops"]
    ]
    return PlannedRoute(
        route_id=data["route_id"],
        route_name=data["route_name"],
        direction=data["direction"],
        direction_label=data["direction_label"],
        origin_stop_id=data.get("origin_stop_id"),
        path_stops=path,
        stop_count=data["stop_count"],
        estimated_duration_minutes=data["estimated_duration_minutes"],
    )
