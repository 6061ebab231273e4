"""Main BusPulse facade."""

import logging
import os
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from .config import AppConfig
from .favorites import FavoriteRoutesStore
from .gtfs_routes import GTFSRouteSource
from .models import ArrivalPrediction, PlannedRoute, TripStats
from .planner import LiveArrivalSource, RouteDataSource, RoutePlanner
from .poller import ArrivalPoller
from .pulse import ArrivalHistoryStore, ArrivalMerger
from .realtime_client import GTFSRealtimeClient
from .stop_index import StopIndex
from .storage import JsonFileKeyValueStore, KeyValueStore

logger = logging.getLogger(__name__)


class BusTracker:
    """
    Wires the stop index, route planner, arrival history and favorites together.

    This class provides methods to:
    - Get live arrivals at a stop name, grouped by direction
    - Plan direct rides between two stop names
    - Record live ETAs for a trip and read back its frequency timeline
    """

    def __init__(
        self,
        stop_index: StopIndex,
        route_source: RouteDataSource,
        arrival_source: Optional[LiveArrivalSource],
        store: KeyValueStore,
        planner: Optional[RoutePlanner] = None,
        merger: Optional[ArrivalMerger] = None,
        poll_interval_seconds: float = 30,
    ):
        """
        Initialize the tracker.

        Args:
            stop_index: Loaded stop index.
            route_source: Route definitions and stop-to-route membership.
            arrival_source: Live arrival feed, or None to run without ETAs.
            store: Key-value store for arrival history and favorites.
            planner: Pre-configured planner; built with defaults when omitted.
            merger: Pre-configured arrival merger; built with defaults when omitted.
            poll_interval_seconds: Interval of the background arrival poller.
        """
        self.stop_index = stop_index
        self.arrival_source = arrival_source
        self.store = store
        self.planner = planner or RoutePlanner(stop_index, route_source, arrival_source)
        self.merger = merger or ArrivalMerger(ArrivalHistoryStore(store))
        self.favorites = FavoriteRoutesStore(store)
        self.poller = (
            ArrivalPoller(arrival_source, self.merger, poll_interval_seconds)
            if arrival_source is not None
            else None
        )

    @classmethod
    def from_config(cls, config: AppConfig) -> "BusTracker":
        """Build a tracker from configuration, loading static data from disk."""
        stop_index = StopIndex()
        if config.data.stops_path.lower().endswith(".json"):
            stop_index.load_from_json(config.data.stops_path)
        else:
            stop_index.load_from_gtfs_stops(config.data.stops_path)

        route_source = GTFSRouteSource()
        if config.data.gtfs_dir:
            route_source.load_from_dir(config.data.gtfs_dir)
        else:
            logger.warning("No GTFS directory configured; route planning will find no routes")

        arrival_source = None
        if config.realtime.feed_urls:
            arrival_source = GTFSRealtimeClient(
                config.realtime.feed_urls,
                api_key=config.realtime.api_key or None,
                timeout_seconds=config.realtime.timeout_seconds,
                cache_ttl_seconds=config.realtime.cache_ttl_seconds,
                stop_index=stop_index,
            )

        store = JsonFileKeyValueStore(os.path.expanduser(config.data.storage_path))
        planner = RoutePlanner(
            stop_index,
            route_source,
            arrival_source,
            minutes_per_stop=config.planner.minutes_per_stop,
            boarding_buffer_minutes=config.planner.boarding_buffer_minutes,
            max_workers=config.planner.max_workers,
        )
        merger = ArrivalMerger(
            ArrivalHistoryStore(store),
            threshold=config.pulse.fold_threshold_minutes,
            damping_factor=config.pulse.damping_factor,
            day_start_hour=config.pulse.day_start_hour,
        )
        return cls(
            stop_index,
            route_source,
            arrival_source,
            store,
            planner=planner,
            merger=merger,
            poll_interval_seconds=config.realtime.poll_interval_seconds,
        )

    def get_arrivals(self, stop_name: str) -> Dict[str, List[Tuple[str, int]]]:
        """
        Get the next bus of each route at a stop name, grouped by direction.

        Args:
            stop_name: Exact stop name.

        Returns:
            Dictionary organized as:
            {
                "direction_label": [
                    (route_name, minutes_away),
                    ...
                ]
            }
            sorted by route name within each direction. Directions that cannot
            be inferred from the route definition are grouped under "Unknown".
        """
        if self.arrival_source is None:
            return {}

        # Keep the soonest bus per (direction, route)
        soonest: Dict[str, Dict[str, Tuple[str, int]]] = {}
        for sid in self.stop_index.representative_sids(stop_name):
            try:
                predictions = self.arrival_source.fetch_arrivals_at_stop(sid)
            except Exception as e:
                logger.warning(f"Failed to fetch arrivals at stop {sid}: {e}")
                continue

            for prediction in predictions:
                if prediction.next_eta is None:
                    continue
                direction_label, route_name = self._describe(prediction)
                by_route = soonest.setdefault(direction_label, {})
                current = by_route.get(prediction.route_id)
                if current is None or prediction.next_eta < current[1]:
                    by_route[prediction.route_id] = (route_name, prediction.next_eta)

        return {
            direction: sorted(by_route.values(), key=lambda x: x[0])
            for direction, by_route in soonest.items()
        }

    def _describe(self, prediction: ArrivalPrediction) -> Tuple[str, str]:
        """Direction label and display name for a prediction."""
        try:
            detail = self.planner.get_route_detail(prediction.route_id)
        except Exception as e:
            logger.warning(f"Failed to fetch route {prediction.route_id}: {e}")
            detail = None
        if detail is None:
            return "Unknown", prediction.route_name or prediction.route_id
        direction = self.planner.infer_direction(detail, prediction.stop_id)
        label = detail.label_for(direction) if direction else "Unknown"
        return label, detail.route_name

    def plan(self, from_name: str, to_name: str) -> List[PlannedRoute]:
        """Plan direct rides and count the trip as used if it is a favorite."""
        routes = self.planner.plan(from_name, to_name)
        self.favorites.record_usage(from_name, to_name)
        return routes

    def record_trip(
        self,
        from_name: str,
        to_name: str,
        routes: Sequence[PlannedRoute],
        now: Optional[datetime] = None,
    ) -> List[ArrivalPrediction]:
        """
        Fetch live ETAs for a planned trip's routes and ingest them into history.

        Returns:
            The predictions that were ingested.
        """
        if self.arrival_source is None:
            return []

        targets = list(dict.fromkeys((r.route_id, r.origin_stop_id) for r in routes if r.origin_stop_id))
        by_stop: Dict[str, List[ArrivalPrediction]] = {}
        predictions: List[ArrivalPrediction] = []
        for route_id, stop_id in targets:
            if stop_id not in by_stop:
                try:
                    by_stop[stop_id] = self.arrival_source.fetch_arrivals_at_stop(stop_id)
                except Exception as e:
                    logger.warning(f"Failed to fetch arrivals at stop {stop_id}: {e}")
                    by_stop[stop_id] = []
            match = next(
                (p for p in by_stop[stop_id] if p.route_id == route_id and p.eta_minutes),
                None,
            )
            if match is not None:
                predictions.append(match)

        self.merger.ingest_trip(from_name, to_name, predictions, now=now)
        return predictions

    def watch_trip(self, from_name: str, to_name: str, routes: Sequence[PlannedRoute]) -> Optional[int]:
        """Start background polling for a trip, superseding any previously watched trip."""
        if self.poller is None:
            return None
        targets = list(dict.fromkeys((r.route_id, r.origin_stop_id) for r in routes if r.origin_stop_id))
        generation = self.poller.watch(from_name, to_name, targets)
        self.poller.start()
        return generation

    def trip_stats(self, from_name: str, to_name: str) -> TripStats:
        return self.merger.trip_stats(from_name, to_name)

    def cleanup(self) -> None:
        """Stop polling and release caches."""
        if self.poller is not None:
            self.poller.stop()
        if isinstance(self.arrival_source, GTFSRealtimeClient):
            self.arrival_source.clear_cache()
        self.planner.clear_route_cache()
        logger.info("Cleaned up tracker resources")
