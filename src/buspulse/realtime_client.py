"""GTFS-Realtime live arrival fetcher and parser."""

import logging
import math
import time
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import requests
from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

from .errors import UpstreamError
from .models import ArrivalPrediction

logger = logging.getLogger(__name__)

# Predictions further in the past than this are stale
STALE_PREDICTION_SECONDS = 60


class GTFSRealtimeClient:
    """Fetches GTFS-Realtime TripUpdates feeds and turns them into per-stop ETA lists."""

    def __init__(
        self,
        feed_urls: Iterable[str],
        api_key: Optional[str] = None,
        timeout_seconds: float = 10,
        cache_ttl_seconds: float = 30,
        max_cache_size: int = 10,
        stop_index=None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the client.

        Args:
            feed_urls: TripUpdates feed URLs; all are queried for every stop.
            api_key: Sent as the x-api-key header when set.
            timeout_seconds: HTTP timeout per feed request.
            cache_ttl_seconds: How long a downloaded feed is reused.
            max_cache_size: Maximum number of cached feeds.
            stop_index: Optional StopIndex; when given, arrivals at any stop
                        sharing the queried stop's location are included.
            clock: Source of the current Unix time.
        """
        self.feed_urls = list(feed_urls)
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._cache: Dict[str, Tuple[bytes, float]] = {}  # feed_url -> (data, timestamp)
        self._cache_ttl = cache_ttl_seconds
        self._max_cache_size = max_cache_size
        self._stop_index = stop_index
        self._clock = clock

    def fetch_arrivals_at_stop(self, stop_id: str) -> List[ArrivalPrediction]:
        """
        Get live arrivals at a stop, one prediction per route.

        Args:
            stop_id: Stop ID (SID) to query.

        Returns:
            ArrivalPrediction objects in order of first appearance in the feeds,
            each with ascending minute countdowns. A feed that fails to load is
            logged and skipped.
        """
        if self._stop_index is not None:
            stop_ids = set(self._stop_index.related_sids(stop_id))
        else:
            stop_ids = {stop_id}

        etas_by_route: Dict[str, List[int]] = {}
        for feed_url in self.feed_urls:
            try:
                feed_data = self._fetch_feed(feed_url)
                for route_id, minutes_away in self._parse_arrivals(feed_data, stop_ids):
                    etas_by_route.setdefault(route_id, []).append(minutes_away)
            except UpstreamError as e:
                logger.warning(f"Failed to read feed {feed_url}: {e}")

        return [
            ArrivalPrediction(route_id=route_id, stop_id=stop_id, eta_minutes=sorted(etas))
            for route_id, etas in etas_by_route.items()
        ]

    def _fetch_feed(self, feed_url: str) -> bytes:
        """
        Fetch and cache a GTFS-Realtime feed.

        Args:
            feed_url: Full URL to the feed.

        Returns:
            Raw protobuf bytes.

        Raises:
            UpstreamError: On network failure or a non-200 response.
        """
        now = self._clock()
        if feed_url in self._cache:
            data, timestamp = self._cache[feed_url]
            if now - timestamp < self._cache_ttl:
                logger.debug(f"Using cached data for {feed_url}")
                return data

        # Evict expired entries to prevent unbounded growth
        self._evict_expired_cache(now)

        if len(self._cache) >= self._max_cache_size:
            oldest_key = min(self._cache.keys(), key=lambda k: self._cache[k][1])
            del self._cache[oldest_key]

        logger.debug(f"Fetching {feed_url}")
        headers = {"x-api-key": self._api_key} if self._api_key else {}
        try:
            response = requests.get(feed_url, headers=headers, timeout=self._timeout_seconds)
        except requests.RequestException as e:
            raise UpstreamError(f"Request to {feed_url} failed: {e}") from e

        if response.status_code != 200:
            raise UpstreamError(f"Request to {feed_url} failed: status {response.status_code}")

        data = response.content
        self._cache[feed_url] = (data, now)
        return data

    def _evict_expired_cache(self, current_time: float) -> None:
        """Remove expired cache entries."""
        expired_keys = [
            url for url, (_, timestamp) in self._cache.items()
            if current_time - timestamp >= self._cache_ttl
        ]
        for key in expired_keys:
            del self._cache[key]

        if expired_keys:
            logger.debug(f"Evicted {len(expired_keys)} expired cache entries")

    def clear_cache(self) -> None:
        """Manually clear the cache."""
        self._cache.clear()

    def _parse_arrivals(self, feed_data: bytes, stop_ids: Set[str]) -> List[Tuple[str, int]]:
        """
        Parse (route_id, minutes_away) pairs for the given stops from a feed.

        Raises:
            UpstreamError: If the payload is not a valid FeedMessage.
        """
        feed = gtfs_realtime_pb2.FeedMessage()
        try:
            feed.ParseFromString(feed_data)
        except DecodeError as e:
            raise UpstreamError(f"Invalid GTFS-Realtime payload: {e}") from e

        current_time = self._clock()
        arrivals: List[Tuple[str, int]] = []

        for entity in feed.entity:
            if not entity.HasField("trip_update"):
                continue

            trip_update = entity.trip_update
            route_id = trip_update.trip.route_id
            if not route_id:
                continue

            for stop_time_update in trip_update.stop_time_update:
                if stop_time_update.stop_id not in stop_ids:
                    continue

                if stop_time_update.HasField("arrival"):
                    arrival_time = stop_time_update.arrival.time
                elif stop_time_update.HasField("departure"):
                    arrival_time = stop_time_update.departure.time
                else:
                    continue

                seconds_away = arrival_time - current_time
                if seconds_away < -STALE_PREDICTION_SECONDS:
                    continue

                # Round up so a bus 30 s away shows as 1 minute, not 0
                minutes_away = 0 if seconds_away <= 0 else math.ceil(seconds_away / 60)
                arrivals.append((route_id, minutes_away))

        return arrivals
