"""
Arrival history ("bus pulse"): folds live ETA snapshots into a per-day log of
observed arrivals and derives a 5-minute frequency timeline from it.

Live feeds report the same physical bus again on every poll, each time with a
slightly different ETA. The greedy magnet merge treats a new absolute arrival
within `threshold` minutes of a logged one as a refined reading of that bus and
overwrites it; anything further away is logged as a new bus. Two buses of the
same route arriving within the threshold of each other are folded into one,
which is a known limitation of the heuristic.
"""

import json
import logging
import threading
import time
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .models import ArrivalPrediction, PulseDataPoint, TripStats
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_MINUTES = 5
DEFAULT_DAMPING_FACTOR = 3
DEFAULT_DAY_START_HOUR = 4
MINUTES_PER_DAY = 1440
BUCKET_MINUTES = 5

TRIP_DEFS_KEY = "bus_pulse_trip_defs"
HISTORY_KEY_PREFIX = "bus_logs_"

Timestamp = Union[datetime, int, float]
History = Dict[str, List[int]]  # logical date -> ascending minutes of day


def _as_datetime(timestamp: Timestamp) -> datetime:
    if isinstance(timestamp, datetime):
        return timestamp
    return datetime.fromtimestamp(timestamp)


def logical_date(timestamp: Timestamp, day_start_hour: int = DEFAULT_DAY_START_HOUR) -> str:
    """
    Calendar date (YYYY-MM-DD) of the service day a local timestamp belongs to.

    The service day starts at `day_start_hour`, so 00:00-03:59 counts toward
    the previous date.
    """
    shifted = _as_datetime(timestamp) - timedelta(hours=day_start_hour)
    return shifted.date().isoformat()


def minute_of_day(timestamp: Timestamp) -> int:
    """Wall-clock minute of the day (0-1439), not shifted by the service-day offset."""
    dt = _as_datetime(timestamp)
    return dt.hour * 60 + dt.minute


def run_greedy_magnet(
    existing: Sequence[int],
    eta_minutes: Sequence[int],
    current_mod: int,
    threshold: int = DEFAULT_THRESHOLD_MINUTES,
) -> List[int]:
    """
    Merge relative ETAs into a day's logged arrivals.

    Args:
        existing: Logged absolute minutes of day.
        eta_minutes: New relative ETAs, processed strictly in the given order.
        current_mod: Minute of day the ETAs are relative to.
        threshold: Maximum distance in minutes for a candidate to snap onto an entry.

    Returns:
        Ascending, de-duplicated list of absolute minutes. Values past 1439 are
        kept as they are.
    """
    merged = list(existing)

    for eta in eta_minutes:
        candidate = current_mod + eta
        for i, logged in enumerate(merged):
            if abs(logged - candidate) <= threshold:
                # First match wins, even if a later entry is closer
                merged[i] = candidate
                break
        else:
            merged.append(candidate)

    return sorted(set(merged))


def _timeline_from_counts(counts: Sequence[int], total_days: int, damping_factor: float) -> List[PulseDataPoint]:
    if total_days == 0:
        return []

    is_low_confidence = total_days < damping_factor
    points = []
    for start in range(0, MINUTES_PER_DAY, BUCKET_MINUTES):
        buses = sum(counts[start:start + BUCKET_MINUTES])
        points.append(
            PulseDataPoint(
                minute=start,
                score=buses / (total_days + damping_factor),
                is_low_confidence=is_low_confidence,
            )
        )
    return points


def _count_arrivals(counts: List[int], arrivals: Iterable[int]) -> int:
    found = 0
    for minute in arrivals:
        if isinstance(minute, int) and 0 <= minute < MINUTES_PER_DAY:
            counts[minute] += 1
            found += 1
    return found


def compute_timeline(
    histories: Iterable[Mapping[str, Sequence[int]]],
    damping_factor: float = DEFAULT_DAMPING_FACTOR,
) -> List[PulseDataPoint]:
    """
    Damped 5-minute bus frequency across several (route, stop) histories.

    Every distinct logical date seen in any history counts as one observed
    day. Each bucket's score is its bus count divided by
    (days + damping_factor). Returns [] when there are no days at all.
    """
    counts = [0] * MINUTES_PER_DAY
    dates = set()
    for history in histories:
        for date_str, arrivals in history.items():
            dates.add(date_str)
            _count_arrivals(counts, arrivals)
    return _timeline_from_counts(counts, len(dates), damping_factor)


def history_key(route_id: str, stop_id: str) -> str:
    return f"{HISTORY_KEY_PREFIX}{route_id}_{stop_id}"


def trip_key(from_name: str, to_name: str) -> str:
    return f"{from_name}_{to_name}"


class ArrivalHistoryStore:
    """
    Persisted arrival history, one JSON document per (route, stop).

    Writes go through update_day(), which serializes read-modify-write cycles
    on the same (route, stop) document. Different documents never block each
    other.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _read_json(self, key: str) -> dict:
        raw = self.store.get(key)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Discarding unreadable value under {key}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Discarding non-object value under {key}")
            return {}
        return data

    def get_history(self, route_id: str, stop_id: str) -> History:
        """All logged days for a route at a stop: {logical_date: [minutes]}."""
        data = self._read_json(history_key(route_id, stop_id))
        return {
            date_str: list(arrivals)
            for date_str, arrivals in data.items()
            if isinstance(arrivals, list)
        }

    def get_day(self, route_id: str, stop_id: str, date_str: str) -> List[int]:
        return self.get_history(route_id, stop_id).get(date_str, [])

    def save_day(self, route_id: str, stop_id: str, date_str: str, arrivals: Sequence[int]) -> None:
        self.update_day(route_id, stop_id, date_str, lambda _: list(arrivals))

    def update_day(
        self,
        route_id: str,
        stop_id: str,
        date_str: str,
        update: Callable[[List[int]], List[int]],
    ) -> List[int]:
        """Apply update() to one day's arrivals and persist the result atomically per key."""
        key = history_key(route_id, stop_id)
        with self._lock_for(key):
            history = self.get_history(route_id, stop_id)
            updated = update(history.get(date_str, []))
            history[date_str] = updated
            self.store.set(key, json.dumps(history))
        return updated

    def clear_history(self, route_id: str, stop_id: str) -> None:
        key = history_key(route_id, stop_id)
        with self._lock_for(key):
            self.store.set(key, json.dumps({}))

    def save_trip_definition(
        self,
        from_name: str,
        to_name: str,
        route_stop_pairs: Sequence[Tuple[str, str]],
        accessed_at: Optional[float] = None,
    ) -> None:
        """Remember which (route, stop) pairs make up a trip, for trip_stats()."""
        with self._lock_for(TRIP_DEFS_KEY):
            definitions = self._read_json(TRIP_DEFS_KEY)
            definitions[trip_key(from_name, to_name)] = {
                "included_routes": [
                    {"route_id": route_id, "stop_id": stop_id} for route_id, stop_id in route_stop_pairs
                ],
                "last_accessed": accessed_at if accessed_at is not None else time.time(),
            }
            self.store.set(TRIP_DEFS_KEY, json.dumps(definitions))

    def get_trip_definition(self, from_name: str, to_name: str) -> Optional[List[Tuple[str, str]]]:
        definition = self._read_json(TRIP_DEFS_KEY).get(trip_key(from_name, to_name))
        if not isinstance(definition, dict) or not isinstance(definition.get("included_routes"), list):
            return None
        return [
            (str(item["route_id"]), str(item["stop_id"]))
            for item in definition["included_routes"]
            if isinstance(item, dict) and "route_id" in item and "stop_id" in item
        ]


class ArrivalMerger:
    """Ingests live predictions into the arrival history and reads back frequency timelines."""

    def __init__(
        self,
        history_store: ArrivalHistoryStore,
        threshold: int = DEFAULT_THRESHOLD_MINUTES,
        damping_factor: float = DEFAULT_DAMPING_FACTOR,
        day_start_hour: int = DEFAULT_DAY_START_HOUR,
    ):
        self.history_store = history_store
        self.threshold = threshold
        self.damping_factor = damping_factor
        self.day_start_hour = day_start_hour

    def ingest(
        self,
        route_id: str,
        stop_id: str,
        now: Timestamp,
        eta_minutes: Sequence[int],
    ) -> List[int]:
        """
        Fold one ETA snapshot for a route at a stop into today's history.

        Returns:
            The persisted list of arrivals for the logical day of `now`.
        """
        date_str = logical_date(now, self.day_start_hour)
        current_mod = minute_of_day(now)
        etas = list(eta_minutes)

        merged = self.history_store.update_day(
            route_id,
            stop_id,
            date_str,
            lambda existing: run_greedy_magnet(existing, etas, current_mod, self.threshold),
        )
        logger.debug(f"Ingested {len(etas)} ETAs for route {route_id} at {stop_id} on {date_str}: {len(merged)} logged")
        return merged

    def timeline_for(self, route_stop_pairs: Iterable[Tuple[str, str]]) -> List[PulseDataPoint]:
        histories = [self.history_store.get_history(route_id, stop_id) for route_id, stop_id in route_stop_pairs]
        return compute_timeline(histories, self.damping_factor)

    def ingest_trip(
        self,
        from_name: str,
        to_name: str,
        predictions: Sequence[ArrivalPrediction],
        now: Optional[Timestamp] = None,
    ) -> None:
        """Record the trip's (route, stop) pairs and ingest each prediction in order."""
        if not predictions:
            return
        now = now if now is not None else datetime.now()
        accessed_at = _as_datetime(now).timestamp()

        self.history_store.save_trip_definition(
            from_name,
            to_name,
            [(p.route_id, p.stop_id) for p in predictions],
            accessed_at=accessed_at,
        )
        for prediction in predictions:
            self.ingest(prediction.route_id, prediction.stop_id, now, prediction.eta_minutes)

        logger.info(f"Ingested {len(predictions)} routes for {trip_key(from_name, to_name)}")

    def trip_stats(self, from_name: str, to_name: str) -> TripStats:
        """Weekday and weekend timelines for a previously ingested trip."""
        pairs = self.history_store.get_trip_definition(from_name, to_name)
        if pairs is None:
            logger.debug(f"No trip definition for {trip_key(from_name, to_name)}")
            return TripStats()

        weekday_counts = [0] * MINUTES_PER_DAY
        weekend_counts = [0] * MINUTES_PER_DAY
        weekday_dates = set()
        weekend_dates = set()
        buses_found = 0

        for route_id, stop_id in pairs:
            for date_str, arrivals in self.history_store.get_history(route_id, stop_id).items():
                try:
                    is_weekend = date.fromisoformat(date_str).weekday() >= 5
                except ValueError:
                    logger.warning(f"Skipping history entry with invalid date {date_str!r}")
                    continue
                if is_weekend:
                    weekend_dates.add(date_str)
                    buses_found += _count_arrivals(weekend_counts, arrivals)
                else:
                    weekday_dates.add(date_str)
                    buses_found += _count_arrivals(weekday_counts, arrivals)

        total_days = len(weekday_dates) + len(weekend_dates)
        if total_days and not buses_found:
            logger.warning(f"Found {total_days} days but no arrivals for {trip_key(from_name, to_name)}")

        return TripStats(
            weekday=_timeline_from_counts(weekday_counts, len(weekday_dates), self.damping_factor),
            weekend=_timeline_from_counts(weekend_counts, len(weekend_dates), self.damping_factor),
            total_days=total_days,
            weekday_days=len(weekday_dates),
            weekend_days=len(weekend_dates),
            route_count=len(pairs),
        )
