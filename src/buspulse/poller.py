"""Threaded poller that periodically folds live arrivals into the arrival history."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .models import ArrivalPrediction

logger = logging.getLogger(__name__)


class Generation:
    """
    Monotonic request counter for "last request wins" cancellation.

    Each new request calls advance() and keeps the returned number; when its
    work completes it checks is_current() and drops its result if a newer
    request has started since.
    """

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    @property
    def current(self) -> int:
        with self._lock:
            return self._value

    def advance(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    def is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._value


@dataclass(frozen=True)
class PollResult:
    """Snapshot of the latest poll attempt."""

    predictions: List[ArrivalPrediction]
    fetched_at: datetime
    generation: int
    errors: Dict[str, str] = field(default_factory=dict)  # stop_id -> error message
    discarded: bool = False


@dataclass(frozen=True)
class _Watch:
    generation: int
    from_name: str
    to_name: str
    targets: Tuple[Tuple[str, str], ...]  # (route_id, stop_id)


class ArrivalPoller:
    """
    Background poller for one watched trip.

    Calling watch() again supersedes the previous trip: a poll cycle that
    started for the old trip finishes its fetches but its results are not
    ingested.
    """

    def __init__(
        self,
        arrival_source,
        merger,
        poll_interval_seconds: float = 30,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._arrival_source = arrival_source
        self._merger = merger
        self._poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self._generation = Generation()
        self._watch: Optional[_Watch] = None
        self._latest: Optional[PollResult] = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def watch(self, from_name: str, to_name: str, targets: Sequence[Tuple[str, str]]) -> int:
        """Start polling a trip's (route_id, stop_id) pairs; returns the new generation."""
        with self._lock:
            generation = self._generation.advance()
            self._watch = _Watch(generation, from_name, to_name, tuple(targets))
        logger.info(f"Watching {len(targets)} routes for {from_name} -> {to_name} (generation {generation})")
        return generation

    def get_latest(self) -> Optional[PollResult]:
        """Return the most recent poll result, if any."""
        with self._lock:
            return self._latest

    def start(self) -> None:
        """Start the background polling thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Signal the polling thread to stop and wait up to timeout seconds for it to exit."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            if self._watch is not None:
                result = self.poll_once()
                with self._lock:
                    self._latest = result
            self._stop_event.wait(timeout=self._poll_interval_seconds)

    def poll_once(self, generation: Optional[int] = None) -> PollResult:
        """
        Fetch live arrivals for the watched trip and ingest them.

        Args:
            generation: Generation the caller is polling for; defaults to the
                        current watch.

        Returns:
            PollResult; `discarded` is True when a newer watch() superseded
            this cycle and nothing was ingested.
        """
        with self._lock:
            watch = self._watch
        now = self._clock()
        if watch is None:
            return PollResult(predictions=[], fetched_at=now, generation=0, discarded=True)
        if generation is None:
            generation = watch.generation
        if generation != watch.generation:
            return PollResult(predictions=[], fetched_at=now, generation=generation, discarded=True)

        by_stop: Dict[str, List[ArrivalPrediction]] = {}
        errors: Dict[str, str] = {}
        for _, stop_id in watch.targets:
            if stop_id in by_stop or stop_id in errors:
                continue
            try:
                by_stop[stop_id] = list(self._arrival_source.fetch_arrivals_at_stop(stop_id))
            except Exception as e:
                logger.warning(f"Failed to fetch arrivals at stop {stop_id}: {e}")
                errors[stop_id] = str(e)

        predictions: List[ArrivalPrediction] = []
        for route_id, stop_id in watch.targets:
            for prediction in by_stop.get(stop_id, []):
                if prediction.route_id == route_id and prediction.eta_minutes:
                    predictions.append(prediction)
                    break

        with self._lock:
            if not self._generation.is_current(generation):
                logger.debug(f"Discarding poll results for superseded generation {generation}")
                return PollResult(predictions, now, generation, errors, discarded=True)
            self._merger.ingest_trip(watch.from_name, watch.to_name, predictions, now=now)

        return PollResult(predictions, now, generation, errors)


__all__ = ["Generation", "PollResult", "ArrivalPoller"]
