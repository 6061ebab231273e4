"""Saved (origin, destination) trips, backed by the key-value store."""

import json
import logging
import threading
import time
from dataclasses import asdict
from typing import Callable, Dict, List, Optional

from .models import FavoriteRoute
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

STORAGE_KEY = "@favorite_routes"
DEFAULT_MAX_COUNT = 10

_UNSET = object()


def ranking_key(route: FavoriteRoute):
    """Pinned first, then most used, then most recently used, then most recently added."""
    return (
        not route.pinned,
        -route.use_count,
        -(route.last_used or 0),
        -route.added_at,
    )


class FavoriteRoutesStore:
    """CRUD and ranking over the user's saved trips."""

    def __init__(
        self,
        store: KeyValueStore,
        max_count: int = DEFAULT_MAX_COUNT,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.max_count = max_count
        self._clock = clock
        self._lock = threading.RLock()

    def _load(self) -> List[FavoriteRoute]:
        raw = self.store.get(STORAGE_KEY)
        if not raw:
            return []
        try:
            data = json.loads(raw)
            return [FavoriteRoute(**item) for item in data.get("routes", [])]
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"Failed to read favorite routes: {e}")
            return []

    def _save(self, routes: List[FavoriteRoute]) -> None:
        payload = {"routes": [asdict(r) for r in routes], "max_count": self.max_count}
        self.store.set(STORAGE_KEY, json.dumps(payload, ensure_ascii=False))
        logger.debug(f"Saved {len(routes)} favorite routes")

    @staticmethod
    def _find(routes: List[FavoriteRoute], from_stop: str, to_stop: str) -> Optional[FavoriteRoute]:
        route_id = f"{from_stop}-{to_stop}"
        return next((r for r in routes if r.id == route_id), None)

    def _require(self, routes: List[FavoriteRoute], from_stop: str, to_stop: str) -> FavoriteRoute:
        route = self._find(routes, from_stop, to_stop)
        if route is None:
            raise KeyError(f"No favorite route {from_stop} -> {to_stop}")
        return route

    def get_all_routes(self, sort: bool = True) -> List[FavoriteRoute]:
        """All saved routes, ranked unless sort is False (insertion order)."""
        routes = self._load()
        return sorted(routes, key=ranking_key) if sort else routes

    def is_favorite(self, from_stop: str, to_stop: str) -> bool:
        return self._find(self._load(), from_stop, to_stop) is not None

    def get_route(self, from_stop: str, to_stop: str) -> Optional[FavoriteRoute]:
        return self._find(self._load(), from_stop, to_stop)

    def add_route(self, from_stop: str, to_stop: str, display_name: Optional[str] = None) -> FavoriteRoute:
        """
        Save a new trip.

        Raises:
            ValueError: If the trip is already saved or the list is full.
        """
        with self._lock:
            routes = self._load()
            if self._find(routes, from_stop, to_stop) is not None:
                raise ValueError(f"{from_stop} -> {to_stop} is already a favorite")
            if len(routes) >= self.max_count:
                raise ValueError(f"Favorite routes are limited to {self.max_count}")

            now = self._clock()
            route = FavoriteRoute(
                from_stop=from_stop,
                to_stop=to_stop,
                display_name=display_name,
                added_at=now,
                last_used=now,
                use_count=1,
            )
            routes.append(route)
            self._save(routes)
        logger.info(f"Added favorite route {from_stop} -> {to_stop}")
        return route

    def remove_route(self, from_stop: str, to_stop: str) -> None:
        with self._lock:
            routes = self._load()
            route = self._require(routes, from_stop, to_stop)
            routes.remove(route)
            self._save(routes)
        logger.info(f"Removed favorite route {from_stop} -> {to_stop}")

    def update_route(self, from_stop: str, to_stop: str, display_name=_UNSET, pinned=_UNSET) -> FavoriteRoute:
        """Rename and/or (un)pin a saved trip; omitted fields are left unchanged."""
        with self._lock:
            routes = self._load()
            route = self._require(routes, from_stop, to_stop)
            if display_name is not _UNSET:
                route.display_name = display_name
            if pinned is not _UNSET and pinned is not None:
                route.pinned = bool(pinned)
            self._save(routes)
        return route

    def record_usage(self, from_stop: str, to_stop: str) -> None:
        """Bump the use count of a saved trip; unknown trips are ignored."""
        with self._lock:
            routes = self._load()
            route = self._find(routes, from_stop, to_stop)
            if route is None:
                return
            route.use_count += 1
            route.last_used = self._clock()
            self._save(routes)
        logger.debug(f"Recorded use of {from_stop} -> {to_stop} ({route.use_count} uses)")

    def clear_all(self) -> None:
        with self._lock:
            self._save([])

    def get_stats(self) -> Dict[str, int]:
        routes = self._load()
        return {
            "total_routes": len(routes),
            "pinned_routes": sum(1 for r in routes if r.pinned),
            "total_usage_count": sum(r.use_count for r in routes),
            "max_count": self.max_count,
        }

    def update_cached_route_names(self, from_stop: str, to_stop: str, route_names: List[str]) -> None:
        """Remember which bus routes served a saved trip, for quick display."""
        with self._lock:
            routes = self._load()
            route = self._require(routes, from_stop, to_stop)
            route.cached_route_names = list(route_names)
            route.cache_updated_at = self._clock()
            self._save(routes)

    def get_cached_route_names(self, from_stop: str, to_stop: str) -> Optional[List[str]]:
        route = self.get_route(from_stop, to_stop)
        return route.cached_route_names if route else None


# Process-wide instance, created once at startup with the app's storage backend
_favorites: Optional[FavoriteRoutesStore] = None


def init_favorites(store: KeyValueStore, **kwargs) -> FavoriteRoutesStore:
    global _favorites
    _favorites = FavoriteRoutesStore(store, **kwargs)
    return _favorites


def get_favorites() -> FavoriteRoutesStore:
    if _favorites is None:
        raise RuntimeError("Favorite routes are not initialized; call init_favorites() first")
    return _favorites
