"""BusPulse - bus route planning and arrival-frequency history."""

__version__ = "0.1.0"

from .config import AppConfig, load_config, setup_logging
from .errors import ConfigurationError, UpstreamError
from .favorites import FavoriteRoutesStore, get_favorites, init_favorites
from .gtfs_routes import GTFSRouteSource
from .models import (
    ArrivalPrediction,
    FavoriteRoute,
    GeoLocation,
    PathStop,
    PlannedRoute,
    PulseDataPoint,
    RouteDetail,
    RouteStop,
    StopIdentity,
    TripStats,
)
from .planner import RoutePlanner
from .poller import ArrivalPoller, Generation
from .pulse import ArrivalHistoryStore, ArrivalMerger, compute_timeline, logical_date, minute_of_day, run_greedy_magnet
from .realtime_client import GTFSRealtimeClient
from .route_sorter import sort_routes
from .stop_index import StopIndex
from .storage import InMemoryKeyValueStore, JsonFileKeyValueStore
from .tracker import BusTracker

__all__ = [
    "BusTracker",
    "StopIndex",
    "RoutePlanner",
    "ArrivalMerger",
    "ArrivalHistoryStore",
    "ArrivalPoller",
    "Generation",
    "FavoriteRoutesStore",
    "init_favorites",
    "get_favorites",
    "GTFSRouteSource",
    "GTFSRealtimeClient",
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "AppConfig",
    "load_config",
    "setup_logging",
    "ConfigurationError",
    "UpstreamError",
    "compute_timeline",
    "logical_date",
    "minute_of_day",
    "run_greedy_magnet",
    "sort_routes",
    "StopIdentity",
    "GeoLocation",
    "RouteStop",
    "RouteDetail",
    "PathStop",
    "PlannedRoute",
    "ArrivalPrediction",
    "PulseDataPoint",
    "TripStats",
    "FavoriteRoute",
]
