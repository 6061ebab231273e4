"""Data models for BusPulse."""

from dataclasses import dataclass, field
from typing import List, Optional

OUTBOUND = "outbound"
INBOUND = "inbound"


@dataclass(frozen=True)
class GeoLocation:
    """A WGS84 coordinate pair."""
    lat: float
    lon: float


@dataclass(frozen=True)
class StopIdentity:
    """A single physical bus stop sign (SID) and the location (SLID) it belongs to."""
    name: str
    stop_id: str
    location_id: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None

    @property
    def geo(self) -> Optional[GeoLocation]:
        if self.lat is None or self.lon is None:
            return None
        return GeoLocation(self.lat, self.lon)


@dataclass(frozen=True)
class RouteStop:
    """One stop in a route's direction-specific stop sequence."""
    name: str
    stop_id: Optional[str] = None


@dataclass
class RouteDetail:
    """A bus line with its outbound and inbound stop sequences."""
    route_id: str
    route_name: str
    outbound_stops: List[RouteStop] = field(default_factory=list)
    inbound_stops: List[RouteStop] = field(default_factory=list)
    outbound_label: str = "Outbound"
    inbound_label: str = "Inbound"

    def stops_for(self, direction: str) -> List[RouteStop]:
        return self.outbound_stops if direction == OUTBOUND else self.inbound_stops

    def label_for(self, direction: str) -> str:
        return self.outbound_label if direction == OUTBOUND else self.inbound_label


@dataclass(frozen=True)
class PathStop:
    """A stop on a planned path, with coordinates when known."""
    name: str
    stop_id: Optional[str] = None
    geo: Optional[GeoLocation] = None


@dataclass
class PlannedRoute:
    """A direct bus ride between two named stops."""
    route_id: str
    route_name: str
    direction: str  # OUTBOUND or INBOUND
    direction_label: str
    origin_stop_id: Optional[str]  # SID used to look up live arrivals
    path_stops: List[PathStop]
    stop_count: int  # Stops travelled, origin excluded
    estimated_duration_minutes: int
    arrival_time_text: str = "No data"
    eta_minutes: Optional[int] = None  # Raw ETA at the origin, for sorting

    @property
    def start_geo(self) -> Optional[GeoLocation]:
        return self.path_stops[0].geo if self.path_stops else None

    @property
    def end_geo(self) -> Optional[GeoLocation]:
        return self.path_stops[-1].geo if self.path_stops else None


@dataclass
class ArrivalPrediction:
    """Live ETA countdowns for one route at one stop, as reported right now."""
    route_id: str
    stop_id: str
    eta_minutes: List[int]  # Ascending relative minutes
    route_name: Optional[str] = None

    @property
    def next_eta(self) -> Optional[int]:
        return self.eta_minutes[0] if self.eta_minutes else None


@dataclass(frozen=True)
class PulseDataPoint:
    """Damped bus count for one 5-minute bucket of the day."""
    minute: int  # Bucket start, multiple of 5
    score: float
    is_low_confidence: bool


@dataclass
class TripStats:
    """Frequency timelines for a saved trip, split by weekday and weekend."""
    weekday: List[PulseDataPoint] = field(default_factory=list)
    weekend: List[PulseDataPoint] = field(default_factory=list)
    total_days: int = 0
    weekday_days: int = 0
    weekend_days: int = 0
    route_count: int = 0


@dataclass
class FavoriteRoute:
    """A saved (origin, destination) pair."""
    from_stop: str
    to_stop: str
    added_at: float  # Unix timestamp
    use_count: int = 0
    pinned: bool = False
    display_name: Optional[str] = None
    last_used: Optional[float] = None
    cached_route_names: Optional[List[str]] = None
    cache_updated_at: Optional[float] = None

    @property
    def id(self) -> str:
        return f"{self.from_stop}-{self.to_stop}"


def format_eta(minutes: Optional[int]) -> str:
    """
    Human-readable text for an ETA countdown.

    Args:
        minutes: Minutes until arrival, or None when the feed has no estimate.

    Returns:
        "No data", "Arriving", "Approaching" (under 3 minutes) or "N min".
    """
    if minutes is None:
        return "No data"
    if minutes <= 0:
        return "Arriving"
    if minutes < 3:
        return "Approaching"
    return f"{minutes} min"
