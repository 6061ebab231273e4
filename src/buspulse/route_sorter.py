"""Display ordering for bus routes."""

import re
from typing import List, Optional, Sequence, Tuple

from .models import PlannedRoute

_DIGITS = re.compile(r"\d+")
_TRUNK_MARKERS = ("幹線", "Express")
_LONG_DISTANCE_MARKERS = ("→", "國道")

# Categories for routes without a live ETA, in display order
PURE_NUMBER, TRUNK, NUMBERED, NAMED, LONG_DISTANCE = range(5)


def route_category(route_name: str) -> int:
    if route_name.isdigit():
        return PURE_NUMBER
    if any(marker in route_name for marker in _LONG_DISTANCE_MARKERS):
        return LONG_DISTANCE
    if any(marker in route_name for marker in _TRUNK_MARKERS):
        return TRUNK
    if _DIGITS.search(route_name):
        return NUMBERED
    return NAMED


def route_sort_key(route_name: str, eta_minutes: Optional[int] = None) -> Tuple:
    """
    Sort key: routes with a live ETA first (soonest first), then by name
    category, the first number in the name (e.g. 236 for "236區"), and the
    name itself.
    """
    if eta_minutes is not None:
        return (0, eta_minutes, 0, 0, route_name)
    match = _DIGITS.search(route_name)
    number = int(match.group()) if match else 0
    return (1, 0, route_category(route_name), number, route_name)


def sort_routes(routes: Sequence[PlannedRoute]) -> List[PlannedRoute]:
    return sorted(routes, key=lambda r: route_sort_key(r.route_name, r.eta_minutes))
