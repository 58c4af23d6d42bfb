from math import atan2, cos, radians, sin, sqrt
from typing import Any, Dict, Iterable, List, Optional

EARTH_RADIUS_M = 6371000.0

MATCH_RADIUS_M = 50000
MATCH_LIMIT = 10
DEFAULT_MATCH_CONFIDENCE = 0.7
NEARBY_RADIUS_M = 10000


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    a = sin(dlat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_M * c


def item_coordinates(doc: Dict[str, Any]) -> Optional[Dict[str, float]]:
    coords = (doc.get("location") or {}).get("coordinates") or {}
    try:
        return {"lat": float(coords["lat"]), "lng": float(coords["lng"])}
    except (KeyError, TypeError, ValueError):
        return None


def nearest_first(docs: Iterable[Dict[str, Any]], origin: Dict[str, float], max_distance_m: float) -> List[Dict[str, Any]]:
    """Keep documents within ``max_distance_m`` of ``origin`` and sort them by proximity.

    Each kept document gets a ``distanceKm`` field.
    """
    ranked = []
    for d in docs:
        coords = item_coordinates(d)
        if coords is None:
            continue
        dist = haversine_m(origin["lat"], origin["lng"], coords["lat"], coords["lng"])
        if dist <= max_distance_m:
            d["distanceKm"] = round(dist / 1000.0, 2)
            ranked.append((dist, d))
    ranked.sort(key=lambda pair: pair[0])
    return [d for _, d in ranked]


def opposite_type(item_type: str) -> str:
    return "found" if item_type == "lost" else "lost"


def find_potential_matches(items, item_id: str, item_type: str, category: str, coordinates: Dict[str, float],
                           radius_m: float = MATCH_RADIUS_M, limit: int = MATCH_LIMIT) -> List[Dict[str, Any]]:
    """Active items of the opposite type in the same category, nearest first.

    Recomputed on every call; nothing here is cached. ``items`` is an
    ``ItemRepository``.
    """
    candidates = items.find_active(
        {"_id": {"$ne": items.key(item_id)}, "type": opposite_type(item_type), "category": category}
    )
    return nearest_first(candidates, coordinates, radius_m)[:limit]


def matches_for(items, item: Dict[str, Any]) -> List[Dict[str, Any]]:
    coords = item_coordinates(item)
    if coords is None:
        return []
    return find_potential_matches(items, str(item["_id"]), item["type"], item["category"], coords)
