import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional


LOCAL_DATA_DIR = Path(os.getenv("LOCAL_DATA_DIR", Path(__file__).resolve().parents[1] / "data"))
ENTITY_TYPES = ("hotels", "restaurants", "attractions", "events", "sports")

_listings: Dict[str, Dict[str, Dict[str, Any]]] = {}
_listings_lock = threading.Lock()


def _load_json(path: Path) -> Any:
    return json.loads(path.read_text())


def _normalize_listing(entity_type: str, item: Dict[str, Any]) -> Dict[str, Any]:
    listing = dict(item)
    listing["id"] = str(listing.get("id") or listing.get("slug"))
    listing.setdefault("type", entity_type)
    listing.setdefault("tags", [])
    listing.setdefault("rating", None)
    return listing


def _load_entity(entity_type: str) -> Dict[str, Dict[str, Any]]:
    path = LOCAL_DATA_DIR / f"{entity_type}.json"
    if not path.exists():
        return {}
    data = _load_json(path)
    items = data if isinstance(data, list) else data.get("listings") or []
    normalized = [_normalize_listing(entity_type, item) for item in items if isinstance(item, dict)]
    return {listing["id"]: listing for listing in normalized}


def _entity(entity_type: str) -> Dict[str, Dict[str, Any]]:
    if entity_type not in ENTITY_TYPES:
        return {}
    with _listings_lock:
        if entity_type not in _listings:
            _listings[entity_type] = _load_entity(entity_type)
        return _listings[entity_type]


def list_listings(entity_type: str, city: Optional[str] = None) -> List[Dict[str, Any]]:
    listings = list(_entity(entity_type).values())
    if city:
        needle = city.strip().lower()
        listings = [item for item in listings if str(item.get("city", "")).lower() == needle]
    return sorted(listings, key=lambda item: str(item.get("name", "")))


def get_listing(entity_type: str, listing_id: str) -> Optional[Dict[str, Any]]:
    return _entity(entity_type).get(listing_id)


def update_listing(entity_type: str, listing_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    entity = _entity(entity_type)
    with _listings_lock:
        listing = entity.get(listing_id)
        if listing is None:
            return None
        updated = {**listing, **{key: value for key, value in changes.items() if value is not None}}
        entity[listing_id] = updated
        return updated


def popular_listings(entity_type: str, limit: int = 5) -> List[Dict[str, Any]]:
    rated = [item for item in _entity(entity_type).values() if item.get("rating") is not None]
    return sorted(rated, key=lambda item: float(item["rating"]), reverse=True)[:limit]


def search_listings(query: str, entity_type: Optional[str] = None) -> List[Dict[str, Any]]:
    needle = query.strip().lower()
    types = [entity_type] if entity_type else list(ENTITY_TYPES)
    matches: List[Dict[str, Any]] = []
    for name in types:
        for item in _entity(name).values():
            haystack = " ".join(
                [str(item.get("name", "")), str(item.get("city", "")), str(item.get("description", ""))]
                + [str(tag) for tag in item.get("tags") or []]
            ).lower()
            if needle in haystack:
                matches.append(item)
    return matches


def reset_listings() -> None:
    with _listings_lock:
        _listings.clear()
