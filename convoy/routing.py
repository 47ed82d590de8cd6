"""Item-id prefix routing.

Work item ids carry a prefix (``gt-abc`` -> ``gt-``) that maps, via the
``routes`` table in config.yaml, to the target environment that executes the
item and to the backing store that owns it.
"""

from typing import Any

from .config import HQ_STORE, get_routes


def extract_item_id(ref: str) -> str:
    """Unwrap an ``external:<prefix>:<id>`` reference to the bare item id.

    Malformed references are returned unchanged.
    """
    if not ref.startswith("external:"):
        return ref
    parts = ref.split(":", 2)
    if len(parts) != 3:
        return ref
    return parts[2]


def extract_prefix(item_id: str) -> str:
    """Return the id prefix including the trailing hyphen, or "" if none."""
    item_id = extract_item_id(item_id)
    idx = item_id.find("-")
    if idx <= 0:
        return ""
    return item_id[: idx + 1]


def _route_for(item_id: str, config: dict[str, Any] | None = None) -> dict[str, str] | None:
    prefix = extract_prefix(item_id)
    if not prefix:
        return None
    for route in get_routes(config):
        if route["prefix"] == prefix:
            return route
    return None


def target_for_item(item_id: str, config: dict[str, Any] | None = None) -> str:
    """Resolve the target environment for an item.

    Returns "" when the prefix is missing, unknown, or routes to town level
    (target ``.``), which means the item has no executable target.
    """
    route = _route_for(item_id, config)
    if route is None:
        return ""
    target = route["target"]
    if target in ("", "."):
        return ""
    return target


def store_for_item(item_id: str, config: dict[str, Any] | None = None) -> str:
    """Resolve the name of the backing store that owns an item.

    Falls back to the hq store for unknown prefixes.
    """
    route = _route_for(item_id, config)
    if route is None:
        return HQ_STORE
    return route["store"] or route["target"] or HQ_STORE
