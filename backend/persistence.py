"""Persistence and share-link codec for the family graph.

The same payload shape is used for the locally stored record, the `?tree=`
share link and the downloadable JSON export, so any of the three can be fed
back into `deserialize`.
"""

import json
import logging
import math
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable, Mapping
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from pydantic import BaseModel, Field

from family_graph import (
    BG_STORAGE_KEY,
    DEFAULT_LABEL,
    MEMBER_KIND,
    STORAGE_KEY,
    URL_PARAM,
    DisplaySettings,
    Member,
    Position,
    RelationshipEdge,
    Viewport,
    default_settings,
    default_viewport,
)
from id_allocator import IdAllocator

logger = logging.getLogger("familytree.persistence")

STORE_FILENAME = "storage.json"


class LoadResult(BaseModel):
    """A graph as read back from storage, a share link or an import."""
    members: list[Member] = Field(default_factory=list)
    edges: list[RelationshipEdge] = Field(default_factory=list)
    viewport: Viewport = Field(default_factory=default_viewport)
    settings: DisplaySettings = Field(default_factory=default_settings)
    from_shared_link: bool = False
    # Set when the source text could not be decoded at all
    decode_error: str | None = None


def empty_result(from_shared_link: bool = False, decode_error: str | None = None) -> LoadResult:
    return LoadResult(from_shared_link=from_shared_link, decode_error=decode_error)


# ============================================================================
# Local store
# ============================================================================

class LocalStore:
    """String key/value store kept in a single JSON file.

    Plays the role the browser's local storage plays for the front end. A
    missing or corrupt backing file reads as an empty store.
    """

    def __init__(self, data_dir: str | Path):
        self.path = Path(data_dir) / STORE_FILENAME

    def _read_all(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError, RecursionError) as e:
            logger.warning(f"Ignoring unreadable store file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _write_all(self, data: dict[str, str]) -> None:
        """Replace the backing file atomically so a failed write keeps the old one."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=self.path.parent, prefix=f"{self.path.name}.", suffix=".tmp", delete=False
        ) as tmp:
            tmp.write(json.dumps(data))
        try:
            os.replace(tmp.name, self.path)
        except OSError:
            Path(tmp.name).unlink(missing_ok=True)
            raise

    def get_item(self, key: str) -> str | None:
        return self._read_all().get(key)

    def set_item(self, key: str, value: str) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def remove_item(self, key: str) -> None:
        data = self._read_all()
        if data.pop(key, None) is not None:
            self._write_all(data)


# ============================================================================
# Field coercion
# ============================================================================

def _is_number(value: Any) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # Integers too large for a float
        return False


def _to_number(value: Any) -> float:
    """Coerce to a float; anything non-numeric becomes 0."""
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def parse_viewport(raw: Any) -> Viewport:
    """Accept a viewport only when its zoom is a positive number."""
    if not isinstance(raw, Mapping) or not _is_number(raw.get("zoom")) or raw["zoom"] <= 0:
        return default_viewport()
    return Viewport(x=_to_number(raw.get("x")), y=_to_number(raw.get("y")), zoom=raw["zoom"])


def parse_settings(raw: Any, base: DisplaySettings | None = None) -> DisplaySettings:
    """
    Validate display settings field by field.

    Each missing or wrongly typed field falls back to its value in `base`
    (the defaults when not given); one bad field never discards the others.
    Numbers are clamped into range.
    """
    settings = base.model_copy() if base is not None else default_settings()
    if not isinstance(raw, Mapping):
        return settings

    node_size = raw.get("nodeSize")
    if _is_number(node_size):
        settings.node_size = _clamp(float(node_size), 0.5, 2.0)

    node_color = raw.get("nodeColor")
    if isinstance(node_color, str) and node_color.strip():
        settings.node_color = node_color

    stroke_width = raw.get("edgeStrokeWidth")
    if _is_number(stroke_width):
        settings.edge_stroke_width = int(_clamp(round(stroke_width), 1, 8))

    stroke_color = raw.get("edgeStrokeColor")
    if isinstance(stroke_color, str) and stroke_color.strip():
        settings.edge_stroke_color = stroke_color

    return settings


def merge_settings(partial: DisplaySettings | Mapping[str, Any] | None) -> DisplaySettings:
    """Fill a possibly partial settings object up with defaults."""
    if partial is None:
        return default_settings()
    if isinstance(partial, DisplaySettings):
        return partial.model_copy()
    return parse_settings(partial)


def parse_member(raw: Any) -> Member | None:
    if not isinstance(raw, Mapping) or not isinstance(raw.get("id"), str):
        return None

    # Older exports carry the node kind under "type"
    kind = raw.get("kind") or raw.get("type") or MEMBER_KIND
    position = raw.get("position") if isinstance(raw.get("position"), Mapping) else {}
    data = raw.get("data") if isinstance(raw.get("data"), Mapping) else {}
    label = data.get("label")

    return Member(
        id=raw["id"],
        kind=str(kind),
        position=Position(x=_to_number(position.get("x")), y=_to_number(position.get("y"))),
        label=label if isinstance(label, str) else DEFAULT_LABEL,
    )


def parse_edge(raw: Any) -> RelationshipEdge | None:
    if not isinstance(raw, Mapping):
        return None
    if not isinstance(raw.get("source"), str) or not isinstance(raw.get("target"), str):
        return None
    fields = {k: v for k, v in raw.items() if k != "junction"}
    if not isinstance(fields.get("id"), (str, type(None))):
        fields.pop("id")
    if not isinstance(fields.get("kind"), (str, type(None))):
        fields.pop("kind")
    return RelationshipEdge(**fields)


# ============================================================================
# Codec
# ============================================================================

def serialize(
    members: Iterable[Member],
    edges: Iterable[RelationshipEdge],
    viewport: Viewport,
    settings: DisplaySettings | Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the minimal share payload; computed fields are dropped."""
    return {
        "nodes": [m.to_payload() for m in members],
        "edges": [e.to_payload() for e in edges],
        "viewport": {"x": viewport.x, "y": viewport.y, "zoom": viewport.zoom},
        "settings": merge_settings(settings).to_payload(),
    }


def deserialize(raw: Any, allocator: IdAllocator, from_shared_link: bool = False) -> LoadResult:
    """
    Defensively rebuild a graph from a decoded payload.

    Missing or malformed parts are replaced by defaults instead of failing the
    whole load. The allocator is resynced to the loaded member ids.
    """
    if not isinstance(raw, Mapping):
        logger.warning(f"Payload is a {type(raw).__name__}, not an object; using an empty graph")
        raw = {}

    raw_nodes = raw.get("nodes") if isinstance(raw.get("nodes"), list) else []
    raw_edges = raw.get("edges") if isinstance(raw.get("edges"), list) else []

    members = [m for m in (parse_member(n) for n in raw_nodes) if m is not None]
    edges = [e for e in (parse_edge(e) for e in raw_edges) if e is not None]

    skipped = (len(raw_nodes) - len(members)) + (len(raw_edges) - len(edges))
    if skipped:
        logger.warning(f"Skipped {skipped} malformed node/edge entries while loading")

    allocator.resync(members)

    return LoadResult(
        members=members,
        edges=edges,
        viewport=parse_viewport(raw.get("viewport")),
        settings=parse_settings(raw.get("settings")),
        from_shared_link=from_shared_link,
    )


def decode_payload(text: str, allocator: IdAllocator, from_shared_link: bool = False) -> LoadResult:
    """Parse JSON text into a graph; undecodable text yields an empty graph."""
    try:
        raw = json.loads(text)
    except (TypeError, ValueError, RecursionError) as e:
        logger.warning(f"Could not decode tree payload: {e}")
        return empty_result(decode_error=str(e) or type(e).__name__)
    return deserialize(raw, allocator, from_shared_link=from_shared_link)


# ============================================================================
# Local persisted state
# ============================================================================

def save_payload(
    store: LocalStore,
    members: Iterable[Member],
    edges: Iterable[RelationshipEdge],
    viewport: Viewport,
    settings: DisplaySettings | None = None,
) -> None:
    payload = serialize(members, edges, viewport, settings)
    store.set_item(STORAGE_KEY, json.dumps(payload))
    logger.debug(f"Saved tree with {len(payload['nodes'])} nodes and {len(payload['edges'])} edges")


def load_stored_payload(store: LocalStore, allocator: IdAllocator) -> LoadResult:
    raw = store.get_item(STORAGE_KEY)
    if not raw:
        return empty_result()
    return decode_payload(raw, allocator)


def clear_stored_tree(store: LocalStore) -> None:
    store.remove_item(STORAGE_KEY)


def load_background_image(store: LocalStore) -> str | None:
    return store.get_item(BG_STORAGE_KEY)


def save_background_image(store: LocalStore, data_url: str | None) -> None:
    if data_url:
        store.set_item(BG_STORAGE_KEY, data_url)
    else:
        store.remove_item(BG_STORAGE_KEY)


# ============================================================================
# Share link
# ============================================================================

def encode_share_param(payload: dict[str, Any]) -> str:
    """JSON-encode and percent-encode a payload like encodeURIComponent does."""
    text = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return quote(text, safe="-_.!~*'()")


def build_share_url(base_url: str, payload: dict[str, Any]) -> str:
    """Attach the payload to `base_url` as the share query parameter."""
    parts = urlsplit(base_url)
    params = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != URL_PARAM]
    query = urlencode(params)
    share = f"{URL_PARAM}={encode_share_param(payload)}"
    query = f"{query}&{share}" if query else share
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def get_share_param(url: str) -> str | None:
    for key, value in parse_qsl(urlsplit(url).query, keep_blank_values=True):
        if key == URL_PARAM:
            return value
    return None


def strip_share_param(url: str) -> str:
    """Remove the share parameter so a consumed link does not re-apply itself."""
    parts = urlsplit(url)
    params = parse_qsl(parts.query, keep_blank_values=True)
    kept = [(k, v) for k, v in params if k != URL_PARAM]
    if len(kept) == len(params):
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(kept), parts.fragment))


def load_initial_data(
    url: str | None,
    store: LocalStore,
    allocator: IdAllocator,
) -> tuple[LoadResult, str | None]:
    """
    Load the graph a session starts with.

    A payload embedded in the URL wins over the stored one. Either way the
    share parameter is stripped from the returned URL.
    """
    encoded = get_share_param(url) if url else None
    clean_url = strip_share_param(url) if url else url

    if encoded:
        logger.info("Loading tree from shared link")
        return decode_payload(encoded, allocator, from_shared_link=True), clean_url

    result = load_stored_payload(store, allocator)
    logger.info(f"Loaded stored tree with {len(result.members)} members")
    return result, clean_url


# ============================================================================
# File export / import
# ============================================================================

def export_to_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


def import_from_json(text: str, allocator: IdAllocator) -> LoadResult:
    return decode_payload(text, allocator)
