"""Family graph records and shared constants.

These are the durable shapes: a member, a parent->child edge, the viewport and
the cosmetic display settings. Anything computed at render time (generation,
parent labels, fork junctions) lives in layout_utils and is never persisted.
"""

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Constants
# ============================================================================

STORAGE_KEY = "family-tree-data"
BG_STORAGE_KEY = "family-tree-bg"
URL_PARAM = "tree"
EXPORT_FILENAME = "family-tree.json"

MEMBER_KIND = "member"
GENERATION_LINES_KIND = "generationLines"
FORK_EDGE_KIND = "fork"

DEFAULT_LABEL = "Unnamed"
NEW_MEMBER_LABEL = "New member"

# Half-size of a new member node; a canvas click lands on the node centre
NEW_MEMBER_NODE_HALF_WIDTH = 60
NEW_MEMBER_NODE_HALF_HEIGHT = 22

# Spacing of the faint generation guide lines drawn behind the tree
ROW_HEIGHT = 80


# ============================================================================
# Records
# ============================================================================

class Position(BaseModel):
    """A point on the canvas."""
    x: float = 0.0
    y: float = 0.0


class Member(BaseModel):
    """One person in the family graph."""
    id: str
    kind: str = MEMBER_KIND
    position: Position = Field(default_factory=Position)
    label: str = DEFAULT_LABEL

    @property
    def is_decorative(self) -> bool:
        return self.kind == GENERATION_LINES_KIND

    def to_payload(self) -> dict:
        """Minimal persisted shape: id, kind, position and label only."""
        return {
            "id": self.id,
            "kind": self.kind,
            "position": {"x": self.position.x, "y": self.position.y},
            "data": {"label": self.label},
        }


class RelationshipEdge(BaseModel):
    """Directed edge: `source` is a parent of `target`.

    Extra fields coming from the front end (handles, styles, markers) are kept
    as-is so that edges round-trip verbatim. `junction` is attached by the
    fork annotator for rendering only.
    """
    model_config = ConfigDict(extra="allow")

    source: str
    target: str
    id: str | None = None
    kind: str | None = None
    junction: Position | None = None

    @property
    def is_fork(self) -> bool:
        return self.kind == FORK_EDGE_KIND and self.junction is not None

    def to_payload(self) -> dict:
        return self.model_dump(exclude={"junction"}, exclude_none=True)


class Viewport(BaseModel):
    """Pan/zoom state of the canvas."""
    x: float = 0.0
    y: float = 0.0
    zoom: float = Field(default=1.0, gt=0)


class DisplaySettings(BaseModel):
    """Cosmetic settings shared through links and local storage."""
    model_config = ConfigDict(populate_by_name=True)

    node_size: float = Field(default=1.0, ge=0.5, le=2.0, alias="nodeSize")
    node_color: str = Field(default="rgba(255,255,255,0.92)", alias="nodeColor")
    edge_stroke_width: int = Field(default=2, ge=1, le=8, alias="edgeStrokeWidth")
    edge_stroke_color: str = Field(default="#6b4c3b", alias="edgeStrokeColor")

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True)


def default_viewport() -> Viewport:
    return Viewport(x=0.0, y=0.0, zoom=1.0)


def default_settings() -> DisplaySettings:
    return DisplaySettings()
