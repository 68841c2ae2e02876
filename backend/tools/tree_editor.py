"""Graph-editing session: the mutations the canvas sends and their persistence."""

import logging
from typing import Any, Iterable, Mapping

from family_graph import (
    DEFAULT_LABEL,
    NEW_MEMBER_LABEL,
    NEW_MEMBER_NODE_HALF_HEIGHT,
    NEW_MEMBER_NODE_HALF_WIDTH,
    DisplaySettings,
    Member,
    Position,
    RelationshipEdge,
    Viewport,
    default_settings,
    default_viewport,
)
from id_allocator import IdAllocator
from layout_utils import build_tree_view, compute_align_positions, get_generations
from persistence import (
    LoadResult,
    LocalStore,
    build_share_url,
    clear_stored_tree,
    export_to_json,
    import_from_json,
    load_initial_data,
    parse_settings,
    save_payload,
    serialize,
)

logger = logging.getLogger("familytree.tools.tree_editor")


class MemberNotFoundError(KeyError):
    """Raised when a mutation names a member that is not in the graph."""

    def __init__(self, member_id: str):
        super().__init__(member_id)
        self.member_id = member_id

    def __str__(self) -> str:
        return f"Member not found: '{self.member_id}'"


def edge_id_for(source: str, target: str) -> str:
    return f"edge-{source}-{target}"


class TreeEditor:
    """
    One user's editing session over a family graph.

    Owns the id allocator, so several sessions (or tests) never share a
    counter. Every committed mutation is written to the store straight away.
    """

    def __init__(self, store: LocalStore, allocator: IdAllocator | None = None):
        self.store = store
        self.allocator = allocator or IdAllocator()
        self.members: list[Member] = []
        self.edges: list[RelationshipEdge] = []
        self.viewport: Viewport = default_viewport()
        self.settings: DisplaySettings = default_settings()
        self.from_shared_link = False

    # ------------------------------------------------------------------
    # Loading and persistence
    # ------------------------------------------------------------------

    def load(self, result: LoadResult) -> None:
        """Replace the whole session state with a loaded graph."""
        self.members = list(result.members)
        self.edges = list(result.edges)
        self.viewport = result.viewport
        self.settings = result.settings
        self.from_shared_link = result.from_shared_link
        logger.info(
            f"Session loaded {len(self.members)} members and {len(self.edges)} edges"
            + (" from a shared link" if self.from_shared_link else "")
        )

    def load_initial(self, url: str | None = None) -> str | None:
        """Load from a shared link in `url` or from the store; returns the cleaned URL."""
        result, clean_url = load_initial_data(url, self.store, self.allocator)
        self.load(result)
        if result.from_shared_link:
            # A shared tree becomes this user's local tree
            self.commit()
        return clean_url

    def commit(self) -> None:
        save_payload(self.store, self.members, self.edges, self.viewport, self.settings)

    def payload(self) -> dict[str, Any]:
        return serialize(self.members, self.edges, self.viewport, self.settings)

    def clear(self) -> None:
        """Start over with an empty canvas."""
        self.members = []
        self.edges = []
        self.allocator.reset()
        clear_stored_tree(self.store)
        logger.info("Cleared stored tree")

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    def get_member(self, member_id: str) -> Member:
        for member in self.members:
            if member.id == member_id:
                return member
        raise MemberNotFoundError(member_id)

    def add_member(self, x: float, y: float, label: str = NEW_MEMBER_LABEL) -> Member:
        """Add a member centred on the clicked canvas point."""
        member = Member(
            id=self.allocator.next(),
            position=Position(
                x=x - NEW_MEMBER_NODE_HALF_WIDTH,
                y=y - NEW_MEMBER_NODE_HALF_HEIGHT,
            ),
            label=label.strip() or DEFAULT_LABEL,
        )
        self.members.append(member)
        logger.info(f"Added member {member.id} ('{member.label}')")
        self.commit()
        return member

    def rename_member(self, member_id: str, name: str) -> Member:
        member = self.get_member(member_id)
        member.label = name.strip() or DEFAULT_LABEL
        logger.info(f"Renamed {member_id} to '{member.label}'")
        self.commit()
        return member

    def move_member(self, member_id: str, x: float, y: float) -> Member:
        member = self.get_member(member_id)
        member.position = Position(x=x, y=y)
        self.commit()
        return member

    def delete_member(self, member_id: str) -> None:
        """Delete a member together with every edge touching it."""
        self.get_member(member_id)
        self.members = [m for m in self.members if m.id != member_id]
        before = len(self.edges)
        self.edges = [e for e in self.edges if e.source != member_id and e.target != member_id]
        logger.info(f"Deleted member {member_id} and {before - len(self.edges)} edge(s)")
        self.commit()

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def connect(self, source: str, target: str) -> RelationshipEdge | None:
        """
        Connect `source` as a parent of `target`.

        Self-edges, edges to unknown members and duplicates are rejected by
        returning None; nothing is added in that case.
        """
        if source == target:
            logger.debug(f"Rejected self-edge on {source}")
            return None
        known = {m.id for m in self.members}
        if source not in known or target not in known:
            logger.debug(f"Rejected edge {source} -> {target}: unknown endpoint")
            return None
        if any(e.source == source and e.target == target for e in self.edges):
            logger.debug(f"Edge {source} -> {target} already exists")
            return None

        edge = RelationshipEdge(id=edge_id_for(source, target), source=source, target=target)
        self.edges.append(edge)
        logger.info(f"Connected {source} -> {target}")
        self.commit()
        return edge

    def delete_edges(self, edge_ids: Iterable[str]) -> int:
        doomed = set(edge_ids)
        before = len(self.edges)
        self.edges = [
            e for e in self.edges
            if (e.id or edge_id_for(e.source, e.target)) not in doomed
        ]
        removed = before - len(self.edges)
        if removed:
            self.commit()
        return removed

    def disconnect(self, source: str, target: str) -> int:
        before = len(self.edges)
        self.edges = [e for e in self.edges if not (e.source == source and e.target == target)]
        removed = before - len(self.edges)
        if removed:
            self.commit()
        return removed

    # ------------------------------------------------------------------
    # Layout, view and settings
    # ------------------------------------------------------------------

    def generations(self) -> dict[str, int]:
        return get_generations(self.members, self.edges)

    def align(self) -> dict[str, Position]:
        """Move every member to its generation-aligned position."""
        positions = compute_align_positions(self.members, self.edges, self.generations())
        for member in self.members:
            if member.id in positions:
                member.position = positions[member.id]
        logger.info(f"Aligned {len(positions)} members")
        self.commit()
        return positions

    def view(self) -> dict[str, Any]:
        return build_tree_view(self.members, self.edges)

    def set_viewport(self, viewport: Viewport) -> None:
        self.viewport = viewport
        self.commit()

    def update_settings(self, changes: Mapping[str, Any]) -> DisplaySettings:
        """Apply a partial settings update; invalid fields keep their current value."""
        self.settings = parse_settings(changes, base=self.settings)
        self.commit()
        return self.settings

    # ------------------------------------------------------------------
    # Sharing and files
    # ------------------------------------------------------------------

    def share_url(self, base_url: str) -> str:
        return build_share_url(base_url, self.payload())

    def export_json(self) -> str:
        return export_to_json(self.payload())

    def import_json(self, text: str) -> LoadResult:
        result = import_from_json(text, self.allocator)
        self.load(result)
        if result.decode_error:
            # Show the empty canvas but keep the stored tree
            logger.warning(f"Import could not be decoded, stored tree left untouched: {result.decode_error}")
            return result
        self.commit()
        return result
