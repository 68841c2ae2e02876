"""Generation resolution, aligned layout and fork-junction edge geometry.

Pure functions over member and edge snapshots; nothing here mutates its input.
"""

import logging
from typing import Any, Iterable

from family_graph import (
    FORK_EDGE_KIND,
    ROW_HEIGHT,
    Member,
    Position,
    RelationshipEdge,
)

logger = logging.getLogger("familytree.layout")

MIN_H_GAP = 40
MIN_V_GAP = 80
# Assumed node size for spacing; larger than the drawn node so long names fit
LAYOUT_NODE_WIDTH = 180
LAYOUT_NODE_HEIGHT = 70
COL_GAP = LAYOUT_NODE_WIDTH + MIN_H_GAP
ALIGN_ROW_HEIGHT = LAYOUT_NODE_HEIGHT + MIN_V_GAP

NODE_CENTER_X = 60
JUNCTION_OFFSET_Y = 40


# ============================================================================
# Helpers
# ============================================================================

def family_members(members: Iterable[Member]) -> list[Member]:
    """Drop decorative nodes (generation guide lines) from a member list."""
    return [m for m in members if not m.is_decorative]


def parent_index(edges: Iterable[RelationshipEdge]) -> dict[str, list[str]]:
    """Map each target id to the source ids of its incoming edges, in edge order."""
    parents: dict[str, list[str]] = {}
    for edge in edges:
        parents.setdefault(edge.target, []).append(edge.source)
    return parents


# ============================================================================
# Generation Resolver
# ============================================================================

def get_generations(members: Iterable[Member], edges: Iterable[RelationshipEdge]) -> dict[str, int]:
    """
    Assign every member a generation number by fixed-point propagation.

    A member without (existing) parents is generation 0; a member whose parents
    are all resolved is one below the deepest of them. Passes repeat until one
    changes nothing. Members that never resolve (parent cycles) fall back to 0.
    """
    member_ids = [m.id for m in members]
    id_set = set(member_ids)
    parents_of = {
        target: [p for p in sources if p in id_set]
        for target, sources in parent_index(edges).items()
    }

    generations: dict[str, int | None] = {member_id: None for member_id in member_ids}

    max_passes = len(generations) + 1
    for _ in range(max_passes):
        changed = False
        for member_id in member_ids:
            if generations[member_id] is not None:
                continue
            parents = parents_of.get(member_id, [])
            if not parents:
                generations[member_id] = 0
                changed = True
                continue
            parent_gens = [generations[p] for p in parents]
            if all(g is not None for g in parent_gens):
                generations[member_id] = 1 + max(parent_gens)
                changed = True
        if not changed:
            break

    unresolved = [member_id for member_id, gen in generations.items() if gen is None]
    if unresolved:
        logger.debug(f"{len(unresolved)} member(s) in parent cycles defaulted to generation 0")

    return {member_id: gen if gen is not None else 0 for member_id, gen in generations.items()}


# ============================================================================
# Alignment Layout Engine
# ============================================================================

def compute_align_positions(
    members: Iterable[Member],
    edges: Iterable[RelationshipEdge],
    generations: dict[str, int],
) -> dict[str, Position]:
    """
    Compute aligned positions: one row per generation, symmetric columns.

    Within a row, members sharing the same parents are kept together (sorted by
    their joined parent ids, then by id). The whole layout is re-centred on the
    origin so repeated aligning does not drift.
    """
    nodes = family_members(members)
    if not nodes:
        return {}

    parents_of = parent_index(edges)

    def row_key(member: Member) -> tuple[str, str]:
        return ",".join(sorted(parents_of.get(member.id, []))), member.id

    rows: dict[int, list[Member]] = {}
    for member in nodes:
        rows.setdefault(generations.get(member.id, 0), []).append(member)

    placed: dict[str, tuple[float, float]] = {}
    for gen in sorted(rows):
        row = sorted(rows[gen], key=row_key)
        start_x = -((len(row) - 1) * COL_GAP) / 2
        for i, member in enumerate(row):
            placed[member.id] = (start_x + i * COL_GAP, gen * ALIGN_ROW_HEIGHT)

    xs = [x for x, _ in placed.values()]
    ys = [y for _, y in placed.values()]
    center_x = (min(xs) + max(xs)) / 2
    center_y = (min(ys) + max(ys)) / 2

    logger.debug(f"Aligned {len(placed)} members into {len(rows)} generation rows")
    return {
        member_id: Position(x=x - center_x, y=y - center_y)
        for member_id, (x, y) in placed.items()
    }


# ============================================================================
# Fork-Junction Annotator
# ============================================================================

def _pair_key(parents: list[str]) -> tuple[str, str] | None:
    if len(parents) != 2:
        return None
    first, second = sorted(parents)
    return first, second


def enrich_edges_with_junctions(
    members: Iterable[Member],
    edges: list[RelationshipEdge],
) -> list[RelationshipEdge]:
    """
    Tag edges into two-parent children with a shared junction point.

    Full siblings (same parent pair) share one junction, placed above the
    highest of them and midway between the two parents. Edges into children
    with any other number of parents are returned unchanged.
    """
    nodes = {m.id: m for m in family_members(members)}
    parents_of = parent_index(edges)

    children_by_pair: dict[tuple[str, str], list[Member]] = {}
    for member in nodes.values():
        key = _pair_key(parents_of.get(member.id, []))
        if key is not None:
            children_by_pair.setdefault(key, []).append(member)

    junctions: dict[tuple[str, str], Position] = {}
    for (p1, p2), children in children_by_pair.items():
        parent1 = nodes.get(p1)
        parent2 = nodes.get(p2)
        if parent1 is None or parent2 is None:
            continue
        junctions[(p1, p2)] = Position(
            x=(parent1.position.x + parent2.position.x) / 2 + NODE_CENTER_X,
            y=min(child.position.y for child in children) - JUNCTION_OFFSET_Y,
        )

    annotated = []
    for edge in edges:
        key = _pair_key(parents_of.get(edge.target, []))
        junction = junctions.get(key) if key is not None else None
        if junction is None:
            annotated.append(edge)
            continue
        annotated.append(edge.model_copy(update={
            "kind": FORK_EDGE_KIND,
            "junction": junction.model_copy(),
        }))
    return annotated


def edge_segments(
    edge: RelationshipEdge,
    source_point: Position,
    target_point: Position,
) -> list[tuple[Position, Position]]:
    """
    Segments a renderer must draw for an edge.

    A forked edge goes source -> junction -> target so both parents merge into
    the same line; everything else is one direct segment.
    """
    if edge.is_fork:
        return [(source_point, edge.junction), (edge.junction, target_point)]
    return [(source_point, target_point)]


# ============================================================================
# Runtime view-model
# ============================================================================

def build_tree_view(members: list[Member], edges: list[RelationshipEdge]) -> dict[str, Any]:
    """
    Join members with their derived render-time fields.

    Returns generation and parent labels per member, fork-annotated edges with
    their segments, and metadata for the generation guide lines. The result is
    for display only and must never be fed back into serialization.
    """
    generations = get_generations(members, edges)
    by_id = {m.id: m for m in members}
    parents_of = parent_index(edges)

    nodes = []
    for member in members:
        parent_labels = [
            by_id[p].label for p in sorted(parents_of.get(member.id, [])) if p in by_id
        ]
        nodes.append({
            "id": member.id,
            "kind": member.kind,
            "position": {"x": member.position.x, "y": member.position.y},
            "label": member.label,
            "generation": generations[member.id],
            "parentLabels": parent_labels,
        })

    edge_views = []
    for edge in enrich_edges_with_junctions(members, edges):
        source = by_id.get(edge.source)
        target = by_id.get(edge.target)
        view = edge.model_dump(exclude_none=True)
        if source is not None and target is not None:
            view["segments"] = [
                [start.model_dump(), end.model_dump()]
                for start, end in edge_segments(edge, source.position, target.position)
            ]
        edge_views.append(view)

    family_gens = [generations[m.id] for m in family_members(members)]
    return {
        "nodes": nodes,
        "edges": edge_views,
        "generationLines": {
            "maxGeneration": max(family_gens) if family_gens else -1,
            "rowHeight": ROW_HEIGHT,
        },
    }
