"""Tests for the graph-editing session."""

import json
import os
import pytest
import sys

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from family_graph import (
    DEFAULT_LABEL,
    NEW_MEMBER_LABEL,
    STORAGE_KEY,
    Position,
    Viewport,
)
from layout_utils import compute_align_positions
from persistence import LocalStore
from tools import MemberNotFoundError, TreeEditor


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def store(tmp_path):
    return LocalStore(tmp_path)


@pytest.fixture
def editor(store):
    return TreeEditor(store)


@pytest.fixture
def family_editor(editor):
    """Editor holding two parents (member-0, member-1) and a child (member-2)."""
    editor.add_member(0, 0, "Maria")
    editor.add_member(300, 0, "João")
    editor.add_member(150, 200, "Ana")
    editor.connect("member-0", "member-2")
    editor.connect("member-1", "member-2")
    return editor


def stored_payload(store):
    return json.loads(store.get_item(STORAGE_KEY))


# ============================================================================
# Member mutations
# ============================================================================

class TestMembers:
    """Tests for adding, renaming, moving and deleting members."""

    def test_add_member_centres_on_click(self, editor):
        member = editor.add_member(100, 50)
        assert member.id == "member-0"
        assert member.position == Position(x=40, y=28)
        assert member.label == NEW_MEMBER_LABEL

    def test_add_member_ids_increase(self, editor):
        ids = [editor.add_member(0, 0).id for _ in range(3)]
        assert ids == ["member-0", "member-1", "member-2"]

    def test_add_member_persists(self, editor, store):
        editor.add_member(0, 0, "Maria")
        assert stored_payload(store)["nodes"][0]["data"]["label"] == "Maria"

    def test_rename_trims(self, editor):
        member = editor.add_member(0, 0)
        assert editor.rename_member(member.id, "  Ana  ").label == "Ana"

    def test_rename_blank_uses_default_label(self, editor):
        member = editor.add_member(0, 0)
        assert editor.rename_member(member.id, "   ").label == DEFAULT_LABEL

    def test_move_member(self, editor, store):
        member = editor.add_member(0, 0)
        editor.move_member(member.id, 12.5, -3)
        assert stored_payload(store)["nodes"][0]["position"] == {"x": 12.5, "y": -3}

    def test_unknown_member_raises(self, editor):
        with pytest.raises(MemberNotFoundError):
            editor.rename_member("member-99", "Nobody")
        with pytest.raises(KeyError):
            editor.delete_member("member-99")

    def test_delete_cascades_to_edges(self, family_editor, store):
        family_editor.delete_member("member-0")

        assert [m.id for m in family_editor.members] == ["member-1", "member-2"]
        assert [(e.source, e.target) for e in family_editor.edges] == [("member-1", "member-2")]
        assert len(stored_payload(store)["edges"]) == 1


# ============================================================================
# Edge mutations
# ============================================================================

class TestEdges:
    """Tests for connecting and disconnecting members."""

    def test_connect(self, editor):
        a = editor.add_member(0, 0)
        b = editor.add_member(0, 100)
        edge = editor.connect(a.id, b.id)
        assert edge.id == "edge-member-0-member-1"
        assert (edge.source, edge.target) == (a.id, b.id)

    def test_self_edge_rejected(self, editor):
        a = editor.add_member(0, 0)
        assert editor.connect(a.id, a.id) is None
        assert editor.edges == []

    def test_duplicate_edge_rejected(self, family_editor):
        assert family_editor.connect("member-0", "member-2") is None
        assert len(family_editor.edges) == 2

    def test_unknown_endpoint_rejected(self, editor):
        a = editor.add_member(0, 0)
        assert editor.connect(a.id, "member-42") is None

    def test_delete_edges_by_id(self, family_editor):
        removed = family_editor.delete_edges(["edge-member-0-member-2"])
        assert removed == 1
        assert [e.source for e in family_editor.edges] == ["member-1"]

    def test_disconnect(self, family_editor):
        assert family_editor.disconnect("member-1", "member-2") == 1
        assert family_editor.disconnect("member-1", "member-2") == 0


# ============================================================================
# Layout and view
# ============================================================================

class TestLayout:
    """Tests for the align action and the render view."""

    def test_align_applies_layout(self, family_editor):
        expected = compute_align_positions(
            family_editor.members, family_editor.edges, family_editor.generations()
        )
        family_editor.align()
        assert {m.id: m.position for m in family_editor.members} == expected

    def test_align_is_stable(self, family_editor):
        first = family_editor.align()
        second = family_editor.align()
        assert first == second

    def test_view_has_fork_edges(self, family_editor):
        view = family_editor.view()
        assert all(e["kind"] == "fork" for e in view["edges"])
        child = next(n for n in view["nodes"] if n["id"] == "member-2")
        assert child["generation"] == 1
        assert child["parentLabels"] == ["Maria", "João"]

    def test_view_is_not_persisted(self, family_editor, store):
        family_editor.view()
        stored = stored_payload(store)
        assert all("kind" not in e and "junction" not in e for e in stored["edges"])
        assert all("generation" not in n for n in stored["nodes"])


# ============================================================================
# Settings and viewport
# ============================================================================

class TestSettings:
    """Tests for viewport and display settings updates."""

    def test_set_viewport(self, editor, store):
        editor.set_viewport(Viewport(x=5, y=6, zoom=2))
        assert stored_payload(store)["viewport"] == {"x": 5, "y": 6, "zoom": 2}

    def test_partial_update_keeps_other_fields(self, editor):
        editor.update_settings({"nodeColor": "#eeeeee"})
        settings = editor.update_settings({"edgeStrokeWidth": 5, "nodeSize": "huge"})
        assert settings.node_color == "#eeeeee"
        assert settings.edge_stroke_width == 5
        assert settings.node_size == 1.0

    def test_invalid_field_keeps_current_value(self, editor):
        editor.update_settings({"nodeSize": 1.5})
        assert editor.update_settings({"nodeSize": None}).node_size == 1.5


# ============================================================================
# Loading, sharing and files
# ============================================================================

class TestSessionLifecycle:
    """Tests for reloads, shared links, import/export and clearing."""

    def test_reload_resyncs_ids(self, family_editor, store):
        reloaded = TreeEditor(store)
        reloaded.load_initial()

        assert len(reloaded.members) == 3
        assert reloaded.add_member(0, 0).id == "member-3"

    def test_shared_link_round_trip(self, family_editor, tmp_path):
        url = family_editor.share_url("http://localhost:5173/?lang=pt")

        other = TreeEditor(LocalStore(tmp_path / "other"))
        clean_url = other.load_initial(url)

        assert clean_url == "http://localhost:5173/?lang=pt"
        assert other.from_shared_link is True
        assert [m.label for m in other.members] == ["Maria", "João", "Ana"]
        assert len(stored_payload(other.store)["nodes"]) == 3

    def test_export_import(self, family_editor, tmp_path):
        text = family_editor.export_json()

        other = TreeEditor(LocalStore(tmp_path / "other"))
        other.import_json(text)

        assert other.payload() == family_editor.payload()
        assert other.add_member(0, 0).id == "member-3"

    def test_import_garbage_yields_empty_canvas(self, family_editor):
        family_editor.import_json("definitely not json")
        assert family_editor.members == []
        assert family_editor.edges == []

    def test_import_garbage_keeps_stored_tree(self, family_editor, store):
        family_editor.import_json("definitely not json")

        assert len(stored_payload(store)["nodes"]) == 3
        reloaded = TreeEditor(store)
        reloaded.load_initial()
        assert [m.label for m in reloaded.members] == ["Maria", "João", "Ana"]

    def test_import_wrong_shape_is_committed(self, family_editor, store):
        """Valid JSON that is not a tree still replaces the stored graph."""
        family_editor.import_json("[1, 2, 3]")
        assert stored_payload(store)["nodes"] == []

    def test_clear(self, family_editor, store):
        family_editor.clear()
        assert family_editor.members == []
        assert store.get_item(STORAGE_KEY) is None
        assert family_editor.add_member(0, 0).id == "member-0"
