from .tree_editor import (
    MemberNotFoundError,
    TreeEditor,
    edge_id_for,
)

__all__ = [
    "MemberNotFoundError",
    "TreeEditor",
    "edge_id_for",
]
