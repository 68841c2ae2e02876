"""Member identifier allocation."""

import logging
import re
from typing import Any, Iterable, Mapping

logger = logging.getLogger("familytree.id_allocator")

MEMBER_ID_PREFIX = "member-"
_MEMBER_ID_PATTERN = re.compile(r"^member-(\d+)$")


class IdAllocator:
    """Issues `member-<n>` identifiers from a counter owned by one graph session.

    After a graph is loaded the counter must be re-derived from the ids already
    in use (see `resync`) so new members never collide with persisted ones.
    """

    def __init__(self, start: int = 0):
        self._counter = start

    @property
    def counter(self) -> int:
        return self._counter

    def next(self) -> str:
        """Return the next free id and advance the counter."""
        member_id = f"{MEMBER_ID_PREFIX}{self._counter}"
        self._counter += 1
        return member_id

    def reset(self, next_id: int = 0) -> None:
        self._counter = next_id

    def resync(self, members: Iterable[Any]) -> None:
        """
        Set the counter to one past the highest `member-<n>` suffix in `members`.

        Ids that do not match the pattern are ignored. With no matching id the
        counter becomes 1, not 0.
        """
        max_id = 0
        for member in members:
            if isinstance(member, Mapping):
                member_id = member.get("id")
            else:
                member_id = getattr(member, "id", None)
            match = _MEMBER_ID_PATTERN.match(str(member_id))
            if match:
                max_id = max(max_id, int(match.group(1)))

        self._counter = max_id + 1
        logger.debug(f"Resynced id counter to {self._counter}")
