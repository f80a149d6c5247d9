"""Lookup index over a nested prompt-family tree."""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FamilyNode:
    row_id: str
    parent_row_id: str | None
    depth: int


@dataclass(slots=True)
class FamilyIndex:
    nodes: dict[str, FamilyNode] = field(default_factory=dict)
    cycles: list[str] = field(default_factory=list)

    @property
    def root_id(self) -> str | None:
        return next((node.row_id for node in self.nodes.values() if node.depth == 0), None)

    def ids(self) -> list[str]:
        return list(self.nodes)


def build_family_index(tree: dict[str, Any] | None) -> FamilyIndex:
    """Breadth-first walk of ``{"row_id", "parent_row_id", "children": [...]}`` nodes.

    A row reached a second time is recorded in ``cycles`` and not expanded
    again, so malformed trees with back-references terminate.
    """
    index = FamilyIndex()
    if not isinstance(tree, dict):
        return index
    queue: deque[tuple[dict[str, Any], str | None, int]] = deque([(tree, None, 0)])
    visited: set[str] = set()
    while queue:
        node, parent_id, depth = queue.popleft()
        row_id = node.get("row_id")
        if not isinstance(row_id, str) or not row_id:
            logger.warning("Skipping family node without row_id at depth %d", depth)
            continue
        if row_id in visited:
            index.cycles.append(row_id)
            continue
        visited.add(row_id)
        declared_parent = node.get("parent_row_id")
        index.nodes[row_id] = FamilyNode(
            row_id=row_id,
            parent_row_id=declared_parent if isinstance(declared_parent, str) else parent_id,
            depth=depth,
        )
        children = node.get("children")
        for child in children if isinstance(children, list) else []:
            if isinstance(child, dict):
                queue.append((child, row_id, depth + 1))
    if index.cycles:
        logger.warning("Family tree contains repeated rows: %s", ", ".join(index.cycles))
    return index
