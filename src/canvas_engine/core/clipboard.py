"""
Clipboard - Copy, paste, duplicate and spatial grouping helpers.

These are pure functions over nodes and edges; ``CanvasStore`` wires them
to its selection, clipboard slot and history.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Iterable

from canvas_engine.core.graph import (
    Edge,
    Node,
    NodeId,
    Position,
    Rect,
    bounds_of,
    new_edge_id,
    new_node_id,
)
from canvas_engine.core.node_types import GenerationStatus, NodeKind


PASTE_OFFSET = 50.0
GROUP_PADDING = 40.0


@dataclass(frozen=True)
class Clipboard:
    """A detached copy of a prior selection."""
    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.nodes


def copy_nodes(node_ids: Iterable[NodeId], nodes: Iterable[Node], edges: Iterable[Edge]) -> Clipboard:
    """
    Copy the given nodes plus the edges running between them.

    Edges with only one endpoint in the copied set are left behind.
    """
    wanted = set(node_ids)
    copied = [node for node in nodes if node.id in wanted]
    copied_ids = {node.id for node in copied}
    related = [
        edge for edge in edges
        if edge.source in copied_ids and edge.target in copied_ids
    ]
    return Clipboard(tuple(copy.deepcopy(copied)), tuple(copy.deepcopy(related)))


def paste_clipboard(
    clipboard: Clipboard,
    position: Position | None = None,
) -> tuple[list[Node], list[Edge]]:
    """
    Materialize clipboard contents with fresh ids.

    Without ``position`` everything shifts by a fixed offset. With it, the
    first copied node lands on ``position`` and the rest keep their
    relative layout. Edges are remapped onto the new node ids. Copies never
    inherit a running job; outputs are kept.
    """
    if clipboard.is_empty:
        return [], []

    anchor = clipboard.nodes[0].position
    if position is None:
        offset = Position(PASTE_OFFSET, PASTE_OFFSET)
    else:
        offset = position - anchor

    id_map: dict[NodeId, NodeId] = {}
    new_nodes: list[Node] = []
    for node in clipboard.nodes:
        clone = copy.deepcopy(node)
        clone.id = new_node_id()
        clone.position = node.position + offset
        if isinstance(clone.data, GenerationStatus):
            clone.data.reset_job()
        id_map[node.id] = clone.id
        new_nodes.append(clone)

    new_edges = [
        Edge(
            id=new_edge_id(),
            source=id_map[edge.source],
            target=id_map[edge.target],
            target_handle=edge.target_handle,
            source_handle=edge.source_handle,
        )
        for edge in clipboard.edges
        if edge.source in id_map and edge.target in id_map
    ]
    return new_nodes, new_edges


def duplicate_anchor(nodes: Iterable[Node]) -> Position | None:
    """Paste position for a duplicate: the selection's mean position plus the offset."""
    nodes = list(nodes)
    if not nodes:
        return None
    avg_x = sum(node.position.x for node in nodes) / len(nodes)
    avg_y = sum(node.position.y for node in nodes) / len(nodes)
    return Position(avg_x + PASTE_OFFSET, avg_y + PASTE_OFFSET)


def group_rect_for(nodes: Iterable[Node], padding: float = GROUP_PADDING) -> Rect | None:
    """Rectangle enclosing ``nodes`` with ``padding`` on every side."""
    bounds = bounds_of(nodes)
    if bounds is None:
        return None
    return Rect(
        bounds.x - padding,
        bounds.y - padding,
        bounds.width + 2 * padding,
        bounds.height + 2 * padding,
    )


def group_members(group: Node, nodes: Iterable[Node]) -> list[Node]:
    """
    Nodes whose footprint lies entirely inside the group rectangle.

    Membership is computed from positions on every call; nothing is stored.
    """
    if group.kind is not NodeKind.GROUP:
        return []
    area = group.bounds
    return [
        node for node in nodes
        if node.id != group.id and area.contains(node.bounds)
    ]
