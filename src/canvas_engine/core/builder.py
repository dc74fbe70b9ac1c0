"""
Graph Builder - Programmatic canvas construction for planners.

A planner decides *what* subgraph to build; the GraphBuilder commits it:
- create_node/create_nodes return ids in input order
- create_edge wires nodes by convention without the connection validator
- transaction() turns everything inside into one undo step
- viewport helpers give planners an anchor to lay nodes out around

Layout is the planner's job; the builder places nodes exactly where asked.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

from canvas_engine.core.graph import (
    NODE_HEIGHT,
    NODE_WIDTH,
    Edge,
    EdgeId,
    Node,
    NodeId,
    Position,
    bounds_of,
)
from canvas_engine.core.node_types import NodeKind
from canvas_engine.core.store import CanvasStore


logger = logging.getLogger(__name__)


# Default layout constants
DEFAULT_COLUMNS = 3
DEFAULT_SPACING = 320.0
DEFAULT_FIT_PADDING = 0.2

MIN_ZOOM = 0.1
MAX_ZOOM = 2.0


@dataclass
class CreateNodeInput:
    """
    Description of one node a planner wants created.

    Attributes:
        kind: Node kind (a NodeKind or its string tag)
        position: Canvas position; defaults to the origin
        data: Initial data, merged over the kind's defaults
        name: Display name for kinds that carry one
    """
    kind: NodeKind | str
    position: Position | None = None
    data: dict[str, Any] = field(default_factory=dict)
    name: str | None = None


@dataclass
class Viewport:
    """
    Visible window onto the canvas.

    ``x``/``y`` are the screen-space translation and ``zoom`` the scale,
    so a canvas point p appears at ``p * zoom + (x, y)``.
    """
    x: float = 0.0
    y: float = 0.0
    zoom: float = 1.0
    width: float = 800.0
    height: float = 600.0

    @property
    def center(self) -> Position:
        """Canvas coordinates of the screen center."""
        return Position(
            (-self.x + self.width / 2) / self.zoom,
            (-self.y + self.height / 2) / self.zoom,
        )

    def set_center(self, point: Position, zoom: float | None = None) -> None:
        if zoom is not None:
            self.zoom = zoom
        self.x = self.width / 2 - point.x * self.zoom
        self.y = self.height / 2 - point.y * self.zoom


def _coerce_kind(kind: NodeKind | str) -> NodeKind:
    if isinstance(kind, NodeKind):
        return kind
    try:
        return NodeKind(kind)
    except ValueError:
        raise ValueError(f"Unknown node type: {kind}") from None


class GraphBuilder:
    """
    Planner-facing API over a CanvasStore.

    Usage:
        builder = GraphBuilder(store)
        with builder.transaction():
            a, b = builder.create_nodes([...])
            builder.create_edge(a, "output", b, "firstFrame")
    """

    def __init__(self, store: CanvasStore, viewport: Viewport | None = None):
        self.store = store
        self.viewport = viewport or Viewport()

    # --- Read operations ---

    def get_nodes(self) -> list[Node]:
        return self.store.nodes

    def get_edges(self) -> list[Edge]:
        return self.store.edges

    def get_selected_nodes(self) -> list[Node]:
        return self.store.get_selected_nodes()

    # --- Construction ---

    @contextmanager
    def transaction(self) -> Iterator[GraphBuilder]:
        """
        Group everything created inside into one undo step.

        If the block raises, what was created so far stays on the canvas
        and is still recorded as one step; the exception propagates.
        """
        with self.store.transaction():
            yield self

    def build_node(self, spec: CreateNodeInput) -> Node:
        """Make (but do not add) the node described by ``spec``."""
        kind = _coerce_kind(spec.kind)
        return Node.create(kind, spec.position or Position(), dict(spec.data), spec.name)

    def create_node(self, spec: CreateNodeInput) -> NodeId:
        """
        Create a single node.

        Raises:
            ValueError: If the node type is unknown.
        """
        node = self.build_node(spec)
        self.store.add_node(node)
        return node.id

    def create_nodes(self, specs: list[CreateNodeInput]) -> list[NodeId]:
        """Create several nodes as one step; ids come back in input order."""
        with self.store.transaction():
            return [self.create_node(spec) for spec in specs]

    def create_edge(
        self,
        source: NodeId,
        source_handle: str | None,
        target: NodeId,
        target_handle: str,
    ) -> EdgeId | None:
        """
        Wire two nodes, bypassing the connection validator.

        Self-edges and missing endpoints are still refused (None is
        returned). A handle the target does not understand is stored but
        never resolved.
        """
        edge = Edge.create(source, source_handle, target, target_handle)
        if not self.store.add_edge(edge):
            logger.debug("create_edge refused %s -> %s.%s", source, target, target_handle)
            return None
        return edge.id

    # --- Viewport ---

    def get_viewport_center(self) -> Position:
        return self.viewport.center

    def get_grid_position(
        self,
        index: int,
        columns: int = DEFAULT_COLUMNS,
        spacing: float = DEFAULT_SPACING,
        start: Position | None = None,
    ) -> Position:
        """Position of cell ``index`` in a grid centered horizontally on ``start``."""
        start = start or self.get_viewport_center()
        col = index % columns
        row = index // columns
        grid_width = (columns - 1) * spacing
        return Position(
            start.x - grid_width / 2 + col * spacing,
            start.y + row * spacing,
        )

    def focus_node(self, node_id: NodeId) -> bool:
        """Center the viewport on a node at zoom 1."""
        node = self.store.get_node(node_id)
        if node is None:
            return False
        self.viewport.set_center(
            Position(node.position.x + NODE_WIDTH / 2, node.position.y + NODE_HEIGHT / 2),
            zoom=1.0,
        )
        return True

    def fit_view(self, node_ids: list[NodeId] | None = None, padding: float = DEFAULT_FIT_PADDING) -> bool:
        """
        Zoom and pan so the given nodes (default: all) fill the viewport.

        Returns False if there is nothing to fit.
        """
        if node_ids:
            nodes = [n for n in (self.store.get_node(nid) for nid in node_ids) if n is not None]
        else:
            nodes = self.store.nodes
        bounds = bounds_of(nodes)
        if bounds is None:
            return False

        scale = 1 + padding
        zoom = min(
            self.viewport.width / (bounds.width * scale),
            self.viewport.height / (bounds.height * scale),
        )
        zoom = max(MIN_ZOOM, min(MAX_ZOOM, zoom))
        self.viewport.set_center(bounds.center, zoom=zoom)
        return True
