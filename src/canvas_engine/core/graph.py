"""
Canvas Graph Model - Nodes, edges and immutable graph snapshots.

This module defines the fundamental building blocks:
- Node: A single element on the canvas with a kind, position and data
- Edge: A directed link from a source node's output to a target handle
- GraphSnapshot: An immutable (nodes, edges) pair used by history and queries
- Handle constants: The named input/output points edges attach to

Mutation lives in ``core.store``; everything here is plain data plus
read-only queries over it.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Iterable, NewType
from uuid import uuid4

from canvas_engine.core.node_types import NodeData, NodeKind, default_data, data_type_for


# Type aliases for clarity
NodeId = NewType("NodeId", str)
EdgeId = NewType("EdgeId", str)


def new_node_id() -> NodeId:
    """Generate a new unique node ID."""
    return NodeId(f"node_{uuid4().hex}")


def new_edge_id() -> EdgeId:
    """Generate a new unique edge ID."""
    return EdgeId(f"edge_{uuid4().hex}")


# Default node footprint used for layout and group membership
NODE_WIDTH = 280.0
NODE_HEIGHT = 200.0

# Kinds whose data width/height is their size on the canvas
SIZED_KINDS = frozenset({NodeKind.GROUP, NodeKind.TEXT})


# --- Handles ---

HANDLE_OUTPUT = "output"
HANDLE_TEXT = "text"
HANDLE_REFERENCE = "reference"
HANDLE_FIRST_FRAME = "firstFrame"
HANDLE_LAST_FRAME = "lastFrame"
HANDLE_VIDEO = "video"
HANDLE_AUDIO = "audio"
HANDLE_PRODUCT_IMAGE = "productImage"
HANDLE_CHARACTER_IMAGE = "characterImage"

MAX_REF_HANDLES = 8
REF_HANDLES: tuple[str, ...] = tuple(f"ref{i}" for i in range(1, MAX_REF_HANDLES + 1))

# Handles that only accept image-typed sources
IMAGE_HANDLES = frozenset({HANDLE_REFERENCE, HANDLE_FIRST_FRAME, HANDLE_LAST_FRAME, *REF_HANDLES})

# Handles on a storyboard node fed by planner-composed media
STRUCTURAL_IMAGE_HANDLES = frozenset({HANDLE_PRODUCT_IMAGE, HANDLE_CHARACTER_IMAGE})


def ref_handle_index(handle: str | None) -> int | None:
    """Return N for a ``refN`` handle, else None."""
    if handle and handle in REF_HANDLES:
        return int(handle[3:])
    return None


@dataclass
class Position:
    """2D point for node positioning on the canvas."""
    x: float = 0.0
    y: float = 0.0

    def __add__(self, other: Position) -> Position:
        return Position(self.x + other.x, self.y + other.y)

    def __sub__(self, other: Position) -> Position:
        return Position(self.x - other.x, self.y - other.y)

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Position:
        data = data or {}
        return cls(float(data.get("x", 0.0)), float(data.get("y", 0.0)))


@dataclass
class Rect:
    """Axis-aligned rectangle in canvas coordinates."""
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def center(self) -> Position:
        return Position(self.x + self.width / 2, self.y + self.height / 2)

    def contains(self, other: Rect) -> bool:
        """True if ``other`` lies entirely inside this rectangle."""
        return (
            other.x >= self.x
            and other.y >= self.y
            and other.right <= self.right
            and other.bottom <= self.bottom
        )


@dataclass
class Node:
    """
    A single node on the canvas.

    Nodes have:
    - A unique ID
    - A kind (selects the NodeData variant)
    - A position on the canvas
    - Kind-specific data, including generation status for generators
    """
    id: NodeId
    kind: NodeKind
    position: Position = field(default_factory=Position)
    data: NodeData = field(default=None)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.data is None:
            self.data = default_data(self.kind)

    @classmethod
    def create(
        cls,
        kind: NodeKind,
        position: Position | None = None,
        data: NodeData | dict[str, Any] | None = None,
        name: str | None = None,
    ) -> Node:
        """Factory method to create a new node with default data for its kind."""
        if isinstance(data, NodeData):
            node_data = copy.deepcopy(data)
        else:
            node_data = default_data(kind, **(data or {}))
        if name is not None:
            node_data = node_data.merged({"name": name})
        return cls(
            id=new_node_id(),
            kind=kind,
            position=position or Position(),
            data=node_data,
        )

    @property
    def bounds(self) -> Rect:
        """Footprint on the canvas; groups and sized text use their own size."""
        if self.kind not in SIZED_KINDS:
            return Rect(self.position.x, self.position.y, NODE_WIDTH, NODE_HEIGHT)
        width = self.data.get("width") or NODE_WIDTH
        height = self.data.get("height") or NODE_HEIGHT
        return Rect(self.position.x, self.position.y, float(width), float(height))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.kind.value,
            "position": self.position.to_dict(),
            "data": self.data.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Node:
        """
        Deserialize a node.

        Raises:
            ValueError: If the node type tag is unknown.
        """
        kind = NodeKind(data["type"])
        return cls(
            id=NodeId(data["id"]),
            kind=kind,
            position=Position.from_dict(data.get("position")),
            data=data_type_for(kind).from_dict(data.get("data")),
        )


@dataclass
class Edge:
    """
    A directed edge between two nodes.

    Connects an output handle of one node to a named input handle of
    another. At most one edge may enter a given (target, target_handle).
    """
    id: EdgeId
    source: NodeId
    target: NodeId
    target_handle: str
    source_handle: str = HANDLE_OUTPUT

    @classmethod
    def create(
        cls,
        source: NodeId,
        source_handle: str | None,
        target: NodeId,
        target_handle: str,
    ) -> Edge:
        """Factory method to create a new edge."""
        return cls(
            id=new_edge_id(),
            source=source,
            target=target,
            target_handle=target_handle,
            source_handle=source_handle or HANDLE_OUTPUT,
        )

    @property
    def is_self_edge(self) -> bool:
        return self.source == self.target

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "sourceHandle": self.source_handle,
            "target": self.target,
            "targetHandle": self.target_handle,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Edge:
        return cls(
            id=EdgeId(data["id"]),
            source=NodeId(data["source"]),
            target=NodeId(data["target"]),
            target_handle=data.get("targetHandle") or "",
            source_handle=data.get("sourceHandle") or HANDLE_OUTPUT,
        )


@dataclass(frozen=True)
class GraphSnapshot:
    """
    Immutable (nodes, edges) pair.

    Snapshots handed out by the store are deep copies: mutating the
    contained nodes never affects live state or recorded history.
    """
    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()

    @classmethod
    def of(cls, nodes: Iterable[Node], edges: Iterable[Edge]) -> GraphSnapshot:
        """Deep-copy ``nodes`` and ``edges`` into a new snapshot."""
        return cls(tuple(copy.deepcopy(list(nodes))), tuple(copy.deepcopy(list(edges))))

    def get_node(self, node_id: NodeId) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_map(self) -> dict[NodeId, Node]:
        return {node.id: node for node in self.nodes}

    def incoming_edges(self, node_id: NodeId) -> list[Edge]:
        """Edges whose target is ``node_id``, in insertion order."""
        return [edge for edge in self.edges if edge.target == node_id]

    def outgoing_edges(self, node_id: NodeId) -> list[Edge]:
        """Edges whose source is ``node_id``, in insertion order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
        }

    def __len__(self) -> int:
        """Return the number of nodes."""
        return len(self.nodes)

    def __contains__(self, node_id: object) -> bool:
        return any(node.id == node_id for node in self.nodes)


def bounds_of(nodes: Iterable[Node]) -> Rect | None:
    """Smallest rectangle covering every node's footprint, or None if empty."""
    rects = [node.bounds for node in nodes]
    if not rects:
        return None
    left = min(r.x for r in rects)
    top = min(r.y for r in rects)
    right = max(r.right for r in rects)
    bottom = max(r.bottom for r in rects)
    return Rect(left, top, right - left, bottom - top)
