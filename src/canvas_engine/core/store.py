"""
Canvas Store - The single owner of canvas graph state.

The store holds nodes, edges, the selection, the clipboard and the undo
history, and is the only place they are mutated. Every mutation:
- is total (an unknown id is a no-op, logged at debug level)
- becomes one undo step, unless it runs inside a gesture/transaction or is
  flagged ``track_history=False``
- notifies subscribers with a StoreChange

Readers that need a stable view take ``snapshot()``, which is a deep copy.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator

from canvas_engine.core.clipboard import (
    Clipboard,
    copy_nodes,
    duplicate_anchor,
    group_members,
    group_rect_for,
    paste_clipboard,
)
from canvas_engine.core.graph import (
    Edge,
    EdgeId,
    GraphSnapshot,
    Node,
    NodeId,
    Position,
)
from canvas_engine.core.history import DEFAULT_HISTORY_LIMIT, HistoryManager
from canvas_engine.core.inputs import ResolvedInputs, get_connected_inputs
from canvas_engine.core.node_types import GenerationStatus, GroupData, NodeKind
from canvas_engine.core.validation import (
    CapabilityLookup,
    ConnectionCandidate,
    is_valid_connection,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreChange:
    """
    Notification sent to subscribers after a mutation.

    ``reason`` names the operation ("add_node", "undo", ...); the id tuples
    list what it touched, and are empty for whole-graph replacements.
    """
    reason: str
    node_ids: tuple[NodeId, ...] = ()
    edge_ids: tuple[EdgeId, ...] = ()


Listener = Callable[[StoreChange], Any]


class CanvasStore:
    """
    Mutable canvas graph with undo/redo and change notification.

    Usage:
        store = CanvasStore()
        node = Node.create(NodeKind.TEXT, Position(0, 0))
        store.add_node(node)
        with store.gesture():
            store.move_node(node.id, Position(10, 0))
            store.move_node(node.id, Position(20, 0))
        store.undo()  # back to (0, 0) in one step
    """

    def __init__(
        self,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        capabilities: CapabilityLookup | None = None,
    ):
        self._nodes: dict[NodeId, Node] = {}
        self._edges: dict[EdgeId, Edge] = {}
        self._selected_nodes: list[NodeId] = []
        self._selected_edges: list[EdgeId] = []
        self._clipboard: Clipboard | None = None
        self._listeners: list[Listener] = []
        self._capabilities = capabilities

        self.history = HistoryManager(history_limit)
        self._batch_depth = 0
        self._batch_before: GraphSnapshot | None = None

    # --- Read access ---

    @property
    def nodes(self) -> list[Node]:
        """All nodes in insertion order (treat as read-only)."""
        return list(self._nodes.values())

    @property
    def edges(self) -> list[Edge]:
        """All edges in insertion order (treat as read-only)."""
        return list(self._edges.values())

    def get_node(self, node_id: NodeId) -> Node | None:
        return self._nodes.get(node_id)

    def get_edge(self, edge_id: EdgeId) -> Edge | None:
        return self._edges.get(edge_id)

    def snapshot(self) -> GraphSnapshot:
        """Deep copy of the current (nodes, edges)."""
        return GraphSnapshot.of(self._nodes.values(), self._edges.values())

    def incoming_edges(self, node_id: NodeId) -> list[Edge]:
        return [edge for edge in self._edges.values() if edge.target == node_id]

    def outgoing_edges(self, node_id: NodeId) -> list[Edge]:
        return [edge for edge in self._edges.values() if edge.source == node_id]

    def edge_into(self, node_id: NodeId, handle: str) -> Edge | None:
        """The edge occupying an input handle, if any."""
        for edge in self._edges.values():
            if edge.target == node_id and edge.target_handle == handle:
                return edge
        return None

    def get_connected_inputs(self, node_id: NodeId) -> ResolvedInputs:
        """Resolve a node's inputs against the live graph."""
        return get_connected_inputs(node_id, self._nodes, self._edges.values())

    def is_valid_connection(self, candidate: ConnectionCandidate | Edge) -> bool:
        return is_valid_connection(candidate, self._nodes, self._capabilities)

    def __len__(self) -> int:
        """Return the number of nodes."""
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    # --- Subscribers ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a change listener.

        Returns:
            A function that removes the listener again.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Store listener failed on %s", change.reason)

    # --- History plumbing ---

    def _before(self, track_history: bool) -> GraphSnapshot | None:
        """Pre-mutation snapshot to record, or None if no entry is due."""
        if not track_history or self._batch_depth > 0:
            return None
        return self.snapshot()

    def _commit(
        self,
        before: GraphSnapshot | None,
        reason: str,
        node_ids: Iterable[NodeId] = (),
        edge_ids: Iterable[EdgeId] = (),
    ) -> None:
        if before is not None:
            self.history.record(before)
        self._notify(StoreChange(reason, tuple(node_ids), tuple(edge_ids)))

    def begin_gesture(self) -> None:
        """Start coalescing mutations into a single undo step."""
        if self._batch_depth == 0:
            self._batch_before = self.snapshot()
        self._batch_depth += 1

    def end_gesture(self) -> None:
        """
        Close a gesture; the outermost close records one entry.

        Nothing is recorded if the graph ended up unchanged.
        """
        if self._batch_depth == 0:
            logger.debug("end_gesture called without a matching begin_gesture")
            return
        self._batch_depth -= 1
        if self._batch_depth > 0:
            return
        before, self._batch_before = self._batch_before, None
        if before is not None and before != self.snapshot():
            self.history.record(before)

    @contextmanager
    def gesture(self) -> Iterator[CanvasStore]:
        """
        Coalesce every mutation inside the block into one undo step.

        The entry is recorded even if the block raises; nothing is rolled
        back.
        """
        self.begin_gesture()
        try:
            yield self
        finally:
            self.end_gesture()

    transaction = gesture

    @property
    def in_gesture(self) -> bool:
        return self._batch_depth > 0

    def undo(self) -> bool:
        """Restore the previous state. Returns False if there was none."""
        if self._batch_depth > 0:
            logger.debug("Ignoring undo during an open gesture")
            return False
        previous = self.history.undo(self.snapshot())
        if previous is None:
            return False
        self._restore(previous, "undo")
        return True

    def redo(self) -> bool:
        """Re-apply the last undone state. Returns False if there was none."""
        if self._batch_depth > 0:
            logger.debug("Ignoring redo during an open gesture")
            return False
        following = self.history.redo(self.snapshot())
        if following is None:
            return False
        self._restore(following, "redo")
        return True

    def can_undo(self) -> bool:
        return self.history.can_undo()

    def can_redo(self) -> bool:
        return self.history.can_redo()

    def _restore(self, snapshot: GraphSnapshot, reason: str) -> None:
        # Copy again so the history entry stays independent of live state
        fresh = GraphSnapshot.of(snapshot.nodes, snapshot.edges)
        for node in fresh.nodes:
            if isinstance(node.data, GenerationStatus):
                self._carry_job_state(node, self._nodes.get(node.id))
        self._nodes = {node.id: node for node in fresh.nodes}
        self._edges = {edge.id: edge for edge in fresh.edges}
        self._prune_selection()
        self._notify(StoreChange(reason))

    @staticmethod
    def _carry_job_state(restored: Node, live: Node | None) -> None:
        """
        Keep job status out of undo/redo.

        A node that is still on the canvas keeps its live status and
        outputs. A node brought back from deletion lost its poller with it,
        so it returns without an in-flight job.
        """
        if live is not None and type(live.data) is type(restored.data):
            for name, value in live.data.job_fields().items():
                setattr(restored.data, name, value)
        else:
            restored.data.reset_job()

    # --- Node operations ---

    def add_node(self, node: Node, track_history: bool = True) -> bool:
        """Add a node. A node whose id is already present is ignored."""
        if node.id in self._nodes:
            logger.debug("add_node: %s already exists", node.id)
            return False
        before = self._before(track_history)
        self._nodes[node.id] = node
        self._commit(before, "add_node", [node.id])
        return True

    def add_nodes(self, nodes: Iterable[Node], track_history: bool = True) -> list[NodeId]:
        """Add several nodes as one step; returns the ids actually added."""
        nodes = [node for node in nodes if node.id not in self._nodes]
        if not nodes:
            return []
        before = self._before(track_history)
        for node in nodes:
            self._nodes[node.id] = node
        ids = [node.id for node in nodes]
        self._commit(before, "add_nodes", ids)
        return ids

    def remove_node(self, node_id: NodeId, track_history: bool = True) -> Node | None:
        """
        Remove a node and every edge touching it.

        Returns the removed node, or None if not found.
        """
        removed = self.remove_nodes([node_id], track_history)
        return removed[0] if removed else None

    def remove_nodes(self, node_ids: Iterable[NodeId], track_history: bool = True) -> list[Node]:
        ids = [nid for nid in dict.fromkeys(node_ids) if nid in self._nodes]
        if not ids:
            logger.debug("remove_nodes: nothing to remove")
            return []
        before = self._before(track_history)
        doomed = set(ids)
        removed = [self._nodes.pop(nid) for nid in ids]
        dropped_edges = [
            eid for eid, edge in self._edges.items()
            if edge.source in doomed or edge.target in doomed
        ]
        for eid in dropped_edges:
            del self._edges[eid]
        self._prune_selection()
        self._commit(before, "remove_nodes", ids, dropped_edges)
        return removed

    def update_node_data(
        self,
        node_id: NodeId,
        partial: dict[str, Any],
        track_history: bool = True,
    ) -> bool:
        """
        Shallow-merge ``partial`` into a node's data.

        Keys may be snake_case field names or camelCase wire keys. A None
        value clears the field. Position and kind are never touched.
        """
        node = self._nodes.get(node_id)
        if node is None:
            logger.debug("update_node_data: unknown node %s", node_id)
            return False
        merged = node.data.merged(partial)
        if merged == node.data:
            return False
        before = self._before(track_history)
        node.data = merged
        self._commit(before, "update_node_data", [node_id])
        return True

    def move_node(self, node_id: NodeId, position: Position, track_history: bool = True) -> bool:
        node = self._nodes.get(node_id)
        if node is None:
            logger.debug("move_node: unknown node %s", node_id)
            return False
        if node.position == position:
            return False
        before = self._before(track_history)
        node.position = Position(position.x, position.y)
        self._commit(before, "move_node", [node_id])
        return True

    # --- Edge operations ---

    def add_edge(self, edge: Edge, track_history: bool = True) -> bool:
        """
        Add an edge without consulting the connection validator.

        Self-edges and edges with a missing endpoint are refused. An edge
        already occupying ``(target, target_handle)`` is replaced.
        """
        if edge.is_self_edge:
            logger.debug("add_edge: refusing self-edge on %s", edge.source)
            return False
        if edge.source not in self._nodes or edge.target not in self._nodes:
            logger.debug("add_edge: missing endpoint for %s", edge.id)
            return False
        if edge.id in self._edges:
            logger.debug("add_edge: %s already exists", edge.id)
            return False

        before = self._before(track_history)
        touched = [edge.id]
        occupant = self.edge_into(edge.target, edge.target_handle)
        if occupant is not None:
            del self._edges[occupant.id]
            touched.append(occupant.id)
        self._edges[edge.id] = edge
        self._commit(before, "add_edge", [edge.source, edge.target], touched)
        return True

    def remove_edge(self, edge_id: EdgeId, track_history: bool = True) -> Edge | None:
        if edge_id not in self._edges:
            logger.debug("remove_edge: unknown edge %s", edge_id)
            return None
        before = self._before(track_history)
        removed = self._edges.pop(edge_id)
        self._prune_selection()
        self._commit(before, "remove_edge", [], [edge_id])
        return removed

    def connect(
        self,
        source: NodeId,
        source_handle: str | None,
        target: NodeId,
        target_handle: str,
    ) -> EdgeId | None:
        """
        Create an edge from a user connection gesture.

        Returns the new edge id, or None if the validator refused it.
        """
        edge = Edge.create(source, source_handle, target, target_handle)
        if not self.is_valid_connection(edge):
            logger.debug(
                "Rejected connection %s.%s -> %s.%s",
                source, edge.source_handle, target, target_handle,
            )
            return None
        return edge.id if self.add_edge(edge) else None

    # --- Whole-graph operations ---

    def clear_canvas(self) -> None:
        if not self._nodes and not self._edges:
            return
        before = self._before(True)
        self._nodes.clear()
        self._edges.clear()
        self._prune_selection()
        self._commit(before, "clear_canvas")

    def load(
        self,
        nodes: Iterable[Node],
        edges: Iterable[Edge],
        reset_history: bool = True,
    ) -> None:
        """
        Replace the whole graph, e.g. from a saved workspace.

        Edges that would violate the graph invariants (self-edges, missing
        endpoints, a second edge into one handle) are dropped.
        """
        self._nodes = {}
        for node in nodes:
            if node.id in self._nodes:
                logger.warning("Dropping duplicate node id %s", node.id)
                continue
            self._nodes[node.id] = node

        self._edges = {}
        occupied: set[tuple[NodeId, str]] = set()
        for edge in edges:
            slot = (edge.target, edge.target_handle)
            if (
                edge.is_self_edge
                or edge.source not in self._nodes
                or edge.target not in self._nodes
                or slot in occupied
                or edge.id in self._edges
            ):
                logger.warning("Dropping invalid edge %s", edge.id)
                continue
            occupied.add(slot)
            self._edges[edge.id] = edge

        self._selected_nodes = []
        self._selected_edges = []
        if reset_history:
            self.history.clear()
        self._notify(StoreChange("load"))

    # --- Selection ---

    @property
    def selected_node_ids(self) -> list[NodeId]:
        return list(self._selected_nodes)

    @property
    def selected_edge_ids(self) -> list[EdgeId]:
        return list(self._selected_edges)

    def get_selected_nodes(self) -> list[Node]:
        return [self._nodes[nid] for nid in self._selected_nodes if nid in self._nodes]

    def select_nodes(self, node_ids: Iterable[NodeId]) -> None:
        self._selected_nodes = [nid for nid in dict.fromkeys(node_ids) if nid in self._nodes]

    def select_edges(self, edge_ids: Iterable[EdgeId]) -> None:
        self._selected_edges = [eid for eid in dict.fromkeys(edge_ids) if eid in self._edges]

    def select_all(self) -> None:
        self._selected_nodes = list(self._nodes)

    def clear_selection(self) -> None:
        self._selected_nodes = []
        self._selected_edges = []

    def _prune_selection(self) -> None:
        self._selected_nodes = [nid for nid in self._selected_nodes if nid in self._nodes]
        self._selected_edges = [eid for eid in self._selected_edges if eid in self._edges]

    def delete_selected(self) -> list[Node]:
        removed = self.remove_nodes(self._selected_nodes)
        self._selected_nodes = []
        return removed

    def delete_selected_edges(self) -> list[Edge]:
        ids = [eid for eid in self._selected_edges if eid in self._edges]
        if not ids:
            return []
        with self.gesture():
            removed = [self.remove_edge(eid) for eid in ids]
        self._selected_edges = []
        return [edge for edge in removed if edge is not None]

    # --- Clipboard ---

    @property
    def clipboard(self) -> Clipboard | None:
        return self._clipboard

    def copy_selected(self) -> bool:
        if not self._selected_nodes:
            return False
        self._clipboard = copy_nodes(self._selected_nodes, self._nodes.values(), self._edges.values())
        return True

    def cut_selected(self) -> list[Node]:
        if not self.copy_selected():
            return []
        return self.delete_selected()

    def paste(self, position: Position | None = None) -> list[NodeId]:
        """
        Paste the clipboard with fresh ids and select the pasted nodes.

        Returns the new node ids (empty if the clipboard is empty).
        """
        if self._clipboard is None or self._clipboard.is_empty:
            return []
        new_nodes, new_edges = paste_clipboard(self._clipboard, position)
        with self.gesture():
            ids = self.add_nodes(new_nodes)
            for edge in new_edges:
                self.add_edge(edge)
        self._selected_nodes = ids
        return ids

    def duplicate_selected(self) -> list[NodeId]:
        """Copy the selection and paste it beside the original."""
        selected = self.get_selected_nodes()
        if not selected or not self.copy_selected():
            return []
        return self.paste(duplicate_anchor(selected))

    # --- Groups ---

    def group_selected(self, name: str | None = None) -> NodeId | None:
        """Create a group node sized to enclose the selected nodes."""
        selected = self.get_selected_nodes()
        rect = group_rect_for(selected)
        if rect is None:
            return None
        group = Node.create(
            NodeKind.GROUP,
            Position(rect.x, rect.y),
            GroupData(name=name or "Group", width=rect.width, height=rect.height),
        )
        self.add_node(group)
        return group.id

    def get_group_members(self, group_id: NodeId) -> list[Node]:
        group = self._nodes.get(group_id)
        if group is None:
            return []
        return group_members(group, self._nodes.values())

    def move_group(self, group_id: NodeId, position: Position) -> bool:
        """Move a group together with the nodes it currently contains."""
        group = self._nodes.get(group_id)
        if group is None or group.kind is not NodeKind.GROUP:
            return False
        delta = position - group.position
        members = self.get_group_members(group_id)
        with self.gesture():
            self.move_node(group_id, position)
            for node in members:
                self.move_node(node.id, node.position + delta)
        return True
