"""
History Manager - Bounded undo/redo over graph snapshots.

Each entry is a deep-copied GraphSnapshot of the state *before* a logical
step. Undo swaps the current state onto the redo stack and hands back the
prior one; the store applies it as an atomic replacement of (nodes, edges).
"""

from __future__ import annotations

from collections import deque

from canvas_engine.core.graph import GraphSnapshot


DEFAULT_HISTORY_LIMIT = 50


class HistoryManager:
    """
    Two bounded stacks of snapshots.

    Past ``limit`` entries the oldest are dropped. Recording a new entry
    discards the redo stack (branching history is not kept).
    """

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT):
        if limit < 1:
            raise ValueError(f"History limit must be positive, got {limit}")
        self.limit = limit
        self._undo: deque[GraphSnapshot] = deque(maxlen=limit)
        self._redo: deque[GraphSnapshot] = deque(maxlen=limit)

    def record(self, snapshot: GraphSnapshot) -> None:
        """Push the pre-mutation state and clear the redo stack."""
        self._undo.append(snapshot)
        self._redo.clear()

    def undo(self, current: GraphSnapshot) -> GraphSnapshot | None:
        """
        Step back one entry.

        Args:
            current: The live state, pushed onto the redo stack.

        Returns:
            The state to restore, or None if there is nothing to undo.
        """
        if not self._undo:
            return None
        previous = self._undo.pop()
        self._redo.append(current)
        return previous

    def redo(self, current: GraphSnapshot) -> GraphSnapshot | None:
        """Step forward one entry; symmetric to :meth:`undo`."""
        if not self._redo:
            return None
        following = self._redo.pop()
        self._undo.append(current)
        return following

    def can_undo(self) -> bool:
        return bool(self._undo)

    def can_redo(self) -> bool:
        return bool(self._redo)

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()

    @property
    def undo_depth(self) -> int:
        return len(self._undo)

    @property
    def redo_depth(self) -> int:
        return len(self._redo)
