"""
Core module - Graph model, canvas store, and job lifecycle.

This module provides the fundamental building blocks of the canvas engine:
- Graph: Nodes, edges, handles and immutable snapshots
- Node Types: The closed set of node kinds and their data variants
- Store: The single mutable canvas state with history and selection
- Validation/Inputs: Connection rules and input resolution
- Builder: Planner-facing construction API
- Jobs: Generation state machine and remote-job polling
- Workspace: Saving and loading graphs
"""

from canvas_engine.core.graph import (
    Edge,
    EdgeId,
    GraphSnapshot,
    Node,
    NodeId,
    Position,
    Rect,
    new_edge_id,
    new_node_id,
)

from canvas_engine.core.node_types import (
    GenerationStatus,
    NodeData,
    NodeKind,
    data_type_for,
    default_data,
    default_model,
)

from canvas_engine.core.history import HistoryManager

from canvas_engine.core.validation import (
    ConnectionCandidate,
    is_valid_connection,
)

from canvas_engine.core.inputs import (
    ResolvedInputs,
    compose_prompt,
    get_connected_inputs,
)

from canvas_engine.core.clipboard import Clipboard

from canvas_engine.core.store import (
    CanvasStore,
    StoreChange,
)

from canvas_engine.core.builder import (
    CreateNodeInput,
    GraphBuilder,
    Viewport,
)

from canvas_engine.core.jobs import (
    JobManager,
    JobState,
    job_state,
)

from canvas_engine.core.workspace import (
    LoadReport,
    load_canvas,
    save_canvas,
    snapshot_from_dict,
    snapshot_to_dict,
)


__all__ = [
    # graph.py
    "Edge",
    "EdgeId",
    "GraphSnapshot",
    "Node",
    "NodeId",
    "Position",
    "Rect",
    "new_edge_id",
    "new_node_id",
    # node_types.py
    "GenerationStatus",
    "NodeData",
    "NodeKind",
    "data_type_for",
    "default_data",
    "default_model",
    # history.py
    "HistoryManager",
    # validation.py
    "ConnectionCandidate",
    "is_valid_connection",
    # inputs.py
    "ResolvedInputs",
    "compose_prompt",
    "get_connected_inputs",
    # clipboard.py
    "Clipboard",
    # store.py
    "CanvasStore",
    "StoreChange",
    # builder.py
    "CreateNodeInput",
    "GraphBuilder",
    "Viewport",
    # jobs.py
    "JobManager",
    "JobState",
    "job_state",
    # workspace.py
    "LoadReport",
    "load_canvas",
    "save_canvas",
    "snapshot_from_dict",
    "snapshot_to_dict",
]
