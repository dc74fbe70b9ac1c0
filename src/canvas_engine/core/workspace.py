"""
Workspace Persistence - Save and load canvas graphs to/from disk.

The unit of persistence is the (nodes, edges) pair, written as JSON with
a ``version`` tag. Loading never rejects old data shapes:
- unknown node types are skipped with a warning
- unknown data keys are kept in ``extra`` and written back unchanged
- missing data keys take the kind's defaults
- a generator whose model is no longer available is reset to the kind's
  default model, the old id kept under ``extra["legacyModel"]``
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from canvas_engine.core.graph import Edge, GraphSnapshot, Node
from canvas_engine.core.node_types import NodeKind, default_model
from canvas_engine.core.store import CanvasStore
from canvas_engine.providers.base import ModelCapabilities
from canvas_engine.providers.registry import (
    get_audio_capabilities,
    get_image_capabilities,
    get_video_capabilities,
)


logger = logging.getLogger(__name__)


WORKSPACE_VERSION = 1

# Workspace storage directory
WORKSPACE_DIR = Path.home() / ".local" / "share" / "canvas_engine" / "workspaces"

# Generator kind -> capability lookup used to check the stored model
MODEL_LOOKUPS: dict[NodeKind, Callable[[str | None], ModelCapabilities | None]] = {
    NodeKind.IMAGE_GENERATOR: get_image_capabilities,
    NodeKind.VIDEO_GENERATOR: get_video_capabilities,
    NodeKind.MUSIC_GENERATOR: get_audio_capabilities,
    NodeKind.SPEECH: get_audio_capabilities,
    NodeKind.VIDEO_AUDIO: get_audio_capabilities,
}


@dataclass
class LoadReport:
    """What had to be adjusted while loading a workspace."""
    version: int = WORKSPACE_VERSION
    name: str = "workspace"
    skipped_nodes: list[str] = field(default_factory=list)
    dropped_edges: list[str] = field(default_factory=list)
    reset_models: dict[str, str] = field(default_factory=dict)  # node id -> old model

    @property
    def is_clean(self) -> bool:
        return not (self.skipped_nodes or self.dropped_edges or self.reset_models)


def get_workspace_dir() -> Path:
    """Get the workspace storage directory, creating if needed."""
    WORKSPACE_DIR.mkdir(parents=True, exist_ok=True)
    return WORKSPACE_DIR


def get_last_session_path() -> Path:
    """Get the path for the auto-saved last session."""
    return get_workspace_dir() / "_last_session.json"


# --- Serialization ---

def snapshot_to_dict(
    snapshot: GraphSnapshot,
    name: str = "workspace",
    viewport: dict[str, float] | None = None,
) -> dict[str, Any]:
    """Serialize a snapshot into the versioned workspace format."""
    data = {
        "version": WORKSPACE_VERSION,
        "name": name,
        "saved_at": datetime.now().isoformat(),
        **snapshot.to_dict(),
    }
    if viewport:
        data["viewport"] = viewport
    return data


def migrate_model(node: Node, report: LoadReport | None = None) -> Node:
    """Reset a generator's model to the default if it is no longer available."""
    lookup = MODEL_LOOKUPS.get(node.kind)
    if lookup is None:
        return node
    model = node.data.get("model")
    if lookup(model) is not None:
        return node

    fallback = default_model(node.kind)
    logger.warning(
        "Node %s uses unavailable model %r, resetting to %r",
        node.id, model, fallback,
    )
    node.data = node.data.merged({"model": fallback, "legacyModel": model})
    if report is not None:
        report.reset_models[node.id] = model
    return node


def snapshot_from_dict(data: dict[str, Any]) -> tuple[GraphSnapshot, LoadReport]:
    """
    Deserialize a workspace dict, defaulting anything old or missing.

    Raises:
        ValueError: If the data has no node list.
    """
    # Persisted stores wrap the graph in a "state" object
    if "nodes" not in data and isinstance(data.get("state"), dict):
        data = {**data["state"], "version": data.get("version", 0)}

    if not isinstance(data.get("nodes"), list):
        raise ValueError("Invalid workspace format: missing node list")

    report = LoadReport(
        version=int(data.get("version", 0) or 0),
        name=data.get("name") or data.get("spaceName") or "workspace",
    )
    if report.version > WORKSPACE_VERSION:
        logger.warning(
            "Workspace version %s is newer than supported version %s; loading anyway",
            report.version, WORKSPACE_VERSION,
        )

    nodes: list[Node] = []
    for raw in data["nodes"]:
        try:
            node = Node.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            node_id = raw.get("id", "?") if isinstance(raw, dict) else "?"
            logger.warning("Skipping node %s: %s", node_id, e)
            report.skipped_nodes.append(str(node_id))
            continue
        nodes.append(migrate_model(node, report))

    node_ids = {node.id for node in nodes}
    edges: list[Edge] = []
    for raw in data.get("edges", []):
        try:
            edge = Edge.from_dict(raw)
        except (KeyError, TypeError) as e:
            logger.warning("Skipping malformed edge %r: %s", raw, e)
            continue
        if edge.source not in node_ids or edge.target not in node_ids or edge.is_self_edge:
            report.dropped_edges.append(edge.id)
            continue
        edges.append(edge)

    return GraphSnapshot(tuple(nodes), tuple(edges)), report


# --- Files ---

def save_canvas(
    source: CanvasStore | GraphSnapshot,
    path: Path | None = None,
    name: str = "workspace",
    viewport: dict[str, float] | None = None,
) -> Path:
    """
    Save a canvas to disk.

    Args:
        source: A store (its current state is saved) or a snapshot
        path: Optional specific path, otherwise uses default location
        name: Workspace name (used for filename if path not specified)

    Returns:
        Path where the workspace was saved
    """
    snapshot = source.snapshot() if isinstance(source, CanvasStore) else source
    if path is None:
        path = get_workspace_dir() / f"{name}.json"
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w", encoding="utf-8") as f:
        json.dump(snapshot_to_dict(snapshot, name, viewport), f, indent=2, ensure_ascii=False)

    logger.info("Saved workspace %s (%d nodes)", path, len(snapshot))
    return path


def load_canvas(path: Path) -> tuple[GraphSnapshot, LoadReport]:
    """
    Load a canvas from disk.

    Raises:
        FileNotFoundError: If the workspace file doesn't exist
        ValueError: If the file is not a readable workspace
    """
    if not path.exists():
        raise FileNotFoundError(f"Workspace not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid workspace file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Invalid workspace format: {path}")
    return snapshot_from_dict(data)


def load_into(store: CanvasStore, path: Path) -> LoadReport:
    """Load a workspace file into ``store``, replacing its graph and history."""
    snapshot, report = load_canvas(path)
    store.load(snapshot.nodes, snapshot.edges)
    if not report.is_clean:
        logger.warning(
            "Loaded %s with adjustments: %d nodes skipped, %d edges dropped, %d models reset",
            path, len(report.skipped_nodes), len(report.dropped_edges), len(report.reset_models),
        )
    return report


def list_workspaces() -> list[dict[str, Any]]:
    """
    List all saved workspaces.

    Returns:
        List of workspace metadata dicts with 'name', 'path', 'saved_at'
    """
    workspaces = []
    for path in get_workspace_dir().glob("*.json"):
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            workspaces.append({
                "name": data.get("name", path.stem),
                "path": path,
                "saved_at": data.get("saved_at"),
                "node_count": len(data.get("nodes", [])),
            })
        except (OSError, json.JSONDecodeError, AttributeError):
            continue

    # Sort by most recent
    workspaces.sort(key=lambda w: w.get("saved_at") or "", reverse=True)
    return workspaces
