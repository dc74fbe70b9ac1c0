"""
Tests for workspace save/load and migration of old data.
"""

import json

import pytest

from canvas_engine.core.graph import Edge, GraphSnapshot, Node, Position
from canvas_engine.core.node_types import NodeKind
from canvas_engine.core.store import CanvasStore
from canvas_engine.core.workspace import (
    WORKSPACE_VERSION,
    load_canvas,
    load_into,
    save_canvas,
    snapshot_from_dict,
    snapshot_to_dict,
)
from canvas_engine.providers.registry import get_registry


def _board():
    text = Node.create(NodeKind.TEXT, Position(0, 0), {"content": "a castle"})
    gen = Node.create(NodeKind.IMAGE_GENERATOR, Position(400, 0), {"prompt": "at night"})
    edge = Edge.create(text.id, "output", gen.id, "text")
    return text, gen, edge


def _raw_node(node_id, node_type, **data):
    return {"id": node_id, "type": node_type, "position": {"x": 0, "y": 0}, "data": data}


class TestRoundTrip:
    """Saving and loading the same graph."""

    def test_save_and_load(self, tmp_path):
        text, gen, edge = _board()
        store = CanvasStore()
        store.add_nodes([text, gen])
        store.add_edge(edge)

        path = save_canvas(store, tmp_path / "board.json", name="board")
        snapshot, report = load_canvas(path)

        assert snapshot == store.snapshot()
        assert report.is_clean
        assert report.name == "board"
        assert report.version == WORKSPACE_VERSION

    def test_file_format(self, tmp_path):
        text, gen, edge = _board()
        path = save_canvas(GraphSnapshot.of([text, gen], [edge]), tmp_path / "b.json",
                           viewport={"x": 1, "y": 2, "zoom": 1.5})

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["version"] == WORKSPACE_VERSION
        assert data["viewport"]["zoom"] == 1.5
        assert data["nodes"][1]["type"] == "imageGenerator"
        assert data["edges"][0]["targetHandle"] == "text"

    def test_load_into_replaces_graph_and_history(self, tmp_path):
        text, gen, edge = _board()
        path = save_canvas(GraphSnapshot.of([text, gen], [edge]), tmp_path / "b.json")

        store = CanvasStore()
        store.add_node(Node.create(NodeKind.GROUP))
        report = load_into(store, path)

        assert report.is_clean
        assert [n.id for n in store.nodes] == [text.id, gen.id]
        assert not store.can_undo()

    def test_pending_task_survives(self):
        gen = Node.create(NodeKind.VIDEO_GENERATOR, data={
            "prompt": "waves", "isGenerating": True, "taskId": "t1", "taskModel": "veo-3",
        })
        snapshot, _ = snapshot_from_dict(snapshot_to_dict(GraphSnapshot.of([gen], [])))
        data = snapshot.nodes[0].data
        assert data.has_pending_task
        assert data.task_model == "veo-3"


class TestMigration:
    """Loading data written by older or newer versions."""

    def test_unknown_node_type_is_skipped(self):
        data = {"version": 1, "nodes": [
            _raw_node("a", "text", content="hi"),
            _raw_node("b", "hologram"),
        ], "edges": [
            {"id": "e1", "source": "a", "target": "b", "targetHandle": "text"},
        ]}

        snapshot, report = snapshot_from_dict(data)

        assert [n.id for n in snapshot.nodes] == ["a"]
        assert report.skipped_nodes == ["b"]
        assert report.dropped_edges == ["e1"]
        assert snapshot.edges == ()

    def test_unknown_fields_are_kept(self):
        data = {"nodes": [_raw_node("a", "imageGenerator", prompt="x", upscale={"factor": 2})]}
        snapshot, _ = snapshot_from_dict(data)
        node = snapshot.nodes[0]
        assert node.data.extra["upscale"] == {"factor": 2}
        assert node.to_dict()["data"]["upscale"] == {"factor": 2}

    def test_missing_fields_take_defaults(self):
        snapshot, _ = snapshot_from_dict({"nodes": [_raw_node("a", "videoGenerator")]})
        data = snapshot.nodes[0].data
        assert data.model == "veo-3"
        assert data.prompt == ""
        assert data.is_generating is False

    def test_retired_model_is_reset(self):
        data = {"nodes": [_raw_node("a", "imageGenerator", model="dall-e-2")]}
        snapshot, report = snapshot_from_dict(data)
        node = snapshot.nodes[0]
        assert node.data.model == "flux-schnell"
        assert node.data.extra["legacyModel"] == "dall-e-2"
        assert report.reset_models == {"a": "dall-e-2"}

    def test_disabled_model_is_reset(self):
        get_registry().config.disabled_models.append("veo-3.1-flf")
        data = {"nodes": [_raw_node("a", "videoGenerator", model="veo-3.1-flf")]}
        snapshot, report = snapshot_from_dict(data)
        assert snapshot.nodes[0].data.model == "veo-3"
        assert "a" in report.reset_models

    def test_self_edge_dropped(self):
        data = {"nodes": [_raw_node("a", "text")], "edges": [
            {"id": "loop", "source": "a", "target": "a", "targetHandle": "text"},
        ]}
        snapshot, report = snapshot_from_dict(data)
        assert snapshot.edges == ()
        assert report.dropped_edges == ["loop"]

    def test_state_wrapper(self):
        data = {"version": 0, "state": {
            "spaceName": "Old board",
            "nodes": [_raw_node("a", "text", content="hi")],
            "edges": [],
        }}
        snapshot, report = snapshot_from_dict(data)
        assert len(snapshot) == 1
        assert report.name == "Old board"
        assert report.version == 0

    def test_newer_version_still_loads(self, caplog):
        data = {"version": WORKSPACE_VERSION + 1, "nodes": [_raw_node("a", "text")]}
        snapshot, report = snapshot_from_dict(data)
        assert len(snapshot) == 1
        assert "newer than supported" in caplog.text


class TestErrors:
    """Unreadable workspace files."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_canvas(tmp_path / "missing.json")

    def test_bad_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValueError):
            load_canvas(path)

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text("[]", encoding="utf-8")
        with pytest.raises(ValueError):
            load_canvas(path)

    def test_no_node_list(self):
        with pytest.raises(ValueError, match="missing node list"):
            snapshot_from_dict({"edges": []})
