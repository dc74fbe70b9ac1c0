"""
Tests for the graph module.
"""

import pytest

from canvas_engine.core.graph import (
    NODE_HEIGHT,
    NODE_WIDTH,
    Edge,
    GraphSnapshot,
    Node,
    Position,
    Rect,
    bounds_of,
    new_node_id,
    ref_handle_index,
)
from canvas_engine.core.node_types import (
    GroupData,
    ImageGeneratorData,
    MediaData,
    NodeKind,
    TextData,
)


class TestPosition:
    """Tests for Position dataclass."""

    def test_default_values(self):
        p = Position()
        assert p.x == 0.0
        assert p.y == 0.0

    def test_addition(self):
        result = Position(10, 20) + Position(5, 10)
        assert result == Position(15, 30)

    def test_subtraction(self):
        result = Position(10, 20) - Position(5, 10)
        assert result == Position(5, 10)

    def test_from_dict_defaults(self):
        assert Position.from_dict(None) == Position(0, 0)
        assert Position.from_dict({"x": 3}) == Position(3, 0)


class TestRect:
    """Tests for Rect geometry."""

    def test_edges_and_center(self):
        r = Rect(10, 20, 100, 50)
        assert r.right == 110
        assert r.bottom == 70
        assert r.center == Position(60, 45)

    def test_contains(self):
        outer = Rect(0, 0, 100, 100)
        assert outer.contains(Rect(10, 10, 50, 50))
        assert not outer.contains(Rect(60, 60, 50, 50))


class TestNode:
    """Tests for Node dataclass."""

    def test_create_node(self):
        node = Node.create(NodeKind.TEXT, Position(1, 2))
        assert node.id.startswith("node_")
        assert node.kind is NodeKind.TEXT
        assert isinstance(node.data, TextData)
        assert node.position == Position(1, 2)

    def test_create_with_dict_data_and_name(self):
        node = Node.create(NodeKind.IMAGE_GENERATOR, data={"prompt": "cat"}, name="Scene 1")
        assert node.data.prompt == "cat"
        assert node.data.name == "Scene 1"

    def test_create_copies_data_instance(self):
        data = ImageGeneratorData(prompt="cat")
        node = Node.create(NodeKind.IMAGE_GENERATOR, data=data)
        data.prompt = "dog"
        assert node.data.prompt == "cat"

    def test_ids_are_unique(self):
        assert new_node_id() != new_node_id()

    def test_round_trip(self):
        node = Node.create(NodeKind.MEDIA, Position(5, 6), {"url": "https://cdn/a.png"})
        restored = Node.from_dict(node.to_dict())
        assert restored == node

    def test_to_dict_shape(self):
        node = Node.create(NodeKind.TEXT, Position(5, 6), {"content": "hi"})
        out = node.to_dict()
        assert out["type"] == "text"
        assert out["position"] == {"x": 5, "y": 6}
        assert out["data"]["content"] == "hi"

    def test_from_dict_unknown_type(self):
        with pytest.raises(ValueError):
            Node.from_dict({"id": "n1", "type": "hologram", "data": {}})

    def test_group_bounds_use_data_size(self):
        group = Node.create(NodeKind.GROUP, Position(0, 0), GroupData(width=600, height=500))
        assert group.bounds == Rect(0, 0, 600, 500)

    def test_media_bounds_ignore_pixel_size(self):
        media = Node.create(NodeKind.MEDIA, Position(0, 0), MediaData(url="u", width=4096, height=4096))
        assert media.bounds == Rect(0, 0, NODE_WIDTH, NODE_HEIGHT)


class TestEdge:
    """Tests for Edge dataclass."""

    def test_create_defaults_source_handle(self):
        edge = Edge.create("a", None, "b", "reference")
        assert edge.id.startswith("edge_")
        assert edge.source_handle == "output"

    def test_self_edge(self):
        assert Edge.create("a", "output", "a", "text").is_self_edge

    def test_wire_keys(self):
        edge = Edge.create("a", "output", "b", "firstFrame")
        out = edge.to_dict()
        assert out["sourceHandle"] == "output"
        assert out["targetHandle"] == "firstFrame"
        assert Edge.from_dict(out) == edge


class TestGraphSnapshot:
    """Tests for immutable snapshots."""

    def test_of_deep_copies(self):
        node = Node.create(NodeKind.TEXT, data={"content": "before"})
        snap = GraphSnapshot.of([node], [])
        node.data.content = "after"
        assert snap.nodes[0].data.content == "before"

    def test_queries(self):
        a = Node.create(NodeKind.TEXT)
        b = Node.create(NodeKind.IMAGE_GENERATOR)
        edge = Edge.create(a.id, "output", b.id, "text")
        snap = GraphSnapshot.of([a, b], [edge])

        assert len(snap) == 2
        assert a.id in snap
        assert snap.get_node(b.id) == b
        assert snap.incoming_edges(b.id) == [edge]
        assert snap.outgoing_edges(a.id) == [edge]
        assert snap.incoming_edges(a.id) == []

    def test_snapshot_is_frozen(self):
        snap = GraphSnapshot()
        with pytest.raises(AttributeError):
            snap.nodes = ()


class TestHelpers:
    """Tests for module-level helpers."""

    def test_ref_handle_index(self):
        assert ref_handle_index("ref1") == 1
        assert ref_handle_index("ref8") == 8
        assert ref_handle_index("ref9") is None
        assert ref_handle_index("reference") is None
        assert ref_handle_index(None) is None

    def test_bounds_of(self):
        a = Node.create(NodeKind.MEDIA, Position(0, 0))
        b = Node.create(NodeKind.MEDIA, Position(500, 100))
        assert bounds_of([a, b]) == Rect(0, 0, 500 + NODE_WIDTH, 100 + NODE_HEIGHT)
        assert bounds_of([]) is None
