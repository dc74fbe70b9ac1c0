"""
Tests for the connection validator.
"""

from canvas_engine.core.graph import Edge, Node
from canvas_engine.core.node_types import NodeKind
from canvas_engine.core.validation import ConnectionCandidate, is_valid_connection


def _nodes(*nodes):
    return {node.id: node for node in nodes}


class TestImageHandles:
    """Image-typed handles need image sources and capable models."""

    def test_media_into_text_and_image_model(self):
        media = Node.create(NodeKind.MEDIA, data={"url": "https://cdn/a.png"})
        gen = Node.create(NodeKind.IMAGE_GENERATOR, data={"model": "flux-pro"})
        candidate = ConnectionCandidate(media.id, gen.id, "reference")
        assert is_valid_connection(candidate, _nodes(media, gen))

    def test_media_into_text_only_model(self):
        media = Node.create(NodeKind.MEDIA, data={"url": "https://cdn/a.png"})
        gen = Node.create(NodeKind.IMAGE_GENERATOR, data={"model": "flux-schnell"})
        candidate = ConnectionCandidate(media.id, gen.id, "reference")
        assert not is_valid_connection(candidate, _nodes(media, gen))

    def test_unknown_model_rejects_without_raising(self):
        media = Node.create(NodeKind.MEDIA)
        gen = Node.create(NodeKind.IMAGE_GENERATOR, data={"model": "retired-model"})
        assert not is_valid_connection(ConnectionCandidate(media.id, gen.id, "ref2"), [media, gen])

    def test_failing_lookup_rejects(self):
        media = Node.create(NodeKind.MEDIA)
        gen = Node.create(NodeKind.IMAGE_GENERATOR, data={"model": "flux-pro"})

        def broken(model_id):
            raise RuntimeError("table unavailable")

        candidate = ConnectionCandidate(media.id, gen.id, "reference")
        assert not is_valid_connection(candidate, [media, gen], capabilities=broken)

    def test_text_source_into_image_handle(self):
        text = Node.create(NodeKind.TEXT)
        video = Node.create(NodeKind.VIDEO_GENERATOR)
        for handle in ("firstFrame", "lastFrame", "reference", "ref1"):
            assert not is_valid_connection(ConnectionCandidate(text.id, video.id, handle), [text, video])

    def test_image_generator_into_video_frames(self):
        image = Node.create(NodeKind.IMAGE_GENERATOR)
        video = Node.create(NodeKind.VIDEO_GENERATOR, data={"model": "veo-3.1-flf"})
        assert is_valid_connection(ConnectionCandidate(image.id, video.id, "firstFrame"), [image, video])

    def test_image_handle_on_non_generator_target(self):
        media = Node.create(NodeKind.MEDIA, data={"url": "https://cdn/a.png"})
        text = Node.create(NodeKind.TEXT)
        music = Node.create(NodeKind.MUSIC_GENERATOR)
        nodes = [media, text, music]
        assert not is_valid_connection(ConnectionCandidate(media.id, text.id, "reference"), nodes)
        assert not is_valid_connection(ConnectionCandidate(media.id, music.id, "ref1"), nodes)

    def test_custom_lookup(self):
        media = Node.create(NodeKind.MEDIA)
        gen = Node.create(NodeKind.IMAGE_GENERATOR, data={"model": "flux-schnell"})
        from canvas_engine.providers.registry import get_image_capabilities

        permissive = lambda model_id: get_image_capabilities("flux-pro")  # noqa: E731
        candidate = ConnectionCandidate(media.id, gen.id, "reference")
        assert is_valid_connection(candidate, [media, gen], capabilities=permissive)


class TestOtherRules:
    """Self-edges, missing endpoints, storyboard sockets and text handles."""

    def test_self_edge(self):
        node = Node.create(NodeKind.IMAGE_GENERATOR, data={"model": "flux-pro"})
        assert not is_valid_connection(ConnectionCandidate(node.id, node.id, "text"), [node])

    def test_missing_endpoint(self):
        node = Node.create(NodeKind.TEXT)
        assert not is_valid_connection(ConnectionCandidate(node.id, "ghost", "text"), [node])

    def test_storyboard_sockets(self):
        board = Node.create(NodeKind.STORYBOARD)
        media = Node.create(NodeKind.MEDIA)
        text = Node.create(NodeKind.TEXT)
        nodes = [board, media, text]
        assert is_valid_connection(ConnectionCandidate(media.id, board.id, "productImage"), nodes)
        assert not is_valid_connection(ConnectionCandidate(text.id, board.id, "characterImage"), nodes)

    def test_text_handle_needs_text_source(self):
        text = Node.create(NodeKind.TEXT)
        media = Node.create(NodeKind.MEDIA)
        music = Node.create(NodeKind.MUSIC_GENERATOR)
        nodes = [text, media, music]
        assert is_valid_connection(ConnectionCandidate(text.id, music.id, "text"), nodes)
        assert not is_valid_connection(ConnectionCandidate(media.id, music.id, "text"), nodes)

    def test_other_handles_accepted(self):
        video = Node.create(NodeKind.VIDEO_GENERATOR)
        mixer = Node.create(NodeKind.VIDEO_AUDIO)
        assert is_valid_connection(ConnectionCandidate(video.id, mixer.id, "video"), [video, mixer])

    def test_accepts_existing_edge(self):
        text = Node.create(NodeKind.TEXT)
        gen = Node.create(NodeKind.IMAGE_GENERATOR)
        edge = Edge.create(text.id, "output", gen.id, "text")
        assert is_valid_connection(edge, [text, gen])
