"""
Input Resolver - Materialize the upstream values a node sees.

``get_connected_inputs`` walks the edges entering a node and maps each
target handle onto a semantic field of ResolvedInputs. It is a pure
function of the (nodes, edges) it is given and is recomputed on demand,
so a new upstream result is visible without touching any edge.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Iterable, Mapping

from canvas_engine.core.graph import (
    HANDLE_AUDIO,
    HANDLE_CHARACTER_IMAGE,
    HANDLE_FIRST_FRAME,
    HANDLE_LAST_FRAME,
    HANDLE_PRODUCT_IMAGE,
    HANDLE_REFERENCE,
    HANDLE_TEXT,
    HANDLE_VIDEO,
    Edge,
    Node,
    NodeId,
    ref_handle_index,
)
from canvas_engine.core.node_types import (
    GenerationStatus,
    ImageGeneratorData,
    MediaData,
    NodeKind,
    TextData,
)


# Target handle -> ResolvedInputs field
HANDLE_FIELDS: dict[str, str] = {
    HANDLE_TEXT: "text_content",
    HANDLE_REFERENCE: "reference_url",
    HANDLE_FIRST_FRAME: "first_frame_url",
    HANDLE_LAST_FRAME: "last_frame_url",
    HANDLE_VIDEO: "video_url",
    HANDLE_AUDIO: "audio_url",
    HANDLE_PRODUCT_IMAGE: "product_image_url",
    HANDLE_CHARACTER_IMAGE: "character_image_url",
}


@dataclass
class ResolvedInputs:
    """Upstream values feeding one node, keyed by meaning rather than handle."""
    text_content: str | None = None
    reference_url: str | None = None
    reference_urls: list[str] | None = None  # ref1..ref8, ordered by index
    first_frame_url: str | None = None
    last_frame_url: str | None = None
    video_url: str | None = None
    audio_url: str | None = None
    product_image_url: str | None = None
    character_image_url: str | None = None

    @property
    def has_media(self) -> bool:
        """True if any image, video or audio input is connected."""
        return bool(
            self.reference_url
            or self.reference_urls
            or self.first_frame_url
            or self.last_frame_url
            or self.video_url
            or self.audio_url
        )

    @property
    def all_reference_urls(self) -> list[str]:
        """The ``reference`` input followed by ``ref1..ref8``."""
        urls = [self.reference_url] if self.reference_url else []
        return urls + list(self.reference_urls or [])

    def to_dict(self) -> dict[str, Any]:
        """Non-empty fields, for logging and the command line."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


# Output type of each generator kind
GENERATOR_OUTPUT_TYPES: dict[NodeKind, str] = {
    NodeKind.IMAGE_GENERATOR: "image",
    NodeKind.VIDEO_GENERATOR: "video",
    NodeKind.VIDEO_AUDIO: "video",
    NodeKind.MUSIC_GENERATOR: "audio",
    NodeKind.SPEECH: "audio",
}

# Value type each ResolvedInputs field accepts; unlisted fields take images
FIELD_TYPES: dict[str, str] = {
    "text_content": "text",
    "video_url": "video",
    "audio_url": "audio",
}


def output_type(node: Node) -> str | None:
    """Type of the value a node outputs, or None for kinds with no output."""
    data = node.data
    if isinstance(data, TextData):
        return "text"
    if isinstance(data, MediaData):
        return data.media_type
    return GENERATOR_OUTPUT_TYPES.get(node.kind)


def source_value(node: Node, value_type: str | None = None) -> str | None:
    """
    The value a node exposes on its output handle.

    Text nodes expose their content, media nodes their URL, and generators
    their latest ``output_url``. Other kinds expose nothing. If
    ``value_type`` is given, a node whose output is of another type exposes
    nothing either.
    """
    if value_type is not None and output_type(node) != value_type:
        return None
    data = node.data
    if isinstance(data, TextData):
        return data.content
    if isinstance(data, MediaData):
        return data.url
    if isinstance(data, GenerationStatus):
        return data.output_url
    return None


def get_connected_inputs(
    node_id: NodeId,
    nodes: Mapping[NodeId, Node] | Iterable[Node],
    edges: Iterable[Edge],
) -> ResolvedInputs:
    """
    Resolve the inputs of ``node_id`` from the given graph state.

    Each field only takes values of its own type: text from text nodes,
    images from image media and image generators, video and audio from
    matching media or generators. Edges from missing sources, mismatched
    sources and handles with no semantic field are ignored. If two edges
    feed the same field, the later one wins.
    """
    node_map = nodes if isinstance(nodes, Mapping) else {n.id: n for n in nodes}
    resolved = ResolvedInputs()
    refs: dict[int, str] = {}

    for edge in edges:
        if edge.target != node_id:
            continue
        source = node_map.get(edge.source)
        if source is None:
            continue
        index = ref_handle_index(edge.target_handle)
        field_name = "reference_urls" if index is not None else HANDLE_FIELDS.get(edge.target_handle)
        if field_name is None:
            continue

        value = source_value(source, FIELD_TYPES.get(field_name, "image"))
        if not value:
            continue
        if index is not None:
            refs[index] = value
        else:
            setattr(resolved, field_name, value)

    if refs:
        resolved.reference_urls = [refs[i] for i in sorted(refs)]
    return resolved


# --- Prompt composition ---

PRESET_FIELDS = (
    "selected_character",
    "selected_style",
    "selected_camera_angle",
    "selected_camera_lens",
)


def preset_modifiers(data: ImageGeneratorData) -> list[str]:
    """Prompt modifiers from the selected presets, in application order."""
    modifiers = []
    for name in PRESET_FIELDS:
        preset = getattr(data, name)
        if not preset:
            continue
        # Uploaded characters are passed as references, not prompt text
        if name == "selected_character" and preset.get("type", "preset") != "preset":
            continue
        modifier = preset.get("promptModifier")
        if modifier:
            modifiers.append(modifier)
    return modifiers


def has_presets(data: ImageGeneratorData) -> bool:
    return any(getattr(data, name) for name in PRESET_FIELDS)


def compose_image_prompt(data: ImageGeneratorData, inputs: ResolvedInputs) -> str:
    """Preset modifiers, connected text and the node prompt joined by ", "."""
    parts = preset_modifiers(data)
    if inputs.text_content:
        parts.append(inputs.text_content)
    if data.prompt:
        parts.append(data.prompt)
    return ", ".join(parts)


def compose_text_prompt(prompt: str | None, inputs: ResolvedInputs) -> str:
    """Connected text on its own line above the node's own prompt."""
    prompt = prompt or ""
    if inputs.text_content:
        return inputs.text_content + (f"\n{prompt}" if prompt else "")
    return prompt


def compose_prompt(node: Node, inputs: ResolvedInputs) -> str:
    """Final prompt for a generator node."""
    data = node.data
    if isinstance(data, ImageGeneratorData):
        return compose_image_prompt(data, inputs)
    if node.kind is NodeKind.SPEECH:
        return compose_text_prompt(data.get("text"), inputs)
    return compose_text_prompt(data.get("prompt"), inputs)
