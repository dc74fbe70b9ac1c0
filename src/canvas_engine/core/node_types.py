"""
Node Types - The closed set of node kinds and their data variants.

This module defines what a node carries:
- NodeKind: Tag set of every node variant on the canvas
- NodeData: Base class with camelCase (de)serialization and shallow merge
- GenerationStatus: Uniform status sub-shape shared by all generators
- One dataclass per kind (ImageGeneratorData, TextData, GroupData, ...)

Node data is a discriminated union keyed by ``NodeKind``; ``NODE_DATA_TYPES``
is the dispatch table. Behaviour that differs per kind (validation, input
resolution, request building) looks the kind up in flat tables rather than
overriding methods here.
"""

from __future__ import annotations

import copy
from dataclasses import MISSING, Field, dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar


class NodeKind(Enum):
    """Every node variant; values are the persisted type tags."""
    # Generators
    IMAGE_GENERATOR = "imageGenerator"
    VIDEO_GENERATOR = "videoGenerator"
    MUSIC_GENERATOR = "musicGenerator"
    SPEECH = "speech"
    VIDEO_AUDIO = "videoAudio"

    # Content
    TEXT = "text"
    MEDIA = "media"
    STICKY_NOTE = "stickyNote"
    STICKER = "sticker"

    # Structural
    GROUP = "group"
    PLUGIN = "plugin"
    STORYBOARD = "storyboard"

    @property
    def is_generator(self) -> bool:
        return self in GENERATOR_KINDS

    @property
    def is_content(self) -> bool:
        return self in CONTENT_KINDS

    @property
    def is_structural(self) -> bool:
        return self in STRUCTURAL_KINDS


GENERATOR_KINDS = frozenset({
    NodeKind.IMAGE_GENERATOR,
    NodeKind.VIDEO_GENERATOR,
    NodeKind.MUSIC_GENERATOR,
    NodeKind.SPEECH,
    NodeKind.VIDEO_AUDIO,
})

CONTENT_KINDS = frozenset({
    NodeKind.TEXT,
    NodeKind.MEDIA,
    NodeKind.STICKY_NOTE,
    NodeKind.STICKER,
})

STRUCTURAL_KINDS = frozenset({
    NodeKind.GROUP,
    NodeKind.PLUGIN,
    NodeKind.STORYBOARD,
})


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


@dataclass
class NodeData:
    """
    Base for every node data variant.

    Fields serialize under camelCase keys (or the ``key`` in a field's
    metadata). Keys that no field claims are kept in ``extra`` so data
    written by other versions survives a load/save round trip.
    """
    kind: ClassVar[NodeKind]

    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def _key_map(cls) -> dict[str, str]:
        """Map of accepted input keys (wire and snake_case) to field names."""
        mapping: dict[str, str] = {}
        for f in fields(cls):
            if f.name == "extra":
                continue
            mapping[f.name] = f.name
            mapping[f.metadata.get("key", _camel(f.name))] = f.name
        return mapping

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> NodeData:
        """Build data from a persisted dict, defaulting anything missing."""
        instance = cls()
        if data:
            instance._apply(data)
        return instance

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict with camelCase keys."""
        result: dict[str, Any] = copy.deepcopy(self.extra)
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            result[f.metadata.get("key", _camel(f.name))] = copy.deepcopy(value)
        return result

    def merged(self, partial: dict[str, Any]) -> NodeData:
        """
        Return a copy with ``partial`` shallow-merged in.

        A ``None`` value resets the field to its default (clearing optional
        fields) or drops the key from ``extra``.
        """
        clone = copy.deepcopy(self)
        clone._apply(partial)
        return clone

    def get(self, key: str, default: Any = None) -> Any:
        """Read a field by snake_case or wire key, falling back to ``extra``."""
        name = self._key_map().get(key)
        if name is not None:
            return getattr(self, name)
        return self.extra.get(key, default)

    def _apply(self, partial: dict[str, Any]) -> None:
        key_map = self._key_map()
        defaults = {f.name: f for f in fields(self)}
        for key, value in partial.items():
            name = key_map.get(key)
            if name is None:
                if value is None:
                    self.extra.pop(key, None)
                else:
                    self.extra[key] = copy.deepcopy(value)
                continue
            if value is None:
                value = _field_default(defaults[name])
            else:
                value = copy.deepcopy(value)
            setattr(self, name, value)


def _field_default(f: Field) -> Any:
    if f.default_factory is not MISSING:
        return f.default_factory()
    if f.default is not MISSING:
        return f.default
    return None


# Runtime job status, written by the job lifecycle rather than by edits
JOB_FIELDS = (
    "is_generating",
    "progress",
    "error",
    "output_url",
    "output_urls",
    "thumbnail_url",
    "task_id",
    "task_model",
    "task_status",
    "task_started_at",
)


@dataclass
class GenerationStatus(NodeData):
    """
    Status sub-shape shared by every generator.

    All fields are independently representable: an ``error`` from the
    latest run may coexist with ``output_url`` from an earlier success.
    The ``task_*`` fields are set only while a long-running remote job is
    being polled.
    """
    is_generating: bool = False
    progress: float | None = None
    error: str | None = None
    output_url: str | None = None
    output_urls: list[str] | None = None

    task_id: str | None = None
    task_model: str | None = None
    task_status: str | None = None  # "pending" | "processing"
    task_started_at: float | None = None

    @property
    def has_output(self) -> bool:
        return bool(self.output_url or self.output_urls)

    @property
    def has_pending_task(self) -> bool:
        return bool(self.task_id) and self.is_generating

    def job_fields(self) -> dict[str, Any]:
        """Copy of the job status fields this variant has."""
        return {
            name: copy.deepcopy(getattr(self, name))
            for name in JOB_FIELDS
            if hasattr(self, name)
        }

    def reset_job(self) -> None:
        """Drop in-flight job state; outputs and the last error are kept."""
        if self.is_generating:
            self.progress = None
        self.is_generating = False
        self.task_id = None
        self.task_model = None
        self.task_status = None
        self.task_started_at = None


# --- Generators ---

@dataclass
class ImageGeneratorData(GenerationStatus):
    kind: ClassVar[NodeKind] = NodeKind.IMAGE_GENERATOR

    name: str | None = None
    prompt: str = ""
    model: str = "flux-schnell"
    aspect_ratio: str = "1:1"
    image_size: str | None = None
    resolution: str | None = None
    image_count: int = 1
    ref_handle_count: int | None = None
    style: str | None = None
    magic_prompt: bool | None = None
    cfg_scale: float | None = None
    steps: int | None = None
    strength: float | None = None
    selected_character: dict[str, Any] | None = None
    selected_style: dict[str, Any] | None = None
    selected_camera_angle: dict[str, Any] | None = None
    selected_camera_lens: dict[str, Any] | None = None


@dataclass
class VideoGeneratorData(GenerationStatus):
    kind: ClassVar[NodeKind] = NodeKind.VIDEO_GENERATOR

    name: str | None = None
    prompt: str = ""
    model: str = "veo-3"
    aspect_ratio: str = "16:9"
    duration: int = 5
    resolution: str | None = None
    generate_audio: bool | None = None
    thumbnail_url: str | None = None


@dataclass
class MusicGeneratorData(GenerationStatus):
    kind: ClassVar[NodeKind] = NodeKind.MUSIC_GENERATOR

    name: str | None = None
    prompt: str = ""
    model: str = "ace-step"
    duration: int = 30
    instrumental: bool = False
    guidance_scale: float = 7.0


@dataclass
class SpeechData(GenerationStatus):
    kind: ClassVar[NodeKind] = NodeKind.SPEECH

    name: str | None = None
    text: str = ""
    model: str = "elevenlabs-tts"
    voice: str = "rachel"
    speed: float = 1.0
    stability: float = 0.5


@dataclass
class VideoAudioData(GenerationStatus):
    kind: ClassVar[NodeKind] = NodeKind.VIDEO_AUDIO

    name: str | None = None
    prompt: str = ""
    model: str = "mmaudio-v2"
    duration: int = 8
    cfg_strength: float = 4.5
    negative_prompt: str | None = None


# --- Content ---

@dataclass
class TextData(NodeData):
    kind: ClassVar[NodeKind] = NodeKind.TEXT

    content: str = ""
    name: str | None = None
    width: float | None = None
    height: float | None = None
    bg_color: str | None = None


@dataclass
class MediaData(NodeData):
    kind: ClassVar[NodeKind] = NodeKind.MEDIA

    url: str | None = None
    media_type: str = field(default="image", metadata={"key": "type"})  # image | video | audio
    width: int | None = None
    height: int | None = None


@dataclass
class StickyNoteData(NodeData):
    kind: ClassVar[NodeKind] = NodeKind.STICKY_NOTE

    content: str = ""
    author: str | None = None
    color: str = "yellow"
    size: str | None = None
    text_align: str | None = None
    font_size: int | None = None
    bold: bool | None = None
    italic: bool | None = None
    rotation: float | None = None
    opacity: float | None = None


@dataclass
class StickerData(NodeData):
    kind: ClassVar[NodeKind] = NodeKind.STICKER

    emoji: str = "⭐"
    size: str = "md"
    rotation: float | None = None
    opacity: float | None = None
    flip_x: bool | None = None
    flip_y: bool | None = None


# --- Structural ---

@dataclass
class GroupData(NodeData):
    kind: ClassVar[NodeKind] = NodeKind.GROUP

    name: str = "Group"
    color: str = "#4a5568"
    width: float = 400.0
    height: float = 300.0


@dataclass
class StoryboardData(NodeData):
    kind: ClassVar[NodeKind] = NodeKind.STORYBOARD

    name: str | None = None
    product: str = ""
    character: str = ""
    concept: str = ""
    scene_count: int = 4
    style: str = "cinematic"
    mode: str = "transition"  # transition | single-shot
    view_state: str = "form"  # form | loading | preview
    error: str | None = None
    result: dict[str, Any] | None = None


@dataclass
class PluginData(NodeData):
    kind: ClassVar[NodeKind] = NodeKind.PLUGIN

    plugin_id: str = ""
    name: str | None = None
    state: dict[str, Any] = field(default_factory=dict)


NODE_DATA_TYPES: dict[NodeKind, type[NodeData]] = {
    cls.kind: cls
    for cls in (
        ImageGeneratorData,
        VideoGeneratorData,
        MusicGeneratorData,
        SpeechData,
        VideoAudioData,
        TextData,
        MediaData,
        StickyNoteData,
        StickerData,
        GroupData,
        StoryboardData,
        PluginData,
    )
}


def data_type_for(kind: NodeKind) -> type[NodeData]:
    return NODE_DATA_TYPES[kind]


def default_data(kind: NodeKind, **overrides: Any) -> NodeData:
    """Fresh data for a kind, with keyword overrides merged in."""
    data = NODE_DATA_TYPES[kind]()
    if overrides:
        data._apply(overrides)
    return data


def default_model(kind: NodeKind) -> str | None:
    """The model a freshly created node of this kind starts with."""
    data_cls = NODE_DATA_TYPES[kind]
    for f in fields(data_cls):
        if f.name == "model":
            return f.default
    return None
