"""
Provider Base - Capability records, request/response shapes and errors.

This module provides the contract between the graph engine and the
external generation services:
- ModelCapabilities: Static description of what a generation model accepts
- GenerationRequest/Response: What the engine sends and gets back
- PollResult: Status of a long-running remote job
- ProviderConfig: Connection settings for the generation backend

The HTTP endpoints themselves live outside this package; the clients in
``providers.client`` and ``providers.assets`` only speak their wire format.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ModelInputType(Enum):
    """Whether a model accepts text only, image input, or both."""
    TEXT_ONLY = "text-only"
    TEXT_AND_IMAGE = "text-and-image"
    IMAGE_ONLY = "image-only"

    @property
    def accepts_images(self) -> bool:
        return self in (ModelInputType.TEXT_AND_IMAGE, ModelInputType.IMAGE_ONLY)


class VideoInputMode(Enum):
    """Which input handles a video model exposes."""
    TEXT = "text"
    SINGLE_IMAGE = "single-image"
    FIRST_LAST_FRAME = "first-last-frame"
    MULTI_REFERENCE = "multi-reference"


class ModelFamily(Enum):
    """Node family a model belongs to."""
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


@dataclass
class ModelCapabilities:
    """
    Capability record for a single generation model.

    Attributes:
        id: Model identifier stored in node data (e.g., "flux-pro")
        family: Which generator node family uses this model
        label: Human-readable display name
        input_type: Whether the model accepts reference images
        description: Short blurb for model pickers

        max_images: Images per request (image models)
        max_references: Max reference images (image/video models)
        aspect_ratios: Supported aspect ratios
        image_sizes: Flux-style size presets
        resolutions: Resolution tiers ("1K", "720p", ...)
        styles: Style presets (Recraft, Ideogram)

        input_mode: Handle layout for video models
        durations: Allowed clip lengths in seconds (video models)
        default_duration: Duration used when switching to this model
        supports_audio: Video model can generate a soundtrack
        last_frame_optional: First-last-frame model works without a last frame
        endpoint_id: Identifier of the model on the upstream service
    """
    id: str
    family: ModelFamily
    label: str
    input_type: ModelInputType = ModelInputType.TEXT_ONLY
    description: str = ""

    max_images: int = 1
    max_references: int = 0
    aspect_ratios: tuple[str, ...] = ()
    image_sizes: tuple[str, ...] = ()
    resolutions: tuple[str, ...] = ()
    styles: tuple[str, ...] = ()
    supports_magic_prompt: bool = False
    supports_advanced_params: bool = False

    input_mode: VideoInputMode = VideoInputMode.TEXT
    durations: tuple[int, ...] = ()
    default_duration: int | None = None
    supports_audio: bool = False
    last_frame_optional: bool = False

    endpoint_id: str = ""

    @property
    def accepts_images(self) -> bool:
        return self.input_type.accepts_images

    @property
    def supports_references(self) -> bool:
        return self.accepts_images and self.max_references > 0


@dataclass
class GenerationRequest:
    """
    A single generation call for one node.

    ``kind`` is the node kind tag of the requesting node; the client maps
    it onto an endpoint. ``body`` is the JSON payload.
    """
    node_id: str
    kind: str
    body: dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationResponse:
    """
    Result of a generation call.

    Either ``output_urls`` is populated (synchronous completion) or
    ``is_async`` is True and ``task_id``/``task_model`` identify the
    remote job to poll.
    """
    output_urls: list[str] = field(default_factory=list)
    is_async: bool = False
    task_id: str | None = None
    task_model: str | None = None
    thumbnail_url: str | None = None
    model: str | None = None

    @property
    def output_url(self) -> str | None:
        return self.output_urls[0] if self.output_urls else None


class TaskStatus(Enum):
    """Remote job status reported by the poll endpoint."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass
class PollResult:
    """One answer from the poll endpoint."""
    status: TaskStatus
    video_url: str | None = None
    error: str | None = None


@dataclass
class ProviderConfig:
    """Configuration for the generation backend."""
    base_url: str = "http://localhost:3000"
    api_key: str = ""
    enabled: bool = True
    poll_interval: float = 5.0
    request_timeout: float = 300.0
    cancel_path: str | None = None  # None = backend has no cancel endpoint
    disabled_models: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)


class ProviderError(Exception):
    """Base exception for provider errors."""
    pass


class AuthenticationError(ProviderError):
    """API key invalid or missing."""
    pass


class RateLimitError(ProviderError):
    """Rate limit exceeded."""
    retry_after: float | None = None


class GenerationError(ProviderError):
    """Error during generation."""
    pass


class MissingInputError(GenerationError):
    """A node lacks the inputs its model needs; raised before any request."""
    pass


class PollError(ProviderError):
    """Transport or server error while polling a remote job."""
    pass


class AssetError(ProviderError):
    """Upload or presign failed."""
    pass


class StorageNotConfiguredError(AssetError):
    """The backend has no direct-upload storage configured (HTTP 501)."""
    pass
