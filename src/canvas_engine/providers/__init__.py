"""
Generation Providers.

This package connects the engine to the generation backend:
- Capability tables for image, video and audio models
- GenerationClient: per-kind generation, job polling, planner streams
- AssetClient: media uploads to the backend's asset storage

Usage:
    from canvas_engine.providers import get_registry

    registry = get_registry()
    registry.load_config()

    caps = registry.get_model(ModelFamily.VIDEO, "veo-3.1-flf")
"""

from canvas_engine.providers.base import (
    AssetError,
    AuthenticationError,
    GenerationError,
    GenerationRequest,
    GenerationResponse,
    MissingInputError,
    ModelCapabilities,
    ModelFamily,
    ModelInputType,
    PollError,
    PollResult,
    ProviderConfig,
    ProviderError,
    RateLimitError,
    StorageNotConfiguredError,
    TaskStatus,
    VideoInputMode,
)

from canvas_engine.providers.registry import (
    ProviderRegistry,
    get_audio_capabilities,
    get_image_capabilities,
    get_registry,
    get_video_capabilities,
)

from canvas_engine.providers.client import GenerationClient
from canvas_engine.providers.assets import AssetClient, StoredAsset


__all__ = [
    # Capabilities and wire shapes
    "ModelCapabilities",
    "ModelFamily",
    "ModelInputType",
    "VideoInputMode",
    "GenerationRequest",
    "GenerationResponse",
    "PollResult",
    "TaskStatus",
    "ProviderConfig",
    # Exceptions
    "ProviderError",
    "AuthenticationError",
    "RateLimitError",
    "GenerationError",
    "MissingInputError",
    "PollError",
    "AssetError",
    "StorageNotConfiguredError",
    # Registry
    "ProviderRegistry",
    "get_registry",
    "get_image_capabilities",
    "get_video_capabilities",
    "get_audio_capabilities",
    # Clients
    "GenerationClient",
    "AssetClient",
    "StoredAsset",
]
