"""
Provider Registry - Model capability tables and backend configuration.

This module manages:
- Built-in capability records for image, video and audio models
- Lookup helpers used by the connection validator and job lifecycle
- Provider configuration loading/saving
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from canvas_engine.providers.base import (
    ModelCapabilities,
    ModelFamily,
    ModelInputType,
    ProviderConfig,
    VideoInputMode,
)


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "canvas_engine" / "providers.json"

_IMAGE_RATIOS = ("1:1", "4:3", "3:4", "16:9", "9:16")
_FLUX_SIZES = (
    "square_hd", "square", "landscape_4_3", "portrait_4_3",
    "landscape_16_9", "portrait_16_9",
)


# ============================================================================
# Image Models
# ============================================================================

IMAGE_MODEL_CAPABILITIES: dict[str, ModelCapabilities] = {
    "flux-schnell": ModelCapabilities(
        id="flux-schnell",
        family=ModelFamily.IMAGE,
        label="Flux Schnell",
        input_type=ModelInputType.TEXT_ONLY,
        description="Fast, 1-4 steps",
        max_images=4,
        aspect_ratios=_IMAGE_RATIOS,
        image_sizes=_FLUX_SIZES,
        endpoint_id="fal-ai/flux/schnell",
    ),
    "flux-pro": ModelCapabilities(
        id="flux-pro",
        family=ModelFamily.IMAGE,
        label="Flux Pro",
        input_type=ModelInputType.TEXT_AND_IMAGE,
        description="High quality",
        max_images=4,
        max_references=1,
        aspect_ratios=_IMAGE_RATIOS,
        image_sizes=_FLUX_SIZES,
        endpoint_id="fal-ai/flux-pro",
    ),
    "nanobanana-pro": ModelCapabilities(
        id="nanobanana-pro",
        family=ModelFamily.IMAGE,
        label="Nano Banana Pro",
        input_type=ModelInputType.TEXT_AND_IMAGE,
        description="Up to 14 style refs",
        max_images=4,
        max_references=14,
        aspect_ratios=_IMAGE_RATIOS + ("3:2", "2:3", "21:9", "5:4", "4:5"),
        resolutions=("1K", "2K", "4K"),
        endpoint_id="fal-ai/nano-banana-pro",
    ),
    "recraft-v3": ModelCapabilities(
        id="recraft-v3",
        family=ModelFamily.IMAGE,
        label="Recraft V3",
        input_type=ModelInputType.TEXT_ONLY,
        description="Versatile styles",
        max_images=4,
        aspect_ratios=_IMAGE_RATIOS,
        styles=("realistic_image", "digital_illustration", "vector_illustration"),
        endpoint_id="fal-ai/recraft-v3",
    ),
    "ideogram-v3": ModelCapabilities(
        id="ideogram-v3",
        family=ModelFamily.IMAGE,
        label="Ideogram V3",
        input_type=ModelInputType.TEXT_ONLY,
        description="Best for text & logos",
        max_images=4,
        aspect_ratios=_IMAGE_RATIOS,
        styles=("auto", "general", "realistic", "design", "3d", "anime"),
        supports_magic_prompt=True,
        endpoint_id="fal-ai/ideogram/v3",
    ),
    "sd-3.5": ModelCapabilities(
        id="sd-3.5",
        family=ModelFamily.IMAGE,
        label="SD 3.5 Large",
        input_type=ModelInputType.TEXT_AND_IMAGE,
        description="Open model, img2img",
        max_images=4,
        max_references=1,
        aspect_ratios=_IMAGE_RATIOS,
        supports_advanced_params=True,
        endpoint_id="fal-ai/stable-diffusion-v35-large",
    ),
}


# ============================================================================
# Video Models
# ============================================================================

def _veo(model_id: str, label: str, input_type: ModelInputType,
         input_mode: VideoInputMode, description: str, endpoint_id: str,
         durations: tuple[int, ...] = (4, 6, 8),
         max_references: int = 1) -> ModelCapabilities:
    return ModelCapabilities(
        id=model_id,
        family=ModelFamily.VIDEO,
        label=label,
        input_type=input_type,
        description=description,
        max_references=max_references if input_type.accepts_images else 0,
        aspect_ratios=("16:9", "9:16"),
        resolutions=("720p", "1080p"),
        input_mode=input_mode,
        durations=durations,
        default_duration=8,
        supports_audio=True,
        endpoint_id=endpoint_id,
    )


VIDEO_MODEL_CAPABILITIES: dict[str, ModelCapabilities] = {
    "veo-3": _veo(
        "veo-3", "Veo 3", ModelInputType.TEXT_ONLY, VideoInputMode.TEXT,
        "Best quality text-to-video", "fal-ai/veo3",
    ),
    "veo-3.1-i2v": _veo(
        "veo-3.1-i2v", "Veo 3.1 Image", ModelInputType.TEXT_AND_IMAGE,
        VideoInputMode.SINGLE_IMAGE, "Animate a single image",
        "fal-ai/veo3.1/image-to-video",
    ),
    "veo-3.1-fast-i2v": _veo(
        "veo-3.1-fast-i2v", "Veo 3.1 Fast Image", ModelInputType.TEXT_AND_IMAGE,
        VideoInputMode.SINGLE_IMAGE, "Fast image-to-video",
        "fal-ai/veo3.1/fast/image-to-video",
    ),
    "veo-3.1-ref": _veo(
        "veo-3.1-ref", "Veo 3.1 Multi-Ref", ModelInputType.TEXT_AND_IMAGE,
        VideoInputMode.MULTI_REFERENCE, "Multiple reference images",
        "fal-ai/veo3.1/reference-to-video", durations=(8,), max_references=3,
    ),
    "veo-3.1-flf": _veo(
        "veo-3.1-flf", "Veo 3.1 First-Last", ModelInputType.IMAGE_ONLY,
        VideoInputMode.FIRST_LAST_FRAME, "First & last frame to video",
        "fal-ai/veo3.1/first-last-frame-to-video", max_references=2,
    ),
    "veo-3.1-fast-flf": _veo(
        "veo-3.1-fast-flf", "Veo 3.1 Fast First-Last", ModelInputType.IMAGE_ONLY,
        VideoInputMode.FIRST_LAST_FRAME, "Fast first & last frame",
        "fal-ai/veo3.1/fast/first-last-frame-to-video", max_references=2,
    ),
    "kling-2.6-t2v": ModelCapabilities(
        id="kling-2.6-t2v",
        family=ModelFamily.VIDEO,
        label="Kling 2.6 Text",
        input_type=ModelInputType.TEXT_ONLY,
        description="Text-to-video with audio",
        aspect_ratios=("16:9", "9:16", "1:1"),
        input_mode=VideoInputMode.TEXT,
        durations=(5, 10),
        default_duration=5,
        supports_audio=True,
        endpoint_id="fal-ai/kling-video/v2.6/pro/text-to-video",
    ),
    "kling-2.6-i2v": ModelCapabilities(
        id="kling-2.6-i2v",
        family=ModelFamily.VIDEO,
        label="Kling 2.6 Image",
        input_type=ModelInputType.TEXT_AND_IMAGE,
        description="Start + optional end frame with audio",
        max_references=2,
        aspect_ratios=("16:9", "9:16", "1:1"),
        input_mode=VideoInputMode.FIRST_LAST_FRAME,
        durations=(5, 10),
        default_duration=5,
        supports_audio=True,
        last_frame_optional=True,
        endpoint_id="fal-ai/kling-video/v2.6/pro/image-to-video",
    ),
    "luma-ray2": ModelCapabilities(
        id="luma-ray2",
        family=ModelFamily.VIDEO,
        label="Luma Ray 2",
        input_type=ModelInputType.TEXT_AND_IMAGE,
        description="Cinematic quality",
        max_references=1,
        aspect_ratios=("16:9", "9:16", "4:3", "3:4", "1:1"),
        resolutions=("540p", "720p", "1080p"),
        input_mode=VideoInputMode.SINGLE_IMAGE,
        durations=(5, 9),
        default_duration=5,
        endpoint_id="fal-ai/luma-dream-machine",
    ),
    "minimax-video": ModelCapabilities(
        id="minimax-video",
        family=ModelFamily.VIDEO,
        label="Minimax",
        input_type=ModelInputType.TEXT_AND_IMAGE,
        description="Fast generation",
        max_references=1,
        aspect_ratios=("16:9", "9:16", "1:1"),
        input_mode=VideoInputMode.SINGLE_IMAGE,
        durations=(5,),
        default_duration=5,
        endpoint_id="fal-ai/minimax-video/image-to-video",
    ),
    "runway-gen3": ModelCapabilities(
        id="runway-gen3",
        family=ModelFamily.VIDEO,
        label="Runway Gen-3",
        input_type=ModelInputType.IMAGE_ONLY,
        description="Premium image-to-video",
        max_references=1,
        aspect_ratios=("16:9", "9:16"),
        input_mode=VideoInputMode.SINGLE_IMAGE,
        durations=(5, 10),
        default_duration=5,
        endpoint_id="fal-ai/runway-gen3/turbo/image-to-video",
    ),
}


# ============================================================================
# Audio Models
# ============================================================================

AUDIO_MODEL_CAPABILITIES: dict[str, ModelCapabilities] = {
    "ace-step": ModelCapabilities(
        id="ace-step",
        family=ModelFamily.AUDIO,
        label="ACE-Step",
        description="Music generation (5-240s)",
        endpoint_id="fal-ai/ace-step",
    ),
    "elevenlabs-tts": ModelCapabilities(
        id="elevenlabs-tts",
        family=ModelFamily.AUDIO,
        label="ElevenLabs TTS",
        description="Text-to-speech (20+ voices)",
        endpoint_id="fal-ai/elevenlabs/tts/turbo-v2.5",
    ),
    "mmaudio-v2": ModelCapabilities(
        id="mmaudio-v2",
        family=ModelFamily.AUDIO,
        label="MMAudio V2",
        input_type=ModelInputType.TEXT_AND_IMAGE,
        description="Video-synced audio generation",
        endpoint_id="fal-ai/mmaudio/v2",
    ),
}


class ProviderRegistry:
    """
    Central registry of model capabilities and backend configuration.

    Capability lookups are keyed by family so that an image model and a
    video model may never shadow each other.
    """

    _instance: ProviderRegistry | None = None

    def __new__(cls) -> ProviderRegistry:
        """Singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    @classmethod
    def instance(cls) -> ProviderRegistry:
        return cls()

    def __init__(self):
        if self._initialized:
            return
        self._initialized = True
        self._capabilities: dict[ModelFamily, dict[str, ModelCapabilities]] = {
            ModelFamily.IMAGE: dict(IMAGE_MODEL_CAPABILITIES),
            ModelFamily.VIDEO: dict(VIDEO_MODEL_CAPABILITIES),
            ModelFamily.AUDIO: dict(AUDIO_MODEL_CAPABILITIES),
        }
        self._config = ProviderConfig()
        self._config_path: Path | None = None

    # -------------------------------------------------------------------------
    # Capabilities
    # -------------------------------------------------------------------------

    def register_model(self, card: ModelCapabilities) -> None:
        """Register (or replace) a capability record."""
        self._capabilities[card.family][card.id] = card

    def get_model(self, family: ModelFamily, model_id: str | None) -> ModelCapabilities | None:
        """Get an enabled model's capabilities, or None if unknown/disabled."""
        if not model_id or model_id in self._config.disabled_models:
            return None
        return self._capabilities[family].get(model_id)

    def list_models(self, family: ModelFamily) -> list[ModelCapabilities]:
        """List enabled models of a family."""
        return [
            card for card in self._capabilities[family].values()
            if card.id not in self._config.disabled_models
        ]

    def reset(self) -> None:
        """Restore built-in tables and default config (for testing)."""
        self._initialized = False
        self.__init__()

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    @property
    def config(self) -> ProviderConfig:
        return self._config

    def set_config(self, config: ProviderConfig) -> None:
        self._config = config

    def load_config(self, path: Path | None = None) -> ProviderConfig:
        """Load backend configuration from file; missing file keeps defaults."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        self._config_path = path

        if not path.exists():
            return self._config

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to load provider config %s: %s", path, e)
            return self._config

        defaults = ProviderConfig()
        self._config = ProviderConfig(
            base_url=data.get("base_url", defaults.base_url),
            api_key=data.get("api_key", ""),
            enabled=data.get("enabled", True),
            poll_interval=float(data.get("poll_interval", defaults.poll_interval)),
            request_timeout=float(data.get("request_timeout", defaults.request_timeout)),
            cancel_path=data.get("cancel_path"),
            disabled_models=list(data.get("disabled_models", [])),
            extra=data.get("extra", {}),
        )

        for card_data in data.get("custom_models", []):
            try:
                card = ModelCapabilities(
                    id=card_data["id"],
                    family=ModelFamily(card_data["family"]),
                    label=card_data.get("label", card_data["id"]),
                    input_type=ModelInputType(card_data.get("input_type", "text-only")),
                    description=card_data.get("description", ""),
                    max_references=card_data.get("max_references", 0),
                    aspect_ratios=tuple(card_data.get("aspect_ratios", ())),
                    input_mode=VideoInputMode(card_data.get("input_mode", "text")),
                    durations=tuple(card_data.get("durations", ())),
                    endpoint_id=card_data.get("endpoint_id", ""),
                )
            except (KeyError, ValueError) as e:
                logger.warning("Skipping invalid custom model entry %r: %s", card_data, e)
                continue
            self.register_model(card)

        logger.info("Loaded provider config from %s", path)
        return self._config

    def save_config(self, path: Path | None = None) -> Path:
        """Save backend configuration to file."""
        if path is None:
            path = self._config_path or DEFAULT_CONFIG_PATH

        path.parent.mkdir(parents=True, exist_ok=True)

        cfg = self._config
        data = {
            "base_url": cfg.base_url,
            "api_key": cfg.api_key,
            "enabled": cfg.enabled,
            "poll_interval": cfg.poll_interval,
            "request_timeout": cfg.request_timeout,
            "cancel_path": cfg.cancel_path,
            "disabled_models": cfg.disabled_models,
            "extra": cfg.extra,
        }

        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

        return path


# ============================================================================
# Module-level convenience functions
# ============================================================================

def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return ProviderRegistry.instance()


def get_image_capabilities(model_id: str | None) -> ModelCapabilities | None:
    return get_registry().get_model(ModelFamily.IMAGE, model_id)


def get_video_capabilities(model_id: str | None) -> ModelCapabilities | None:
    return get_registry().get_model(ModelFamily.VIDEO, model_id)


def get_audio_capabilities(model_id: str | None) -> ModelCapabilities | None:
    return get_registry().get_model(ModelFamily.AUDIO, model_id)
