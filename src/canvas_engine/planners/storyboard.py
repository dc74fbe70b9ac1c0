"""
Storyboard Planner - Turn a scene plan into an image/video pipeline.

A storyboard node holds a brief (product, character, concept, style). The
planner streams a scene plan from the backend and, on request, lays it
out on the canvas through the GraphBuilder:
- transition mode: one image node per scene and a first/last-frame video
  node between every consecutive pair, images chained for continuity
- single-shot mode: one image node per scene, each feeding its own
  image-to-video node

Streams are cancelled cooperatively with a CancellationToken that the
consumer checks between events.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

import aiohttp

from canvas_engine.core.builder import CreateNodeInput, GraphBuilder
from canvas_engine.core.graph import (
    HANDLE_CHARACTER_IMAGE,
    HANDLE_FIRST_FRAME,
    HANDLE_LAST_FRAME,
    HANDLE_OUTPUT,
    HANDLE_PRODUCT_IMAGE,
    HANDLE_REFERENCE,
    REF_HANDLES,
    EdgeId,
    NodeId,
    Position,
)
from canvas_engine.core.node_types import NodeKind, StoryboardData
from canvas_engine.providers.base import ProviderError
from canvas_engine.providers.client import GenerationClient


logger = logging.getLogger(__name__)


# Layout constants
IMAGE_NODE_WIDTH = 280
VIDEO_NODE_WIDTH = 420
IMAGE_SPACING = 380
VIDEO_Y_OFFSET = 450
IMAGE_Y_OFFSET = -200

SCENE_IMAGE_MODEL = "nanobanana-pro"
TRANSITION_VIDEO_MODEL = "veo-3.1-flf"
SHOT_VIDEO_MODEL = "veo-3.1-i2v"

MODE_TRANSITION = "transition"
MODE_SINGLE_SHOT = "single-shot"

STYLES = ("cinematic", "anime", "photorealistic", "illustrated", "commercial")
SCENE_COUNTS = (4, 5, 6, 8)


@dataclass
class StoryboardScene:
    """One scene of a plan."""
    number: int
    title: str
    prompt: str
    description: str = ""
    camera: str = ""
    mood: str = ""
    transition: str | None = None  # motion into the next scene (transition mode)
    motion: str | None = None  # motion within the scene (single-shot mode)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoryboardScene:
        return cls(
            number=int(data.get("number", 0)),
            title=data.get("title", ""),
            prompt=data.get("prompt", ""),
            description=data.get("description", ""),
            camera=data.get("camera", ""),
            mood=data.get("mood", ""),
            transition=data.get("transition") or None,
            motion=data.get("motion") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        result = {
            "number": self.number,
            "title": self.title,
            "description": self.description,
            "prompt": self.prompt,
            "camera": self.camera,
            "mood": self.mood,
        }
        if self.transition:
            result["transition"] = self.transition
        if self.motion:
            result["motion"] = self.motion
        return result


@dataclass
class StoryboardPlan:
    """Scenes plus a one-paragraph summary."""
    scenes: list[StoryboardScene] = field(default_factory=list)
    summary: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoryboardPlan:
        return cls(
            scenes=[StoryboardScene.from_dict(s) for s in data.get("scenes") or []],
            summary=data.get("summary", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"scenes": [s.to_dict() for s in self.scenes], "summary": self.summary}


def fallback_transition(current: StoryboardScene, following: StoryboardScene) -> str:
    """Transition prompt used when the plan did not provide one."""
    return (
        f'Cinematic transition from "{current.title}" to "{following.title}". '
        f"{current.camera} transitioning smoothly, maintaining {current.mood} atmosphere."
    )


def request_payload(data: StoryboardData) -> dict[str, Any]:
    """
    Build the planner request from a storyboard node's brief.

    Raises:
        ValueError: If the product or concept is empty.
    """
    product = data.product.strip()
    concept = data.concept.strip()
    if not product or not concept:
        raise ValueError("A storyboard needs a product and a concept")

    payload: dict[str, Any] = {
        "product": product,
        "concept": concept,
        "sceneCount": data.scene_count,
        "style": data.style,
        "mode": data.mode,
    }
    if data.character.strip():
        payload["character"] = data.character.strip()
    return payload


# --- Streaming ---

class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a stream consumer."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class StreamOutcome:
    """What a planner stream produced, complete or not."""
    reasoning: str = ""
    text: str = ""
    plan: StoryboardPlan | None = None
    error: str | None = None
    finish_reason: str | None = None
    cancelled: bool = False


async def consume_stream(
    events: AsyncIterator[dict[str, Any]],
    token: CancellationToken | None = None,
    on_reasoning: Callable[[str], None] | None = None,
) -> StreamOutcome:
    """
    Read planner events until the stream ends or ``token`` is cancelled.

    On cancellation the partial outcome (reasoning and text buffered so
    far) is returned with ``cancelled`` set.
    """
    outcome = StreamOutcome()
    try:
        async for event in events:
            if token is not None and token.cancelled:
                outcome.cancelled = True
                break

            event_type = event.get("type")
            if event_type == "reasoning-delta":
                chunk = str(event.get("text", ""))
                outcome.reasoning += chunk
                if on_reasoning:
                    on_reasoning(chunk)
            elif event_type == "text-delta":
                outcome.text += str(event.get("text", ""))
            elif event_type == "finish":
                outcome.finish_reason = event.get("finishReason")
            elif event_type == "error":
                outcome.error = str(event.get("error") or "Storyboard generation failed")
            elif event_type == "result":
                outcome.plan = StoryboardPlan.from_dict(event)
            else:
                logger.debug("Ignoring stream event %r", event_type)
        else:
            if token is not None and token.cancelled:
                outcome.cancelled = True
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()
    return outcome


# --- Planner ---

@dataclass
class StoryboardLayout:
    """Ids of what a storyboard put on the canvas."""
    image_ids: list[NodeId] = field(default_factory=list)
    video_ids: list[NodeId] = field(default_factory=list)
    edge_ids: list[EdgeId] = field(default_factory=list)


class StoryboardPlanner:
    """Streams scene plans into storyboard nodes and materializes them."""

    def __init__(self, builder: GraphBuilder, client: GenerationClient | None = None):
        self.builder = builder
        self.client = client or GenerationClient()

    @property
    def store(self):
        return self.builder.store

    def _storyboard(self, node_id: NodeId) -> StoryboardData:
        node = self.store.get_node(node_id)
        if node is None or node.kind is not NodeKind.STORYBOARD:
            raise ValueError(f"Not a storyboard node: {node_id}")
        return node.data

    async def generate(
        self,
        node_id: NodeId,
        token: CancellationToken | None = None,
        on_reasoning: Callable[[str], None] | None = None,
    ) -> StreamOutcome:
        """
        Stream a plan for a storyboard node and store it as the node's result.

        Raises:
            ValueError: If the node is not a storyboard or its brief is incomplete.
        """
        payload = request_payload(self._storyboard(node_id))
        self.store.update_node_data(
            node_id, {"viewState": "loading", "error": None}, track_history=False,
        )

        try:
            outcome = await consume_stream(
                self.client.stream_storyboard(payload), token, on_reasoning,
            )
        except (ProviderError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Storyboard generation failed for %s: %s", node_id, e)
            outcome = StreamOutcome(error=str(e))

        if outcome.plan is not None and outcome.plan.scenes:
            update = {"viewState": "preview", "result": outcome.plan.to_dict()}
        elif outcome.cancelled:
            update = {"viewState": "form"}
        else:
            update = {"viewState": "form", "error": outcome.error or "Generation failed"}

        if node_id in self.store:
            self.store.update_node_data(node_id, update, track_history=False)
        return outcome

    def create_on_canvas(self, node_id: NodeId) -> StoryboardLayout:
        """
        Materialize a storyboard node's stored plan.

        The nodes wired into its product and character image handles become
        references of the first scene.
        """
        data = self._storyboard(node_id)
        if not data.result:
            raise ValueError(f"Storyboard {node_id} has no plan yet")

        product = self.store.edge_into(node_id, HANDLE_PRODUCT_IMAGE)
        character = self.store.edge_into(node_id, HANDLE_CHARACTER_IMAGE)
        return self.materialize(
            StoryboardPlan.from_dict(data.result),
            mode=data.mode,
            reference_sources=[e.source for e in (product, character) if e is not None],
        )

    def materialize(
        self,
        plan: StoryboardPlan,
        mode: str = MODE_TRANSITION,
        reference_sources: list[NodeId] | None = None,
    ) -> StoryboardLayout:
        """Create the nodes and edges for ``plan`` as one undo step and fit the view."""
        scenes = plan.scenes
        if not scenes:
            raise ValueError("Storyboard plan has no scenes")
        if mode not in (MODE_TRANSITION, MODE_SINGLE_SHOT):
            raise ValueError(f"Unknown storyboard mode: {mode}")

        center = self.builder.get_viewport_center()
        total_width = (len(scenes) - 1) * IMAGE_SPACING + IMAGE_NODE_WIDTH
        start = Position(center.x - total_width / 2, center.y + IMAGE_Y_OFFSET)
        video_y = start.y + VIDEO_Y_OFFSET
        centering = (IMAGE_NODE_WIDTH - VIDEO_NODE_WIDTH) / 2

        image_positions = [
            Position(start.x + index * IMAGE_SPACING, start.y) for index in range(len(scenes))
        ]
        specs = [
            CreateNodeInput(
                kind=NodeKind.IMAGE_GENERATOR,
                position=position,
                name=f"Scene {scene.number}: {scene.title}",
                data={"prompt": scene.prompt, "model": SCENE_IMAGE_MODEL},
            )
            for scene, position in zip(scenes, image_positions)
        ]

        if mode == MODE_TRANSITION:
            for i, (current, following) in enumerate(zip(scenes, scenes[1:])):
                x = (image_positions[i].x + image_positions[i + 1].x) / 2 + centering
                specs.append(CreateNodeInput(
                    kind=NodeKind.VIDEO_GENERATOR,
                    position=Position(x, video_y),
                    name=f"Transition {i + 1}",
                    data={
                        "prompt": current.transition or fallback_transition(current, following),
                        "model": TRANSITION_VIDEO_MODEL,
                        "aspectRatio": "16:9",
                        "duration": 4,
                        "resolution": "720p",
                        "generateAudio": True,
                    },
                ))
        else:
            for i, scene in enumerate(scenes):
                specs.append(CreateNodeInput(
                    kind=NodeKind.VIDEO_GENERATOR,
                    position=Position(image_positions[i].x + centering, video_y),
                    name=f"Shot {scene.number}",
                    data={
                        "prompt": scene.motion or scene.prompt,
                        "model": SHOT_VIDEO_MODEL,
                        "aspectRatio": "16:9",
                        "resolution": "720p",
                        "generateAudio": True,
                    },
                ))

        layout = StoryboardLayout()
        with self.builder.transaction():
            ids = self.builder.create_nodes(specs)
            layout.image_ids = ids[:len(scenes)]
            layout.video_ids = ids[len(scenes):]

            def wire(source: NodeId, target: NodeId, handle: str) -> None:
                edge_id = self.builder.create_edge(source, HANDLE_OUTPUT, target, handle)
                if edge_id is not None:
                    layout.edge_ids.append(edge_id)

            # Only the first scene sees the product/character images
            first = layout.image_ids[0]
            for slot, source in zip((HANDLE_REFERENCE, REF_HANDLES[0]), reference_sources or []):
                wire(source, first, slot)

            if mode == MODE_TRANSITION:
                for i, video_id in enumerate(layout.video_ids):
                    source, target = layout.image_ids[i], layout.image_ids[i + 1]
                    wire(source, target, HANDLE_REFERENCE)
                    wire(source, video_id, HANDLE_FIRST_FRAME)
                    wire(target, video_id, HANDLE_LAST_FRAME)
            else:
                for image_id, video_id in zip(layout.image_ids, layout.video_ids):
                    wire(image_id, video_id, HANDLE_REFERENCE)

        self.builder.fit_view()
        logger.info(
            "Created storyboard: %d scenes, %d videos (%s)",
            len(layout.image_ids), len(layout.video_ids), mode,
        )
        return layout
