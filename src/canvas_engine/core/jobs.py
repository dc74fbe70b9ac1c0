"""
Job Lifecycle - Per-node generation state machine and remote job polling.

Every generator node moves through Idle -> Generating -> {Succeeded, Failed}
and back to Generating on the next run. The state is not stored separately;
it is derived from the node's generation-status fields, so it survives a
save/load round trip.

Long-running remote jobs return a task id instead of a result. The node
keeps ``task_id``/``task_model`` while a poller task, held in a side map
keyed by node id, asks the backend for the status on a fixed interval.
``resume_pending`` restarts pollers for nodes loaded mid-job.

Job status writes are runtime state, not user edits: they never create undo
entries, and undo/redo keep their live values.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum, auto
from typing import Any, Callable, Iterable

from canvas_engine.core.graph import Node, NodeId, Position
from canvas_engine.core.inputs import (
    ResolvedInputs,
    compose_image_prompt,
    compose_text_prompt,
    has_presets,
)
from canvas_engine.core.node_types import (
    GENERATOR_KINDS,
    GenerationStatus,
    ImageGeneratorData,
    MediaData,
    MusicGeneratorData,
    NodeData,
    NodeKind,
    SpeechData,
    VideoAudioData,
    VideoGeneratorData,
)
from canvas_engine.core.store import CanvasStore, StoreChange
from canvas_engine.providers.base import (
    GenerationError,
    GenerationRequest,
    MissingInputError,
    ModelInputType,
    PollResult,
    ProviderError,
    TaskStatus,
    VideoInputMode,
)
from canvas_engine.providers.client import GenerationClient
from canvas_engine.providers.registry import get_image_capabilities, get_video_capabilities


logger = logging.getLogger(__name__)


DEFAULT_POLL_INTERVAL = 5.0

# Where extra images of a multi-image result are placed, relative to the node
EXTRA_OUTPUT_OFFSET = Position(400.0, 0.0)
EXTRA_OUTPUT_SPACING = 200.0

_CLEARED_TASK = {
    "task_id": None,
    "task_model": None,
    "task_status": None,
    "task_started_at": None,
}


class JobState(Enum):
    """Derived lifecycle state of a generator node."""
    IDLE = auto()
    GENERATING = auto()
    SUCCEEDED = auto()
    FAILED = auto()


def job_state(data: NodeData) -> JobState:
    """Derive the lifecycle state from a node's generation-status fields."""
    if not isinstance(data, GenerationStatus):
        return JobState.IDLE
    if data.is_generating:
        return JobState.GENERATING
    if data.error:
        return JobState.FAILED
    if data.has_output:
        return JobState.SUCCEEDED
    return JobState.IDLE


def _compact(body: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in body.items() if value is not None}


# --- Request builders ---

def _image_request(node: Node, data: ImageGeneratorData, inputs: ResolvedInputs) -> dict[str, Any]:
    if get_image_capabilities(data.model) is None:
        raise GenerationError(f"Unknown or disabled image model: {data.model}")

    prompt = compose_image_prompt(data, inputs)
    if not prompt and not has_presets(data):
        raise MissingInputError("Please enter a prompt, connect a text node, or select presets")

    references = inputs.all_reference_urls
    return _compact({
        "prompt": prompt,
        "model": data.model,
        "aspectRatio": data.aspect_ratio,
        "imageSize": data.image_size or "square_hd",
        "resolution": data.resolution or "1K",
        "imageCount": data.image_count or 1,
        "referenceUrl": inputs.reference_url,
        "referenceUrls": references or None,
        "style": data.style,
        "magicPrompt": data.magic_prompt,
        "cfgScale": data.cfg_scale,
        "steps": data.steps,
        "strength": data.strength,
    })


def _video_request(node: Node, data: VideoGeneratorData, inputs: ResolvedInputs) -> dict[str, Any]:
    caps = get_video_capabilities(data.model)
    if caps is None:
        raise GenerationError(f"Unknown or disabled video model: {data.model}")

    if caps.input_mode is VideoInputMode.FIRST_LAST_FRAME:
        if not inputs.first_frame_url:
            raise MissingInputError("Connect a start frame image")
        if not caps.last_frame_optional and not inputs.last_frame_url:
            raise MissingInputError("Connect both first and last frame images")
    elif caps.input_mode is VideoInputMode.MULTI_REFERENCE:
        if not inputs.reference_urls and not inputs.reference_url:
            raise MissingInputError("Connect at least one reference image")
    elif (
        caps.input_mode is VideoInputMode.SINGLE_IMAGE
        and caps.input_type is ModelInputType.IMAGE_ONLY
        and not inputs.reference_url
    ):
        raise MissingInputError("This model requires a reference image")

    prompt = compose_text_prompt(data.prompt, inputs)
    if not prompt and not inputs.has_media:
        raise MissingInputError("Please enter a prompt or connect media references")

    return _compact({
        "prompt": prompt,
        "model": data.model,
        "aspectRatio": data.aspect_ratio,
        "duration": data.duration,
        "resolution": data.resolution,
        "referenceUrl": inputs.reference_url,
        "firstFrameUrl": inputs.first_frame_url,
        "lastFrameUrl": inputs.last_frame_url,
        "referenceUrls": inputs.reference_urls,
        "videoUrl": inputs.video_url,
        "audioUrl": inputs.audio_url,
        "generateAudio": data.generate_audio,
    })


def _music_request(node: Node, data: MusicGeneratorData, inputs: ResolvedInputs) -> dict[str, Any]:
    prompt = compose_text_prompt(data.prompt, inputs)
    if not prompt:
        raise MissingInputError("Please enter a prompt or connect a text node")
    return {
        "prompt": prompt,
        "duration": data.duration,
        "instrumental": data.instrumental,
        "guidanceScale": data.guidance_scale,
    }


def _speech_request(node: Node, data: SpeechData, inputs: ResolvedInputs) -> dict[str, Any]:
    text = compose_text_prompt(data.text, inputs)
    if not text:
        raise MissingInputError("Please enter text or connect a text node")
    return {
        "text": text,
        "voice": data.voice,
        "speed": data.speed,
        "stability": data.stability,
    }


def _video_audio_request(node: Node, data: VideoAudioData, inputs: ResolvedInputs) -> dict[str, Any]:
    if not inputs.video_url:
        raise MissingInputError("Please connect a video input")
    return _compact({
        "prompt": compose_text_prompt(data.prompt, inputs),
        "videoUrl": inputs.video_url,
        "duration": data.duration,
        "cfgStrength": data.cfg_strength,
        "negativePrompt": data.negative_prompt,
    })


REQUEST_BUILDERS: dict[NodeKind, Callable[[Node, Any, ResolvedInputs], dict[str, Any]]] = {
    NodeKind.IMAGE_GENERATOR: _image_request,
    NodeKind.VIDEO_GENERATOR: _video_request,
    NodeKind.MUSIC_GENERATOR: _music_request,
    NodeKind.SPEECH: _speech_request,
    NodeKind.VIDEO_AUDIO: _video_audio_request,
}


class JobManager:
    """
    Runs generation jobs for the generator nodes of one CanvasStore.

    Features:
    - Per-node state transitions written through the store
    - Concurrent jobs; one node's failure never touches another
    - Poller tasks for long-running jobs, resumable after a reload
    - Pollers stop automatically when their node is deleted
    """

    def __init__(
        self,
        store: CanvasStore,
        client: GenerationClient | None = None,
        poll_interval: float | None = None,
        poll_timeout: float | None = None,
        spawn_extra_outputs: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.client = client or GenerationClient()
        if poll_interval is None:
            config = getattr(self.client, "config", None)
            poll_interval = getattr(config, "poll_interval", DEFAULT_POLL_INTERVAL)
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.spawn_extra_outputs = spawn_extra_outputs
        self._clock = clock

        self._pollers: dict[NodeId, asyncio.Task] = {}
        self._running: set[NodeId] = set()
        self._on_job_complete: Callable[[NodeId, JobState], None] | None = None
        self._unsubscribe = store.subscribe(self._on_store_change)

    def set_completion_callback(self, callback: Callable[[NodeId, JobState], None]) -> None:
        """Set the callback invoked when a job reaches Succeeded or Failed."""
        self._on_job_complete = callback

    # --- State transitions ---

    def job_state(self, node_id: NodeId) -> JobState:
        node = self.store.get_node(node_id)
        return job_state(node.data) if node else JobState.IDLE

    def begin(self, node_id: NodeId) -> bool:
        """Enter Generating: clears the previous error, progress back to 0."""
        return self.store.update_node_data(
            node_id,
            {"is_generating": True, "error": None, "progress": 0},
            track_history=False,
        )

    def succeed(self, node_id: NodeId, urls: list[str], **extra: Any) -> bool:
        """Enter Succeeded: outputs and the end of generation land in one update."""
        update: dict[str, Any] = {
            "output_url": urls[0] if urls else None,
            "output_urls": list(urls) or None,
            "is_generating": False,
            "progress": 100,
            **_CLEARED_TASK,
        }
        update.update({key: value for key, value in extra.items() if value is not None})
        changed = self.store.update_node_data(node_id, update, track_history=False)
        self._complete(node_id, JobState.SUCCEEDED)
        return changed

    def fail(self, node_id: NodeId, message: str) -> bool:
        """Enter Failed; earlier outputs stay as the last known good result."""
        changed = self.store.update_node_data(
            node_id,
            {"error": message, "is_generating": False, "progress": 0, **_CLEARED_TASK},
            track_history=False,
        )
        self._complete(node_id, JobState.FAILED)
        return changed

    def _complete(self, node_id: NodeId, state: JobState) -> None:
        logger.info("Job for %s finished: %s", node_id, state.name)
        if self._on_job_complete and node_id in self.store:
            self._on_job_complete(node_id, state)

    # --- Requests ---

    def build_request(self, node_id: NodeId) -> GenerationRequest:
        """
        Build the generation request for a node from its data and inputs.

        Raises:
            MissingInputError: The node lacks inputs its model needs
            GenerationError: Unknown node, non-generator, or unknown model
        """
        node = self.store.get_node(node_id)
        if node is None:
            raise GenerationError(f"Unknown node: {node_id}")
        builder = REQUEST_BUILDERS.get(node.kind)
        if builder is None:
            raise GenerationError(f"Node {node_id} ({node.kind.value}) cannot generate")
        inputs = self.store.get_connected_inputs(node_id)
        body = builder(node, node.data, inputs)
        return GenerationRequest(node_id=node_id, kind=node.kind.value, body=body)

    # --- Running ---

    async def generate(self, node_id: NodeId, wait: bool = False) -> JobState:
        """
        Run one generation job for a node.

        Input validation happens before any state change; a
        MissingInputError leaves the node untouched and propagates. Every
        later error is written into the node's ``error`` field.

        Args:
            node_id: The generator node to run
            wait: For long-running jobs, also wait for the poller to finish

        Returns:
            The node's state when this call returns.
        """
        if node_id in self._running or node_id in self._pollers:
            logger.debug("Node %s is already generating", node_id)
            return self.job_state(node_id)

        request = self.build_request(node_id)

        self._running.add(node_id)
        try:
            self.begin(node_id)
            try:
                response = await self.client.generate(request)
            except asyncio.CancelledError:
                self._reset_to_idle(node_id)
                raise
            except ProviderError as e:
                self.fail(node_id, str(e) or "Generation failed")
                return JobState.FAILED
            except Exception as e:
                logger.exception("Unexpected error generating %s", node_id)
                self.fail(node_id, str(e) or "Generation failed")
                return JobState.FAILED

            if response.is_async:
                self.store.update_node_data(
                    node_id,
                    {
                        "task_id": response.task_id,
                        "task_model": response.task_model,
                        "task_status": TaskStatus.PENDING.value,
                        "task_started_at": self._clock(),
                    },
                    track_history=False,
                )
                task = self.start_polling(node_id)
                if wait and task is not None:
                    await asyncio.gather(task, return_exceptions=True)
                return self.job_state(node_id)

            self.succeed(node_id, response.output_urls, thumbnail_url=response.thumbnail_url)
            if self.spawn_extra_outputs and len(response.output_urls) > 1:
                self._spawn_extra_outputs(node_id, response.output_urls[1:])
            return self.job_state(node_id)
        finally:
            self._running.discard(node_id)

    def _spawn_extra_outputs(self, node_id: NodeId, urls: list[str]) -> None:
        """Place one media node per extra image to the right of the generator."""
        node = self.store.get_node(node_id)
        if node is None:
            return
        origin = node.position + EXTRA_OUTPUT_OFFSET
        media = [
            Node.create(
                NodeKind.MEDIA,
                Position(origin.x, origin.y + index * EXTRA_OUTPUT_SPACING),
                MediaData(url=url, media_type="image"),
            )
            for index, url in enumerate(urls)
        ]
        self.store.add_nodes(media)

    def eligible_nodes(self, kinds: Iterable[NodeKind] | None = None) -> list[NodeId]:
        """Generator nodes (optionally of ``kinds``) whose inputs are complete."""
        wanted = set(kinds) if kinds is not None else GENERATOR_KINDS
        eligible = []
        for node in self.store.nodes:
            if node.kind not in wanted or node.id in self._pollers:
                continue
            try:
                self.build_request(node.id)
            except GenerationError as e:
                logger.debug("Skipping %s: %s", node.id, e)
                continue
            eligible.append(node.id)
        return eligible

    async def run_all(
        self,
        kinds: Iterable[NodeKind] | None = None,
        max_concurrency: int | None = None,
        wait: bool = False,
    ) -> dict[NodeId, JobState]:
        """
        Start every eligible generator concurrently.

        Completion order is not start order. A failure is recorded on its
        own node and never aborts the others.
        """
        node_ids = self.eligible_nodes(kinds)
        if not node_ids:
            return {}

        semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None

        async def run_one(node_id: NodeId) -> JobState:
            try:
                if semaphore is None:
                    return await self.generate(node_id, wait=wait)
                async with semaphore:
                    return await self.generate(node_id, wait=wait)
            except GenerationError as e:
                # Inputs changed between selection and start
                logger.info("Skipped %s: %s", node_id, e)
                return self.job_state(node_id)

        states = await asyncio.gather(*(run_one(nid) for nid in node_ids))
        return dict(zip(node_ids, states))

    # --- Polling ---

    def start_polling(self, node_id: NodeId) -> asyncio.Task | None:
        """
        Start (or restart) the poller for a node with a pending task.

        Must be called from a running event loop.
        """
        node = self.store.get_node(node_id)
        if node is None or not isinstance(node.data, GenerationStatus) or not node.data.task_id:
            return None
        self._stop_poller(node_id)
        task = asyncio.get_running_loop().create_task(
            self._poll_loop(node_id, node.data.task_id, node.data.task_model),
            name=f"poll-{node_id}",
        )
        self._pollers[node_id] = task
        task.add_done_callback(lambda t, nid=node_id: self._forget_poller(nid, t))
        logger.info("Polling task %s for %s", node.data.task_id, node_id)
        return task

    def resume_pending(self) -> list[NodeId]:
        """Restart pollers for every node loaded mid-job."""
        resumed = []
        for node in self.store.nodes:
            data = node.data
            if isinstance(data, GenerationStatus) and data.has_pending_task and node.id not in self._pollers:
                if self.start_polling(node.id) is not None:
                    resumed.append(node.id)
        return resumed

    @property
    def active_pollers(self) -> list[NodeId]:
        return list(self._pollers)

    async def wait(self, node_id: NodeId | None = None) -> None:
        """Wait for one node's poller, or for every poller, to finish."""
        if node_id is not None:
            tasks = [self._pollers[node_id]] if node_id in self._pollers else []
        else:
            tasks = list(self._pollers.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _poll_loop(self, node_id: NodeId, task_id: str, task_model: str | None) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)

            node = self.store.get_node(node_id)
            if node is None or not isinstance(node.data, GenerationStatus) or node.data.task_id != task_id:
                logger.debug("Stopping poll of %s: task no longer current", task_id)
                return

            if self._timed_out(node.data):
                self.fail(node_id, "Generation timed out")
                return

            try:
                result = await self.client.poll(
                    task_id,
                    task_model,
                    {"prompt": node.data.get("prompt") or "", "nodeId": node_id},
                )
            except ProviderError as e:
                logger.warning("Transient poll error for %s: %s", node_id, e)
                continue

            if self._apply_poll_result(node_id, result):
                return

    def _timed_out(self, data: GenerationStatus) -> bool:
        if self.poll_timeout is None or data.task_started_at is None:
            return False
        return self._clock() - data.task_started_at > self.poll_timeout

    def _apply_poll_result(self, node_id: NodeId, result: PollResult) -> bool:
        """Write one poll answer into the node; True when the job is over."""
        if result.status is TaskStatus.COMPLETED:
            if not result.video_url:
                self.fail(node_id, "Generation completed without output")
            else:
                self.succeed(node_id, [result.video_url])
            return True
        if result.status is TaskStatus.FAILED:
            self.fail(node_id, result.error or "Video generation failed")
            return True
        self.store.update_node_data(node_id, {"task_status": result.status.value}, track_history=False)
        return False

    async def cancel(self, node_id: NodeId) -> bool:
        """
        Stop a node's job locally and ask the backend to cancel it.

        The remote cancel is best-effort; the node is returned to Idle
        either way. Returns False if the node was not generating.
        """
        node = self.store.get_node(node_id)
        if node is None or not isinstance(node.data, GenerationStatus) or not node.data.is_generating:
            return False
        task_id, task_model = node.data.task_id, node.data.task_model

        self._stop_poller(node_id)
        self._reset_to_idle(node_id)
        if task_id:
            await self.client.cancel(task_id, task_model)
        return True

    async def shutdown(self) -> None:
        """
        Stop all pollers without touching node data and detach from the store.

        Nodes keep their task fields, so a ``resume_pending`` on a new
        manager picks the jobs up again.
        """
        tasks = list(self._pollers.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pollers.clear()
        self._unsubscribe()

    def _reset_to_idle(self, node_id: NodeId) -> None:
        self.store.update_node_data(
            node_id,
            {"is_generating": False, "progress": None, **_CLEARED_TASK},
            track_history=False,
        )

    def _stop_poller(self, node_id: NodeId) -> None:
        task = self._pollers.pop(node_id, None)
        if task is not None and not task.done():
            task.cancel()

    def _forget_poller(self, node_id: NodeId, task: asyncio.Task) -> None:
        if self._pollers.get(node_id) is task:
            del self._pollers[node_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Poller for %s crashed", node_id, exc_info=task.exception())

    def _on_store_change(self, change: StoreChange) -> None:
        for node_id in list(self._pollers):
            if node_id not in self.store:
                logger.info("Node %s deleted, stopping its poller", node_id)
                self._stop_poller(node_id)
