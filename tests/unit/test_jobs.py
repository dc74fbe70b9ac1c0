"""
Tests for the job lifecycle: state transitions, requests, polling, run-all.
"""

import asyncio
import itertools

import pytest

from canvas_engine.core.graph import Edge, Node, Position
from canvas_engine.core.jobs import JobManager, JobState, job_state
from canvas_engine.core.node_types import ImageGeneratorData, NodeKind
from canvas_engine.core.store import CanvasStore
from canvas_engine.core.workspace import snapshot_from_dict, snapshot_to_dict
from canvas_engine.providers.base import (
    GenerationError,
    GenerationResponse,
    MissingInputError,
    PollError,
    PollResult,
    ProviderConfig,
    TaskStatus,
)


class FakeClient:
    """Scripted stand-in for GenerationClient."""

    def __init__(self, respond=None, polls=None):
        self.config = ProviderConfig(poll_interval=0.01)
        self.respond = respond or (lambda request: GenerationResponse(output_urls=["https://cdn/out.png"]))
        self.polls = list(polls or [PollResult(TaskStatus.PROCESSING)])
        self.requests = []
        self.poll_calls = []
        self.cancelled = []

    async def generate(self, request):
        self.requests.append(request)
        result = self.respond(request)
        if isinstance(result, Exception):
            raise result
        return result

    async def poll(self, task_id, model, extra=None):
        self.poll_calls.append((task_id, model, extra))
        result = self.polls.pop(0) if len(self.polls) > 1 else self.polls[0]
        if isinstance(result, Exception):
            raise result
        return result

    async def cancel(self, task_id, model):
        self.cancelled.append(task_id)
        return True


def _async_response(request):
    return GenerationResponse(is_async=True, task_id="t1", task_model="veo-3")


def _image_node(prompt="a fox", **data):
    return Node.create(NodeKind.IMAGE_GENERATOR, Position(0, 0), {"prompt": prompt, **data})


def _video_node(prompt="waves at dusk", **data):
    return Node.create(NodeKind.VIDEO_GENERATOR, Position(0, 0), {"prompt": prompt, **data})


def _setup(*nodes, client=None, **kwargs):
    store = CanvasStore()
    for node in nodes:
        store.add_node(node)
    client = client or FakeClient()
    return store, client, JobManager(store, client, **kwargs)


class TestJobState:
    """Derived lifecycle state."""

    def test_states(self):
        assert job_state(ImageGeneratorData()) is JobState.IDLE
        assert job_state(ImageGeneratorData(is_generating=True)) is JobState.GENERATING
        assert job_state(ImageGeneratorData(error="x", output_url="old")) is JobState.FAILED
        assert job_state(ImageGeneratorData(output_url="u")) is JobState.SUCCEEDED

    def test_begin_clears_previous_error(self):
        node = _image_node()
        store, client, jobs = _setup(node)
        jobs.fail(node.id, "first attempt failed")
        assert jobs.job_state(node.id) is JobState.FAILED

        jobs.begin(node.id)

        data = store.get_node(node.id).data
        assert data.error is None
        assert data.progress == 0
        assert jobs.job_state(node.id) is JobState.GENERATING

    def test_transitions_do_not_touch_history(self):
        node = _image_node()
        store, client, jobs = _setup(node)
        depth = store.history.undo_depth
        jobs.begin(node.id)
        jobs.succeed(node.id, ["u"])
        jobs.fail(node.id, "x")
        assert store.history.undo_depth == depth


class TestRequests:
    """Request building and input validation."""

    def test_image_request_body(self):
        text = Node.create(NodeKind.TEXT, data={"content": "a knight"})
        ref = Node.create(NodeKind.MEDIA, data={"url": "https://cdn/ref.png"})
        gen = _image_node(prompt="in the rain", model="flux-pro")
        store, client, jobs = _setup(text, ref, gen)
        store.add_edge(Edge.create(text.id, "output", gen.id, "text"))
        store.add_edge(Edge.create(ref.id, "output", gen.id, "reference"))

        request = jobs.build_request(gen.id)

        assert request.kind == "imageGenerator"
        assert request.body["prompt"] == "a knight, in the rain"
        assert request.body["model"] == "flux-pro"
        assert request.body["referenceUrl"] == "https://cdn/ref.png"
        assert request.body["referenceUrls"] == ["https://cdn/ref.png"]
        assert request.body["imageSize"] == "square_hd"

    def test_image_without_prompt(self):
        gen = _image_node(prompt="")
        store, client, jobs = _setup(gen)
        with pytest.raises(MissingInputError):
            jobs.build_request(gen.id)

    def test_first_last_frame_requirements(self):
        first = Node.create(NodeKind.MEDIA, data={"url": "first.png"})
        video = _video_node(model="veo-3.1-flf")
        store, client, jobs = _setup(first, video)

        with pytest.raises(MissingInputError, match="start frame"):
            jobs.build_request(video.id)

        store.add_edge(Edge.create(first.id, "output", video.id, "firstFrame"))
        with pytest.raises(MissingInputError, match="first and last"):
            jobs.build_request(video.id)

    def test_optional_last_frame(self):
        first = Node.create(NodeKind.MEDIA, data={"url": "first.png"})
        video = _video_node(model="kling-2.6-i2v")
        store, client, jobs = _setup(first, video)
        store.add_edge(Edge.create(first.id, "output", video.id, "firstFrame"))
        assert jobs.build_request(video.id).body["firstFrameUrl"] == "first.png"

    def test_multi_reference_needs_a_reference(self):
        video = _video_node(model="veo-3.1-ref")
        store, client, jobs = _setup(video)
        with pytest.raises(MissingInputError, match="reference"):
            jobs.build_request(video.id)

    def test_video_audio_needs_video(self):
        mixer = Node.create(NodeKind.VIDEO_AUDIO, data={"prompt": "rain"})
        store, client, jobs = _setup(mixer)
        with pytest.raises(MissingInputError, match="video"):
            jobs.build_request(mixer.id)

    def test_speech_body(self):
        speech = Node.create(NodeKind.SPEECH, data={"text": "Welcome", "voice": "adam"})
        store, client, jobs = _setup(speech)
        assert jobs.build_request(speech.id).body == {
            "text": "Welcome",
            "voice": "adam",
            "speed": 1.0,
            "stability": 0.5,
        }

    def test_non_generator(self):
        text = Node.create(NodeKind.TEXT)
        store, client, jobs = _setup(text)
        with pytest.raises(GenerationError):
            jobs.build_request(text.id)


class TestGenerate:
    """Single jobs."""

    def test_sync_success(self):
        node = _image_node()
        store, client, jobs = _setup(node)

        state = asyncio.run(jobs.generate(node.id))

        assert state is JobState.SUCCEEDED
        data = store.get_node(node.id).data
        assert data.output_url == "https://cdn/out.png"
        assert data.progress == 100
        assert data.is_generating is False
        assert client.requests[0].node_id == node.id

    def test_missing_input_leaves_node_untouched(self):
        node = _image_node(prompt="")
        store, client, jobs = _setup(node)
        before = store.snapshot()

        with pytest.raises(MissingInputError):
            asyncio.run(jobs.generate(node.id))

        assert store.snapshot() == before
        assert client.requests == []

    def test_failure_keeps_previous_output(self):
        node = _image_node(outputUrl="https://cdn/old.png")
        client = FakeClient(respond=lambda request: GenerationError("Quota exceeded"))
        store, client, jobs = _setup(node, client=client)

        state = asyncio.run(jobs.generate(node.id))

        assert state is JobState.FAILED
        data = store.get_node(node.id).data
        assert data.error == "Quota exceeded"
        assert data.output_url == "https://cdn/old.png"
        assert data.is_generating is False

    def test_extra_images_become_media_nodes(self):
        node = _image_node(imageCount=3)
        urls = ["a.png", "b.png", "c.png"]
        client = FakeClient(respond=lambda request: GenerationResponse(output_urls=urls))
        store, client, jobs = _setup(node, client=client)

        asyncio.run(jobs.generate(node.id))

        media = [n for n in store.nodes if n.kind is NodeKind.MEDIA]
        assert [m.data.url for m in media] == ["b.png", "c.png"]
        assert [m.position for m in media] == [Position(400, 0), Position(400, 200)]
        assert store.get_node(node.id).data.output_urls == urls

    def test_completion_callback(self):
        node = _image_node()
        store, client, jobs = _setup(node)
        seen = []
        jobs.set_completion_callback(lambda node_id, state: seen.append((node_id, state)))
        asyncio.run(jobs.generate(node.id))
        assert seen == [(node.id, JobState.SUCCEEDED)]

    def test_cancelled_request_returns_to_idle(self):
        node = _image_node()
        client = FakeClient()

        async def slow_generate(request):
            await asyncio.sleep(10)

        client.generate = slow_generate
        store, client, jobs = _setup(node, client=client)

        async def scenario():
            task = asyncio.create_task(jobs.generate(node.id))
            await asyncio.sleep(0.01)
            assert jobs.job_state(node.id) is JobState.GENERATING
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        data = store.get_node(node.id).data
        assert data.is_generating is False
        assert data.error is None
        assert jobs.job_state(node.id) is JobState.IDLE


class TestUndoDuringJobs:
    """Undo and redo never roll back job status."""

    def test_undo_of_unrelated_edit_keeps_result(self):
        node = _image_node()
        other = Node.create(NodeKind.TEXT, Position(500, 0))
        store, client, jobs = _setup(node, other)

        jobs.begin(node.id)
        store.move_node(other.id, Position(600, 0))
        jobs.succeed(node.id, ["https://cdn/done.png"])

        assert store.undo()
        assert store.get_node(other.id).position == Position(500, 0)
        data = store.get_node(node.id).data
        assert data.output_url == "https://cdn/done.png"
        assert data.is_generating is False
        assert jobs.job_state(node.id) is JobState.SUCCEEDED

        assert store.redo()
        assert store.get_node(other.id).position == Position(600, 0)
        assert store.get_node(node.id).data.output_url == "https://cdn/done.png"

    def test_undo_keeps_user_edits_undoable(self):
        node = _image_node(prompt="a fox")
        store, client, jobs = _setup(node)
        store.update_node_data(node.id, {"prompt": "a wolf"})
        jobs.succeed(node.id, ["https://cdn/wolf.png"])

        store.undo()

        data = store.get_node(node.id).data
        assert data.prompt == "a fox"
        assert data.output_url == "https://cdn/wolf.png"

    def test_restored_node_has_no_job_in_flight(self):
        node = _video_node()
        store, client, jobs = _setup(node, client=FakeClient(respond=_async_response))

        async def scenario():
            await jobs.generate(node.id)
            store.remove_node(node.id)
            await asyncio.sleep(0.05)
            store.undo()

        asyncio.run(scenario())

        data = store.get_node(node.id).data
        assert data.is_generating is False
        assert data.task_id is None
        assert jobs.job_state(node.id) is JobState.IDLE
        assert jobs.active_pollers == []


class TestPolling:
    """Long-running jobs."""

    def test_async_job_polls_to_completion(self):
        node = _video_node()
        client = FakeClient(
            respond=_async_response,
            polls=[
                PollResult(TaskStatus.PROCESSING),
                PollResult(TaskStatus.COMPLETED, video_url="https://cdn/clip.mp4"),
            ],
        )
        store, client, jobs = _setup(node, client=client)

        state = asyncio.run(jobs.generate(node.id, wait=True))

        assert state is JobState.SUCCEEDED
        data = store.get_node(node.id).data
        assert data.output_url == "https://cdn/clip.mp4"
        assert data.progress == 100
        assert data.task_id is None
        task_id, model, extra = client.poll_calls[0]
        assert (task_id, model) == ("t1", "veo-3")
        assert extra["nodeId"] == node.id

    def test_transient_poll_errors_are_retried(self):
        node = _video_node()
        client = FakeClient(
            respond=_async_response,
            polls=[
                PollError("502 Bad Gateway"),
                PollResult(TaskStatus.COMPLETED, video_url="clip.mp4"),
            ],
        )
        store, client, jobs = _setup(node, client=client)
        assert asyncio.run(jobs.generate(node.id, wait=True)) is JobState.SUCCEEDED
        assert len(client.poll_calls) == 2

    def test_remote_failure(self):
        node = _video_node()
        client = FakeClient(
            respond=_async_response,
            polls=[PollResult(TaskStatus.FAILED, error="Content policy violation")],
        )
        store, client, jobs = _setup(node, client=client)

        assert asyncio.run(jobs.generate(node.id, wait=True)) is JobState.FAILED
        data = store.get_node(node.id).data
        assert data.error == "Content policy violation"
        assert data.task_id is None

    def test_poll_timeout(self):
        node = _video_node()
        client = FakeClient(respond=_async_response)
        store, client, jobs = _setup(
            node, client=client, poll_timeout=10, clock=itertools.count(0, 100).__next__,
        )
        assert asyncio.run(jobs.generate(node.id, wait=True)) is JobState.FAILED
        assert store.get_node(node.id).data.error == "Generation timed out"

    def test_resume_after_restart(self):
        node = _video_node()
        store, client, jobs = _setup(node, client=FakeClient(respond=_async_response))

        async def first_session():
            state = await jobs.generate(node.id)
            await jobs.shutdown()
            return state

        assert asyncio.run(first_session()) is JobState.GENERATING
        saved = snapshot_to_dict(store.snapshot())

        # New process: reload the graph and a fresh manager
        snapshot, _ = snapshot_from_dict(saved)
        store2 = CanvasStore()
        store2.load(snapshot.nodes, snapshot.edges)
        data = store2.get_node(node.id).data
        assert data.is_generating and data.task_id == "t1"

        client2 = FakeClient(polls=[PollResult(TaskStatus.COMPLETED, video_url="https://cdn/late.mp4")])
        jobs2 = JobManager(store2, client2)

        async def second_session():
            resumed = jobs2.resume_pending()
            await jobs2.wait()
            return resumed

        assert asyncio.run(second_session()) == [node.id]
        assert jobs2.job_state(node.id) is JobState.SUCCEEDED
        assert store2.get_node(node.id).data.output_url == "https://cdn/late.mp4"

    def test_deleting_node_stops_poller(self):
        node = _video_node()
        store, client, jobs = _setup(node, client=FakeClient(respond=_async_response))

        async def scenario():
            await jobs.generate(node.id)
            task = jobs._pollers[node.id]
            store.remove_node(node.id)
            await asyncio.sleep(0.05)
            return task

        task = asyncio.run(scenario())
        assert task.cancelled()
        assert jobs.active_pollers == []

    def test_cancel(self):
        node = _video_node()
        store, client, jobs = _setup(node, client=FakeClient(respond=_async_response))

        async def scenario():
            await jobs.generate(node.id)
            return await jobs.cancel(node.id)

        assert asyncio.run(scenario()) is True
        data = store.get_node(node.id).data
        assert data.is_generating is False
        assert data.task_id is None
        assert data.error is None
        assert client.cancelled == ["t1"]
        assert jobs.job_state(node.id) is JobState.IDLE


class TestRunAll:
    """Starting every eligible generator."""

    def test_failures_do_not_abort_siblings(self):
        ok = _image_node(prompt="works")
        broken = _image_node(prompt="breaks")
        incomplete = _image_node(prompt="")
        text = Node.create(NodeKind.TEXT, data={"content": "not a generator"})

        def respond(request):
            if request.body["prompt"] == "breaks":
                return GenerationError("Upstream error")
            return GenerationResponse(output_urls=[f"https://cdn/{request.node_id}.png"])

        store, client, jobs = _setup(ok, broken, incomplete, text, client=FakeClient(respond=respond))

        states = asyncio.run(jobs.run_all(max_concurrency=2))

        assert states == {ok.id: JobState.SUCCEEDED, broken.id: JobState.FAILED}
        assert jobs.job_state(incomplete.id) is JobState.IDLE

    def test_kind_filter(self):
        image = _image_node()
        video = _video_node()
        store, client, jobs = _setup(image, video)
        states = asyncio.run(jobs.run_all(kinds=[NodeKind.VIDEO_GENERATOR]))
        assert list(states) == [video.id]
