"""
Generation Client - HTTP client for the generation backend.

Speaks the backend's JSON wire format:
- POST one endpoint per generator kind, answered either synchronously
  (``imageUrl(s)``/``videoUrl``/``audioUrl``) or with
  ``{async: true, taskId, model}`` for long-running jobs
- POST the poll endpoint with ``{taskId, model}`` for job status
- Optional best-effort cancel endpoint
- Server-sent events from the storyboard planner endpoint
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

import aiohttp

from canvas_engine.providers.base import (
    AuthenticationError,
    GenerationError,
    GenerationRequest,
    GenerationResponse,
    PollError,
    PollResult,
    ProviderConfig,
    ProviderError,
    RateLimitError,
    TaskStatus,
)
from canvas_engine.providers.registry import get_registry


logger = logging.getLogger(__name__)


# Node kind tag -> generation endpoint
ENDPOINTS: dict[str, str] = {
    "imageGenerator": "/api/generate",
    "videoGenerator": "/api/generate-video",
    "musicGenerator": "/api/generate-music",
    "speech": "/api/generate-speech",
    "videoAudio": "/api/generate-video-audio",
}

POLL_PATH = "/api/generate-video/poll"
STORYBOARD_PATH = "/api/plugins/storyboard"


def parse_generation_response(data: dict[str, Any]) -> GenerationResponse:
    """
    Turn a backend JSON answer into a GenerationResponse.

    Raises:
        GenerationError: If the answer carries neither outputs nor a task id.
    """
    if data.get("async") and data.get("taskId"):
        return GenerationResponse(
            is_async=True,
            task_id=data["taskId"],
            task_model=data.get("model"),
            model=data.get("model"),
        )

    urls = data.get("imageUrls") or [
        url for url in (
            data.get("imageUrl"),
            data.get("videoUrl"),
            data.get("audioUrl"),
        )
        if url
    ]
    if not urls:
        raise GenerationError("No output in generation response")

    return GenerationResponse(
        output_urls=list(urls),
        thumbnail_url=data.get("thumbnailUrl"),
        model=data.get("model"),
    )


def parse_poll_response(data: dict[str, Any]) -> PollResult:
    """
    Turn a poll answer into a PollResult.

    Raises:
        PollError: If the status is missing or unknown.
    """
    try:
        status = TaskStatus(data.get("status"))
    except ValueError:
        raise PollError(f"Unknown task status: {data.get('status')!r}") from None
    return PollResult(status=status, video_url=data.get("videoUrl"), error=data.get("error"))


async def _read_json(resp: aiohttp.ClientResponse) -> dict[str, Any]:
    """Decode a JSON body; non-JSON bodies come back as ``{"error": text}``."""
    try:
        data = await resp.json(content_type=None)
    except ValueError:
        text = await resp.text()
        return {"error": text.strip() or resp.reason or "Invalid response"}
    return data if isinstance(data, dict) else {}


class GenerationClient:
    """
    Client for the generation backend.

    Every call opens its own ClientSession, so an instance can be shared
    freely between concurrently running jobs.
    """

    def __init__(self, config: ProviderConfig | None = None):
        self.config = config or get_registry().config

    @property
    def base_url(self) -> str:
        return self.config.base_url.rstrip("/")

    def get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.config.request_timeout)

    # --- Generation ---

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        """
        Run one generation call for a node.

        Raises:
            GenerationError: Unknown kind, transport failure or error answer
            AuthenticationError: HTTP 401
            RateLimitError: HTTP 429
        """
        path = ENDPOINTS.get(request.kind)
        if path is None:
            raise GenerationError(f"No generation endpoint for node type {request.kind!r}")

        logger.debug("Generating %s via %s", request.node_id, path)
        try:
            data = await self._post(path, request.body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GenerationError(f"Request failed: {e}") from e
        return parse_generation_response(data)

    # --- Long-running jobs ---

    async def poll(
        self,
        task_id: str,
        model: str | None,
        extra: dict[str, Any] | None = None,
    ) -> PollResult:
        """
        Ask for the status of a remote job.

        Raises:
            PollError: On any transport or server error; callers retry.
        """
        body: dict[str, Any] = {"taskId": task_id, "model": model}
        if extra:
            body.update(extra)
        try:
            data = await self._post(POLL_PATH, body)
        except (aiohttp.ClientError, asyncio.TimeoutError, ProviderError) as e:
            raise PollError(f"Poll failed for task {task_id}: {e}") from e
        return parse_poll_response(data)

    async def cancel(self, task_id: str, model: str | None) -> bool:
        """
        Best-effort remote cancel.

        Returns True only if a cancel endpoint is configured and accepted
        the request; never raises for transport or server errors.
        """
        if not self.config.cancel_path:
            return False
        try:
            await self._post(self.config.cancel_path, {"taskId": task_id, "model": model})
        except (aiohttp.ClientError, asyncio.TimeoutError, ProviderError) as e:
            logger.warning("Remote cancel of task %s failed: %s", task_id, e)
            return False
        return True

    # --- Planner stream ---

    async def stream_storyboard(self, payload: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        """
        Stream decoded server-sent events from the storyboard planner.

        Each yielded item is the JSON object of one ``data:`` event.
        """
        url = f"{self.base_url}{STORYBOARD_PATH}"
        async with aiohttp.ClientSession(timeout=self._timeout()) as session:
            async with session.post(url, json=payload, headers=self.get_headers()) as resp:
                if resp.status >= 400:
                    self._check_error(resp.status, await _read_json(resp))

                lines: list[str] = []
                async for raw in resp.content:
                    line = raw.decode("utf-8").rstrip("\r\n")
                    if line.startswith("data:"):
                        lines.append(line[5:].lstrip())
                        continue
                    if line or not lines:
                        continue
                    event = self._decode_event(lines)
                    lines = []
                    if event is not None:
                        yield event

                if lines:
                    event = self._decode_event(lines)
                    if event is not None:
                        yield event

    @staticmethod
    def _decode_event(lines: list[str]) -> dict[str, Any] | None:
        try:
            event = json.loads("\n".join(lines))
        except json.JSONDecodeError:
            logger.warning("Skipping malformed stream event: %r", lines)
            return None
        return event if isinstance(event, dict) else None

    # --- Transport ---

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        """Make POST request with JSON body."""
        url = f"{self.base_url}{path}"
        async with aiohttp.ClientSession(timeout=self._timeout()) as session:
            async with session.post(url, json=body, headers=self.get_headers()) as resp:
                data = await _read_json(resp)
                self._check_error(resp.status, data)
                return data

    def _check_error(self, status: int, data: dict[str, Any]) -> None:
        """Check for API errors."""
        if status == 401:
            raise AuthenticationError("Invalid or missing API key")
        elif status == 429:
            error = RateLimitError("Generation rate limit exceeded")
            retry_after = data.get("retryAfter")
            error.retry_after = float(retry_after) if retry_after is not None else 60
            raise error
        elif status >= 400:
            error_msg = data.get("error") or data.get("message") or f"HTTP {status}"
            raise GenerationError(str(error_msg))
