"""Side-channel media generators exposed to the model as tools.

A generator is a long-running request to a separate model that produces an
image or a video. The model asks for one through an ordinary tool call; the
resulting bytes are attached to the in-flight reply instead of being fed
back into the text context.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

import httpx

from . import config
from .auth import Auth
from .exceptions import ConfigurationError, GenerationError, MediaError
from .llm import parse_error_message
from .media import parse_data_url

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DATA_URL = re.compile(r"data:(?:image|video)/[\w.+-]+;base64,[A-Za-z0-9+/=]+")


async def poll_job(
    check: Callable[[], Awaitable[Optional[T]]],
    *,
    max_attempts: int = config.VIDEO_MAX_ATTEMPTS,
    interval: float = config.VIDEO_POLL_INTERVAL,
    timeout: Optional[float] = config.VIDEO_TIMEOUT,
) -> T:
    """Call ``check`` until it returns a result.

    ``check`` returns None while the job is still running and raises
    GenerationError when the job failed. Each attempt sleeps ``interval``
    seconds first. Running out of attempts or exceeding ``timeout`` seconds
    raises GenerationError with ``timeout=True``.
    """

    async def _loop() -> T:
        for attempt in range(1, max_attempts + 1):
            await asyncio.sleep(interval)
            result = await check()
            if result is not None:
                return result
            logger.debug("Job still running after attempt %d/%d", attempt, max_attempts)
        logger.warning("Job did not finish within %d attempts", max_attempts)
        raise GenerationError("Generation timed out", timeout=True)

    try:
        return await asyncio.wait_for(_loop(), timeout)
    except asyncio.TimeoutError:
        logger.warning("Job exceeded its %.0fs deadline", timeout)
        raise GenerationError("Generation timed out", timeout=True) from None


class Generator(ABC):
    """Interface for producing media from a text prompt."""

    name: str
    description: str
    parameters: Dict[str, Any] = {
        "type": "object",
        "properties": {
            "prompt": {"type": "string", "description": "What to generate."}
        },
        "required": ["prompt"],
    }

    def definition(self) -> Dict[str, Any]:
        """The OpenAI tool definition advertised to the model."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    @abstractmethod
    async def generate(self, prompt: str, **options) -> Tuple[bytes, str]:
        """Produces media for ``prompt`` and returns its bytes and MIME type.

        Raises
        ------
        GenerationError
            When the provider rejects the request, the job fails or the
            result cannot be found in the response.
        """
        pass


class _HTTPGenerator(Generator):
    def __init__(
        self,
        auth: Auth,
        model: str,
        base_url: str = config.OPENROUTER_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.auth = auth
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._client = client

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            token = await self.auth.current_token()
        except ConfigurationError as e:
            raise GenerationError(f"Missing credentials: {e}") from e

        headers = {"Authorization": f"Bearer {token}"}
        if path.startswith(("http://", "https://")):
            url = path
        else:
            url = f"{self.base_url}/{path}"
            headers["X-OpenRouter-Path"] = path
        client = self._client or httpx.AsyncClient(timeout=120.0)
        try:
            return await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise GenerationError(f"Request failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code >= 400:
            message = parse_error_message(response.content)
            raise GenerationError(f"HTTP {response.status_code}: {message or 'Unknown error'}")

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise GenerationError(f"Malformed response: {e}") from e
        if not isinstance(payload, dict):
            raise GenerationError("Malformed response: expected a JSON object")
        return payload


def _first_message(payload: Dict[str, Any]) -> Dict[str, Any]:
    choices = payload.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return {}
    return choices[0].get("message") or {}


def _extract_media(message: Dict[str, Any]) -> Optional[Tuple[bytes, str]]:
    """Find the first inline data URL in a completion message."""
    try:
        for image in message.get("images") or []:
            url = (image.get("image_url") or {}).get("url")
            if url:
                return parse_data_url(url)
        content = message.get("content")
        if isinstance(content, str):
            match = _DATA_URL.search(content)
            if match:
                return parse_data_url(match.group(0))
    except MediaError as e:
        raise GenerationError(f"Invalid media data: {e}") from e
    return None


class ImageGenerator(_HTTPGenerator):
    name = "generate_image"
    description = "Generate an image from a detailed text description."

    def __init__(self, auth: Auth, model: str = config.IMAGE_MODEL, **kwargs):
        super().__init__(auth, model, **kwargs)

    async def generate(self, prompt, **options):
        logger.info("Generating image with %s", self.model)
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "modalities": ["image", "text"],
        }
        response = await self._request("POST", "chat/completions", json=body)
        self._raise_for_status(response)
        media = _extract_media(_first_message(self._json(response)))
        if media is None:
            raise GenerationError("No image returned from API")
        logger.info("Image generated: %d bytes of %s", len(media[0]), media[1])
        return media


class VideoGenerator(_HTTPGenerator):
    """Submits a video job and polls it until the video can be downloaded."""

    name = "generate_video"
    description = "Generate a short video clip from a detailed text description."
    parameters = {
        "type": "object",
        "properties": {
            "prompt": {"type": "string", "description": "What to generate."},
            "duration": {"type": "integer", "description": "Length in seconds."},
            "resolution": {"type": "string", "description": "e.g. 720p or 1080p."},
        },
        "required": ["prompt"],
    }

    def __init__(
        self,
        auth: Auth,
        model: str = config.VIDEO_MODEL,
        max_attempts: int = config.VIDEO_MAX_ATTEMPTS,
        interval: float = config.VIDEO_POLL_INTERVAL,
        timeout: Optional[float] = config.VIDEO_TIMEOUT,
        **kwargs,
    ):
        super().__init__(auth, model, **kwargs)
        self.max_attempts = max_attempts
        self.interval = interval
        self.timeout = timeout

    async def generate(self, prompt, duration: int = 10, resolution: str = "1080p", **options):
        body = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": f"Generate a {duration} second video at {resolution}: {prompt}",
                }
            ],
        }
        response = await self._request("POST", "chat/completions", json=body)
        self._raise_for_status(response)
        payload = self._json(response)

        # Some providers answer synchronously with the video inline
        inline = _extract_media(_first_message(payload))
        if inline is not None:
            return inline

        job_id = payload.get("id")
        if not isinstance(job_id, str):
            raise GenerationError("No video job returned from API")
        logger.info("Video job %s submitted", job_id)

        data = await poll_job(
            lambda: self._check_job(job_id),
            max_attempts=self.max_attempts,
            interval=self.interval,
            timeout=self.timeout,
        )
        logger.info("Video job %s finished: %d bytes", job_id, len(data))
        return data, "video/mp4"

    async def _check_job(self, job_id: str) -> Optional[bytes]:
        response = await self._request("GET", f"jobs/{job_id}")
        # The job may not be visible yet
        if response.status_code == 404:
            return None
        self._raise_for_status(response)

        try:
            payload = response.json()
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None

        status = str(payload.get("status", "")).lower()
        if status in ("completed", "done", "success"):
            video_url = payload.get("video_url")
            if not video_url:
                raise GenerationError("No video URL in completed job")
            return await self._download(video_url)
        if status in ("failed", "error"):
            raise GenerationError(f"Video generation failed: {payload.get('error') or 'Unknown error'}")
        return None

    async def _download(self, url: str) -> bytes:
        response = await self._request("GET", url)
        self._raise_for_status(response)
        if len(response.content) > config.MAX_VIDEO_BYTES:
            raise GenerationError("Generated video exceeds the size limit")
        return response.content
