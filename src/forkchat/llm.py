"""Concrete implementations for LLM transports."""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from . import config
from .auth import Auth
from .exceptions import ConfigurationError, TransportError
from .models import ErrorEvent, TextEvent


class LLM(ABC):
    """Abstract Base Class for all LLM transports."""

    model: str

    @abstractmethod
    def stream(self, body: Dict[str, Any]) -> AsyncIterator[bytes]:
        """Sends a streaming chat-completion request.

        The response body is yielded untouched so that decoding stays in one
        place (see ``forkchat.decoder``).

        Parameters
        ----------
        body : Dict[str, Any]
            The OpenAI-compatible request body, as built by
            ``forkchat.payloads.build_request_body``.

        Returns
        -------
        AsyncIterator[bytes]
            Raw chunks of the server-sent-event response body.

        Raises
        ------
        TransportError
            On connection failures and non-2xx responses.
        """
        pass

    async def complete(self, body: Dict[str, Any]) -> str:
        """Runs a request to completion and returns only its text."""
        from .decoder import decode

        parts: List[str] = []
        async for event in decode(self.stream(body)):
            if isinstance(event, TextEvent):
                parts.append(event.delta)
            elif isinstance(event, ErrorEvent):
                raise TransportError(event.message)
        return "".join(parts)


class OpenAI(LLM):
    # Everything else in the body travels through ``extra_body``
    _CREATE_PARAMS = frozenset(
        {
            "model",
            "messages",
            "temperature",
            "top_p",
            "max_tokens",
            "stream",
            "stream_options",
            "tools",
            "tool_choice",
        }
    )

    def __init__(
        self,
        default_model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        default_headers: Optional[Dict[str, str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        from openai import AsyncOpenAI

        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            default_headers=default_headers,
            http_client=http_client,
        )
        self.model = default_model

    async def stream(self, body):
        import openai

        params = {k: v for k, v in body.items() if k in self._CREATE_PARAMS}
        extra = {k: v for k, v in body.items() if k not in self._CREATE_PARAMS}
        params.setdefault("model", self.model)
        try:
            async with self.client.chat.completions.with_streaming_response.create(
                **params, extra_body=extra or None
            ) as response:
                async for chunk in response.iter_bytes():
                    yield chunk
        except openai.APIStatusError as e:
            raise TransportError(
                f"HTTP {e.status_code}: {e.message}", status_code=e.status_code
            ) from e
        except openai.APIError as e:
            raise TransportError(f"Stream error: {e}") from e
        # Body reads are not wrapped by the SDK
        except httpx.HTTPError as e:
            raise TransportError(f"Stream error: {e}") from e


class OpenRouter(OpenAI):
    def __init__(
        self,
        default_model: str = config.DEFAULT_MODEL,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(
            default_model=default_model,
            http_client=http_client,
            api_key=api_key or os.environ["OPENROUTER_API_KEY"],
            base_url=config.OPENROUTER_BASE_URL,
            default_headers={
                "HTTP-Referer": "https://github.com/forkchat/forkchat",
                "X-Title": "Forkchat",
            },
        )


def parse_error_message(body: bytes) -> Optional[str]:
    """Extract ``error.message`` from a JSON error body, if there is one."""
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        return error.get("message")
    return None


class Proxy(LLM):
    """Streams through an authenticating proxy in front of OpenRouter.

    The proxy authorizes the caller's bearer token and forwards the request
    to the OpenRouter endpoint named in ``X-OpenRouter-Path``.
    """

    def __init__(
        self,
        base_url: str,
        auth: Auth,
        default_model: str = config.DEFAULT_MODEL,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.model = default_model
        self._client = client

    async def stream(self, body):
        try:
            token = await self.auth.current_token()
        except ConfigurationError as e:
            raise TransportError(f"Missing credentials: {e}") from e

        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "X-OpenRouter-Path": "chat/completions",
        }
        client = self._client or httpx.AsyncClient(timeout=httpx.Timeout(60.0, read=None))
        try:
            async with client.stream(
                "POST", f"{self.base_url}/chat/completions", json=body, headers=headers
            ) as response:
                if response.status_code >= 400:
                    message = parse_error_message(await response.aread())
                    raise TransportError(
                        f"HTTP {response.status_code}: {message or 'Unknown error'}",
                        status_code=response.status_code,
                    )
                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as e:
            raise TransportError(f"Stream error: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()


class Echo(LLM):
    """Streams the last user message back; needs no network or credentials."""

    def __init__(self, default_model: str = "echo-v1", delay: float = 0.0):
        self.model = default_model
        self.delay = delay

    @staticmethod
    def _frame(payload: Any) -> bytes:
        return f"data: {json.dumps(payload)}\n\n".encode("utf-8")

    async def stream(self, body):
        user_prompt = "No message provided"
        for message in reversed(body.get("messages", [])):
            if message.get("role") == "user":
                content = message.get("content")
                if isinstance(content, list):
                    content = " ".join(
                        part.get("text", "") for part in content if part.get("type") == "text"
                    )
                user_prompt = content or user_prompt
                break

        content = f"**Echo LLM - static response for testing**\n\n_Your prompt:_\n\n{user_prompt}"
        for word in content.split(" "):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield self._frame({"choices": [{"index": 0, "delta": {"content": word + " "}}]})

        yield self._frame(
            {
                "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
                "usage": {
                    "prompt_tokens": len(user_prompt.split()),
                    "completion_tokens": len(content.split()),
                },
            }
        )
        yield b"data: [DONE]\n\n"
