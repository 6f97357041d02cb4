"""Decode a server-sent-event byte stream into typed StreamEvents.

The response body of a streaming chat completion is a sequence of
``data: <json>`` lines terminated by ``data: [DONE]`` or EOF. Each JSON frame
is validated against the provider chunk schema below; a frame that fails to
parse is logged and skipped without aborting the rest of the stream.
"""

import logging
from typing import AsyncIterator, List, Optional, Union

from pydantic import BaseModel, ValidationError

from .exceptions import MediaError, TransportError
from .media import parse_data_url
from .models import (
    DoneEvent,
    ErrorEvent,
    MediaEvent,
    StreamEvent,
    TextEvent,
    ThinkingEvent,
    ToolCallsEvent,
    UsageEvent,
)
from .tool_calls import ToolCallAccumulator

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


# --- Provider chunk schema ---
class _FunctionDelta(BaseModel):
    name: Optional[str] = None
    arguments: Optional[str] = None


class _ToolCallDelta(BaseModel):
    index: Optional[int] = None
    id: Optional[str] = None
    function: Optional[_FunctionDelta] = None


class _ImageURL(BaseModel):
    url: str


class _Image(BaseModel):
    image_url: _ImageURL


class _Delta(BaseModel):
    content: Optional[str] = None
    reasoning: Optional[str] = None
    reasoning_content: Optional[str] = None
    tool_calls: Optional[List[_ToolCallDelta]] = None
    images: Optional[List[_Image]] = None


class _Choice(BaseModel):
    delta: Optional[_Delta] = None
    finish_reason: Optional[str] = None


class _PromptTokensDetails(BaseModel):
    cached_tokens: Optional[int] = None


class _Usage(BaseModel):
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    prompt_tokens_details: Optional[_PromptTokensDetails] = None


class _ErrorBody(BaseModel):
    message: str = "Unknown error"
    code: Optional[Union[int, str]] = None


class _Chunk(BaseModel):
    choices: List[_Choice] = []
    usage: Optional[_Usage] = None
    error: Optional[_ErrorBody] = None


class StreamDecoder:
    """Turns one HTTP response body into a finite sequence of StreamEvents.

    A decoder wraps a single byte stream and can be iterated only once.
    Normal termination (EOF or ``[DONE]``) ends with a DoneEvent, preceded by
    a ToolCallsEvent when tool-call fragments are still pending. A
    TransportError raised by the byte stream produces one ErrorEvent and ends
    the sequence without a DoneEvent.
    """

    def __init__(self, byte_stream: AsyncIterator[bytes]):
        self._byte_stream = byte_stream
        self._tool_calls = ToolCallAccumulator()
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._consumed:
            raise RuntimeError("A StreamDecoder can only be iterated once")
        self._consumed = True
        return self._events()

    async def _events(self) -> AsyncIterator[StreamEvent]:
        buffer = bytearray()
        finished = False
        try:
            async for chunk in self._byte_stream:
                buffer.extend(chunk)
                newline = buffer.find(b"\n")
                while newline >= 0:
                    line = bytes(buffer[:newline])
                    del buffer[: newline + 1]
                    events = self._parse_line(line)
                    if events is None:
                        finished = True
                        break
                    for event in events:
                        yield event
                    newline = buffer.find(b"\n")
                if finished:
                    break

            if not finished and buffer:
                for event in self._parse_line(bytes(buffer)) or []:
                    yield event
        except TransportError as e:
            logger.warning("Stream transport failed: %s", e)
            yield ErrorEvent(message=str(e))
            return
        finally:
            aclose = getattr(self._byte_stream, "aclose", None)
            if aclose is not None:
                await aclose()

        for event in self._flush_tool_calls():
            yield event
        yield DoneEvent()

    def _parse_line(self, raw: bytes) -> Optional[List[StreamEvent]]:
        """Events for one line, or None when the line is the [DONE] sentinel."""
        line = raw.decode("utf-8", errors="replace").strip()
        if not line.startswith(DATA_PREFIX):
            return []

        payload = line[len(DATA_PREFIX) :].strip()
        if not payload:
            return []
        if payload == DONE_SENTINEL:
            return None

        try:
            chunk = _Chunk.model_validate_json(payload)
        except ValidationError as e:
            logger.debug("Skipping undecodable stream frame: %s", e)
            return []
        return self._chunk_events(chunk)

    def _chunk_events(self, chunk: _Chunk) -> List[StreamEvent]:
        events: List[StreamEvent] = []

        if chunk.error is not None:
            events.append(ErrorEvent(message=chunk.error.message))

        # Usage always precedes the content carried by the same chunk
        if chunk.usage is not None:
            details = chunk.usage.prompt_tokens_details
            events.append(
                UsageEvent(
                    input_tokens=chunk.usage.prompt_tokens or 0,
                    output_tokens=chunk.usage.completion_tokens or 0,
                    cached_tokens=details.cached_tokens if details else None,
                )
            )

        if not chunk.choices:
            return events
        choice = chunk.choices[0]
        delta = choice.delta or _Delta()

        thinking = delta.reasoning or delta.reasoning_content
        if thinking:
            events.append(ThinkingEvent(delta=thinking))

        if delta.content:
            events.append(TextEvent(delta=delta.content))

        for image in delta.images or []:
            try:
                data, mime_type = parse_data_url(image.image_url.url)
            except MediaError as e:
                logger.warning("Discarding inline image: %s", e)
                events.append(ErrorEvent(message=f"Invalid image data: {e}"))
                continue
            events.append(MediaEvent(data=data, mime_type=mime_type))

        for fragment in delta.tool_calls or []:
            function = fragment.function or _FunctionDelta()
            self._tool_calls.update(
                fragment.index or 0,
                id=fragment.id,
                name=function.name,
                arguments=function.arguments,
            )

        if choice.finish_reason and self._tool_calls:
            events.extend(self._flush_tool_calls())

        return events

    def _flush_tool_calls(self) -> List[StreamEvent]:
        if not self._tool_calls:
            return []
        calls = self._tool_calls.finalize()
        self._tool_calls.reset()
        logger.info(
            "Emitting %d tool call(s): %s",
            len(calls),
            ", ".join(call.function_name for call in calls),
        )
        return [ToolCallsEvent(calls=calls)]


def decode(byte_stream: AsyncIterator[bytes]) -> StreamDecoder:
    """Decode one response body; see StreamDecoder."""
    return StreamDecoder(byte_stream)
