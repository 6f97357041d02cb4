"""Drive one model turn: stream, run tools, finalize.

A StreamingSession owns at most one in-flight model message at a time. A turn
streams a request, applies the decoded events to the in-flight message and,
when the model asks for tools, executes them and streams again with the
results appended, up to ``max_tool_rounds`` rounds. The finished message is
handed to the ``persist`` callback if it has anything worth keeping.

States::

    idle -> streaming -> (tool_execution -> streaming)* -> finalizing -> idle
                      \\-> cancelled (stop)     \\-> failed (transport error)
"""

import asyncio
import logging
from contextlib import aclosing
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from . import config
from .decoder import decode
from .exceptions import PersistenceError
from .llm import LLM
from .models import (
    Conversation,
    DoneEvent,
    ErrorEvent,
    MediaEvent,
    Message,
    MessagePayload,
    Role,
    TextEvent,
    ThinkingEvent,
    ToolCall,
    ToolCallsEvent,
    UsageEvent,
)
from .payloads import (
    build_payloads,
    build_request_body,
    choose_model,
    to_wire,
    tool_call_message,
    tool_result_message,
)
from .side_channel import MediaSideChannel
from .tools import NoTool, Tool

logger = logging.getLogger(__name__)

PersistCallback = Callable[[Message], Awaitable[None]]


class SessionState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_EXECUTION = "tool_execution"
    FINALIZING = "finalizing"
    CANCELLED = "cancelled"
    FAILED = "failed"


class StreamingSession:
    """Streams model replies into in-flight messages.

    Parameters
    ----------
    llm : LLM
        The transport requests are sent through.
    conversation : Conversation
        Supplies the generation parameters and the id media is filed under.
    tools : Tool, optional
        Executes tool calls that are not media generators.
    side_channel : MediaSideChannel, optional
        Attaches streamed or generated media.
    persist : callable, optional
        ``async persist(message)``; called at most once per message.
    max_tool_rounds : int, default=config.MAX_TOOL_ROUNDS
    coalesce_window : float, default=config.COALESCE_WINDOW
        Minimum seconds between surfaced text updates.
    default_model : str, optional
        Used when the conversation names no model; defaults to ``llm.model``.
    """

    def __init__(
        self,
        llm: LLM,
        conversation: Conversation,
        *,
        tools: Optional[Tool] = None,
        side_channel: Optional[MediaSideChannel] = None,
        persist: Optional[PersistCallback] = None,
        max_tool_rounds: int = config.MAX_TOOL_ROUNDS,
        coalesce_window: float = config.COALESCE_WINDOW,
        default_model: Optional[str] = None,
    ):
        self.llm = llm
        self.conversation = conversation
        self.tools = tools or NoTool()
        self.side_channel = side_channel or MediaSideChannel()
        self.persist = persist
        self.max_tool_rounds = max_tool_rounds
        self.coalesce_window = coalesce_window
        self.default_model = default_model

        self.state = SessionState.IDLE
        self.in_flight: Optional[Message] = None
        self.last_message: Optional[Message] = None
        self.error: Optional[str] = None
        self.request_count = 0

        self._target_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._text_buffer: List[str] = []
        self._thinking_buffer: List[str] = []
        self._last_flush = float("-inf")
        self._flush_handle: Optional[asyncio.TimerHandle] = None
        self._persisted_ids: Set[str] = set()
        self._listeners: List[Callable[["StreamingSession"], None]] = []

    # --- Observation ---
    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, callback: Callable[["StreamingSession"], None]) -> Callable[[], None]:
        """Call ``callback(session)`` after every surfaced change."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def _set_state(self, state: SessionState) -> None:
        self.state = state
        self._notify()

    def _is_current(self, message: Message) -> bool:
        return self._target_id is not None and self._target_id == message.id

    # --- Lifecycle ---
    async def start(
        self,
        branch: List[Message],
        new_user_text: Optional[str] = None,
        *,
        parent_id: Optional[str] = None,
    ) -> Message:
        """Begin a model turn answering ``branch`` and return the in-flight message.

        A turn that is still running is stopped first.
        """
        await self.stop()
        self.error = None

        payloads = await build_payloads(branch, self.side_channel.load)
        if new_user_text is not None:
            payloads.append(MessagePayload(role=Role.USER, text=new_user_text))
        model = choose_model(
            self.conversation, payloads, self.default_model or self.llm.model
        )

        if parent_id is None and branch:
            parent_id = branch[-1].id
        message = Message(role=Role.MODEL, parent_id=parent_id)
        self.in_flight = message
        self._target_id = message.id
        self._cancel_trailing_flush()
        self._text_buffer.clear()
        self._thinking_buffer.clear()
        self._last_flush = float("-inf")

        logger.info("Starting turn %s with %s (%d messages)", message.id, model, len(payloads))
        self._set_state(SessionState.STREAMING)
        self._task = asyncio.create_task(self._run(message, payloads, model))
        return message

    async def stop(self) -> None:
        """Cancel the running turn, keeping whatever it produced so far."""
        task = self._task
        if task is None or task.done():
            return

        message = self.in_flight
        self._target_id = None
        self._cancel_trailing_flush()
        task.cancel()
        # Waiting on the task does not swallow a cancellation of our own caller
        await asyncio.wait({task})
        self._task = None

        if message is not None:
            self._flush(message)
            await self._persist(message)
            self.last_message = message
        self.in_flight = None
        logger.info("Turn cancelled")
        self._set_state(SessionState.CANCELLED)

    async def wait(self) -> Optional[Message]:
        """Wait for the current turn and return the last finished message."""
        task = self._task
        if task is not None:
            await asyncio.wait({task})
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
        return self.last_message

    # --- The turn ---
    def _tool_definitions(self) -> List[Dict[str, Any]]:
        return self.tools.get_tools() + self.side_channel.definitions()

    async def _run(self, message: Message, payloads: List[MessagePayload], model: str) -> None:
        try:
            await self._run_rounds(message, payloads, model)
        except Exception as e:
            logger.exception("Turn %s aborted", message.id)
            if self._is_current(message):
                self.error = str(e) or type(e).__name__
                await self._fail(message)

    async def _run_rounds(
        self, message: Message, payloads: List[MessagePayload], model: str
    ) -> None:
        context = [to_wire(p) for p in payloads]
        tools = self._tool_definitions()
        rounds = 0

        while True:
            calls, completed = await self._stream_round(message, context, model, tools)
            if not self._is_current(message):
                return
            if not completed:
                await self._fail(message)
                return
            if not calls:
                break
            if rounds >= self.max_tool_rounds:
                logger.warning(
                    "Tool round limit (%d) reached; ignoring %d further call(s)",
                    self.max_tool_rounds,
                    len(calls),
                )
                break
            rounds += 1
            await self._execute_tools(message, calls, context)

        await self._finalize(message)

    async def _stream_round(
        self,
        message: Message,
        context: List[Dict[str, Any]],
        model: str,
        tools: List[Dict[str, Any]],
    ) -> Tuple[List[ToolCall], bool]:
        """Stream one request; return the requested calls and whether it completed."""
        body = build_request_body(self.conversation, context, model=model, tools=tools)
        self.request_count += 1
        if self.state != SessionState.STREAMING:
            self._set_state(SessionState.STREAMING)

        calls: List[ToolCall] = []
        completed = False
        async with aclosing(aiter(decode(self.llm.stream(body)))) as events:
            async for event in events:
                if not self._is_current(message):
                    logger.debug("Dropping %s event for stale message %s", event.type, message.id)
                    break

                if isinstance(event, TextEvent):
                    self._text_buffer.append(event.delta)
                    self._maybe_flush(message)
                elif isinstance(event, ThinkingEvent):
                    self._thinking_buffer.append(event.delta)
                    self._maybe_flush(message)
                elif isinstance(event, MediaEvent):
                    self._flush(message)
                    await self._attach_media(message, event.data, event.mime_type)
                elif isinstance(event, ToolCallsEvent):
                    calls.extend(event.calls)
                elif isinstance(event, UsageEvent):
                    message.add_usage(
                        event.input_tokens, event.output_tokens, event.cached_tokens
                    )
                    self._notify()
                elif isinstance(event, ErrorEvent):
                    logger.warning("Stream reported an error: %s", event.message)
                    self.error = event.message
                    self._notify()
                elif isinstance(event, DoneEvent):
                    completed = True
                else:
                    raise TypeError(f"Unknown stream event: {event!r}")
        return calls, completed

    async def _attach_media(self, message: Message, data: bytes, mime_type: str) -> None:
        ref = await self.side_channel.attach(
            data, mime_type, conversation_id=self.conversation.id, message_id=message.id
        )
        if not self._is_current(message):
            return
        message.media_url = ref.url
        message.media_mime_type = ref.mime_type
        self._notify()

    async def _execute_tools(
        self, message: Message, calls: List[ToolCall], context: List[Dict[str, Any]]
    ) -> None:
        self._flush(message)
        self._set_state(SessionState.TOOL_EXECUTION)
        context.append(tool_call_message(calls))

        for call in calls:
            logger.info("Executing tool %s (%s)", call.function_name, call.id)
            if self.side_channel.handles(call.function_name):
                ref, result = await self.side_channel.generate(
                    call, conversation_id=self.conversation.id, message_id=message.id
                )
                if ref is not None and self._is_current(message):
                    message.media_url = ref.url
                    message.media_mime_type = ref.mime_type
                    self._notify()
            else:
                outcome = await self.tools.execute_tool_call(call)
                if outcome.is_error:
                    logger.warning("Tool %s returned an error: %s", call.function_name, outcome.content)
                result = outcome.content
            context.append(tool_result_message(call.id, result))

    async def _finalize(self, message: Message) -> None:
        self._cancel_trailing_flush()
        self._set_state(SessionState.FINALIZING)
        self._flush(message)
        await self._persist(message)
        self.last_message = message
        self.in_flight = None
        self._target_id = None
        logger.info(
            "Turn %s finished after %d request(s)", message.id, self.request_count
        )
        self._set_state(SessionState.IDLE)

    async def _fail(self, message: Message) -> None:
        self._flush(message)
        await self._persist(message)
        self.last_message = message
        self.in_flight = None
        self._target_id = None
        logger.warning("Turn %s failed: %s", message.id, self.error)
        self._set_state(SessionState.FAILED)

    # --- Buffers and persistence ---
    def _maybe_flush(self, message: Message) -> None:
        loop = asyncio.get_running_loop()
        elapsed = loop.time() - self._last_flush
        if elapsed >= self.coalesce_window:
            self._flush(message)
        elif self._flush_handle is None:
            # Surface the buffer when the window closes even if the stream stalls
            self._flush_handle = loop.call_later(
                self.coalesce_window - elapsed, self._trailing_flush, message
            )

    def _trailing_flush(self, message: Message) -> None:
        self._flush_handle = None
        if self._is_current(message):
            self._flush(message)

    def _cancel_trailing_flush(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None

    def _flush(self, message: Message) -> None:
        self._cancel_trailing_flush()
        if not self._text_buffer and not self._thinking_buffer:
            return
        if self._text_buffer:
            message.content += "".join(self._text_buffer)
            self._text_buffer.clear()
        if self._thinking_buffer:
            message.thinking_content = (message.thinking_content or "") + "".join(
                self._thinking_buffer
            )
            self._thinking_buffer.clear()
        self._last_flush = asyncio.get_running_loop().time()
        self._notify()

    async def _persist(self, message: Message) -> None:
        if self.persist is None or message.id in self._persisted_ids:
            return
        if not message.has_persistable_content():
            logger.debug("Nothing to persist for message %s", message.id)
            return
        # Marked first so a stop() racing this write cannot save it twice
        self._persisted_ids.add(message.id)
        try:
            await self.persist(message)
        except PersistenceError as e:
            logger.error("Could not persist message %s: %s", message.id, e)
            self.error = str(e)
            self._notify()
