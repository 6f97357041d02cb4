"""
The main entrypoint for the Forkchat package.

This module contains the Forkchat controller, which ties the extensible
pillars (LLM transport, store, media, tools, auth) to a single branching
conversation. The pillar interfaces live in their own modules and form the
contract that keeps every piece replaceable.
"""

import asyncio
import logging
import os
import uuid
import warnings
from typing import Dict, List, Optional, Tuple

from . import config, tree
from .exceptions import PersistenceError
from .generation import Generator
from .llm import LLM
from .media import Media
from .models import Conversation, Message, MessagePayload, Role
from .payloads import build_request_body, to_wire
from .session import SessionState, StreamingSession
from .side_channel import MediaSideChannel
from .store import InMemory, Store
from .tools import NoTool, Tool

logging.getLogger(__name__).addHandler(logging.NullHandler())

logger = logging.getLogger(__name__)

TITLE_INSTRUCTION = (
    "Generate a concise 3-6 word title for this conversation. "
    "Return only the title text, nothing else."
)


class Forkchat:
    """
    The controller for one branching conversation.

    Forkchat keeps the conversation's complete message tree in memory,
    exposes the active branch for display, and turns user intents (send,
    regenerate, fork, edit, delete, switch) into tree edits, store writes and
    streaming turns. Every pillar is injected; defaults make it usable
    offline out of the box.
    """

    def __init__(
        self,
        conversation_id: Optional[str] = None,
        llm: Optional[LLM] = None,
        store: Optional[Store] = None,
        media: Optional[Media] = None,
        tools: Optional[Tool] = None,
        generators: Optional[List[Generator]] = None,
        local_media_dir: Optional[str] = None,
        max_tool_rounds: int = config.MAX_TOOL_ROUNDS,
        coalesce_window: float = config.COALESCE_WINDOW,
    ) -> None:
        """
        Initialize the controller with configurable pillars.

        Parameters
        ----------
        conversation_id : str, optional
            The conversation to open. A new id is generated when omitted.
        llm : llm.LLM, optional
            Transport for streaming completions. Defaults to llm.OpenRouter()
            when OPENROUTER_API_KEY is set, otherwise to the offline llm.Echo().
        store : store.Store, optional
            Persistence for conversations and messages.
            Defaults to store.InMemory() for session-only storage.
        media : media.Media, optional
            Media store for attachments and generated media. Without one,
            media is kept below ``local_media_dir``.
        tools : tools.Tool, optional
            Tool handler for function calling.
            Defaults to tools.NoTool() (no function calling).
        generators : list of generation.Generator, optional
            Image or video generators offered to the model as tools.
        local_media_dir : str, optional
            Fallback media directory. Defaults to config.LOCAL_MEDIA_DIR.
        max_tool_rounds : int, default=config.MAX_TOOL_ROUNDS
            Tool rounds allowed per turn.
        coalesce_window : float, default=config.COALESCE_WINDOW
            Minimum seconds between surfaced text updates.

        Examples
        --------
        >>> chat = Forkchat(store=store.File("./conversations"))
        >>> await chat.open()
        >>> await chat.send("Hello!")
        >>> reply = await chat.wait()
        """
        if llm is not None:
            self.llm = llm
        elif os.environ.get("OPENROUTER_API_KEY"):
            from .llm import OpenRouter

            self.llm = OpenRouter()
        else:
            warnings.warn(
                "Forkchat is running with the offline Echo LLM because "
                "OPENROUTER_API_KEY is not set.",
                UserWarning,
            )
            from .llm import Echo

            self.llm = Echo()

        self.conversation_id = conversation_id or str(uuid.uuid4())
        self.store = store if store is not None else InMemory()
        self.tools = tools if tools is not None else NoTool()
        self.side_channel = MediaSideChannel(media, local_media_dir, generators)
        self.max_tool_rounds = max_tool_rounds
        self.coalesce_window = coalesce_window

        self.conversation: Optional[Conversation] = None
        self.session: Optional[StreamingSession] = None
        self.messages: List[Message] = []
        self.error: Optional[str] = None

        self._unsynced: Dict[str, Message] = {}
        self._unsubscribe = None
        self._title_task: Optional[asyncio.Task] = None

    # --- Lifecycle ---
    async def open(self) -> "Forkchat":
        """Load or create the conversation and start following the store."""
        conversation = await self.store.load_conversation(self.conversation_id)
        self.conversation = conversation or Conversation(id=self.conversation_id)

        self.session = StreamingSession(
            self.llm,
            self.conversation,
            tools=self.tools,
            side_channel=self.side_channel,
            persist=self._add_message,
            max_tool_rounds=self.max_tool_rounds,
            coalesce_window=self.coalesce_window,
        )
        self.session.subscribe(self._on_session_change)
        self._unsubscribe = await self.store.listen(self.conversation.id, self._on_snapshot)
        logger.info("Opened conversation %s (%d messages)", self.conversation.id, len(self.messages))
        return self

    async def close(self) -> None:
        if self.session is not None:
            await self.session.stop()
        if self._title_task is not None and not self._title_task.done():
            self._title_task.cancel()
            await asyncio.wait({self._title_task})
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def __aenter__(self) -> "Forkchat":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _require_open(self) -> StreamingSession:
        if self.session is None:
            raise RuntimeError("Call open() before using the conversation")
        return self.session

    # --- Views ---
    @property
    def active_branch(self) -> List[Message]:
        return tree.active_branch(self.messages)

    @property
    def in_flight(self) -> Optional[Message]:
        return self.session.in_flight if self.session else None

    @property
    def is_generating(self) -> bool:
        return self.session is not None and self.session.state in (
            SessionState.STREAMING,
            SessionState.TOOL_EXECUTION,
            SessionState.FINALIZING,
        )

    def display_messages(self) -> List[Message]:
        """The active branch, with the in-flight reply shown under its parent."""
        branch = self.active_branch
        in_flight = self.in_flight
        if in_flight is None or any(m.id == in_flight.id for m in branch):
            return branch
        for index, message in enumerate(branch):
            if message.id == in_flight.parent_id:
                return branch[: index + 1] + [in_flight]
        return branch + [in_flight]

    def siblings(self, message: Message) -> List[Message]:
        return tree.siblings(message, self.messages)

    def branch_info(self, message: Message) -> Tuple[int, int]:
        return tree.branch_info(message, self.messages)

    def _find(self, message: Message) -> Message:
        for candidate in self.messages:
            if candidate.id == message.id:
                return candidate
        return message

    def _prefix(self, parent_id: Optional[str]) -> List[Message]:
        """Context for a reply under ``parent_id``: the ancestor chain."""
        if parent_id is None:
            return []
        by_id = {m.id: m for m in self.messages}
        if parent_id not in by_id:
            return []
        return tree.path_to(by_id[parent_id], self.messages)

    # --- Intents ---
    async def send(
        self, text: str, attachment: Optional[Tuple[bytes, str]] = None
    ) -> Optional[Message]:
        """Send a user message under the active leaf and stream the reply.

        Parameters
        ----------
        text : str
            The message text; whitespace-only text is ignored.
        attachment : tuple of (bytes, str), optional
            Media bytes and their MIME type.

        Returns
        -------
        Message or None
            The in-flight model message, or None if nothing was sent.
        """
        session = self._require_open()
        text = text.strip()
        if not text:
            return None
        self.error = None

        branch = self.active_branch
        first_exchange = not branch
        message = Message(
            role=Role.USER, content=text, parent_id=branch[-1].id if branch else None
        )
        if attachment is not None:
            data, mime_type = attachment
            ref = await self.side_channel.attach(
                data, mime_type, conversation_id=self.conversation.id, message_id=message.id
            )
            message.media_url = ref.url
            message.media_mime_type = ref.mime_type

        if self.conversation.title == config.DEFAULT_TITLE:
            self.conversation.title = text[: config.TITLE_MAX_CHARS]
        self.conversation.touch()

        if not await self._save_conversation() or not await self._add_message(message):
            return None

        in_flight = await session.start(branch + [message], parent_id=message.id)
        if first_exchange:
            self._title_task = asyncio.create_task(self._generate_title(text))
        return in_flight

    async def regenerate(self, message: Message) -> Message:
        """Stream a new model reply as a sibling of ``message``."""
        session = self._require_open()
        if message.role != Role.MODEL:
            raise ValueError("Only model messages can be regenerated")
        self.error = None
        return await session.start(
            self._prefix(message.parent_id), parent_id=message.parent_id
        )

    async def fork(self, message: Message, text: str) -> Optional[Message]:
        """Add ``text`` as a new user sibling of ``message`` and stream a reply.

        The original branch is kept and stays reachable via switch_branch.
        """
        session = self._require_open()
        if message.role != Role.USER:
            raise ValueError("Only user messages can be forked")
        text = text.strip()
        if not text:
            return None
        self.error = None

        forked = Message(role=Role.USER, content=text, parent_id=message.parent_id)
        if not await self._add_message(forked):
            return None
        return await session.start(
            self._prefix(message.parent_id) + [forked], parent_id=forked.id
        )

    async def edit_and_resend(self, message: Message, text: str) -> Optional[Message]:
        """Rewrite a user message in place, drop everything below it, and stream."""
        session = self._require_open()
        if message.role != Role.USER:
            raise ValueError("Only user messages can be edited")
        text = text.strip()
        if not text:
            return None
        self.error = None
        await session.stop()

        target = self._find(message)
        target.content = text
        descendants = tree.subtree_ids(target.id, self.messages) - {target.id}
        self.messages = [m for m in self.messages if m.id not in descendants]

        if not await self._write(self.store.update_message(self.conversation.id, target)):
            return None
        if descendants and not await self._write(
            self.store.delete_messages(self.conversation.id, list(descendants))
        ):
            return None
        return await session.start(tree.path_to(target, self.messages), parent_id=target.id)

    async def delete_from(self, message: Message) -> None:
        """Delete ``message`` and its whole subtree."""
        await self._delete(tree.subtree_ids(message.id, self.messages))

    async def delete_single(self, message: Message) -> None:
        """Delete ``message`` and, for a user message, its direct replies."""
        await self._delete(set(tree.single_delete_ids(message, self.messages)))

    async def _delete(self, ids) -> None:
        session = self._require_open()
        in_flight = session.in_flight
        if in_flight is not None and in_flight.parent_id in ids:
            # The partial reply is saved on stop and goes with its parent
            await session.stop()
            ids = set(ids) | {in_flight.id}
        self.messages = [m for m in self.messages if m.id not in ids]
        for message_id in ids:
            self._unsynced.pop(message_id, None)
        logger.info("Deleting %d message(s)", len(ids))
        await self._write(self.store.delete_messages(self.conversation.id, list(ids)))

    async def switch_branch(self, message: Message, direction: int) -> Optional[Message]:
        """Show the sibling ``direction`` steps away; None at either end."""
        self._require_open()
        target = tree.switch_branch(self._find(message), direction, self.messages)
        if target is not None:
            await self._write(self.store.update_message(self.conversation.id, target))
        return target

    async def stop(self) -> None:
        await self._require_open().stop()

    async def wait(self) -> Optional[Message]:
        """Wait for the running turn and return its finished reply."""
        return await self._require_open().wait()

    # --- Persistence ---
    async def _write(self, operation) -> bool:
        try:
            await operation
        except PersistenceError as e:
            logger.error("Store write failed (%s): %s", e.correlation_id, e)
            self.error = str(e)
            return False
        return True

    async def _save_conversation(self) -> bool:
        return await self._write(self.store.save_conversation(self.conversation))

    async def _add_message(self, message: Message) -> bool:
        if not any(m.id == message.id for m in self.messages):
            self.messages.append(message)
        if await self._write(self.store.add_message(self.conversation.id, message)):
            return True
        self._unsynced[message.id] = message
        return False

    def _on_snapshot(self, snapshot: List[Message]) -> None:
        known = {m.id for m in snapshot}
        for message_id in list(self._unsynced):
            if message_id in known:
                del self._unsynced[message_id]
        self.messages = list(snapshot) + list(self._unsynced.values())

    def _on_session_change(self, session: StreamingSession) -> None:
        if session.error:
            self.error = session.error

    # --- Titles ---
    async def _generate_title(self, user_text: str) -> None:
        """Replace the truncated title with a short generated one."""
        truncated = user_text[: config.TITLE_MAX_CHARS]
        try:
            reply = await self.session.wait()
            if self.conversation.title != truncated:
                return

            title_settings = Conversation(
                system_instruction=TITLE_INSTRUCTION,
                temperature=0.5,
                top_p=0.9,
                top_k=20,
                max_output_tokens=20,
            )
            preview = reply.content[:200] if reply else ""
            messages = [
                to_wire(MessagePayload(role=Role.USER, text=user_text)),
                to_wire(MessagePayload(role=Role.MODEL, text=preview)),
            ]
            body = build_request_body(title_settings, messages, model=config.TITLE_MODEL)
            title = (await self.llm.complete(body)).strip().strip('"')
        except Exception as e:
            logger.warning("Title generation failed: %s", e)
            return

        # The user may have renamed the conversation meanwhile
        if not title or self.conversation.title != truncated:
            return
        self.conversation.title = title
        self.conversation.touch()
        await self._save_conversation()
        logger.info("Conversation %s titled %r", self.conversation.id, title)


__all__ = ["Forkchat"]
