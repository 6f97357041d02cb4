"""Concrete implementations for conversation stores."""

import asyncio
import json
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from . import config
from .exceptions import PersistenceError
from .models import Conversation, Message

logger = logging.getLogger(__name__)

Listener = Callable[[List[Message]], None]


class Store(ABC):
    """Interface for saving and loading conversations and their messages.

    Subclasses implement the abstract reads and writes; change notification
    is shared. Every successful message write calls ``_notify`` so listeners
    see the conversation's complete message snapshot.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    @abstractmethod
    async def save_conversation(self, conversation: Conversation) -> None:
        """Creates or replaces a conversation record."""
        pass

    @abstractmethod
    async def load_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Loads a conversation record, or None if it does not exist."""
        pass

    @abstractmethod
    async def list_conversations(self) -> List[Conversation]:
        """Lists all conversations, most recently updated first."""
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> None:
        """Deletes a conversation together with all of its messages."""
        pass

    @abstractmethod
    async def load_messages(self, conversation_id: str) -> List[Message]:
        """Loads every message of a conversation, all branches included."""
        pass

    @abstractmethod
    async def add_message(self, conversation_id: str, message: Message) -> None:
        pass

    @abstractmethod
    async def update_message(self, conversation_id: str, message: Message) -> None:
        pass

    @abstractmethod
    async def delete_messages(self, conversation_id: str, ids: List[str]) -> None:
        pass

    async def listen(self, conversation_id: str, on_change: Listener) -> Callable[[], None]:
        """Subscribe to message snapshots of one conversation.

        ``on_change`` fires immediately with the current snapshot and again
        after every write. Returns a function that unsubscribes.
        """
        listeners = self._listeners.setdefault(conversation_id, [])
        listeners.append(on_change)
        on_change(await self.load_messages(conversation_id))

        def unsubscribe():
            if on_change in listeners:
                listeners.remove(on_change)

        return unsubscribe

    async def _notify(self, conversation_id: str) -> None:
        listeners = self._listeners.get(conversation_id)
        if not listeners:
            return
        snapshot = await self.load_messages(conversation_id)
        for listener in list(listeners):
            listener(snapshot)


class InMemory(Store):
    """Saves and loads conversations from in-memory dictionaries."""

    def __init__(self):
        super().__init__()
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, Dict[str, Message]] = {}

    async def save_conversation(self, conversation):
        self._conversations[conversation.id] = conversation.model_copy(deep=True)

    async def load_conversation(self, conversation_id):
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation else None

    async def list_conversations(self):
        conversations = sorted(
            self._conversations.values(), key=lambda c: c.updated_at, reverse=True
        )
        return [c.model_copy(deep=True) for c in conversations]

    async def delete_conversation(self, conversation_id):
        self._conversations.pop(conversation_id, None)
        self._messages.pop(conversation_id, None)
        await self._notify(conversation_id)

    async def load_messages(self, conversation_id):
        messages = self._messages.get(conversation_id, {})
        return [m.model_copy(deep=True) for m in messages.values()]

    async def add_message(self, conversation_id, message):
        self._messages.setdefault(conversation_id, {})[message.id] = message.model_copy(deep=True)
        await self._notify(conversation_id)

    async def update_message(self, conversation_id, message):
        messages = self._messages.get(conversation_id, {})
        if message.id not in messages:
            raise PersistenceError(f"Message {message.id} does not exist")
        messages[message.id] = message.model_copy(deep=True)
        await self._notify(conversation_id)

    async def delete_messages(self, conversation_id, ids):
        messages = self._messages.get(conversation_id, {})
        for message_id in ids:
            messages.pop(message_id, None)
        await self._notify(conversation_id)


class File(Store):
    """Saves conversations on the local file system as JSON.

    Each conversation gets its own directory holding ``conversation.json``
    and ``messages.json``. Blocking file IO runs in worker threads.
    """

    CONVERSATION_FILE = "conversation.json"
    MESSAGES_FILE = "messages.json"

    def __init__(self, base_dir: Optional[str] = None):
        super().__init__()
        self.base_dir = Path(base_dir) if base_dir else config.DATA_DIR / "conversations"
        # Serializes read-modify-write cycles on messages.json
        self._lock = asyncio.Lock()

    def _conversation_dir(self, conversation_id: str) -> Path:
        return self.base_dir / conversation_id

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except (OSError, ValueError, ValidationError) as e:
            logger.error("Store operation %s failed: %s", func.__name__, e)
            raise PersistenceError(f"{func.__name__} failed: {e}") from e

    # --- Blocking helpers ---
    def _read_conversation(self, conversation_id: str) -> Optional[Conversation]:
        path = self._conversation_dir(conversation_id) / self.CONVERSATION_FILE
        if not path.exists():
            return None
        return Conversation.model_validate_json(path.read_text(encoding="utf-8"))

    def _write_conversation(self, conversation: Conversation) -> None:
        directory = self._conversation_dir(conversation.id)
        directory.mkdir(parents=True, exist_ok=True)
        (directory / self.CONVERSATION_FILE).write_text(
            conversation.model_dump_json(indent=2), encoding="utf-8"
        )

    def _read_all_conversations(self) -> List[Conversation]:
        if not self.base_dir.exists():
            return []
        conversations = []
        for path in self.base_dir.glob(f"*/{self.CONVERSATION_FILE}"):
            conversations.append(
                Conversation.model_validate_json(path.read_text(encoding="utf-8"))
            )
        return conversations

    def _remove_conversation(self, conversation_id: str) -> None:
        directory = self._conversation_dir(conversation_id)
        if directory.exists():
            shutil.rmtree(directory)

    def _read_messages(self, conversation_id: str) -> List[Message]:
        path = self._conversation_dir(conversation_id) / self.MESSAGES_FILE
        if not path.exists():
            return []
        raw = json.loads(path.read_text(encoding="utf-8"))
        return [Message.model_validate(item) for item in raw]

    def _write_messages(self, conversation_id: str, messages: List[Message]) -> None:
        directory = self._conversation_dir(conversation_id)
        directory.mkdir(parents=True, exist_ok=True)
        payload = [m.model_dump(mode="json") for m in messages]
        (directory / self.MESSAGES_FILE).write_text(
            json.dumps(payload, indent=2), encoding="utf-8"
        )

    # --- Store interface ---
    async def save_conversation(self, conversation):
        await self._run(self._write_conversation, conversation)

    async def load_conversation(self, conversation_id):
        return await self._run(self._read_conversation, conversation_id)

    async def list_conversations(self):
        conversations = await self._run(self._read_all_conversations)
        return sorted(conversations, key=lambda c: c.updated_at, reverse=True)

    async def delete_conversation(self, conversation_id):
        await self._run(self._remove_conversation, conversation_id)
        await self._notify(conversation_id)

    async def load_messages(self, conversation_id):
        return await self._run(self._read_messages, conversation_id)

    async def _modify_messages(self, conversation_id: str, change) -> None:
        async with self._lock:
            messages = await self._run(self._read_messages, conversation_id)
            messages = change(messages)
            await self._run(self._write_messages, conversation_id, messages)
        await self._notify(conversation_id)

    async def add_message(self, conversation_id, message):
        await self._modify_messages(
            conversation_id,
            lambda messages: [m for m in messages if m.id != message.id] + [message],
        )

    async def update_message(self, conversation_id, message):
        def replace(messages):
            if not any(m.id == message.id for m in messages):
                raise PersistenceError(f"Message {message.id} does not exist")
            return [message if m.id == message.id else m for m in messages]

        await self._modify_messages(conversation_id, replace)

    async def delete_messages(self, conversation_id, ids):
        doomed = set(ids)
        await self._modify_messages(
            conversation_id, lambda messages: [m for m in messages if m.id not in doomed]
        )
