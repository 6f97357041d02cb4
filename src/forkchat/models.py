"""
Defines the core Pydantic data models for the application.

These models serve as the formal, validated data contract between the pillars:
the conversation tree, the streaming session and the persistence layer all
exchange ``Message`` and ``Conversation`` instances, and the stream decoder
speaks in the ``StreamEvent`` union.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from . import config


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Roles ---
class Role(str, Enum):
    USER = "user"
    MODEL = "model"
    TOOL = "tool"


USER_ROLE = Role.USER
MODEL_ROLE = Role.MODEL
TOOL_ROLE = Role.TOOL


# --- Tool calling ---
class ToolCall(BaseModel):
    """A completed tool call requested by the model."""

    id: str
    function_name: str
    function_args: str = ""


class ToolResult(BaseModel):
    """The textual outcome of executing a ToolCall."""

    tool_call_id: str
    function_name: str
    content: str
    is_error: bool = False


# --- Conversation tree ---
class Message(BaseModel):
    """A single node of the conversation tree."""

    role: Role
    content: str = ""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    parent_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    selected_at: Optional[datetime] = None

    media_url: Optional[str] = None
    media_mime_type: Optional[str] = None
    thinking_content: Optional[str] = None

    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    cached_tokens: Optional[int] = None

    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None

    @model_validator(mode="after")
    def _selected_not_before_created(self) -> "Message":
        if self.selected_at is not None and self.selected_at < self.created_at:
            raise ValueError("selected_at must not precede created_at")
        return self

    @property
    def effective_time(self) -> datetime:
        """The timestamp used to pick the active child among siblings."""
        return self.selected_at or self.created_at

    @property
    def is_user(self) -> bool:
        return self.role == Role.USER

    def has_persistable_content(self) -> bool:
        """True if the message has text, media, or reasoning worth saving."""
        has_text = bool(self.content.strip())
        has_media = self.media_url is not None
        has_thinking = bool((self.thinking_content or "").strip())
        return has_text or has_media or has_thinking

    def add_usage(
        self, input_tokens: int, output_tokens: int, cached_tokens: Optional[int] = None
    ) -> None:
        """Accumulate token counts; later rounds add to earlier ones."""
        self.input_tokens = (self.input_tokens or 0) + input_tokens
        self.output_tokens = (self.output_tokens or 0) + output_tokens
        if cached_tokens is not None:
            self.cached_tokens = (self.cached_tokens or 0) + cached_tokens


class Conversation(BaseModel):
    """A conversation record: title, model and generation parameters."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str = config.DEFAULT_TITLE
    model: Optional[str] = None
    system_instruction: Optional[str] = None

    temperature: float = config.DEFAULT_TEMPERATURE
    top_p: float = config.DEFAULT_TOP_P
    top_k: int = config.DEFAULT_TOP_K
    max_output_tokens: int = config.DEFAULT_MAX_OUTPUT_TOKENS
    thinking_budget: Optional[int] = None

    web_search_enabled: bool = False
    code_execution_enabled: bool = False
    url_context_enabled: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def touch(self) -> None:
        self.updated_at = utcnow()


class MediaRef(BaseModel):
    """Where a piece of media ended up: store path, local file or data URI."""

    url: str
    mime_type: str


class MessagePayload(BaseModel):
    """One provider-neutral entry of an outgoing request."""

    role: Role
    text: str = ""
    media_data: Optional[bytes] = None
    media_mime_type: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None


# --- Stream events ---
class TextEvent(BaseModel):
    type: Literal["text"] = "text"
    delta: str


class ThinkingEvent(BaseModel):
    type: Literal["thinking"] = "thinking"
    delta: str


class MediaEvent(BaseModel):
    type: Literal["media"] = "media"
    data: bytes
    mime_type: str


class ToolCallsEvent(BaseModel):
    type: Literal["tool_calls"] = "tool_calls"
    calls: List[ToolCall]


class UsageEvent(BaseModel):
    type: Literal["usage"] = "usage"
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: Optional[int] = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"


StreamEvent = Union[
    TextEvent,
    ThinkingEvent,
    MediaEvent,
    ToolCallsEvent,
    UsageEvent,
    ErrorEvent,
    DoneEvent,
]
