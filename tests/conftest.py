"""
Core pytest configuration and fixtures for Forkchat testing.

This module provides shared test fixtures, a scripted LLM transport that
replays server-sent-event bodies, and helpers for building message trees.
"""

import asyncio
import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from forkchat.exceptions import TransportError
from forkchat.generation import Generator
from forkchat.llm import LLM
from forkchat.models import MODEL_ROLE, USER_ROLE, Conversation, Message

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


# ===== SSE HELPERS =====


def sse(payload: Any) -> bytes:
    """Encode one ``data:`` frame."""
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


DONE = b"data: [DONE]\n\n"


def text_chunk(text: str) -> bytes:
    return sse({"choices": [{"index": 0, "delta": {"content": text}}]})


def usage_chunk(prompt: int, completion: int, cached: Optional[int] = None) -> bytes:
    usage: Dict[str, Any] = {"prompt_tokens": prompt, "completion_tokens": completion}
    if cached is not None:
        usage["prompt_tokens_details"] = {"cached_tokens": cached}
    return sse({"choices": [], "usage": usage})


def tool_call_chunks(call_id: str, name: str, arguments: str, index: int = 0) -> List[bytes]:
    """A tool call streamed as id/name first, then split arguments, then finish."""
    half = len(arguments) // 2
    return [
        sse(
            {
                "choices": [
                    {
                        "index": 0,
                        "delta": {
                            "tool_calls": [
                                {
                                    "index": index,
                                    "id": call_id,
                                    "type": "function",
                                    "function": {"name": name, "arguments": arguments[:half]},
                                }
                            ]
                        },
                    }
                ]
            }
        ),
        sse(
            {
                "choices": [
                    {
                        "index": 0,
                        "delta": {
                            "tool_calls": [
                                {"index": index, "function": {"arguments": arguments[half:]}}
                            ]
                        },
                    }
                ]
            }
        ),
        sse({"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]}),
    ]


def text_reply(*parts: str) -> List[bytes]:
    return [text_chunk(p) for p in parts] + [usage_chunk(10, len(parts)), DONE]


async def byte_stream(chunks: List[bytes]):
    for chunk in chunks:
        yield chunk


# ===== SCRIPTED LLM =====


class ScriptedLLM(LLM):
    """Replays one scripted response body per request.

    A script is a list of byte chunks, optionally ending with an exception
    instance that is raised after the chunks. Once the scripts run out the
    last one is repeated. When ``hold`` is set, every stream blocks on it
    after sending its chunks, which lets tests cancel mid-turn.
    """

    def __init__(self, *scripts: List[Any], model: str = "test-model"):
        self.model = model
        self.scripts = list(scripts) or [text_reply("ok")]
        self.bodies: List[Dict[str, Any]] = []
        self.hold: Optional[asyncio.Event] = None
        self.sent = asyncio.Event()

    async def stream(self, body):
        self.bodies.append(body)
        index = min(len(self.bodies), len(self.scripts)) - 1
        for item in self.scripts[index]:
            if isinstance(item, BaseException):
                raise item
            yield item
        self.sent.set()
        if self.hold is not None:
            await self.hold.wait()


class FakeImageGenerator(Generator):
    """Records prompts and returns a fixed result, or raises it."""

    name = "generate_image"
    description = "Make a picture."

    def __init__(self, result=(b"\x89PNG", "image/png")):
        self.result = result
        self.calls = []

    async def generate(self, prompt, **options):
        self.calls.append((prompt, options))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


async def settle(chat):
    """Wait for the running turn and any title request it triggered."""
    reply = await chat.wait()
    if chat._title_task is not None:
        await chat._title_task
    return reply


# ===== TEST DATA FIXTURES =====


def make_message(
    role, content: str = "", parent: Optional[Message] = None, minutes: int = 0, **kwargs
) -> Message:
    """A message created ``minutes`` after a fixed epoch."""
    kwargs.setdefault("parent_id", parent.id if parent else None)
    return Message(
        role=role,
        content=content,
        created_at=T0 + timedelta(minutes=minutes),
        **kwargs,
    )


@pytest.fixture
def sample_tree() -> Dict[str, Message]:
    """A(user) with two model replies B (older) and C (newer); D(user) under C."""
    a = make_message(USER_ROLE, "Hello", id="A")
    b = make_message(MODEL_ROLE, "Hi (first)", parent=a, minutes=1, id="B")
    c = make_message(MODEL_ROLE, "Hi (second)", parent=a, minutes=2, id="C")
    d = make_message(USER_ROLE, "Follow-up", parent=c, minutes=3, id="D")
    return {"A": a, "B": b, "C": c, "D": d}


@pytest.fixture
def sample_conversation() -> Conversation:
    return Conversation(id="conv-1")


@pytest.fixture
def transport_failure() -> TransportError:
    return TransportError("HTTP 500: upstream exploded", status_code=500)


# ===== DIRECTORY FIXTURES =====


@pytest.fixture
def temp_dir():
    """Temporary directory for file-based tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# ===== CONFIGURATION =====


def pytest_configure(config):
    """Pytest configuration."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on location."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
