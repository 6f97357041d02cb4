"""
Tests for the StreamingSession state machine.

The session is driven by ScriptedLLM, which replays canned SSE bodies, so
every test controls exactly which frames arrive and in which request.
"""

import asyncio
import base64
from unittest.mock import AsyncMock

import pytest
from conftest import (
    DONE,
    FakeImageGenerator,
    ScriptedLLM,
    make_message,
    sse,
    text_chunk,
    text_reply,
    tool_call_chunks,
    usage_chunk,
)
from forkchat import config
from forkchat.exceptions import PersistenceError, TransportError
from forkchat.media import InMemory
from forkchat.models import MODEL_ROLE, USER_ROLE
from forkchat.session import SessionState, StreamingSession
from forkchat.side_channel import MediaSideChannel
from forkchat.tools import PythonTool


@pytest.fixture
def make_session(sample_conversation, temp_dir):
    """Build a session whose persisted messages are collected in a list."""

    def _make(llm, **kwargs):
        persisted = []

        async def persist(message):
            persisted.append(message.model_copy(deep=True))

        kwargs.setdefault("persist", persist)
        kwargs.setdefault("side_channel", MediaSideChannel(InMemory(), local_dir=temp_dir))
        return StreamingSession(llm, sample_conversation, **kwargs), persisted

    return _make


@pytest.fixture
def user_turn():
    return [make_message(USER_ROLE, "What's the weather?", id="u1")]


class TestTextTurn:
    @pytest.mark.asyncio
    async def test_streams_and_persists_reply(self, make_session, user_turn):
        llm = ScriptedLLM(text_reply("Sunny ", "and warm."))
        session, persisted = make_session(llm)

        in_flight = await session.start(user_turn)
        assert in_flight.role == MODEL_ROLE
        assert in_flight.parent_id == "u1"
        assert in_flight.content == ""

        reply = await session.wait()

        assert reply.id == in_flight.id
        assert reply.content == "Sunny and warm."
        assert reply.input_tokens == 10
        assert session.state == SessionState.IDLE
        assert session.in_flight is None
        assert [m.content for m in persisted] == ["Sunny and warm."]
        assert len(llm.bodies) == 1

    @pytest.mark.asyncio
    async def test_request_carries_branch_and_new_text(self, make_session, user_turn):
        llm = ScriptedLLM(text_reply("ok"))
        session, _ = make_session(llm)

        await session.start(user_turn, "And tomorrow?")
        await session.wait()

        messages = llm.bodies[0]["messages"]
        assert messages[-2:] == [
            {"role": "user", "content": "What's the weather?"},
            {"role": "user", "content": "And tomorrow?"},
        ]
        assert llm.bodies[0]["model"] == "test-model"

    @pytest.mark.asyncio
    async def test_explicit_parent(self, make_session, user_turn):
        session, _ = make_session(ScriptedLLM(text_reply("ok")))
        message = await session.start(user_turn, parent_id="elsewhere")
        await session.wait()
        assert message.parent_id == "elsewhere"

    @pytest.mark.asyncio
    async def test_user_media_selects_vision_model(self, make_session):
        image = make_message(
            USER_ROLE,
            "What is this?",
            media_url="data:image/png;base64,YWJj",
            media_mime_type="image/png",
        )
        llm = ScriptedLLM(text_reply("A cat."))
        session, _ = make_session(llm)

        await session.start([image])
        await session.wait()

        assert llm.bodies[0]["model"] == config.VISION_MODEL
        assert llm.bodies[0]["messages"][-1]["content"][0]["type"] == "image_url"

    @pytest.mark.asyncio
    async def test_thinking_is_accumulated(self, make_session, user_turn):
        frames = [
            sse({"choices": [{"delta": {"reasoning": "Let me "}}]}),
            sse({"choices": [{"delta": {"reasoning": "think."}}]}),
            text_chunk("Done."),
            DONE,
        ]
        session, _ = make_session(ScriptedLLM(frames))
        await session.start(user_turn)
        reply = await session.wait()
        assert reply.thinking_content == "Let me think."

    @pytest.mark.asyncio
    async def test_empty_reply_is_not_persisted(self, make_session, user_turn):
        session, persisted = make_session(ScriptedLLM([DONE]))
        await session.start(user_turn)
        await session.wait()
        assert persisted == []
        assert session.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_provider_error_frame_is_non_terminal(self, make_session, user_turn):
        frames = [sse({"error": {"message": "slow down"}}), text_chunk("Still here."), DONE]
        session, persisted = make_session(ScriptedLLM(frames))
        await session.start(user_turn)
        await session.wait()

        assert session.state == SessionState.IDLE
        assert session.error == "slow down"
        assert persisted[0].content == "Still here."


class TestCoalescing:
    @pytest.mark.asyncio
    async def test_updates_are_coalesced_but_complete(self, make_session, user_turn):
        llm = ScriptedLLM(text_reply("a", "b", "c"))
        session, _ = make_session(llm, coalesce_window=60)
        seen = []
        session.subscribe(lambda s: seen.append(s.in_flight.content if s.in_flight else None))

        await session.start(user_turn)
        reply = await session.wait()

        assert "a" in seen
        assert "ab" not in seen
        assert reply.content == "abc"

    @pytest.mark.asyncio
    async def test_buffered_text_surfaces_while_stream_stalls(self, make_session, user_turn):
        llm = ScriptedLLM([text_chunk("Hello"), text_chunk(" world")])
        llm.hold = asyncio.Event()
        session, _ = make_session(llm, coalesce_window=0.05)
        seen = []
        session.subscribe(lambda s: seen.append(s.in_flight.content if s.in_flight else None))

        await session.start(user_turn)
        await llm.sent.wait()
        await asyncio.sleep(0.3)

        assert session.state == SessionState.STREAMING
        assert session.in_flight.content == "Hello world"
        assert "Hello world" in seen

        await session.stop()
        assert session.state == SessionState.CANCELLED

    @pytest.mark.asyncio
    async def test_no_late_flush_after_stop(self, make_session, user_turn):
        llm = ScriptedLLM([text_chunk("Hello"), text_chunk(" world")])
        llm.hold = asyncio.Event()
        session, _ = make_session(llm, coalesce_window=0.2)
        states = []

        await session.start(user_turn)
        await llm.sent.wait()
        await session.stop()
        session.subscribe(lambda s: states.append(s.state))
        await asyncio.sleep(0.3)

        assert states == []
        assert session.last_message.content == "Hello world"


class TestToolRounds:
    @pytest.fixture
    def weather_tool(self):
        calls = []

        def lookup(city: str) -> str:
            calls.append(city)
            return "sunny"

        tool = PythonTool([lookup])
        tool.calls = calls
        return tool

    @pytest.mark.asyncio
    async def test_tool_round_then_answer(self, make_session, user_turn, weather_tool):
        llm = ScriptedLLM(
            tool_call_chunks("call_1", "lookup", '{"city": "Oslo"}') + [usage_chunk(10, 2), DONE],
            text_reply("It is sunny in Oslo."),
        )
        session, persisted = make_session(llm, tools=weather_tool)
        states = []
        session.subscribe(lambda s: states.append(s.state))

        await session.start(user_turn)
        reply = await session.wait()

        assert weather_tool.calls == ["Oslo"]
        assert reply.content == "It is sunny in Oslo."
        assert (reply.input_tokens, reply.output_tokens) == (20, 3)
        assert SessionState.TOOL_EXECUTION in states
        assert states[-1] == SessionState.IDLE
        assert len(persisted) == 1

        assert llm.bodies[0]["tools"][0]["function"]["name"] == "lookup"
        second = llm.bodies[1]["messages"]
        assert second[-2]["role"] == "assistant"
        assert second[-2]["content"] is None
        assert second[-2]["tool_calls"][0]["function"]["arguments"] == '{"city": "Oslo"}'
        assert second[-1] == {"role": "tool", "content": "sunny", "tool_call_id": "call_1"}

    @pytest.mark.asyncio
    async def test_tool_rounds_are_capped(self, make_session, user_turn, weather_tool):
        llm = ScriptedLLM(tool_call_chunks("call", "lookup", '{"city": "Oslo"}') + [DONE])
        session, persisted = make_session(llm, tools=weather_tool)

        await session.start(user_turn)
        await session.wait()

        assert len(llm.bodies) == 1 + config.MAX_TOOL_ROUNDS
        assert len(weather_tool.calls) == config.MAX_TOOL_ROUNDS
        assert session.state == SessionState.IDLE
        assert persisted == []

    @pytest.mark.asyncio
    async def test_tool_errors_are_fed_back(self, make_session, user_turn):
        llm = ScriptedLLM(
            tool_call_chunks("call_1", "missing_tool", "{}") + [DONE],
            text_reply("Sorry."),
        )
        session, _ = make_session(llm)

        await session.start(user_turn)
        await session.wait()

        assert llm.bodies[1]["messages"][-1]["content"] == "Error: Unknown tool 'missing_tool'"

    @pytest.mark.asyncio
    async def test_calls_go_through_execute_tool_call(
        self, make_session, user_turn, weather_tool
    ):
        spy = AsyncMock(wraps=weather_tool.execute_tool_call)
        weather_tool.execute_tool_call = spy
        llm = ScriptedLLM(
            tool_call_chunks("call_7", "lookup", '{"city": "Rome"}') + [DONE],
            text_reply("Sunny."),
        )
        session, _ = make_session(llm, tools=weather_tool)

        await session.start(user_turn)
        await session.wait()

        call = spy.await_args.args[0]
        assert (call.id, call.function_name) == ("call_7", "lookup")
        assert llm.bodies[1]["messages"][-1] == {
            "role": "tool",
            "content": "sunny",
            "tool_call_id": "call_7",
        }

    @pytest.mark.asyncio
    async def test_generator_call_attaches_media(self, make_session, user_turn, temp_dir):
        generator = FakeImageGenerator()
        channel = MediaSideChannel(InMemory(), local_dir=temp_dir, generators=[generator])
        llm = ScriptedLLM(
            tool_call_chunks("call_1", "generate_image", '{"prompt": "a cat"}') + [DONE],
            text_reply("Here is your cat."),
        )
        session, persisted = make_session(llm, side_channel=channel)

        message = await session.start(user_turn)
        reply = await session.wait()

        assert generator.calls == [("a cat", {})]
        assert reply.media_url == f"media/conv-1/{message.id}.png"
        assert reply.media_mime_type == "image/png"
        assert "image/png" in llm.bodies[1]["messages"][-1]["content"]
        assert llm.bodies[0]["tools"][0]["function"]["name"] == "generate_image"
        assert persisted[0].media_url == reply.media_url


class TestMedia:
    @pytest.mark.asyncio
    async def test_inline_image_is_attached(self, make_session, user_turn):
        url = "data:image/png;base64," + base64.b64encode(b"PNGDATA").decode()
        frames = [
            sse({"choices": [{"delta": {"images": [{"image_url": {"url": url}}]}}]}),
            DONE,
        ]
        session, persisted = make_session(ScriptedLLM(frames))

        message = await session.start(user_turn)
        reply = await session.wait()

        assert reply.media_url == f"media/conv-1/{message.id}.png"
        assert reply.content == ""
        assert len(persisted) == 1


class TestStop:
    @pytest.mark.asyncio
    async def test_partial_text_is_persisted_once(self, make_session, user_turn):
        llm = ScriptedLLM([text_chunk("partial "), text_chunk("answer")])
        llm.hold = asyncio.Event()
        session, persisted = make_session(llm)

        await session.start(user_turn)
        await llm.sent.wait()
        await session.stop()
        await session.stop()

        assert session.state == SessionState.CANCELLED
        assert [m.content for m in persisted] == ["partial answer"]
        assert session.in_flight is None
        assert session.last_message.content == "partial answer"

    @pytest.mark.asyncio
    async def test_empty_cancel_persists_nothing(self, make_session, user_turn):
        llm = ScriptedLLM([])
        llm.hold = asyncio.Event()
        session, persisted = make_session(llm)

        await session.start(user_turn)
        await llm.sent.wait()
        await session.stop()

        assert session.state == SessionState.CANCELLED
        assert persisted == []

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_a_no_op(self, make_session):
        session, persisted = make_session(ScriptedLLM())
        await session.stop()
        assert session.state == SessionState.IDLE
        assert persisted == []

    @pytest.mark.asyncio
    async def test_start_stops_the_previous_turn(self, make_session, user_turn):
        llm = ScriptedLLM([text_chunk("first draft")], text_reply("second"))
        llm.hold = asyncio.Event()
        session, persisted = make_session(llm)

        first = await session.start(user_turn)
        await llm.sent.wait()
        llm.hold = None
        second = await session.start(user_turn)
        reply = await session.wait()

        assert first.id != second.id
        assert reply.id == second.id
        assert [m.content for m in persisted] == ["first draft", "second"]

    @pytest.mark.asyncio
    async def test_cancelled_message_is_not_mutated_later(self, make_session, user_turn):
        llm = ScriptedLLM([text_chunk("kept")])
        llm.hold = asyncio.Event()
        session, _ = make_session(llm)

        message = await session.start(user_turn)
        await llm.sent.wait()
        await session.stop()
        llm.hold.set()
        await asyncio.sleep(0)

        assert message.content == "kept"


class TestFailure:
    @pytest.mark.asyncio
    async def test_transport_error_fails_and_keeps_partial(
        self, make_session, user_turn, transport_failure
    ):
        session, persisted = make_session(ScriptedLLM([text_chunk("half"), transport_failure]))

        await session.start(user_turn)
        await session.wait()

        assert session.state == SessionState.FAILED
        assert session.error == "HTTP 500: upstream exploded"
        assert [m.content for m in persisted] == ["half"]
        assert session.in_flight is None

    @pytest.mark.asyncio
    async def test_failure_without_content_persists_nothing(self, make_session, user_turn):
        session, persisted = make_session(ScriptedLLM([TransportError("refused")]))
        await session.start(user_turn)
        await session.wait()
        assert session.state == SessionState.FAILED
        assert persisted == []

    @pytest.mark.asyncio
    async def test_next_start_clears_error(self, make_session, user_turn):
        llm = ScriptedLLM([TransportError("refused")], text_reply("fine"))
        session, _ = make_session(llm)
        await session.start(user_turn)
        await session.wait()

        await session.start(user_turn)
        assert session.error is None
        await session.wait()
        assert session.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_unknown_event_fails_the_turn(self, make_session, user_turn, monkeypatch):
        async def bogus_decode(byte_stream):
            yield object()

        monkeypatch.setattr("forkchat.session.decode", bogus_decode)
        session, _ = make_session(ScriptedLLM())
        await session.start(user_turn)
        await session.wait()

        assert session.state == SessionState.FAILED
        assert "Unknown stream event" in session.error
        assert session.in_flight is None

    @pytest.mark.asyncio
    async def test_unexpected_stream_error_fails_and_keeps_partial(
        self, make_session, user_turn
    ):
        llm = ScriptedLLM([text_chunk("half"), RuntimeError("socket closed")])
        session, persisted = make_session(llm)

        await session.start(user_turn)
        reply = await session.wait()

        assert session.state == SessionState.FAILED
        assert session.error == "socket closed"
        assert [m.content for m in persisted] == ["half"]
        assert reply.content == "half"
        assert session.in_flight is None

    @pytest.mark.asyncio
    async def test_persistence_error_is_recorded(self, sample_conversation, user_turn):
        async def persist(message):
            raise PersistenceError("disk full")

        session = StreamingSession(
            ScriptedLLM(text_reply("hello")), sample_conversation, persist=persist
        )
        await session.start(user_turn)
        reply = await session.wait()

        assert session.error == "disk full"
        assert reply.content == "hello"
        assert session.state == SessionState.IDLE


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_unsubscribe(self, make_session, user_turn):
        session, _ = make_session(ScriptedLLM(text_reply("x")))
        calls = []
        unsubscribe = session.subscribe(lambda s: calls.append(s.state))
        unsubscribe()

        await session.start(user_turn)
        await session.wait()
        assert calls == []

    @pytest.mark.asyncio
    async def test_listener_sees_state_changes(self, make_session, user_turn):
        session, _ = make_session(ScriptedLLM(text_reply("x")))
        states = []
        session.subscribe(lambda s: states.append(s.state))

        await session.start(user_turn)
        await session.wait()

        assert states[0] == SessionState.STREAMING
        assert SessionState.FINALIZING in states
        assert states[-1] == SessionState.IDLE
