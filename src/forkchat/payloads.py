"""Build outgoing chat-completion requests from a conversation branch."""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from . import config
from .exceptions import MediaError
from .media import to_data_url
from .models import Conversation, Message, MessagePayload, Role, ToolCall

logger = logging.getLogger(__name__)

MediaLoader = Callable[[str, str], Awaitable[bytes]]


async def build_payloads(
    branch: List[Message], load_media: Optional[MediaLoader] = None
) -> List[MessagePayload]:
    """One payload per branch message, preserving role and text.

    Media is re-sent only for user turns; media the model or a tool produced
    stays out of the request. A user attachment that cannot be loaded is
    dropped and the turn is sent as text.
    """
    payloads = []
    for message in branch:
        payload = MessagePayload(
            role=message.role,
            text=message.content,
            tool_calls=message.tool_calls,
            tool_call_id=message.tool_call_id,
        )
        if (
            message.role == Role.USER
            and message.media_url
            and message.media_mime_type
            and load_media is not None
        ):
            try:
                payload.media_data = await load_media(
                    message.media_url, message.media_mime_type
                )
                payload.media_mime_type = message.media_mime_type
            except MediaError as e:
                logger.warning("Sending message %s without its media: %s", message.id, e)
        payloads.append(payload)
    return payloads


def choose_model(
    conversation: Conversation, payloads: List[MessagePayload], default_model: str
) -> str:
    """Use the vision model whenever a user turn carries media."""
    if any(p.role == Role.USER and p.media_data is not None for p in payloads):
        return config.VISION_MODEL
    return conversation.model or default_model


def _wire_tool_call(call: ToolCall) -> Dict[str, Any]:
    return {
        "id": call.id,
        "type": "function",
        "function": {"name": call.function_name, "arguments": call.function_args},
    }


def to_wire(payload: MessagePayload) -> Dict[str, Any]:
    """Encode a payload as an OpenAI-compatible request message."""
    role = "assistant" if payload.role == Role.MODEL else payload.role.value

    if role == "tool" and payload.tool_call_id:
        return {"role": "tool", "content": payload.text, "tool_call_id": payload.tool_call_id}

    if payload.tool_calls:
        return tool_call_message(payload.tool_calls)

    if payload.media_data is not None and payload.media_mime_type:
        parts: List[Dict[str, Any]] = [
            {
                "type": "image_url",
                "image_url": {"url": to_data_url(payload.media_data, payload.media_mime_type)},
            }
        ]
        if payload.text:
            parts.append({"type": "text", "text": payload.text})
        return {"role": role, "content": parts}

    return {"role": role, "content": payload.text}


def tool_call_message(calls: List[ToolCall]) -> Dict[str, Any]:
    # The provider requires an explicit null content next to tool_calls
    return {
        "role": "assistant",
        "content": None,
        "tool_calls": [_wire_tool_call(call) for call in calls],
    }


def tool_result_message(tool_call_id: str, result: str) -> Dict[str, Any]:
    return {"role": "tool", "content": result, "tool_call_id": tool_call_id}


def build_request_body(
    conversation: Conversation,
    messages: List[Dict[str, Any]],
    *,
    model: str,
    tools: Optional[List[Dict[str, Any]]] = None,
    stream: bool = True,
) -> Dict[str, Any]:
    """Assemble the full request body for one streamed completion."""
    request_messages = []
    if conversation.system_instruction:
        request_messages.append(
            {"role": "system", "content": conversation.system_instruction}
        )
    request_messages.extend(messages)

    body: Dict[str, Any] = {
        "model": model,
        "messages": request_messages,
        "temperature": conversation.temperature,
        "top_p": conversation.top_p,
        "top_k": conversation.top_k,
        "max_tokens": conversation.max_output_tokens,
        "stream": stream,
    }
    if stream:
        body["stream_options"] = {"include_usage": True}
    if tools:
        body["tools"] = tools
        body["tool_choice"] = "auto"
    if conversation.thinking_budget:
        body["reasoning"] = {"max_tokens": conversation.thinking_budget}
    if conversation.web_search_enabled:
        body["plugins"] = [{"id": "web"}]
    return body
