"""Accumulate streamed tool-call fragments into complete calls.

OpenAI-compatible providers send tool calls as incremental chunks keyed by
``index``: the id and function name arrive once, while ``function.arguments``
arrives as a token-by-token partial JSON string that is only valid once every
fragment has been concatenated.
"""

from typing import Dict, List, Optional

from .models import ToolCall


class ToolCallAccumulator:
    def __init__(self):
        self._calls: Dict[int, Dict[str, str]] = {}

    def update(
        self,
        index: int,
        id: Optional[str] = None,
        name: Optional[str] = None,
        arguments: Optional[str] = None,
    ) -> None:
        """Merge one fragment into the call at ``index``."""
        call = self._calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
        if id:
            call["id"] = id
        if name:
            call["name"] = name
        if arguments:
            call["arguments"] += arguments

    def finalize(self) -> List[ToolCall]:
        """Return the accumulated calls ordered by index.

        Only call this once the provider has signalled the end of the
        tool-call phase; earlier calls return truncated arguments.
        """
        return [
            ToolCall(
                id=call["id"],
                function_name=call["name"],
                function_args=call["arguments"],
            )
            for _, call in sorted(self._calls.items())
        ]

    def reset(self) -> None:
        self._calls.clear()

    def __len__(self) -> int:
        return len(self._calls)
