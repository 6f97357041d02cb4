"""Route media produced during a turn to storage, and load it back.

Media can reach a reply two ways: inline images streamed by the model, and
the output of a generator the model invoked as a tool. Either way the bytes
are attached here and the reply only keeps the returned reference.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from . import config
from .exceptions import MediaError, MediaTooLargeError
from .generation import Generator
from .media import Media, extension_for, parse_data_url, to_data_url
from .models import MediaRef, ToolCall

logger = logging.getLogger(__name__)


class MediaSideChannel:
    """Attach, load and generate message media.

    Parameters
    ----------
    media : Media, optional
        The media store. When absent, or when an upload fails, media is
        written below ``local_dir`` instead, and as a last resort embedded
        as a data URL.
    local_dir : str or Path, optional
        Fallback directory for media copies.
    generators : list of Generator, optional
        Generators advertised to the model as tools.
    """

    def __init__(
        self,
        media: Optional[Media] = None,
        local_dir=None,
        generators: Optional[List[Generator]] = None,
    ):
        self.media = media
        self.local_dir = Path(local_dir) if local_dir else config.LOCAL_MEDIA_DIR
        self.generators: Dict[str, Generator] = {g.name: g for g in generators or []}

    def definitions(self) -> List[Dict[str, Any]]:
        return [g.definition() for g in self.generators.values()]

    def handles(self, name: str) -> bool:
        return name in self.generators

    async def attach(
        self, data: bytes, mime_type: str, *, conversation_id: str, message_id: str
    ) -> MediaRef:
        """Store media and return a reference to it. Never raises."""
        if self.media is not None:
            try:
                url = await self.media.upload(
                    data, mime_type, conversation_id=conversation_id, message_id=message_id
                )
                return MediaRef(url=url, mime_type=mime_type)
            except MediaError as e:
                logger.warning("Media upload failed, falling back to a local copy: %s", e)

        target = self.local_dir / conversation_id / f"{message_id}.{extension_for(mime_type)}"
        try:
            await asyncio.to_thread(self._write_local, target, data)
            return MediaRef(url=str(target), mime_type=mime_type)
        except OSError as e:
            logger.warning("Local media copy failed, embedding as data URL: %s", e)

        return MediaRef(url=to_data_url(data, mime_type), mime_type=mime_type)

    @staticmethod
    def _write_local(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def load(self, url: str, mime_type: str) -> bytes:
        """The bytes behind a media reference, within the ceiling for its type."""
        max_bytes = config.max_bytes_for(mime_type)
        if url.startswith("data:"):
            data, _ = parse_data_url(url)
            if len(data) > max_bytes:
                raise MediaTooLargeError(len(data), max_bytes)
            return data

        local = Path(url)
        if local.is_absolute() and local.is_file():
            try:
                size = local.stat().st_size
                if size > max_bytes:
                    raise MediaTooLargeError(size, max_bytes)
                return await asyncio.to_thread(local.read_bytes)
            except OSError as e:
                raise MediaError(f"Could not read local media: {e}") from e

        if self.media is None:
            raise MediaError(f"No media store configured to load {url}")
        return await self.media.download(url, max_bytes=max_bytes)

    async def generate(
        self, call: ToolCall, *, conversation_id: str, message_id: str
    ) -> Tuple[Optional[MediaRef], str]:
        """Run the generator named by ``call``.

        Returns the attached media (None on failure) and the text fed back
        to the model as the tool result.
        """
        generator = self.generators.get(call.function_name)
        if generator is None:
            return None, f"Error: Unknown tool '{call.function_name}'"

        try:
            arguments = json.loads(call.function_args) if call.function_args.strip() else {}
            if not isinstance(arguments, dict):
                raise ValueError("arguments must be a JSON object")
            prompt = arguments.pop("prompt")
            data, mime_type = await generator.generate(prompt, **arguments)
        except Exception as e:
            logger.warning("Generator %s failed: %s", call.function_name, e)
            return None, f"Error executing {call.function_name}: {e}"

        ref = await self.attach(
            data, mime_type, conversation_id=conversation_id, message_id=message_id
        )
        logger.info("Generator %s attached %d bytes of %s", call.function_name, len(data), mime_type)
        return ref, (
            f"Generated {mime_type} media ({len(data)} bytes); "
            "it is already shown to the user alongside this reply."
        )
