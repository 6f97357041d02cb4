"""Forkchat exception hierarchy.

Every error raised by a pillar derives from ForkchatError and carries a
correlation_id so a failure can be followed from the transport up to the
controller's user-visible ``error``.

Usage:
    from forkchat.exceptions import PersistenceError

    try:
        await store.add_message(conversation_id, message)
    except PersistenceError as e:
        logger.error("Save failed (%s): %s", e.correlation_id, e)
"""

import uuid
from typing import Optional


class ForkchatError(Exception):
    """Base exception for all Forkchat errors."""

    def __init__(self, message: str, *, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        super().__init__(message)


class TransportError(ForkchatError):
    """Network failure or non-2xx response from the LLM provider."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, **kwargs):
        self.status_code = status_code
        super().__init__(message, **kwargs)


class PersistenceError(ForkchatError):
    """A store read or write failed."""

    pass


class MediaError(ForkchatError):
    """Media could not be uploaded, downloaded or decoded."""

    pass


class MediaTooLargeError(MediaError):
    """Downloaded media exceeded its byte ceiling."""

    def __init__(self, size: int, limit: int, **kwargs):
        self.size = size
        self.limit = limit
        super().__init__(
            f"File is {size / 1_048_576:.1f} MB, limit is {limit / 1_048_576:.0f} MB",
            **kwargs,
        )


class GenerationError(ForkchatError):
    """A side-channel image or video job failed or timed out."""

    def __init__(self, message: str, *, timeout: bool = False, **kwargs):
        self.timeout = timeout
        super().__init__(message, **kwargs)


class ConfigurationError(ForkchatError):
    """A pillar is missing required configuration."""

    pass
