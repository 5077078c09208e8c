from __future__ import annotations

from typing import Optional


class AIRenderError(Exception):
    """Base class for failures raised by the completion pipeline."""

    status_code = 500


class InvalidIntent(AIRenderError):
    """Caller props do not describe a usable generation request."""

    status_code = 422


class StoreUnavailable(AIRenderError):
    """The memo store could not be read or written.

    Never treated as a cache miss: the request fails instead.
    """

    status_code = 503


class GenerationFailed(AIRenderError):
    """The chat-completion backend rejected or failed the request."""

    status_code = 502

    def __init__(self, message: str, *, backend_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.backend_status = backend_status


class StructuredParseFailed(AIRenderError):
    """The completion payload was not valid JSON.

    Non-fatal: the invoker keeps the raw text and records the message on the
    completion record as ``parseError``.
    """
