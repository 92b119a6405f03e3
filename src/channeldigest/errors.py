"""Exception hierarchy shared by the engine and its adapters."""

from __future__ import annotations


class DigestError(Exception):
    """Base class for all channeldigest errors."""


class InvalidScheduleError(DigestError, ValueError):
    """Raised when a digest schedule cannot be parsed or validated."""


class RepositoryError(DigestError):
    """Transient storage failure surfaced by a repository adapter."""


class PosterError(DigestError):
    """The delivery sink rejected or failed to send a message."""


class LLMError(DigestError):
    """The LLM gateway failed to produce a usable response."""
