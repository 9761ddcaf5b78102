from __future__ import annotations


class ReplayError(Exception):
    """Base class for replay engine errors."""


class NotFoundError(ReplayError, LookupError):
    """A session, position, or candle range does not exist."""


class InvalidInputError(ReplayError, ValueError):
    """Rejected input; raised before any state is mutated."""
