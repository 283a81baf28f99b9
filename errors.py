#!/usr/bin/env python3
"""Common error types shared across modules.

Every feed-cycle failure derives from FeedPollerError so the poller can isolate
one bad feed from the rest of a run with a single except clause.
"""

from typing import Dict, Any, List, Optional


class FeedPollerError(Exception):
    """Base class for errors that abort a single feed's poll cycle.

    Attributes:
        details: Optional payload for diagnostics.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class DecodeError(FeedPollerError):
    """Raised when a payload cannot be parsed as any supported feed dialect.

    Attributes:
        attempts: The per-dialect failures, in the order they were tried.
    """

    def __init__(self, message: str = "unable to parse as RSS, RDF, or Atom",
                 attempts: Optional[List["DecodeError"]] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.attempts = list(attempts or [])

    def __str__(self) -> str:
        message = super().__str__()
        if not self.attempts:
            return message
        return f"{message}: " + "; ".join(str(a) for a in self.attempts)


class MalformedInput(DecodeError):
    """The payload is not recognizable XML at all."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class DialectMismatch(DecodeError):
    """One dialect's parse attempt failed (wrong root element, missing structure)."""

    def __init__(self, dialect: str, reason: str):
        super().__init__(f"{dialect}: {reason}", details={"dialect": dialect})
        self.dialect = dialect
        self.reason = reason


class FetchError(FeedPollerError):
    """Network, timeout, or HTTP status failure while retrieving a feed.

    Attributes:
        uri: The URI that was requested.
        status: HTTP status when a response was received.
        payload: Response body, captured even for non-2xx responses.
    """

    def __init__(self, message: str, uri: Optional[str] = None, status: Optional[int] = None,
                 payload: Optional[bytes] = None):
        super().__init__(message, details={"uri": uri, "status": status})
        self.uri = uri
        self.status = status
        self.payload = payload


class PersistenceError(FeedPollerError):
    """A database operation failed."""

    def __init__(self, operation: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"{operation}: {message}", details)
        self.operation = operation


class SanityViolation(FeedPollerError):
    """A fetched batch is malformed or self-contradictory and must not be admitted."""


class InvariantViolation(FeedPollerError):
    """Stored state contradicts what the admission logic just observed."""


class UnknownFeedError(FeedPollerError):
    """A feed named on the command line is not registered or not active."""


__all__ = [
    "FeedPollerError",
    "DecodeError",
    "MalformedInput",
    "DialectMismatch",
    "FetchError",
    "PersistenceError",
    "SanityViolation",
    "InvariantViolation",
    "UnknownFeedError",
]
