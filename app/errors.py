"""
Error taxonomy for the chat service.

Every failure that leaves the chat engine is one of these classes. The HTTP
layer reads ``status_code`` and ``public_message`` to build the response and
``log_level`` to decide how loudly to log it.

- 4xx kinds carry precise, user-facing messages and are never retried.
- 5xx kinds (storage, schema, timeout) expose a generic message only; the
  underlying cause is chained and logged server-side. Callers may retry them
  with backoff.
"""

import logging
from typing import Optional


class ChatError(Exception):
    """Base class for all chat engine errors."""

    status_code = 500
    log_level = logging.ERROR
    retryable = False
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def public_message(self) -> str:
        """Message safe to return to the client."""
        if self.status_code >= 500:
            return self.default_message
        return self.message


class ValidationError(ChatError):
    """Bad input: empty or oversized content, malformed identifiers."""

    status_code = 400
    log_level = logging.WARNING
    default_message = "Invalid request"


class UnauthorizedError(ChatError):
    """Missing or invalid credentials."""

    status_code = 401
    log_level = logging.WARNING
    default_message = "Unauthorized"


class ForbiddenError(ChatError):
    """Authenticated, but not allowed to touch this room or message."""

    status_code = 403
    log_level = logging.WARNING
    default_message = "Forbidden"


class NotFoundError(ChatError):
    """Missing room, sender or message."""

    status_code = 404
    log_level = logging.WARNING
    default_message = "Not found"


class StorageError(ChatError):
    """Infrastructure failure talking to the database."""

    retryable = True


class SchemaError(StorageError):
    """Message tables or indexes could not be provisioned."""


class StorageTimeoutError(StorageError, TimeoutError):
    """A store or membership call exceeded its deadline."""

    status_code = 504
    default_message = "Request timed out"
