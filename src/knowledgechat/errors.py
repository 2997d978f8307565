"""Error taxonomy shared by extractors, stores and the service layer."""
from __future__ import annotations


class KnowledgeChatError(Exception):
    """Base class. `message` is safe to show to the end user."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = str(message)


class ValidationError(KnowledgeChatError):
    """Bad user input: wrong file type, empty field, malformed email, bad seat limit."""


class ExtractionError(KnowledgeChatError):
    """A PDF or page could not be turned into text."""


class FetchError(ExtractionError):
    """URL fetch refused or failed: disallowed host/protocol, non-2xx, non-HTML."""


class RemoteServiceError(KnowledgeChatError):
    """Hosted model unreachable, failing or returning an unusable payload.

    Never shown to users; callers substitute the local fallback.
    """


class PersistenceError(KnowledgeChatError):
    """Document database or blob store write/delete failed."""


class AuthorizationError(KnowledgeChatError):
    """Seat limit reached, missing company, or other access refusal."""
