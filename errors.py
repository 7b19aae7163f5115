"""
Domain errors for the messaging core.

Every failure a client can trigger is one of these. Handlers convert them to
an HTTP error response or to an ``error`` socket event for the originating
connection only; nothing here is ever broadcast.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class ChatError(Exception):
    """Base class for all messaging errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.code = self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={"message": self.message, "code": self.code, "details": self.details},
        )

    def to_event(self) -> Dict[str, Any]:
        return {"event": "error", "data": {"message": self.message, "code": self.code}}


class AuthenticationFailure(ChatError):
    """Missing, malformed, expired or unknown-subject bearer token."""

    status_code = status.HTTP_401_UNAUTHORIZED


class NotFound(ChatError):
    """
    Referenced conversation or message does not exist.

    Also raised when it exists but the requester is not a participant, so
    callers cannot probe for other people's conversations.
    """

    status_code = status.HTTP_404_NOT_FOUND


class NotAuthorized(ChatError):
    """Requester is a participant but may not perform this action."""

    status_code = status.HTTP_403_FORBIDDEN


class ValidationFailure(ChatError):
    status_code = status.HTTP_400_BAD_REQUEST


class TransientStorageFailure(ChatError):
    """The document store is unreachable or rejected a write."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
