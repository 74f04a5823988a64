"""Connect-related exceptions."""

from .base import AuthorizationError, BaseAppException, ConflictError, NotFoundError


class DuplicateConnectionRequestError(ConflictError):
    """Raised when a user already has an open request or a live connection."""

    def __init__(self, message: str = "You already have an active connection request"):
        BaseAppException.__init__(
            self, message=message, status_code=409, error_code="DUPLICATE_CONNECTION_REQUEST"
        )


class ActiveConnectionNotFoundError(NotFoundError):
    """Raised when an active connection no longer exists."""

    def __init__(self, message: str = "Connection not found"):
        super().__init__(message=message)


class NotAParticipantError(AuthorizationError):
    """Raised when a user acts on a connection they are not part of."""

    def __init__(self, message: str = "You are not a participant of this connection"):
        super().__init__(message=message)


class InvalidSessionTransitionError(BaseAppException):
    """Raised when a session action is not allowed in the current state."""

    def __init__(self, state: str, event: str):
        self.state = state
        self.event = event
        super().__init__(
            message=f"Cannot apply '{event}' while session is '{state}'",
            status_code=409,
            error_code="INVALID_SESSION_TRANSITION",
            details={"state": state, "event": event},
        )
