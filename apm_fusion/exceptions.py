from fastapi import HTTPException


class APMFusionError(HTTPException):
    """Base exception for the APM fusion engine.

    This exception and its subclasses can be configured to expose their
    messages to the client safely.
    """

    def __init__(self, message: str, user_facing: bool = False, status_code: int = 500):
        """Initialize the APM fusion error.

        Args:
            message: The error message.
            user_facing: Whether the message is safe to show to the user.
            status_code: The HTTP status code to return.
        """
        super().__init__(status_code=status_code, detail=message)
        self.message = message
        self.user_facing = user_facing
        self.status_code = status_code

    def __str__(self) -> str:
        return self.message


class UserFacingError(APMFusionError):
    """Exception that is safe to expose to the client."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize a user-facing error."""
        super().__init__(message, user_facing=True, status_code=status_code)


class BackendUnavailableError(UserFacingError):
    """Raised when a query backend fails, times out or is unreachable.

    ``source`` names what was being fetched: a metric kind such as ``p99``
    or the structural listing that failed.
    """

    def __init__(self, message: str, source: str | None = None):
        """Initialize a backend error."""
        super().__init__(message, status_code=502)
        self.source = source


class FusionSupersededError(UserFacingError):
    """Raised to the caller of a fusion cycle that a newer refresh replaced."""

    def __init__(self, message: str = "Fusion cycle superseded by a newer refresh"):
        """Initialize a superseded error."""
        super().__init__(message, status_code=409)


class InvalidProjectionError(UserFacingError):
    """Raised for an unknown sort field or an unsupported page size."""

    def __init__(self, message: str):
        """Initialize a projection error."""
        super().__init__(message, status_code=400)
