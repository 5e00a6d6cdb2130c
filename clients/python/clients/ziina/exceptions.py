class ZiinaClientError(Exception):
    """Base exception for ZiinaClient."""
    pass


class ZiinaNotConfiguredError(ZiinaClientError):
    """Raised when no access token is configured."""
    pass


class ZiinaAPIError(ZiinaClientError):
    """Raised when the Ziina API is unreachable or answers with an error."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status
