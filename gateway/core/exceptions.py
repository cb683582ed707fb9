from fastapi import HTTPException, status
from typing import Optional

class AuthenticationMissing(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )

class RateLimiterUnavailable(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Rate limiter is unavailable, please try again later"
        )

class RateLimitExceeded(Exception):
    """Raised when a user has used up the requests of the current window"""

    def __init__(self, reset: int):
        self.reset = reset
        super().__init__(f"Rate limit exceeded until {reset}")

class BackendStreamError(Exception):
    """The inference backend failed while producing the completion stream"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)

class PersistenceFailure(Exception):
    """Writing a finished chat record or its user index failed"""
