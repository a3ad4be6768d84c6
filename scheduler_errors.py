from typing import Optional


class SchedulerError(RuntimeError):
    """Base class for failures reported by the AIS site or the scheduling engine."""


class LoginError(SchedulerError):
    pass


class InvalidCredentialsError(LoginError):
    def __init__(self, message: str = "Invalid email or password.") -> None:
        super().__init__(message)


class LoginVerificationError(LoginError):
    def __init__(self, message: str = "Login failed - redirected back to sign in") -> None:
        super().__init__(message)


class RateLimitedError(SchedulerError):
    def __init__(self, message: str = "RATE_LIMITED") -> None:
        super().__init__(message)


class SessionExpiredError(SchedulerError):
    def __init__(self, message: str = "SESSION_EXPIRED") -> None:
        super().__init__(message)


class CsrfExpiredError(SchedulerError):
    def __init__(self, message: str = "CSRF_EXPIRED") -> None:
        super().__init__(message)


class HttpStatusError(SchedulerError):
    def __init__(self, status: int, message: Optional[str] = None) -> None:
        super().__init__(message or f"HTTP {status}")
        self.status = status


class ParseError(SchedulerError):
    pass


class TransportError(SchedulerError):
    """Network-level failure, tagged with how the retry policy saw it."""

    def __init__(
        self,
        message: str,
        *,
        socket_error: bool = False,
        retries_exhausted: bool = False,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.socket_error = socket_error
        self.retries_exhausted = retries_exhausted
        self.attempts = attempts


class JobNotFoundError(KeyError):
    def __str__(self) -> str:
        return f"Job not found: {self.args[0]}" if self.args else "Job not found"


class JobAlreadyRunningError(RuntimeError):
    pass
