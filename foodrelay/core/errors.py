# foodrelay/core/errors.py
from typing import Optional


class DispatchError(Exception):
    """Base for every error the core raises to the request layer."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message}


class ValidationError(DispatchError):
    status_code = 400


class NotFoundError(DispatchError):
    status_code = 404


class AuthorizationError(DispatchError):
    status_code = 401


class InvalidTransitionError(DispatchError):
    status_code = 400

    def __init__(self, message: str, current: Optional[dict] = None):
        super().__init__(message)
        self.current = current or {}

    def to_dict(self) -> dict:
        return {"detail": self.message, "current": self.current}


class NotAvailableError(InvalidTransitionError):
    def __init__(self, message: str = "Donation is no longer available", current: Optional[dict] = None):
        super().__init__(message, current)


class LocationUnavailableError(DispatchError):
    status_code = 400

    def __init__(self, message: str = "Volunteer location not available"):
        super().__init__(message)


class ExternalProviderError(DispatchError):
    status_code = 502


class SchedulerTaskError(DispatchError):
    status_code = 500

    def __init__(self, task: str, cause: BaseException):
        super().__init__(f"Task {task!r} failed: {cause}")
        self.task = task
        self.cause = cause
