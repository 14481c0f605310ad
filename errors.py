from __future__ import annotations


class ValidationError(ValueError):
    """Raised when user supplied data fails a field check."""

    def __init__(self, message: str | list[str]):
        if isinstance(message, list):
            self.errors = list(message)
            message = "; ".join(self.errors)
        else:
            self.errors = [message]
        super().__init__(message)


class NotFoundError(LookupError):
    pass


class PersistenceError(RuntimeError):
    """Raised when a store write fails or is not observable afterwards."""


class AICollaboratorError(RuntimeError):
    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status
