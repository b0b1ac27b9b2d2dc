class TaskValidationError(ValueError):
    """A task spec was rejected by the client; nothing was written."""


class StoreConnectionError(Exception):
    """Redis could not be reached or refused our credentials."""

    def __init__(self, message: str, cause: Exception | None = None):
        self.cause = cause
        super().__init__(message)
