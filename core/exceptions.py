"""Exceptions raised by the Lambda container.

The invocation loop is the only place these are caught; it hands every
failure to the configured ExceptionHandler, which decides the status code
the caller sees.
"""


class ContainerInitializationError(Exception):
    """Raised when the container cannot register the dispatch filter."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class InvalidRequestEventError(Exception):
    """Raised when an incoming Lambda event cannot be turned into a request."""

    pass


class InvalidResponseObjectError(Exception):
    """Raised when a container response cannot be written back as a reply."""

    pass


class InternalServerError(Exception):
    """Raised for container faults that should surface as a 500."""

    pass
