"""
Error taxonomy for threadbox.

Everything raised across module boundaries derives from ThreadboxError so
the HTTP layer can map it to a status code in one place. SQLite errors are
not wrapped; they propagate as-is.
"""


class ThreadboxError(Exception):
    """Base class. `http_status` is what the API layer answers with."""

    http_status = 500

    def __init__(self, message: str, **extra):
        self.message = message
        self.extra = extra
        super().__init__(message)


class NotFoundError(ThreadboxError):
    """Missing conversation, message or parent message."""

    http_status = 404


class InvalidMessageError(ThreadboxError):
    """Operation applied to a message of the wrong role or shape."""

    http_status = 400


class ProviderError(ThreadboxError):
    """Completion backend failed or is not configured."""

    http_status = 502


class SearchError(ThreadboxError):
    """Search engine call failed."""

    http_status = 502
