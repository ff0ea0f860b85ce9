"""
Error taxonomy for the contact sync API.

Each exception carries the HTTP status it maps to; server.py registers one
handler per class. Anything not listed here surfaces as an opaque 500.
"""


class ContactSyncError(Exception):
    """Base class for errors that map onto an HTTP response."""
    status_code = 500
    public_message = "Internal Server Error"

    def __init__(self, message: str = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class ValidationError(ContactSyncError):
    """A required field (customerId, externalId, ...) is missing or malformed."""
    status_code = 400
    public_message = "Missing required fields"


class UnauthorizedError(ContactSyncError):
    """The request carries no usable customer identity."""
    status_code = 401
    public_message = "Unauthorized"


class NotFoundError(ContactSyncError):
    status_code = 404
    public_message = "Not found"


class UpstreamError(ContactSyncError):
    """A call to the integration platform failed.

    Caught per action by the import pipeline; everywhere else it degrades to
    an opaque 500 so provider details never reach the client.
    """
    status_code = 500
