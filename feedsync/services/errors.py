"""Error taxonomy shared by services, routes and tasks.

Each error carries the HTTP status the API layer answers with; the FastAPI
app maps every FeedSyncError to ``{"error": message}`` with that status.
"""


class FeedSyncError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class AuthenticationError(FeedSyncError):
    """Signature or shared key invalid. Never retried internally."""
    status_code = 401


class ValidationError(FeedSyncError):
    """Missing or malformed client input."""
    status_code = 400


class NotFoundError(FeedSyncError):
    """Unknown shop, uninstalled shop, or missing snapshot."""
    status_code = 404


class ConflictError(FeedSyncError):
    """Shop not dirty or already being synced. Callers may retry later."""
    status_code = 409


class UpstreamError(FeedSyncError):
    """Shopify answered with a non-success status or could not be reached."""
    status_code = 502

    def __init__(self, message: str, status: int | None = None, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(message)


class StorageError(FeedSyncError):
    """Database write failed; webhook senders should redeliver."""
    status_code = 500
