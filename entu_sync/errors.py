"""Error types surfaced by the webhook endpoints.

Every error a caller can see is a ``WebhookError`` carrying the HTTP status
it maps to. Per-grant failures are not errors; they are counted in
``GrantResult``.
"""
from typing import Optional


class WebhookError(Exception):
    """Base class for errors that map to an HTTP response."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "status_code": self.status_code}


class MalformedPayload(WebhookError):
    status_code = 400


class MissingCredential(WebhookError):
    status_code = 400


class Unauthorized(WebhookError):
    status_code = 401


class TooManyRequests(WebhookError):
    status_code = 429


class InternalError(WebhookError):
    status_code = 500


class RemoteError(WebhookError):
    """A call to the Entu API failed.

    ``remote_status`` is what Entu answered (``None`` when no response came
    back at all). Only an expired or missing token is surfaced as-is; every
    other remote failure is a 500 for the webhook caller.
    """

    def __init__(self, message: str, remote_status: Optional[int] = None):
        super().__init__(message, 401 if remote_status == 401 else 500)
        self.remote_status = remote_status


class ReconciliationError(WebhookError):
    """A reconciliation pass aborted while reading from Entu."""

    def __init__(self, entity_id: str, cause: WebhookError):
        super().__init__(f"Reconciliation failed for entity {entity_id}: {cause.message}", cause.status_code)
        self.entity_id = entity_id
        self.cause = cause
