"""Error taxonomy for the WHOOP credential and data layer.

Only NotLinked and RefreshFailed are fatal to a whole request; the
UpstreamError family is scoped to a single resource fetch.
"""

from typing import Any, Dict, Optional


class CoachError(Exception):
    status_code = 500
    code = "coach_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotLinked(CoachError):
    """No WHOOP credential exists for the user."""

    status_code = 409
    code = "not_linked"

    def __init__(self, user_id: str, provider: str = "whoop"):
        self.user_id = user_id
        self.provider = provider
        super().__init__(f"No {provider} account linked", {"provider": provider})


class RefreshFailed(CoachError):
    """The provider rejected the refresh; the user has to re-authorize."""

    status_code = 401
    code = "refresh_failed"

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(message, {"status": status, "body": body})


class UpstreamError(CoachError):
    """Non-2xx from a resource endpoint, status and body kept verbatim."""

    status_code = 502
    code = "upstream_error"

    def __init__(self, resource: str, status: Optional[int] = None, body: str = "", message: str = ""):
        self.resource = resource
        self.status = status
        self.body = body
        super().__init__(
            message or f"WHOOP error {status}: {body}",
            {"resource": resource, "status": status, "body": body},
        )


class UpstreamUnavailable(UpstreamError):
    """Timeout, transport failure, 408, 429 or 5xx. Safe to retry once."""

    status_code = 503
    code = "upstream_unavailable"


class UpstreamUnauthorized(UpstreamError):
    """401/403 on a resource call despite a token believed valid."""

    code = "upstream_unauthorized"


class MalformedResponse(UpstreamError):
    """Body is not JSON or lacks the records envelope."""

    code = "malformed_response"
