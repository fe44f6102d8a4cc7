from typing import Optional


class BridgeError(Exception):
    """Base class for errors surfaced to API callers as structured JSON."""

    status_code = 500
    category = "internal_error"

    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"error": self.category, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class AuthenticationError(BridgeError):
    """The upstream server rejected our credentials or could not be reached."""

    status_code = 503
    category = "authentication_error"


class UpstreamUnavailable(BridgeError):
    """No credential could be obtained, so no upstream call is possible."""

    status_code = 503
    category = "upstream_unavailable"


class ItemNotFound(BridgeError):
    status_code = 404
    category = "item_not_found"


class NoMediaSource(BridgeError):
    status_code = 400
    category = "no_media_source"


class InvalidArgument(BridgeError):
    status_code = 400
    category = "invalid_argument"


class UpstreamTransportError(BridgeError):
    """Network failure or timeout while talking to the upstream server."""

    category = "upstream_transport_error"


class UpstreamProtocolError(BridgeError):
    """The upstream server answered with an unexpected payload."""

    category = "upstream_protocol_error"


class UpstreamHTTPError(BridgeError):
    """The upstream server answered with a non-2xx status."""

    category = "upstream_error"

    def __init__(self, upstream_status: int, message: str, details: Optional[str] = None):
        self.upstream_status = upstream_status
        super().__init__(message, details)
