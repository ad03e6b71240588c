"""
Proxy Errors
============

Every failure the forwarding pipeline can report to a client. Each class
carries its HTTP status and a short machine-readable error code; the app
factory registers one exception handler that renders them as JSON and adds
the CORS headers.

Failures after the upstream status line has been sent are not represented
here: they can only be logged.
"""

from fastapi import HTTPException, status


class ProxyError(HTTPException):
    """Base class for errors raised while handling a proxied request."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "proxy_error"

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=type(self).status_code, detail=detail)


# ============================================================================
# Client-side errors (no upstream call attempted)
# ============================================================================

class ClientConfigError(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "client_config_error"


class MissingUpstreamTarget(ClientConfigError):
    error = "missing_upstream_target"


class UpstreamNotAllowed(ClientConfigError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "upstream_not_allowed"


class MethodNotForwarded(ClientConfigError):
    status_code = status.HTTP_405_METHOD_NOT_ALLOWED
    error = "method_not_forwarded"


# ============================================================================
# Server-side errors (no upstream call attempted)
# ============================================================================

class ServerConfigError(ProxyError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "server_config_error"


class MissingCredential(ServerConfigError):
    error = "missing_credential"


class InvalidUpstreamRequest(ServerConfigError):
    error = "invalid_upstream_request"


class UpstreamClientUnavailable(ServerConfigError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error = "upstream_client_unavailable"


# ============================================================================
# Upstream errors
# ============================================================================

class UpstreamConnError(ProxyError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error = "upstream_conn_error"


class UpstreamUnreachable(UpstreamConnError):
    error = "upstream_unreachable"


class ClientDisconnected(ProxyError):
    """The client went away before the upstream answered.

    Nobody is left to read the response; the status mirrors the
    "client closed request" convention used by common reverse proxies.
    """

    status_code = 499
    error = "client_disconnected"
