"""OAuth error taxonomy.

Every error that crosses the network edge is one of these classes. Only the
wire code and a safe description are ever serialized; upstream (Microsoft)
error bodies stay in the server log.
"""


class OAuthError(Exception):
    """Base class for OAuth protocol errors."""

    error = "server_error"
    status_code = 500

    def __init__(self, description: str = ""):
        super().__init__(description)
        self.description = description

    def to_response_dict(self) -> dict:
        data = {"error": self.error}
        if self.description:
            data["error_description"] = self.description
        return data


class InvalidRequestError(OAuthError):
    error = "invalid_request"
    status_code = 400


class InvalidClientError(OAuthError):
    error = "invalid_client"
    status_code = 401


class InvalidClientMetadataError(OAuthError):
    error = "invalid_client_metadata"
    status_code = 400


class InvalidGrantError(OAuthError):
    error = "invalid_grant"
    status_code = 400


class InvalidTokenError(InvalidGrantError):
    """Raised when a bearer token is unknown, expired or revoked."""

    error = "invalid_token"
    status_code = 401


class UnauthorizedClientError(OAuthError):
    error = "unauthorized_client"
    status_code = 400


class UnsupportedGrantTypeError(OAuthError):
    error = "unsupported_grant_type"
    status_code = 400


class UnsupportedResponseTypeError(OAuthError):
    error = "unsupported_response_type"
    status_code = 400


class ServerError(OAuthError):
    error = "server_error"
    status_code = 500


class UpstreamTimeoutError(ServerError):
    """The Microsoft token endpoint did not answer within the timeout."""

    status_code = 504


class CapacityExceededError(OAuthError):
    """A token store map reached its entry cap."""

    error = "capacity_exceeded"
    status_code = 503
