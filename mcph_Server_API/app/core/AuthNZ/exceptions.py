# exceptions.py
# Description: Exception classes for identity, throttling and the OAuth broker
#
# Imports
from typing import Optional

#######################################################################################################################
#
# Base Exceptions

class AuthNZException(Exception):
    """Base exception for the auth/identity layer"""
    status_code: int = 500

    def __init__(self, message: str = "Authentication subsystem error"):
        self.message = message
        super().__init__(message)


#######################################################################################################################
#
# Authentication Exceptions

class AuthenticationError(AuthNZException):
    """Missing or unusable credential"""
    status_code = 401

    def __init__(self, message: str = "Missing or invalid API key"):
        super().__init__(message)


class InvalidAPIKeyError(AuthenticationError):
    """API key unknown, revoked or expired"""
    def __init__(self, message: str = "Invalid API key"):
        super().__init__(message)


class InvalidTokenError(AuthenticationError):
    """Invalid or expired bearer token"""
    def __init__(self, detail: Optional[str] = None):
        message = "Invalid token"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class AuthorizationError(AuthNZException):
    """Caller is known but not allowed to perform the operation"""
    status_code = 403

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message)


#######################################################################################################################
#
# Throttling Exceptions

class RateLimitError(AuthNZException):
    """Identifier exceeded its request window"""
    status_code = 429

    def __init__(
        self,
        limit: int,
        remaining: int,
        reset_at: float,
        retry_after: int,
        message: str = "Too many requests. Please try again later.",
    ):
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at
        self.retry_after = retry_after
        super().__init__(message)

    def headers(self) -> dict:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
            "Retry-After": str(self.retry_after),
        }


#######################################################################################################################
#
# OAuth Exceptions

class OAuthError(AuthNZException):
    """OAuth protocol error rendered as {"error", "error_description"}"""

    def __init__(self, error: str, description: str, status_code: int = 400):
        self.error = error
        self.description = description
        self.status_code = status_code
        super().__init__(description)

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.description}


class InvalidRequestError(OAuthError):
    def __init__(self, description: str):
        super().__init__("invalid_request", description)


class InvalidClientError(OAuthError):
    def __init__(self, description: str = "Client not registered", status_code: int = 400):
        super().__init__("invalid_client", description, status_code)


class InvalidGrantError(OAuthError):
    def __init__(self, description: str = "Invalid or expired authorization code"):
        super().__init__("invalid_grant", description)


class UnsupportedGrantTypeError(OAuthError):
    def __init__(self, description: str = "Only authorization_code grant type is supported"):
        super().__init__("unsupported_grant_type", description)


class AccessDeniedError(OAuthError):
    def __init__(self, description: str = "User denied access"):
        super().__init__("access_denied", description)


class InvalidClientMetadataError(OAuthError):
    def __init__(self, description: str = "client_name is required"):
        super().__init__("invalid_client_metadata", description)


class UpstreamProviderError(OAuthError):
    """Upstream identity provider could not complete the exchange"""
    def __init__(self, description: str = "Upstream identity provider error"):
        super().__init__("server_error", description, 502)

#
# End of exceptions.py
#######################################################################################################################
