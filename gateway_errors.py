"""Errors raised by the gateway and its stores.

Each kind maps to one HTTP status. The router catches GatewayError at its
boundary and renders {"error": message}.
"""


class GatewayError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(GatewayError):
    """Missing or malformed request body."""

    status_code = 400


class AuthError(GatewayError):
    """Missing, invalid or expired token."""

    status_code = 401


class NotFoundError(GatewayError):
    """Session is valid but its user row is gone."""

    status_code = 404


class PersistenceError(GatewayError):
    """Store unreachable, or a write-then-read came back empty."""

    status_code = 500
