"""
Error taxonomy for the relay core. Services raise these; server.py translates
them to {"error": message} with the carried HTTP status.
"""


class RelayError(Exception):
    """Base exception for relay domain failures."""
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthorized(RelayError):
    """Missing or invalid credential."""
    status_code = 401
    default_message = "Unauthorized"


class InvalidToken(Unauthorized):
    """Token unknown or hash mismatch. Deliberately indistinguishable between the two."""
    default_message = "Invalid token"


class TokenExpired(Unauthorized):
    default_message = "Token expired"


class TokenRevoked(Unauthorized):
    default_message = "Token revoked"


class Forbidden(RelayError):
    """Valid credential, wrong principal."""
    status_code = 403
    default_message = "Forbidden"


class NotFound(RelayError):
    status_code = 404
    default_message = "Not found"


class ProfileNotFound(NotFound):
    default_message = "Twitter user not found"


class InvalidState(RelayError):
    """Status guard failed."""
    status_code = 400
    default_message = "Invalid state"


class InvalidInput(RelayError):
    status_code = 400
    default_message = "Invalid request body"


class Conflict(RelayError):
    status_code = 409
    default_message = "Conflict"


class AlreadyClaimed(Conflict):
    default_message = "Agent profile already claimed"


class PersistenceFailure(RelayError):
    status_code = 500
    default_message = "Failed to persist changes"


class ProfileLookupFailed(RelayError):
    status_code = 500
    default_message = "Failed to fetch external profile"


class NotConfigured(RelayError):
    status_code = 500
    default_message = "Service not configured"
