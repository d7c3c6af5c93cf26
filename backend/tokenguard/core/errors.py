class TokenError(Exception):
    """Base class for rejected credentials."""

    code = "token_error"


class InvalidToken(TokenError):
    """Malformed, unknown, badly signed or revoked token."""

    code = "invalid_token"


class TokenExpired(TokenError):
    code = "token_expired"


class ReuseDetected(TokenError):
    """An already rotated refresh token was presented again.

    The whole family has been revoked by the time this is raised.
    """

    code = "reuse_detected"

    def __init__(self, family_id: str, message: str = "Refresh token reuse detected") -> None:
        super().__init__(message)
        self.family_id = family_id


class StorageUnavailable(Exception):
    """The token registry could not be reached. Retriable by the caller."""


class SigningKeyError(RuntimeError):
    """No usable signing key is configured. Fatal at startup."""
