import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from tokenguard.core.clock import Clock, utcnow
from tokenguard.core.errors import InvalidToken, TokenExpired
from tokenguard.core.security import SigningKeyProvider
from tokenguard.services.issuer import ACCESS_TOKEN_TYPE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessClaims:
    user_id: int
    family_id: str
    issued_at: datetime
    expires_at: datetime
    token_id: str


class AccessVerifier:
    """Stateless access token check: signature, claims, expiry.

    Revoking a family does not reach tokens already handed out; they stay
    valid until ``exp``.
    """

    def __init__(
        self,
        signer: SigningKeyProvider,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Clock = utcnow,
    ) -> None:
        self.signer = signer
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self.clock = clock

    def verify(self, token: str) -> AccessClaims:
        if not token or not isinstance(token, str):
            raise InvalidToken("Missing token")
        claims = self.signer.verify(token)
        if claims.get("type") != ACCESS_TOKEN_TYPE:
            raise InvalidToken("Not an access token")
        if claims.get("iss") != self.issuer:
            raise InvalidToken("Unexpected issuer")
        audience = claims.get("aud")
        audiences = audience if isinstance(audience, list) else [audience]
        if self.audience not in audiences:
            raise InvalidToken("Unexpected audience")
        try:
            user_id = int(claims["sub"])
            family_id = str(claims["fam"])
            issued_at = float(claims["iat"])
            expires_at = float(claims["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidToken("Incomplete claims") from exc

        now = self.clock().timestamp()
        if now >= expires_at + self.leeway_seconds:
            logger.debug("Access token for family %s expired", family_id)
            raise TokenExpired("Access token expired")
        return AccessClaims(
            user_id=user_id,
            family_id=family_id,
            issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            token_id=str(claims.get("jti", "")),
        )
