import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from tokenguard.core.clock import Clock, utcnow
from tokenguard.core.security import SigningKeyProvider, generate_refresh_secret, hash_token
from tokenguard.models import RefreshToken, TokenStatus
from tokenguard.models.refresh_token import new_token_id
from tokenguard.services.registry import RefreshTokenRegistry

ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    token_id: str
    family_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime


def _numeric_date(value: datetime) -> float:
    return round(value.timestamp(), 3)


class TokenIssuer:
    """Mints access tokens and refresh token records."""

    def __init__(
        self,
        registry: RefreshTokenRegistry,
        signer: SigningKeyProvider,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        issuer: str,
        audience: str,
        clock: Clock = utcnow,
    ) -> None:
        self.registry = registry
        self.signer = signer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.issuer = issuer
        self.audience = audience
        self.clock = clock

    def issue(self, user_id: int) -> IssuedTokens:
        """Start a new token family for a fresh login."""
        tokens = self.mint(user_id, family_id=str(uuid.uuid4()))
        self.registry.commit()
        return tokens

    def mint(self, user_id: int, family_id: str, previous_token_id: Optional[str] = None) -> IssuedTokens:
        """Add an ACTIVE record to the session without committing it."""
        now = self.clock()
        secret = generate_refresh_secret()
        record = RefreshToken(
            id=new_token_id(),
            user_id=user_id,
            family_id=family_id,
            token_hash=hash_token(secret),
            status=TokenStatus.ACTIVE,
            previous_token_id=previous_token_id,
            issued_at=now,
            expires_at=now + self.refresh_ttl,
        )
        self.registry.add(record)
        access_token, access_expires_at = self.create_access_token(user_id, family_id, now)
        return IssuedTokens(
            access_token=access_token,
            refresh_token=secret,
            token_id=record.id,
            family_id=family_id,
            access_expires_at=access_expires_at,
            refresh_expires_at=record.expires_at,
        )

    def create_access_token(self, user_id: int, family_id: str, now: datetime) -> tuple[str, datetime]:
        expires_at = now + self.access_ttl
        claims = {
            "sub": str(user_id),
            "fam": family_id,
            "iat": _numeric_date(now),
            "exp": _numeric_date(expires_at),
            "type": ACCESS_TOKEN_TYPE,
            "jti": uuid.uuid4().hex,
            "iss": self.issuer,
            "aud": self.audience,
        }
        return self.signer.sign(claims), expires_at
