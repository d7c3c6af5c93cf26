from datetime import timedelta

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from tokenguard.core.clock import Clock, utcnow
from tokenguard.core.config import settings
from tokenguard.core.database import get_db
from tokenguard.core.errors import TokenError
from tokenguard.core.security import SigningKeyProvider
from tokenguard.services.issuer import TokenIssuer
from tokenguard.services.registry import RefreshTokenRegistry
from tokenguard.services.rotation import RotationEngine
from tokenguard.services.verifier import AccessClaims, AccessVerifier


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")
signing_keys = SigningKeyProvider.from_settings(settings)


def get_signing_keys() -> SigningKeyProvider:
    return signing_keys


def get_clock() -> Clock:
    return utcnow


def get_registry(db: Session = Depends(get_db), clock: Clock = Depends(get_clock)) -> RefreshTokenRegistry:
    return RefreshTokenRegistry(db, clock=clock)


def get_issuer(
    registry: RefreshTokenRegistry = Depends(get_registry),
    keys: SigningKeyProvider = Depends(get_signing_keys),
    clock: Clock = Depends(get_clock),
) -> TokenIssuer:
    return TokenIssuer(
        registry,
        keys,
        access_ttl=timedelta(minutes=settings.access_token_expire_minutes),
        refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        clock=clock,
    )


def get_rotation_engine(
    registry: RefreshTokenRegistry = Depends(get_registry),
    issuer: TokenIssuer = Depends(get_issuer),
    clock: Clock = Depends(get_clock),
) -> RotationEngine:
    return RotationEngine(registry, issuer, leeway_seconds=settings.clock_skew_seconds, clock=clock)


def get_access_verifier(
    keys: SigningKeyProvider = Depends(get_signing_keys),
    clock: Clock = Depends(get_clock),
) -> AccessVerifier:
    return AccessVerifier(
        keys,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        leeway_seconds=settings.clock_skew_seconds,
        clock=clock,
    )


def get_current_claims(
    token: str = Depends(oauth2_scheme),
    verifier: AccessVerifier = Depends(get_access_verifier),
) -> AccessClaims:
    try:
        return verifier.verify(token)
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
