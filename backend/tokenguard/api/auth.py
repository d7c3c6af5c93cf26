from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session
from tokenguard.core.database import get_db
from tokenguard.core.deps import get_current_claims, get_issuer, get_rotation_engine
from tokenguard.core.security import verify_password
from tokenguard.models import User
from tokenguard.schemas import LoginRequest, LogoutRequest, RefreshRequest, SessionOut, TokenPair
from tokenguard.services.audit import log_event
from tokenguard.services.issuer import TokenIssuer
from tokenguard.services.rate_limit import RateLimiter
from tokenguard.services.rotation import RotationEngine
from tokenguard.services.verifier import AccessClaims

router = APIRouter(tags=["auth"])
rate_limiter = RateLimiter()


@router.post("/login", response_model=TokenPair)
def login(
    payload: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
    issuer: TokenIssuer = Depends(get_issuer),
):
    client_key = request.client.host if request.client else payload.username
    if not rate_limiter.hit(client_key):
        log_event(db, "login", "blocked", "rate limited")
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Too many attempts")
    user = db.query(User).filter(User.username == payload.username).first()
    if not user or not verify_password(payload.password, user.hashed_password):
        log_event(db, "login", "failed", "invalid credentials", user_id=user.id if user else None)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User inactive")
    tokens = issuer.issue(user.id)
    log_event(db, "login", "success", user_id=user.id, metadata={"family_id": tokens.family_id})
    rate_limiter.reset(client_key)
    return TokenPair(access_token=tokens.access_token, refresh_token=tokens.refresh_token)


@router.post("/refresh", response_model=TokenPair)
def refresh(payload: RefreshRequest, engine: RotationEngine = Depends(get_rotation_engine)):
    tokens = engine.rotate(payload.refresh_token)
    return TokenPair(access_token=tokens.access_token, refresh_token=tokens.refresh_token)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(payload: LogoutRequest, engine: RotationEngine = Depends(get_rotation_engine)):
    engine.logout(payload.refresh_token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/me", response_model=SessionOut)
def me(claims: AccessClaims = Depends(get_current_claims)):
    return claims
