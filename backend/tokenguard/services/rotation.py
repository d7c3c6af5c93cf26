import logging
from datetime import timedelta
from typing import NoReturn, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tokenguard.core.clock import Clock, ensure_utc, utcnow
from tokenguard.core.errors import InvalidToken, ReuseDetected, StorageUnavailable, TokenExpired
from tokenguard.models import RefreshToken, TokenStatus
from tokenguard.services.audit import log_event
from tokenguard.services.issuer import IssuedTokens, TokenIssuer
from tokenguard.services.registry import TRANSIENT_ERRORS, RefreshTokenRegistry

logger = logging.getLogger(__name__)

MAX_SECRET_LENGTH = 512


class RotationEngine:
    """Exchanges a refresh secret for a new token pair, exactly once.

    The ACTIVE -> ROTATED transition is a single conditional UPDATE. Whoever
    loses a race on the same secret finds the record already rotated and is
    handled as a replay: the whole family is revoked.
    """

    def __init__(
        self,
        registry: RefreshTokenRegistry,
        issuer: TokenIssuer,
        leeway_seconds: int = 0,
        clock: Clock = utcnow,
    ) -> None:
        self.registry = registry
        self.issuer = issuer
        self.leeway = timedelta(seconds=leeway_seconds)
        self.clock = clock

    def rotate(self, presented_secret: str) -> IssuedTokens:
        if not presented_secret or len(presented_secret) > MAX_SECRET_LENGTH:
            raise InvalidToken("Missing or oversized refresh token")
        record = self.registry.find_by_secret(presented_secret)
        if record is None:
            raise InvalidToken("Unknown refresh token")

        if record.status == TokenStatus.REVOKED:
            raise InvalidToken("Refresh token revoked")
        if record.status == TokenStatus.ROTATED:
            self._reuse_detected(record)
        if self._is_expired(record):
            raise TokenExpired("Refresh token expired")
        return self._transition(record)

    def _is_expired(self, record: RefreshToken) -> bool:
        return self.clock() >= ensure_utc(record.expires_at) + self.leeway

    def _transition(self, record: RefreshToken) -> IssuedTokens:
        token_id = record.id
        user_id = record.user_id
        family_id = record.family_id
        successor: Optional[IssuedTokens] = None
        try:
            won = self.registry.compare_and_set_status(
                token_id,
                TokenStatus.ACTIVE,
                TokenStatus.ROTATED,
                rotated_at=self.clock(),
            )
            if not won:
                self.registry.rollback()
                return self._after_lost_race(token_id)
            successor = self.issuer.mint(user_id, family_id, previous_token_id=token_id)
            self.registry.commit_rotation()
        except IntegrityError:
            # the family already has a live token or this one already has a successor
            self.registry.rollback()
            logger.warning("Concurrent successor detected for refresh token %s", token_id)
            self._revoke_compromised(family_id, user_id, token_id)
        except TRANSIENT_ERRORS as exc:
            self.registry.rollback()
            logger.warning("Rotation of refresh token %s interrupted: %s", token_id, exc)
            return self._after_interrupted(token_id, successor)

        logger.info("Rotated refresh token %s in family %s", token_id, family_id)
        return successor

    def _after_lost_race(self, token_id: str) -> IssuedTokens:
        current = self.registry.get(token_id)
        if current is None or current.status == TokenStatus.REVOKED:
            raise InvalidToken("Refresh token revoked")
        if current.status == TokenStatus.ROTATED:
            self._reuse_detected(current)
        raise InvalidToken("Refresh token could not be rotated")

    def _after_interrupted(self, token_id: str, successor: Optional[IssuedTokens]) -> IssuedTokens:
        """Decide from current storage state what an interrupted rotation did."""
        current = self.registry.get(token_id)
        if current is None or current.status == TokenStatus.REVOKED:
            raise InvalidToken("Refresh token revoked")
        if current.status == TokenStatus.ACTIVE:
            raise StorageUnavailable("Refresh token rotation did not complete")
        if successor is not None and self.registry.get(successor.token_id) is not None:
            logger.info("Rotation of refresh token %s committed despite the error", token_id)
            return successor
        self._reuse_detected(current)

    def _reuse_detected(self, record: RefreshToken) -> NoReturn:
        self._revoke_compromised(record.family_id, record.user_id, record.id)

    def _revoke_compromised(self, family_id: str, user_id: int, token_id: str) -> NoReturn:
        revoked = self.registry.revoke_family(family_id)
        logger.warning(
            "Refresh token reuse detected for token %s (user %s); revoked %s tokens in family %s",
            token_id,
            user_id,
            revoked,
            family_id,
        )
        try:
            log_event(
                self.registry.db,
                "refresh",
                "reuse_detected",
                "refresh token presented after rotation",
                user_id=user_id,
                metadata={"family_id": family_id, "token_id": token_id, "revoked": revoked},
            )
        except SQLAlchemyError:
            self.registry.rollback()
            logger.exception("Could not write audit entry for family %s", family_id)
        raise ReuseDetected(family_id)

    def revoke_family(self, family_id: str) -> None:
        revoked = self.registry.revoke_family(family_id)
        logger.info("Revoked %s tokens in family %s", revoked, family_id)

    def logout(self, presented_secret: str) -> Optional[str]:
        """Revoke the family behind a refresh secret. Unknown secrets are ignored."""
        if not presented_secret or len(presented_secret) > MAX_SECRET_LENGTH:
            return None
        record = self.registry.find_by_secret(presented_secret)
        if record is None:
            return None
        family_id = record.family_id
        user_id = record.user_id
        self.revoke_family(family_id)
        try:
            log_event(self.registry.db, "logout", "success", user_id=user_id, metadata={"family_id": family_id})
        except TRANSIENT_ERRORS as exc:
            self.registry.rollback()
            raise StorageUnavailable("Logout audit entry could not be written") from exc
        return family_id
