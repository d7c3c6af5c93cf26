import logging
import time
from datetime import datetime, timedelta
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import or_, select, update
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from tokenguard.core.clock import Clock, utcnow
from tokenguard.core.config import settings
from tokenguard.core.errors import StorageUnavailable
from tokenguard.core.security import hash_token
from tokenguard.models import RefreshToken, TokenStatus

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OperationalError, DisconnectionError, PoolTimeoutError)

T = TypeVar("T")


class RefreshTokenRegistry:
    """Persistent store of refresh token records.

    Reads and idempotent writes are retried on transient storage errors.
    ``compare_and_set_status`` is never retried here; the caller must
    re-read the record to find out what an interrupted transition did.
    """

    def __init__(
        self,
        db: Session,
        clock: Clock = utcnow,
        retry_attempts: Optional[int] = None,
        retry_delay_seconds: Optional[float] = None,
    ) -> None:
        self.db = db
        self.clock = clock
        self.retry_attempts = retry_attempts or settings.storage_retry_attempts
        self.retry_delay_seconds = (
            settings.storage_retry_delay_seconds if retry_delay_seconds is None else retry_delay_seconds
        )

    def _run(self, operation: Callable[[], T], description: str) -> T:
        attempt = 0
        delay = self.retry_delay_seconds
        while True:
            attempt += 1
            try:
                return operation()
            except TRANSIENT_ERRORS as exc:
                self.db.rollback()
                if attempt >= self.retry_attempts:
                    logger.error(
                        "%s failed after %s attempts.",
                        description,
                        attempt,
                        exc_info=exc,
                    )
                    raise StorageUnavailable(f"{description} failed") from exc
                logger.warning(
                    "%s failed (attempt %s/%s). Retrying in %.2fs.",
                    description,
                    attempt,
                    self.retry_attempts,
                    delay,
                )
                time.sleep(delay)
                delay = min(delay * 1.5, 2.0)

    def find_by_secret(self, secret: str) -> Optional[RefreshToken]:
        token_hash = hash_token(secret)
        return self._run(
            lambda: self.db.query(RefreshToken)
            .filter(RefreshToken.token_hash == token_hash)
            .populate_existing()
            .first(),
            "Refresh token lookup",
        )

    def get(self, token_id: str) -> Optional[RefreshToken]:
        return self._run(
            lambda: self.db.get(RefreshToken, token_id, populate_existing=True),
            "Refresh token read",
        )

    def successor_of(self, token_id: str) -> Optional[RefreshToken]:
        return self._run(
            lambda: self.db.query(RefreshToken)
            .filter(RefreshToken.previous_token_id == token_id)
            .first(),
            "Refresh token successor lookup",
        )

    def family(self, family_id: str) -> List[RefreshToken]:
        """Records of a family in lineage order, oldest first."""
        records = self._run(
            lambda: self.db.query(RefreshToken)
            .filter(RefreshToken.family_id == family_id)
            .populate_existing()
            .all(),
            "Refresh token family read",
        )
        by_previous = {record.previous_token_id: record for record in records}
        known_ids = {record.id for record in records}
        # the root is the record whose predecessor is gone (or never existed)
        roots = [record for record in records if record.previous_token_id not in known_ids]
        chain: List[RefreshToken] = []
        current = roots[0] if roots else None
        while current is not None:
            chain.append(current)
            current = by_previous.get(current.id)
        return chain

    def add(self, record: RefreshToken) -> None:
        self.db.add(record)

    def compare_and_set_status(
        self,
        token_id: str,
        expected: TokenStatus,
        new: TokenStatus,
        **values,
    ) -> bool:
        statement = (
            update(RefreshToken)
            .where(RefreshToken.id == token_id, RefreshToken.status == expected)
            .values(status=new, **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(statement)
        return result.rowcount == 1

    def commit(self) -> None:
        try:
            self.db.commit()
        except TRANSIENT_ERRORS as exc:
            self.db.rollback()
            raise StorageUnavailable("Refresh token commit failed") from exc

    def commit_rotation(self) -> None:
        """Commit the ACTIVE -> ROTATED transition and its successor.

        Errors propagate untranslated: a failed commit here is ambiguous and
        the caller re-reads the record to learn whether it landed.
        """
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def _revoke_where(self, criterion, description: str) -> int:
        def revoke() -> int:
            statement = (
                update(RefreshToken)
                .where(criterion, RefreshToken.status != TokenStatus.REVOKED)
                .values(status=TokenStatus.REVOKED, revoked_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            count = self.db.execute(statement).rowcount
            self.db.commit()
            return count

        return self._run(revoke, description)

    def revoke_family(self, family_id: str) -> int:
        return self._revoke_where(RefreshToken.family_id == family_id, "Family revocation")

    def revoke_user(self, user_id: int) -> int:
        return self._revoke_where(RefreshToken.user_id == user_id, "User token revocation")

    def sweep(self, now: datetime, grace: timedelta, include_revoked: bool = False) -> int:
        criteria = [RefreshToken.expires_at < now - grace]
        if include_revoked:
            criteria.append(RefreshToken.status == TokenStatus.REVOKED)

        def delete() -> int:
            # detach successors first so deletion never trips the lineage foreign key
            doomed = select(RefreshToken.id).where(or_(*criteria))
            self.db.query(RefreshToken).filter(RefreshToken.previous_token_id.in_(doomed)).update(
                {RefreshToken.previous_token_id: None}, synchronize_session=False
            )
            count = self.db.query(RefreshToken).filter(or_(*criteria)).delete(synchronize_session=False)
            self.db.commit()
            return count

        return self._run(delete, "Refresh token sweep")
