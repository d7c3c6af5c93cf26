import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from tokenguard.core.clock import utcnow
from tokenguard.core.config import settings
from tokenguard.services.registry import RefreshTokenRegistry

logger = logging.getLogger(__name__)


def sweep_refresh_tokens(
    db: Session,
    now: datetime | None = None,
    grace: timedelta | None = None,
    include_revoked: bool | None = None,
) -> int:
    """Delete refresh token records nobody can use any more."""
    now = now or utcnow()
    if grace is None:
        grace = timedelta(hours=settings.retention_grace_hours)
    if include_revoked is None:
        include_revoked = settings.purge_revoked_immediately
    deleted = RefreshTokenRegistry(db).sweep(now, grace, include_revoked=include_revoked)
    logger.info("Swept %s refresh tokens (grace=%s, include_revoked=%s)", deleted, grace, include_revoked)
    return deleted
