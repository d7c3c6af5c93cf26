import enum
import uuid

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Index, Integer, String, text
from tokenguard.core.database import Base


class TokenStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    ROTATED = "ROTATED"
    REVOKED = "REVOKED"


def new_token_id() -> str:
    return str(uuid.uuid4())


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"
    __table_args__ = (
        # at most one live token per family
        Index(
            "uq_refresh_tokens_family_active",
            "family_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=new_token_id)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    family_id = Column(String(36), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False, unique=True)
    status = Column(
        Enum(TokenStatus, name="refresh_token_status", native_enum=False, length=16),
        nullable=False,
        default=TokenStatus.ACTIVE,
    )
    previous_token_id = Column(
        String(36),
        ForeignKey("refresh_tokens.id", ondelete="SET NULL"),
        unique=True,
    )
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    rotated_at = Column(DateTime(timezone=True))
    revoked_at = Column(DateTime(timezone=True))
