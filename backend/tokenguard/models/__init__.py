from tokenguard.models.user import User
from tokenguard.models.refresh_token import RefreshToken, TokenStatus
from tokenguard.models.audit_log import AuditLog

__all__ = ["User", "RefreshToken", "TokenStatus", "AuditLog"]
