from sqlalchemy.orm import Session
from tokenguard.models import AuditLog


def log_event(
    db: Session,
    action: str,
    status: str,
    message: str = "",
    user_id: int | None = None,
    metadata: dict | None = None,
    commit: bool = True,
) -> None:
    entry = AuditLog(
        user_id=user_id,
        action=action,
        status=status,
        message=message,
        details=metadata or {},
    )
    db.add(entry)
    if commit:
        db.commit()
