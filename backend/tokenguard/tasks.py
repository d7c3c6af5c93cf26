from celery import shared_task
from sqlalchemy.orm import Session
from tokenguard.core.database import SessionLocal
from tokenguard.core.errors import StorageUnavailable
from tokenguard.services.retention import sweep_refresh_tokens


@shared_task(
    name="tokenguard.tasks.sweep_refresh_tokens",
    bind=True,
    autoretry_for=(StorageUnavailable,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 5},
)
def sweep_expired_refresh_tokens(self):
    db: Session = SessionLocal()
    try:
        return sweep_refresh_tokens(db)
    finally:
        db.close()
