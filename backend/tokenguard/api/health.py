from fastapi import APIRouter, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from tokenguard.core.database import SessionLocal
from tokenguard.core.config import settings
import redis

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/ready")
def ready():
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except OperationalError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable") from exc
    finally:
        db.close()
    if settings.rate_limit_enabled:
        redis_client = redis.Redis.from_url(settings.redis_url)
        try:
            redis_client.ping()
        except redis.exceptions.ConnectionError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Redis unavailable") from exc
    return {"status": "ready"}
