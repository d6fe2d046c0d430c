import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional
import redis
from redis.exceptions import LockError
from app.core.config import settings
from app.core.errors import ConflictError

logger = logging.getLogger(__name__)

redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)

def get_redis() -> Optional[redis.Redis]:
    return redis_client if settings.COMPOSER_LOCK_ENABLED else None

def compose_lock_key(drop_at: datetime) -> str:
    return f"compose:{drop_at.strftime('%Y%m%dT%H%M%SZ')}"

@contextmanager
def drop_time_lock(client: Optional[redis.Redis], drop_at: datetime) -> Iterator[None]:
    """Hold the per-drop-time composition lock, or fail with a conflict."""
    if client is None:
        yield
        return
    lock = client.lock(compose_lock_key(drop_at), timeout=settings.COMPOSER_LOCK_TIMEOUT, blocking=False)
    if not lock.acquire(blocking=False):
        raise ConflictError(
            f"A composition for {drop_at.isoformat()} is already in progress",
            error_code="COMPOSITION_IN_PROGRESS",
            details={"drop_at_utc": drop_at.isoformat()},
        )
    try:
        yield
    finally:
        try:
            lock.release()
        except LockError:
            logger.warning(f"Composition lock for {drop_at.isoformat()} expired before release")
