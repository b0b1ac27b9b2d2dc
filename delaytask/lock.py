import logging
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

from .storage import Storage

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_MS = 3000


class LockManager:
    """
    Short leases over task keys. A lease expires on its own after ttl_ms so
    a dead holder cannot block a task for long; release only deletes the
    lease while it still carries the holder's token.
    """

    def __init__(self, storage: Storage, ttl_ms: int = DEFAULT_LOCK_TTL_MS):
        self.storage = storage
        self.ttl_ms = ttl_ms

    def acquire(self, task_key: str) -> Optional[str]:
        token = uuid.uuid4().hex
        if self.storage.set_if_absent(self.storage.lock_key(task_key), token, self.ttl_ms):
            logger.debug("lock acquired task=%s", task_key)
            return token
        logger.debug("lock busy task=%s", task_key)
        return None

    def release(self, task_key: str, token: str) -> bool:
        released = self.storage.compare_and_delete(self.storage.lock_key(task_key), token)
        if not released:
            logger.debug("lock for task=%s already expired or taken over", task_key)
        return released

    @contextmanager
    def hold(self, task_key: str) -> Iterator[Optional[str]]:
        """Yield a token (None on contention); an acquired lease is always released."""
        token = self.acquire(task_key)
        try:
            yield token
        finally:
            if token is not None:
                self.release(task_key, token)
