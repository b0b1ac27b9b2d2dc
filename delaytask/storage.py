import json
import logging
import zlib
from typing import Any, Dict, Iterator, List, Optional

import redis
from redis.exceptions import AuthenticationError, RedisError

from .config import Settings
from .errors import StoreConnectionError
from .models import Task
from .utils import utcnow

logger = logging.getLogger(__name__)

# delete the key only while it still holds our token
COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


def connect(settings: Settings) -> redis.Redis:
    """
    Open a Redis connection and ping it. Every worker process calls this
    for itself; connections are never shared between workers.
    """
    client = redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password or None,
        db=settings.redis_db,
        decode_responses=True,
        socket_timeout=5,
        socket_connect_timeout=5,
    )
    try:
        client.ping()
    except AuthenticationError as e:
        raise StoreConnectionError(f"redis authentication failed for {settings.redis_host}:{settings.redis_port}", cause=e) from e
    except RedisError as e:
        raise StoreConnectionError(f"redis is not available at {settings.redis_host}:{settings.redis_port}: {e}", cause=e) from e
    logger.debug("Redis connected: %s:%s db=%s", settings.redis_host, settings.redis_port, settings.redis_db)
    return client


def bucket_index(topic: str, bucket_count: int) -> int:
    return zlib.crc32(topic.encode("utf-8")) % bucket_count


class Storage:
    """Task pool, buckets, priority lanes and worker bookkeeping on one Redis."""

    def __init__(self, client: redis.Redis, prefix: str = "dt_", bucket_count: int = 4):
        self.client = client
        self.prefix = prefix
        self.bucket_count = bucket_count
        self._compare_and_delete = client.register_script(COMPARE_AND_DELETE)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Storage":
        return cls(connect(settings), prefix=settings.prefix, bucket_count=settings.bucket_count)

    # -----------------------------
    # Key layout
    # -----------------------------
    @property
    def task_pool_key(self) -> str:
        return self.prefix + "task_pool"

    def bucket_key(self, index: int) -> str:
        return f"{self.prefix}task_bucket:{index}"

    def queue_key(self, priority: int) -> str:
        return f"{self.prefix}task_queue:{priority}"

    def lock_key(self, task_key: str) -> str:
        return f"{self.prefix}task_lock:{task_key}"

    @property
    def workers_key(self) -> str:
        return self.prefix + "workers"

    @property
    def config_key(self) -> str:
        return self.prefix + "config"

    def bucket_for(self, topic: str) -> int:
        return bucket_index(topic, self.bucket_count)

    # -----------------------------
    # Task pool
    # -----------------------------
    def get_task(self, task_key: str) -> Optional[Task]:
        raw = self.client.hget(self.task_pool_key, task_key)
        if not raw:
            return None
        return Task.from_json(raw)

    def put_task(self, task: Task) -> None:
        self.client.hset(self.task_pool_key, task.key, task.to_json())

    def delete_task(self, task_key: str) -> bool:
        return bool(self.client.hdel(self.task_pool_key, task_key))

    def iter_tasks(self) -> Iterator[Task]:
        for _, raw in self.client.hscan_iter(self.task_pool_key):
            yield Task.from_json(raw)

    # -----------------------------
    # Buckets (sorted sets scored by due time)
    # -----------------------------
    def add_to_bucket(self, task: Task) -> None:
        self.client.zadd(self.bucket_key(self.bucket_for(task.topic)), {task.key: task.due_time})

    def due_keys(self, index: int, now: int, limit: int, offset: int = 0) -> List[str]:
        return self.client.zrangebyscore(self.bucket_key(index), "-inf", now, start=offset, num=limit)

    def remove_from_bucket(self, index: int, task_key: str) -> bool:
        return self.client.zrem(self.bucket_key(index), task_key) == 1

    def bucket_size(self, index: int) -> int:
        return self.client.zcard(self.bucket_key(index))

    # -----------------------------
    # Priority lanes (FIFO lists)
    # -----------------------------
    def push_queue(self, priority: int, task_key: str) -> int:
        return self.client.rpush(self.queue_key(priority), task_key)

    def pop_queue(self, priority: int) -> Optional[str]:
        return self.client.lpop(self.queue_key(priority))

    def queue_length(self, priority: int) -> int:
        return self.client.llen(self.queue_key(priority))

    # -----------------------------
    # Lease primitives
    # -----------------------------
    def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        return bool(self.client.set(key, value, nx=True, px=ttl_ms))

    def compare_and_delete(self, key: str, value: str) -> bool:
        return bool(self._compare_and_delete(keys=[key], args=[value]))

    # -----------------------------
    # Runtime config & worker registry
    # -----------------------------
    def config_get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.client.hget(self.config_key, key)
        return default if value is None else value

    def config_set(self, key: str, value: str) -> None:
        self.client.hset(self.config_key, key, value)

    def shutdown_requested(self) -> bool:
        return self.config_get("shutdown", "false") == "true"

    def register_worker(self, worker_id: str, pid: int, kind: str) -> None:
        record = {"pid": pid, "kind": kind, "started_at": utcnow().isoformat()}
        self.client.hset(self.workers_key, worker_id, json.dumps(record))

    def stop_worker_record(self, worker_id: str) -> None:
        self.client.hdel(self.workers_key, worker_id)

    def list_workers(self) -> List[Dict[str, Any]]:
        workers = []
        for worker_id, raw in sorted(self.client.hgetall(self.workers_key).items()):
            record = json.loads(raw)
            record["id"] = worker_id
            workers.append(record)
        return workers
