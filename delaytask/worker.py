# delaytask/worker.py
import logging
import os
import sys
import time
import uuid
from multiprocessing import Process
from typing import Callable, Dict, Iterable, Optional, Sequence

import httpx
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .config import Settings
from .executor import invoke, run_callback
from .handlers import HandlerRegistry, load_handler_modules, registry as default_registry
from .lock import LockManager
from .logs import setup_logging
from .models import DEFAULT_QUEUE_QUOTAS, Task, TaskStatus
from .policy import apply_outcome
from .storage import Storage
from .utils import now_ts

logger = logging.getLogger(__name__)

# exit code of a worker process killed by an unexpected error
WORKER_CRASH_EXIT = 250


class BucketWorker:
    """
    Promotes due tasks from one bucket into their priority lane.

    Keys that are skipped (pool miss, lease held elsewhere) stay in the
    bucket; the scan offset moves past them until a poll comes back empty.
    """

    def __init__(
        self,
        storage: Storage,
        index: int,
        locks: Optional[LockManager] = None,
        range_limit: int = 1,
        clock: Callable[[], int] = now_ts,
    ):
        self.storage = storage
        self.index = index
        self.locks = locks or LockManager(storage)
        self.range_limit = range_limit
        self.clock = clock
        self._offset = 0

    def scan_once(self) -> int:
        """One poll of the bucket. Returns how many due keys were looked at."""
        keys = self.storage.due_keys(self.index, self.clock(), self.range_limit, self._offset)
        if not keys:
            self._offset = 0
            return 0
        for key in keys:
            task = self.storage.get_task(key)
            if task is None:
                self._offset += 1
                continue
            if task.status != TaskStatus.DELAY:
                self.storage.remove_from_bucket(self.index, key)
                continue
            with self.locks.hold(key) as token:
                if token is None:
                    self._offset += 1
                    continue
                self.promote(task)
        return len(keys)

    def promote(self, task: Task) -> bool:
        """Move task from the bucket to its lane. The caller holds the task's lease."""
        key = task.key
        # only the worker whose ZREM took the member may enqueue it
        if not self.storage.remove_from_bucket(self.index, key):
            return False
        if not self.storage.push_queue(task.priority, key):
            logger.error("bucket push failed task=%s priority=%s", key, task.priority)
        else:
            logger.debug("task promoted key=%s lane=%s", key, task.priority)
        return True


class QueueWorker:
    """Runs due tasks from the priority lanes, weighted by per-lane quotas."""

    def __init__(
        self,
        storage: Storage,
        registry: HandlerRegistry = default_registry,
        quotas: Optional[Dict[int, int]] = None,
        http_client: Optional[httpx.Client] = None,
        clock: Callable[[], int] = now_ts,
    ):
        self.storage = storage
        self.registry = registry
        self.quotas = dict(quotas or DEFAULT_QUEUE_QUOTAS)
        self.http_client = http_client
        self.clock = clock

    def scan_once(self) -> int:
        """One weighted round over all lanes, highest priority first. Returns keys popped."""
        popped = 0
        for priority in sorted(self.quotas, reverse=True):
            for _ in range(self.quotas[priority]):
                key = self.storage.pop_queue(priority)
                if key is None:
                    break
                popped += 1
                self.process(key)
        return popped

    def process(self, key: str) -> Optional[Task]:
        task = self.storage.get_task(key)
        if task is None:
            logger.debug("queued task %s is gone from the pool, dropped", key)
            return None
        if task.status != TaskStatus.DELAY or task.due_time > self.clock():
            logger.debug("queued task %s not runnable (status=%s due=%s), dropped", key, task.status.name, task.due_time)
            return None

        updated = self.handle_task(task)
        self.storage.put_task(updated)
        if updated.status == TaskStatus.DELAY:
            self.storage.add_to_bucket(updated)
        logger.info(
            "task ran key=%s status=%s attempts=%s due=%s",
            key,
            updated.status.name,
            updated.rule.attempt_count,
            updated.due_time,
        )
        return updated

    def handle_task(self, task: Task) -> Task:
        outcome = invoke(task, self.registry, self.http_client)
        updated = apply_outcome(task, outcome, self.clock())
        if updated.status == TaskStatus.OK:
            run_callback(updated, self.registry)
        return updated


def run_loop(worker_id: str, kind: str, storage: Storage, step: Callable[[], int], idle_sleep: float) -> None:
    """
    Poll until the shared shutdown flag is set:
      - sleeps idle_sleep after a poll that found nothing
      - survives Redis connection drops and timeouts
      - any other error propagates and ends this worker only
    """
    storage.register_worker(worker_id, os.getpid(), kind)
    logger.info("%s worker %s started pid=%s", kind, worker_id, os.getpid())
    try:
        while True:
            try:
                if storage.shutdown_requested():
                    break
                handled = step()
            except (RedisConnectionError, RedisTimeoutError) as e:
                logger.warning("%s worker %s store error, retrying: %s", kind, worker_id, e)
                time.sleep(idle_sleep)
                continue
            if not handled:
                time.sleep(idle_sleep)
    except KeyboardInterrupt:
        pass
    finally:
        try:
            storage.stop_worker_record(worker_id)
        except RedisError as e:
            logger.warning("could not deregister worker %s: %s", worker_id, e)
        logger.info("%s worker %s stopped", kind, worker_id)


def _worker_main(
    settings: Settings,
    worker_id: str,
    kind: str,
    build: Callable[[Storage], Callable[[], int]],
    handler_modules: Sequence[str],
) -> None:
    setup_logging(settings.log_level, settings.log_file)
    try:
        load_handler_modules(handler_modules)
        storage = Storage.from_settings(settings)
        run_loop(worker_id, kind, storage, build(storage), settings.idle_sleep)
    except Exception:
        logger.exception("%s worker %s crashed", kind, worker_id)
        sys.exit(WORKER_CRASH_EXIT)


def new_worker_id(kind: str) -> str:
    return f"{kind}-{uuid.uuid4().hex[:8]}"


def bucket_main(settings: Settings, worker_id: str, index: int, handler_modules: Sequence[str] = ()) -> None:
    def build(storage: Storage) -> Callable[[], int]:
        worker = BucketWorker(
            storage,
            index,
            locks=LockManager(storage, settings.lock_ttl_ms),
            range_limit=settings.bucket_range_limit,
        )
        return worker.scan_once

    _worker_main(settings, worker_id, f"bucket{index}", build, handler_modules)


def queue_main(settings: Settings, worker_id: str, handler_modules: Sequence[str] = ()) -> None:
    def build(storage: Storage) -> Callable[[], int]:
        client = httpx.Client(timeout=settings.http_timeout)
        worker = QueueWorker(storage, default_registry, settings.queue_quotas, http_client=client)
        return worker.scan_once

    _worker_main(settings, worker_id, "queue", build, handler_modules)


def start_workers(settings: Settings, handler_modules: Iterable[str] = ()) -> None:
    """
    Spawn one process per bucket plus queue_count queue processes and join
    them. Ctrl+C in the parent sets shutdown=true so children finish their
    current poll and exit cleanly. Registry entries of children that died
    without deregistering (killed by a signal) are removed here.
    """
    handler_modules = tuple(handler_modules)
    load_handler_modules(handler_modules)
    storage = Storage.from_settings(settings)

    procs = []
    for index in range(settings.bucket_count):
        worker_id = new_worker_id(f"bucket{index}")
        procs.append((worker_id, Process(target=bucket_main, args=(settings, worker_id, index, handler_modules), daemon=False)))
    for _ in range(settings.queue_count):
        worker_id = new_worker_id("queue")
        procs.append((worker_id, Process(target=queue_main, args=(settings, worker_id, handler_modules), daemon=False)))
    for _, p in procs:
        p.start()

    try:
        for worker_id, p in procs:
            p.join()
            if p.exitcode:
                logger.error("worker %s (pid %s) exited with status %s", worker_id, p.pid, p.exitcode)
                storage.stop_worker_record(worker_id)
    except KeyboardInterrupt:
        storage.config_set("shutdown", "true")
        for _, p in procs:
            p.join()
    logger.info("all workers stopped")
