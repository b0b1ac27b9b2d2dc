import logging
from typing import Any, Callable, Iterable, List, Mapping, Optional

import httpx

from .errors import TaskValidationError
from .executor import normalize_url
from .handlers import HandlerRegistry, registry as default_registry
from .models import (
    DEFAULT_INTERVALS,
    DEFAULT_PRIORITY,
    DEFAULT_QUEUE_QUOTAS,
    HTTP_METHODS,
    Rule,
    Task,
    TaskStatus,
    task_key,
)
from .storage import Storage
from .utils import format_local, now_ts

logger = logging.getLogger(__name__)


class TaskClient:
    """Producer side: validate task specs, write them to the pool and their bucket."""

    def __init__(
        self,
        storage: Storage,
        registry: HandlerRegistry = default_registry,
        priorities: Iterable[int] = tuple(DEFAULT_QUEUE_QUOTAS),
        clock: Callable[[], int] = now_ts,
    ):
        self.storage = storage
        self.registry = registry
        self.priorities = tuple(priorities)
        self.clock = clock

    def add(self, spec: Mapping[str, Any]) -> Task:
        task = self.build_task(spec)
        self.storage.put_task(task)
        self.storage.add_to_bucket(task)
        logger.info("task added key=%s due=%s priority=%s", task.key, task.due_time, task.priority)
        return task

    def delete(self, topic: str, task_id: str, soft_delete: bool = True) -> None:
        key = task_key(topic, str(task_id))
        task = self.storage.get_task(key)
        if task is None:
            return
        if not soft_delete:
            # bucket/queue entries may still name the key; workers treat that as a miss
            self.storage.delete_task(key)
            logger.info("task removed key=%s", key)
            return
        if task.status != TaskStatus.DELETED:
            task.status = TaskStatus.DELETED
            self.storage.put_task(task)
            logger.info("task marked deleted key=%s", key)

    def get(self, topic: str, task_id: str) -> Optional[Task]:
        return self.storage.get_task(task_key(topic, str(task_id)))

    def build_task(self, spec: Mapping[str, Any]) -> Task:
        topic = _text(spec.get("topic"))
        if not topic:
            raise TaskValidationError("topic can not be empty.")
        task_id = _text(spec.get("id"))
        if not task_id:
            raise TaskValidationError("id can not be empty.")

        url = _text(spec.get("url"))
        call = spec.get("call") or []
        if not url and not call:
            raise TaskValidationError("url or call can not be empty.")
        if url and call:
            raise TaskValidationError("only one of url or call may be set.")
        if url:
            try:
                httpx.URL(normalize_url(url))
            except httpx.InvalidURL as e:
                raise TaskValidationError(f"url {url!r} is not valid: {e}")
        if call:
            call = self._check_ref(call, "call")
        callback = spec.get("callback") or []
        if callback:
            callback = self._check_ref(callback, "callback")

        method = (_text(spec.get("method")) or "GET").upper()
        if method not in HTTP_METHODS:
            raise TaskValidationError(f"method must be one of {', '.join(HTTP_METHODS)}.")

        params = spec.get("params") or {}
        if not isinstance(params, Mapping):
            raise TaskValidationError("params must be a mapping.")

        intervals = parse_intervals(spec.get("intervals"))

        priority = spec.get("priority")
        if priority is None:
            # fall back to the lowest served lane when lane 1 is not configured
            priority = DEFAULT_PRIORITY if DEFAULT_PRIORITY in self.priorities else min(self.priorities)
        else:
            try:
                priority = int(priority)
            except (TypeError, ValueError):
                raise TaskValidationError(f"priority must be an integer, got {priority!r}.")
            if priority not in self.priorities:
                raise TaskValidationError(f"priority must be one of {sorted(self.priorities)}.")

        now = self.clock()
        # stored records spell it dueTime; accept either
        due_time = spec.get("due_time", spec.get("dueTime"))
        if due_time is None:
            due_time = now + intervals[0]
        elif isinstance(due_time, bool) or not isinstance(due_time, int) or due_time < 0:
            raise TaskValidationError("due_time must be a non-negative unix timestamp.")

        persistent = spec.get("persistent")
        return Task(
            topic=topic,
            id=task_id,
            priority=priority,
            status=TaskStatus.DELAY,
            url=url,
            method=method,
            call=call,
            params=dict(params),
            callback=callback,
            rule=Rule(intervals=intervals, attempt_count=0, persistent=True if persistent is None else bool(persistent)),
            due_time=due_time,
            last_run_time="",
            create_time=format_local(now),
        )

    def _check_ref(self, ref: Any, what: str) -> List[str]:
        if not isinstance(ref, (list, tuple)) or len(ref) != 2 or not all(isinstance(part, str) and part for part in ref):
            raise TaskValidationError(f"{what} must be a [handler, action] pair.")
        if ref not in self.registry:
            raise TaskValidationError(f"{what} handler {ref[0]} not exists or action {ref[1]} not exists.")
        return list(ref)


def parse_intervals(value: Any) -> List[int]:
    """'5,10,20' or [5, 10, 20] -> [5, 10, 20]; empty means [0]."""
    if value is None or value == "" or value == []:
        return list(DEFAULT_INTERVALS)
    items = value.split(",") if isinstance(value, str) else list(value)
    intervals = []
    for item in items:
        text = item.strip() if isinstance(item, str) else item
        if isinstance(text, bool) or not (str(text).isascii() and str(text).isdigit()):
            raise TaskValidationError("intervals incorrect format")
        intervals.append(int(text))
    return intervals


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()
