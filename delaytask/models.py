from enum import IntEnum
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_INTERVALS = [0]
DEFAULT_PRIORITY = 1
# tasks popped per round, per priority lane; lanes are served highest number first
DEFAULT_QUEUE_QUOTAS = {
    1: 2,
    2: 3,
    3: 5,
}
HTTP_METHODS = ("GET", "POST")


class TaskStatus(IntEnum):
    DELAY = 1
    OK = 2
    FAIL = 3
    DELETED = 4


class Rule(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    intervals: List[int] = Field(default_factory=lambda: list(DEFAULT_INTERVALS))
    attempt_count: int = Field(default=0, alias="attemptCount")
    persistent: bool = True


class Task(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    topic: str
    id: str
    priority: int = DEFAULT_PRIORITY
    status: TaskStatus = TaskStatus.DELAY  # only DELAY tasks are promoted or run
    url: str = ""
    method: str = "GET"
    call: List[str] = Field(default_factory=list)  # [handler_id, action_id]
    params: Dict[str, Any] = Field(default_factory=dict)
    callback: List[str] = Field(default_factory=list)
    rule: Rule = Field(default_factory=Rule)
    due_time: int = Field(alias="dueTime")
    last_run_time: str = Field(default="", alias="lastRunTime")
    create_time: str = Field(alias="createTime")

    @property
    def key(self) -> str:
        return task_key(self.topic, self.id)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str) -> "Task":
        return cls.model_validate_json(raw)


def task_key(topic: str, task_id: str) -> str:
    return f"{topic}:{task_id}"
