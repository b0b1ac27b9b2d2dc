from .models import Task, TaskStatus
from .utils import format_local

SUCCESS = "success"
FAIL = "fail"


def retry_interval(task: Task) -> int | None:
    """
    Interval for the attempt just counted, or None when the interval list
    is used up and the task does not repeat.
    """
    intervals = task.rule.intervals
    idx = task.rule.attempt_count
    if idx < len(intervals):
        return intervals[idx]
    if task.rule.persistent:
        return intervals[-1]
    return None


def apply_outcome(task: Task, outcome: str, now: int) -> Task:
    """
    Return a copy of task updated for one invocation outcome:
      - "success" -> OK
      - "fail"    -> FAIL
      - anything else retries per task.rule, or FAILs once it is exhausted
    """
    updated = task.model_copy(deep=True)
    updated.last_run_time = format_local(now)
    updated.rule.attempt_count += 1

    result = (outcome or "").strip().lower()
    if result == SUCCESS:
        updated.status = TaskStatus.OK
    elif result == FAIL:
        updated.status = TaskStatus.FAIL
    else:
        interval = retry_interval(updated)
        if interval is None:
            updated.status = TaskStatus.FAIL
        else:
            due = updated.due_time + interval
            # never schedule into the past after a stall
            if due < now:
                due = now + interval
            updated.due_time = due
    return updated
