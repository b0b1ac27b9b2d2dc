from __future__ import annotations

import pytest

from delaytask.client import TaskClient, parse_intervals
from delaytask.errors import TaskValidationError
from delaytask.models import TaskStatus


def _bucket(storage, topic):
    return storage.bucket_key(storage.bucket_for(topic))


def test_add_writes_pool_record_and_bucket(client, storage, clock) -> None:
    task = client.add({"topic": "order", "id": "1", "url": "example.com/hook", "intervals": "5,10,20"})

    stored = storage.get_task("order:1")
    assert stored == task
    assert stored.status is TaskStatus.DELAY
    assert stored.rule.attempt_count == 0
    assert stored.rule.intervals == [5, 10, 20]
    assert stored.rule.persistent is True
    assert stored.priority == 1
    assert stored.method == "GET"
    assert stored.due_time == clock.now + 5
    assert storage.client.zscore(_bucket(storage, "order"), "order:1") == clock.now + 5


def test_add_uses_explicit_due_time(client, storage, clock) -> None:
    client.add({"topic": "order", "id": "1", "url": "example.com", "intervals": [30], "due_time": clock.now + 600})

    assert storage.get_task("order:1").due_time == clock.now + 600


def test_add_defaults_to_single_immediate_interval(client, clock) -> None:
    task = client.add({"topic": "order", "id": 7, "url": "example.com"})

    assert task.id == "7"
    assert task.rule.intervals == [0]
    assert task.due_time == clock.now


def test_add_overwrites_existing_task(client, storage) -> None:
    client.add({"topic": "order", "id": "1", "url": "example.com/a"})
    client.add({"topic": "order", "id": "1", "url": "example.com/b", "priority": 3})

    stored = storage.get_task("order:1")
    assert stored.url == "example.com/b"
    assert stored.priority == 3


def test_add_accepts_registered_handlers(client, registry, storage) -> None:
    registry.register("billing", "charge", lambda task: "success")
    registry.register("billing", "notify", lambda task: None)

    task = client.add({"topic": "bill", "id": "1", "call": ["billing", "charge"], "callback": ["billing", "notify"]})

    assert task.call == ["billing", "charge"]
    assert task.callback == ["billing", "notify"]


@pytest.mark.parametrize(
    "spec, message",
    [
        ({"id": "1", "url": "example.com"}, "topic"),
        ({"topic": "order", "url": "example.com"}, "id"),
        ({"topic": "order", "id": "1"}, "url or call"),
        ({"topic": "order", "id": "1", "url": "example.com", "call": ["billing", "charge"]}, "only one"),
        ({"topic": "order", "id": "1", "call": ["billing", "missing"]}, "not exists"),
        ({"topic": "order", "id": "1", "call": "billing"}, "pair"),
        ({"topic": "order", "id": "1", "url": "example.com", "callback": ["nope", "x"]}, "callback"),
        ({"topic": "order", "id": "1", "url": "example.com", "intervals": "5,-1"}, "intervals"),
        ({"topic": "order", "id": "1", "url": "example.com", "intervals": "5,a"}, "intervals"),
        ({"topic": "order", "id": "1", "url": "example.com", "priority": 9}, "priority"),
        ({"topic": "order", "id": "1", "url": "example.com", "method": "DELETE"}, "method"),
        ({"topic": "order", "id": "1", "url": "example.com", "due_time": "soon"}, "due_time"),
    ],
)
def test_add_rejects_invalid_spec_without_writing(client, registry, storage, spec, message) -> None:
    registry.register("billing", "charge", lambda task: "success")

    with pytest.raises(TaskValidationError, match=message):
        client.add(spec)

    assert storage.client.hlen(storage.task_pool_key) == 0
    assert all(storage.bucket_size(i) == 0 for i in range(storage.bucket_count))


def test_parse_intervals() -> None:
    assert parse_intervals("5, 10,20") == [5, 10, 20]
    assert parse_intervals([0, 3]) == [0, 3]
    assert parse_intervals("") == [0]
    assert parse_intervals(None) == [0]
    with pytest.raises(TaskValidationError):
        parse_intervals([1.5])


def test_soft_delete_marks_deleted_once(client, storage, monkeypatch) -> None:
    client.add({"topic": "order", "id": "1", "url": "example.com"})

    client.delete("order", "1")
    assert storage.get_task("order:1").status is TaskStatus.DELETED

    writes = []
    monkeypatch.setattr(storage, "put_task", lambda task: writes.append(task))
    client.delete("order", "1")

    assert writes == []
    assert storage.get_task("order:1").status is TaskStatus.DELETED
    # index entries are left for the bucket worker to evict
    assert storage.bucket_size(storage.bucket_for("order")) == 1


def test_hard_delete_removes_record_only(client, storage) -> None:
    client.add({"topic": "order", "id": "1", "url": "example.com"})

    client.delete("order", "1", soft_delete=False)

    assert storage.get_task("order:1") is None
    assert storage.bucket_size(storage.bucket_for("order")) == 1


def test_delete_missing_task_is_noop(client, storage) -> None:
    client.delete("order", "404")
    client.delete("order", "404", soft_delete=False)

    assert storage.client.hlen(storage.task_pool_key) == 0


def test_get_returns_task_or_none(client) -> None:
    client.add({"topic": "order", "id": "1", "url": "example.com"})

    assert client.get("order", "1").key == "order:1"
    assert client.get("order", "2") is None


@pytest.mark.parametrize("url", ["http://[::1", "example.com:notaport/hook"])
def test_add_rejects_unparseable_url(client, storage, url) -> None:
    with pytest.raises(TaskValidationError, match="url"):
        client.add({"topic": "order", "id": "1", "url": url})

    assert storage.get_task("order:1") is None


def test_omitted_priority_falls_back_to_lowest_served_lane(storage, registry, clock) -> None:
    client = TaskClient(storage, registry, priorities=(2, 3), clock=clock)

    task = client.add({"topic": "order", "id": "1", "url": "example.com"})

    assert task.priority == 2


def test_add_accepts_stored_due_time_spelling(client, clock) -> None:
    task = client.add({"topic": "order", "id": "1", "url": "example.com", "dueTime": clock.now + 90})

    assert task.due_time == clock.now + 90
