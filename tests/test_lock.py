from __future__ import annotations

from delaytask.lock import LockManager


def test_acquire_sets_expiring_lease(storage) -> None:
    locks = LockManager(storage, ttl_ms=3000)

    token = locks.acquire("order:1")

    assert token
    assert storage.client.get(storage.lock_key("order:1")) == token
    assert 0 < storage.client.pttl(storage.lock_key("order:1")) <= 3000


def test_second_acquire_is_refused(storage, make_storage) -> None:
    first = LockManager(storage)
    other = LockManager(make_storage())

    assert first.acquire("order:1")
    assert other.acquire("order:1") is None


def test_release_only_with_matching_token(storage) -> None:
    locks = LockManager(storage)
    token = locks.acquire("order:1")

    assert locks.release("order:1", "someone-else") is False
    assert storage.client.exists(storage.lock_key("order:1"))

    assert locks.release("order:1", token) is True
    assert not storage.client.exists(storage.lock_key("order:1"))
    assert locks.acquire("order:1")


def test_release_after_takeover_keeps_new_lease(storage) -> None:
    locks = LockManager(storage)
    stale = locks.acquire("order:1")
    # the lease expired and another worker took it over
    storage.client.delete(storage.lock_key("order:1"))
    fresh = locks.acquire("order:1")

    assert locks.release("order:1", stale) is False
    assert storage.client.get(storage.lock_key("order:1")) == fresh


def test_hold_releases_on_exit(storage) -> None:
    locks = LockManager(storage)

    with locks.hold("order:1") as token:
        assert token
        with locks.hold("order:1") as contended:
            assert contended is None
        assert storage.client.exists(storage.lock_key("order:1"))

    assert not storage.client.exists(storage.lock_key("order:1"))
