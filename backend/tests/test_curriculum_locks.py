"""
Edit-lock manager: acquisition, renewal, expiry takeover and release rules.
"""
from datetime import timedelta

import pytest

from curriculum.config import LESSON_LOCK_TIMEOUT_MINUTES
from curriculum.errors import Conflict, Forbidden, NotFound
from curriculum.models import LESSONS, Locked, Unlocked, to_iso
from curriculum.services.locks import EditLockService, decide_acquire, decide_release, lock_is_expired
from curriculum.store import InMemoryDocumentStore

from support import T0, FakeClock, seed_lesson


def test_decide_acquire_pure_transitions():
    live = Locked(owner_id="alice", locked_at=T0)
    assert decide_acquire(Unlocked(), "alice", T0) == Locked("alice", T0)
    later = T0 + timedelta(minutes=5)
    assert decide_acquire(live, "alice", later) == Locked("alice", later)
    with pytest.raises(Conflict):
        decide_acquire(live, "bob", later)
    expired_at = T0 + timedelta(minutes=LESSON_LOCK_TIMEOUT_MINUTES)
    assert decide_acquire(live, "bob", expired_at) == Locked("bob", expired_at)


def test_decide_release_pure_transitions():
    assert decide_release(Unlocked(), "anyone") == Unlocked()
    assert decide_release(Locked("alice", T0), "alice") == Unlocked()
    with pytest.raises(Forbidden):
        decide_release(Locked("alice", T0), "bob")


def test_expiry_boundary_is_inclusive():
    state = Locked("alice", T0)
    limit = timedelta(minutes=LESSON_LOCK_TIMEOUT_MINUTES)
    assert not lock_is_expired(state, T0 + limit - timedelta(seconds=1))
    assert lock_is_expired(state, T0 + limit)


def test_acquire_on_unlocked_lesson_records_owner_and_time(services, clock):
    _, _, lesson = seed_lesson(services)
    locked = services.locks.acquire_lock(lesson.id, "alice")
    assert locked.locked_by == "alice"
    assert locked.locked_at == to_iso(T0)
    assert services.locks.lock_state(lesson.id) == Locked("alice", T0)


def test_owner_renewal_refreshes_timestamp(services, clock):
    _, _, lesson = seed_lesson(services)
    services.locks.acquire_lock(lesson.id, "alice")
    clock.advance(minutes=20)
    renewed = services.locks.acquire_lock(lesson.id, "alice")
    assert renewed.locked_at == to_iso(T0 + timedelta(minutes=20))


def test_live_lock_blocks_other_user_then_expires(services, clock):
    _, _, lesson = seed_lesson(services)
    services.locks.acquire_lock(lesson.id, "alice")

    clock.advance(minutes=10)
    with pytest.raises(Conflict) as exc:
        services.locks.acquire_lock(lesson.id, "bob")
    assert exc.value.code == "locked_by_another_user"
    assert services.locks.lock_state(lesson.id) == Locked("alice", T0)

    clock.set(T0 + timedelta(minutes=31))
    taken = services.locks.acquire_lock(lesson.id, "bob")
    assert taken.locked_by == "bob"
    assert taken.locked_at == to_iso(T0 + timedelta(minutes=31))


def test_release_by_owner_unlocks(services):
    _, _, lesson = seed_lesson(services)
    services.locks.acquire_lock(lesson.id, "alice")
    released = services.locks.release_lock(lesson.id, "alice")
    assert released.locked_by is None and released.locked_at is None
    assert services.locks.lock_state(lesson.id) == Unlocked()


def test_release_when_unlocked_is_a_noop(services, store):
    _, _, lesson = seed_lesson(services)
    before = store.get(LESSONS, lesson.id)["version"]
    services.locks.release_lock(lesson.id, "anyone")
    assert store.get(LESSONS, lesson.id)["version"] == before


def test_release_by_non_owner_is_forbidden_even_when_expired(services, clock):
    _, _, lesson = seed_lesson(services)
    services.locks.acquire_lock(lesson.id, "alice")
    clock.advance(hours=5)
    with pytest.raises(Forbidden) as exc:
        services.locks.release_lock(lesson.id, "bob")
    assert exc.value.code == "not_lock_owner"
    assert services.locks.lock_state(lesson.id) == Locked("alice", T0)


def test_lock_operations_on_missing_lesson(services):
    with pytest.raises(NotFound):
        services.locks.acquire_lock("missing", "alice")
    with pytest.raises(NotFound):
        services.locks.release_lock("missing", "alice")


class _RivalFirstStore(InMemoryDocumentStore):
    """Lets a rival write the lesson just before each compare-and-set lands."""

    def __init__(self, rival_changes, races: int = 1) -> None:
        super().__init__()
        self.rival_changes = rival_changes
        self.races = races

    def update(self, collection, doc_id, changes, *, expected_version=None):
        if expected_version is not None and self.races > 0:
            self.races -= 1
            super().update(collection, doc_id, self.rival_changes)
        return super().update(collection, doc_id, changes, expected_version=expected_version)


def _seeded_lock_service(store, clock):
    store.insert(LESSONS, {"id": "l1", "section_id": "s1", "title": "T", "order_index": 0,
                           "created_at": to_iso(T0), "updated_at": to_iso(T0)})
    return EditLockService(store, clock=clock)


def test_simultaneous_acquire_has_exactly_one_winner():
    clock = FakeClock()
    store = _RivalFirstStore({"locked_by": "bob", "locked_at": to_iso(T0)})
    service = _seeded_lock_service(store, clock)
    with pytest.raises(Conflict) as exc:
        service.acquire_lock("l1", "alice")
    assert exc.value.code == "locked_by_another_user"
    assert store.get(LESSONS, "l1")["locked_by"] == "bob"


def test_acquire_gives_up_after_bounded_contention():
    clock = FakeClock()
    store = _RivalFirstStore({}, races=10)
    service = _seeded_lock_service(store, clock)
    with pytest.raises(Conflict) as exc:
        service.acquire_lock("l1", "alice")
    assert exc.value.code == "lock_contention"
    assert store.get(LESSONS, "l1").get("locked_by") is None


def test_acquire_retries_once_after_benign_race():
    clock = FakeClock()
    store = _RivalFirstStore({"title": "Renamed"}, races=1)
    service = _seeded_lock_service(store, clock)
    locked = service.acquire_lock("l1", "alice")
    assert locked.locked_by == "alice"
    assert locked.title == "Renamed"
