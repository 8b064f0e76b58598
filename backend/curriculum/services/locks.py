"""Edit-lock manager for lessons.

Why:
    Two authors editing the same lesson would silently overwrite each other.
    The editing UI acquires a lock before it opens a lesson and releases it
    when done. The lock is advisory with automatic expiry: a crashed client
    that never releases blocks others for at most
    `LESSON_LOCK_TIMEOUT_MINUTES`, after which a new `acquire_lock` takes it over.

State machine (per lesson):
    Unlocked                    --acquire(u)-->  Locked(u, now)
    Locked(u, t)                --acquire(u)-->  Locked(u, now)   renewal
    Locked(o, t), live          --acquire(u)-->  Conflict
    Locked(o, t), expired       --acquire(u)-->  Locked(u, now)   steal
    Unlocked                    --release(u)-->  Unlocked          no-op
    Locked(u, t)                --release(u)-->  Unlocked
    Locked(o, t)                --release(u)-->  Forbidden (even when expired)

Concurrency:
    Every transition is a compare-and-set on the lesson document `version`.
    When another writer got there first the decision is re-made from a fresh
    read, so two simultaneous acquires can never both win.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Callable

from ..config import LESSON_LOCK_TIMEOUT_MINUTES
from ..errors import Conflict, Forbidden, NotFound, VersionConflict
from ..models import (
    LESSONS,
    Lesson,
    LockState,
    Locked,
    Unlocked,
    from_doc,
    lock_fields,
    lock_state_of,
    utcnow,
)
from ..store import DocumentStoreProtocol


logger = logging.getLogger("silveredge.curriculum.locks")


def lock_age_minutes(state: Locked, now: datetime) -> float:
    return (now - state.locked_at).total_seconds() / 60.0


def lock_is_expired(state: Locked, now: datetime) -> bool:
    return lock_age_minutes(state, now) >= LESSON_LOCK_TIMEOUT_MINUTES


def decide_acquire(state: LockState, user_id: str, now: datetime) -> Locked:
    """Return the state after `user_id` acquires, or raise `Conflict`."""
    if isinstance(state, Unlocked):
        return Locked(owner_id=user_id, locked_at=now)
    if isinstance(state, Locked):
        if state.owner_id == user_id or lock_is_expired(state, now):
            return Locked(owner_id=user_id, locked_at=now)
        raise Conflict("locked_by_another_user", "Lesson is currently being edited by another user")
    raise TypeError(f"unknown lock state: {state!r}")


def decide_release(state: LockState, user_id: str) -> LockState:
    """Return the state after `user_id` releases, or raise `Forbidden`."""
    if isinstance(state, Unlocked):
        return state
    if isinstance(state, Locked):
        if state.owner_id == user_id:
            return Unlocked()
        raise Forbidden("not_lock_owner", "You do not own this lock")
    raise TypeError(f"unknown lock state: {state!r}")


@dataclass
class EditLockService:
    """Use cases for lesson edit locks (framework-independent)."""

    store: DocumentStoreProtocol
    clock: Callable[[], datetime] = utcnow
    max_attempts: int = 3

    def _load(self, lesson_id: str) -> Lesson:
        doc = self.store.get(LESSONS, lesson_id)
        if doc is None:
            raise NotFound("lesson_not_found")
        return from_doc(Lesson, doc)

    def lock_state(self, lesson_id: str) -> LockState:
        return lock_state_of(self._load(lesson_id))

    def acquire_lock(self, lesson_id: str, user_id: str) -> Lesson:
        for _ in range(self.max_attempts):
            lesson = self._load(lesson_id)
            current = lock_state_of(lesson)
            now = self.clock()
            new_state = decide_acquire(current, user_id, now)
            if isinstance(current, Locked) and current.owner_id != user_id:
                logger.warning(
                    "taking over expired lock lesson=%s from=%s to=%s age_min=%.1f",
                    lesson_id,
                    current.owner_id,
                    user_id,
                    lock_age_minutes(current, now),
                )
            written = self._write(lesson, lock_fields(new_state))
            if written is not None:
                logger.info("lesson lock acquired lesson=%s user=%s", lesson_id, user_id)
                return written
        raise Conflict("lock_contention", "Lesson lock is being contended; retry")

    def release_lock(self, lesson_id: str, user_id: str) -> Lesson:
        for _ in range(self.max_attempts):
            lesson = self._load(lesson_id)
            current = lock_state_of(lesson)
            new_state = decide_release(current, user_id)
            if isinstance(current, Unlocked):
                return lesson
            written = self._write(lesson, lock_fields(new_state))
            if written is not None:
                logger.info("lesson lock released lesson=%s user=%s", lesson_id, user_id)
                return written
        raise Conflict("lock_contention", "Lesson lock is being contended; retry")

    def _write(self, lesson: Lesson, changes: dict) -> Lesson | None:
        """Compare-and-set the lock fields; None means another writer won the race."""
        try:
            doc = self.store.update(LESSONS, lesson.id, changes, expected_version=lesson.version)
        except VersionConflict:
            logger.debug("lock write lost race lesson=%s version=%s", lesson.id, lesson.version)
            return None
        if doc is None:
            raise NotFound("lesson_not_found")
        return from_doc(Lesson, doc)


__all__ = [
    "EditLockService",
    "decide_acquire",
    "decide_release",
    "lock_age_minutes",
    "lock_is_expired",
]
