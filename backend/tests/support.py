"""Test helpers shared across curriculum test modules."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict

from curriculum.store import InMemoryDocumentStore


T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; `advance` moves time forward."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def set(self, when: datetime) -> None:
        self.now = when


def seed_course(services, *, title: str = "Intro to Python", created_by: str = "teacher-1", sections: int = 0):
    course = services.hierarchy.create_course(title=title, language="python", created_by=created_by)
    created = [services.hierarchy.create_section(course.id, title=f"Section {i}") for i in range(sections)]
    return course, created


def seed_lesson(services, *, created_by: str = "teacher-1"):
    """Create course → section → lesson and return the three records."""
    course, (section,) = seed_course(services, created_by=created_by, sections=1)
    lesson = services.hierarchy.create_lesson(section.id, {"title": "Variables"})
    return course, section, lesson


class InterleavingStore(InMemoryDocumentStore):
    """In-memory store that runs a one-shot callback right before a named operation.

    Lets a test place a competing request exactly between a service's reads
    and its store write, e.g. `store.before("rerank", lambda: ...)`.
    """

    def __init__(self) -> None:
        super().__init__()
        self._hooks: Dict[str, Callable[[], None]] = {}

    def before(self, operation: str, hook: Callable[[], None]) -> None:
        self._hooks[operation] = hook

    def _fire(self, operation: str) -> None:
        hook = self._hooks.pop(operation, None)
        if hook is not None:
            hook()

    def append(self, *args, **kwargs):
        self._fire("append")
        return super().append(*args, **kwargs)

    def rerank(self, *args, **kwargs):
        self._fire("rerank")
        return super().rerank(*args, **kwargs)

    def delete_unreferenced(self, *args, **kwargs):
        self._fire("delete_unreferenced")
        return super().delete_unreferenced(*args, **kwargs)
