"""Ports to collaborators outside the curriculum core, plus in-memory fakes.

The class roster and the user directory live in other bounded contexts. The
core only needs two read-only questions answered:

- how many classes reference a course (blocks deletion, feeds `class_count`);
- which display names belong to a batch of user ids (course listings).
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Protocol, Set


class ClassAssignmentsProtocol(Protocol):
    def count_classes_referencing_course(self, course_id: str) -> int:
        ...

    def count_classes_by_course(self, course_ids: List[str]) -> Dict[str, int]:
        ...


class UserDirectoryProtocol(Protocol):
    def display_names(self, user_ids: List[str]) -> Dict[str, str]:
        ...


class InMemoryClassAssignments:
    """Class → course ids mapping used in dev and tests."""

    def __init__(self) -> None:
        self._courses_by_class: Dict[str, Set[str]] = {}

    def assign(self, class_id: str, course_ids: Iterable[str]) -> None:
        self._courses_by_class.setdefault(class_id, set()).update(course_ids)

    def unassign(self, class_id: str, course_id: str) -> None:
        self._courses_by_class.get(class_id, set()).discard(course_id)

    def count_classes_referencing_course(self, course_id: str) -> int:
        return sum(1 for ids in self._courses_by_class.values() if course_id in ids)

    def count_classes_by_course(self, course_ids: List[str]) -> Dict[str, int]:
        counts = {cid: 0 for cid in course_ids}
        for ids in self._courses_by_class.values():
            for cid in ids:
                if cid in counts:
                    counts[cid] += 1
        return counts


class StaticUserDirectory:
    def __init__(self, names: Dict[str, str] | None = None) -> None:
        self.names: Dict[str, str] = dict(names or {})
        self.lookups: List[List[str]] = []

    def display_names(self, user_ids: List[str]) -> Dict[str, str]:
        self.lookups.append(list(user_ids))
        return {uid: self.names[uid] for uid in user_ids if uid in self.names}


__all__ = [
    "ClassAssignmentsProtocol",
    "UserDirectoryProtocol",
    "InMemoryClassAssignments",
    "StaticUserDirectory",
]
