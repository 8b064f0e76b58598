"""Cascade deletion of hierarchy nodes.

Traversal contract:
    Children are removed before their parent, leaves first:
    exercises + quiz → lesson → section → course. A concurrent reader can
    therefore see a parent without some of its children, but never a child
    whose parent is already gone.

Guards:
    Every guard (existence, class assignments, non-empty section) runs before
    the first write. Once writing has started a store failure is propagated
    as-is; the remaining nodes stay visible and the command can be repeated.

Ordering:
    Sibling compaction runs only after the removal itself has returned.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Callable, List, Tuple

from ..collaborators import ClassAssignmentsProtocol
from ..errors import Conflict, NotFound, ReferenceExists
from ..models import COURSES, EXERCISES, LESSONS, QUIZZES, SECTIONS, utcnow
from ..ordering import OrderedCollection
from ..store import DocumentStoreProtocol


logger = logging.getLogger("silveredge.curriculum.deletion")


@dataclass
class CascadeDeletionService:
    store: DocumentStoreProtocol
    classes: ClassAssignmentsProtocol
    clock: Callable[[], datetime] = utcnow

    def __post_init__(self) -> None:
        self.section_order = OrderedCollection(self.store, SECTIONS, "course_id", self.clock, parent_collection=COURSES)
        self.lesson_order = OrderedCollection(self.store, LESSONS, "section_id", self.clock, parent_collection=SECTIONS)
        self.exercise_order = OrderedCollection(self.store, EXERCISES, "lesson_id", self.clock, parent_collection=LESSONS)

    def _cascade_plan(self, course_id: str) -> List[Tuple[str, List[str]]]:
        """Return [(section_id, [lesson_id, ...]), ...] for the course, in sibling order."""
        plan = []
        for section in self.section_order.siblings(course_id):
            lesson_ids = [doc["id"] for doc in self.lesson_order.siblings(section["id"])]
            plan.append((section["id"], lesson_ids))
        return plan

    def _delete_lesson_leaves(self, lesson_id: str) -> None:
        self.store.delete_many(EXERCISES, {"lesson_id": lesson_id})
        self.store.delete_many(QUIZZES, {"lesson_id": lesson_id})

    def delete_course(self, course_id: str) -> None:
        if self.store.get(COURSES, course_id) is None:
            raise NotFound("course_not_found")
        assigned = self.classes.count_classes_referencing_course(course_id)
        if assigned > 0:
            logger.warning("course delete refused id=%s assigned_classes=%d", course_id, assigned)
            raise Conflict("course_assigned_to_classes", "Cannot delete course that is assigned to classes")

        plan = self._cascade_plan(course_id)
        for section_id, lesson_ids in plan:
            for lesson_id in lesson_ids:
                self._delete_lesson_leaves(lesson_id)
                self.store.delete(LESSONS, lesson_id)
            self.store.delete(SECTIONS, section_id)
        self.store.delete(COURSES, course_id)
        logger.info(
            "course deleted id=%s sections=%d lessons=%d",
            course_id,
            len(plan),
            sum(len(ids) for _, ids in plan),
        )

    def delete_section(self, course_id: str, section_id: str) -> None:
        """Delete an empty section; sections with lessons must be emptied first."""
        section = self.store.get(SECTIONS, section_id)
        if section is None or section.get("course_id") != course_id:
            raise NotFound("section_not_found")
        try:
            deleted = self.store.delete_unreferenced(SECTIONS, section_id, LESSONS, "section_id")
        except ReferenceExists as exc:
            logger.warning("section delete refused id=%s lessons=%d", section_id, exc.count)
            raise Conflict("section_not_empty", "Delete the section's lessons first") from exc
        if not deleted:
            raise NotFound("section_not_found")
        self.section_order.compact_after_removal(course_id, int(section["order_index"]))
        logger.info("section deleted id=%s course=%s", section_id, course_id)

    def delete_lesson(self, section_id: str, lesson_id: str) -> None:
        lesson = self.store.get(LESSONS, lesson_id)
        if lesson is None or lesson.get("section_id") != section_id:
            raise NotFound("lesson_not_found")

        self._delete_lesson_leaves(lesson_id)
        self.store.delete(LESSONS, lesson_id)
        self.lesson_order.compact_after_removal(section_id, int(lesson["order_index"]))
        logger.info("lesson deleted id=%s section=%s", lesson_id, section_id)

    def delete_exercise(self, lesson_id: str, exercise_id: str) -> None:
        exercise = self.store.get(EXERCISES, exercise_id)
        if exercise is None or exercise.get("lesson_id") != lesson_id:
            raise NotFound("exercise_not_found")

        self.store.delete(EXERCISES, exercise_id)
        self.exercise_order.compact_after_removal(lesson_id, int(exercise["order_index"]))
        logger.info("exercise deleted id=%s lesson=%s", exercise_id, lesson_id)


__all__ = ["CascadeDeletionService"]
