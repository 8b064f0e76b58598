"""Lesson-owned leaves: ordered exercises and the (at most one) quiz per lesson.

Exercises follow the same contiguous ordering rules as sections and lessons.
Deleting an exercise lives in the cascade deletion service next to the other
delete operations.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..errors import Conflict, DuplicateKey, NotFound
from ..models import EXERCISES, LESSONS, QUIZZES, Exercise, Quiz, from_doc, new_id, to_iso, utcnow
from ..ordering import OrderedCollection
from ..store import DocumentStoreProtocol
from .validation import _UNSET, normalize_dict_list, normalize_text, normalize_title


logger = logging.getLogger("silveredge.curriculum.content")


def _normalize_exercise_data(data: Mapping[str, Any], *, partial: bool) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    if "title" in data or not partial:
        values["title"] = normalize_title(data.get("title"))
    for name in ("instructions", "starter_code", "solution"):
        if name in data or not partial:
            values[name] = normalize_text(data.get(name), code=f"invalid_{name}")
    if "test_cases" in data or not partial:
        values["test_cases"] = normalize_dict_list(data.get("test_cases"), code="invalid_test_cases")
    return values


@dataclass
class LessonContentService:
    store: DocumentStoreProtocol
    clock: Callable[[], datetime] = utcnow

    def __post_init__(self) -> None:
        self.exercise_order = OrderedCollection(self.store, EXERCISES, "lesson_id", self.clock, parent_collection=LESSONS)

    def _require_lesson(self, lesson_id: str) -> None:
        if self.store.get(LESSONS, lesson_id) is None:
            raise NotFound("lesson_not_found")

    # --- Exercises ----------------------------------------------------------------
    def list_exercises(self, lesson_id: str) -> List[Exercise]:
        self._require_lesson(lesson_id)
        return [from_doc(Exercise, d) for d in self.exercise_order.siblings(lesson_id)]

    def create_exercise(self, lesson_id: str, data: Mapping[str, Any]) -> Exercise:
        self._require_lesson(lesson_id)
        values = _normalize_exercise_data(data, partial=False)
        now = to_iso(self.clock())
        doc = dict(values, id=new_id(), created_at=now, updated_at=now)
        stored = self.exercise_order.insert_last(lesson_id, doc)
        logger.info("exercise created id=%s lesson=%s index=%s", stored["id"], lesson_id, stored["order_index"])
        return from_doc(Exercise, stored)

    def update_exercise(self, lesson_id: str, exercise_id: str, data: Mapping[str, Any]) -> Exercise:
        current = self.store.get(EXERCISES, exercise_id)
        if current is None or current.get("lesson_id") != lesson_id:
            raise NotFound("exercise_not_found")
        values = _normalize_exercise_data(data, partial=True)
        if not values:
            return from_doc(Exercise, current)
        values["updated_at"] = to_iso(self.clock())
        doc = self.store.update(EXERCISES, exercise_id, values)
        if doc is None:
            raise NotFound("exercise_not_found")
        return from_doc(Exercise, doc)

    def reorder_exercises(self, lesson_id: str, exercise_ids: List[str]) -> List[Exercise]:
        self._require_lesson(lesson_id)
        docs = self.exercise_order.apply_explicit_order(lesson_id, exercise_ids)
        return [from_doc(Exercise, d) for d in docs]

    # --- Quiz ---------------------------------------------------------------------
    def get_quiz(self, lesson_id: str) -> Optional[Quiz]:
        self._require_lesson(lesson_id)
        docs = self.store.find(QUIZZES, {"lesson_id": lesson_id}, limit=1)
        return from_doc(Quiz, docs[0]) if docs else None

    def create_quiz(self, lesson_id: str, questions: object) -> Quiz:
        self._require_lesson(lesson_id)
        now = to_iso(self.clock())
        doc = {
            "id": new_id(),
            "lesson_id": lesson_id,
            "questions": normalize_dict_list(questions, code="invalid_questions"),
            "created_at": now,
            "updated_at": now,
        }
        try:
            stored = self.store.insert(QUIZZES, doc, unique_on=("lesson_id",))
        except DuplicateKey as exc:
            raise Conflict("quiz_exists", "Lesson already has a quiz") from exc
        logger.info("quiz created id=%s lesson=%s", stored["id"], lesson_id)
        return from_doc(Quiz, stored)

    def update_quiz(self, lesson_id: str, *, questions: object = _UNSET) -> Quiz:
        quiz = self.get_quiz(lesson_id)
        if quiz is None:
            raise NotFound("quiz_not_found")
        if questions is _UNSET:
            return quiz
        doc = self.store.update(
            QUIZZES,
            quiz.id,
            {
                "questions": normalize_dict_list(questions, code="invalid_questions"),
                "updated_at": to_iso(self.clock()),
            },
        )
        if doc is None:
            raise NotFound("quiz_not_found")
        return from_doc(Quiz, doc)

    def delete_quiz(self, lesson_id: str) -> None:
        self._require_lesson(lesson_id)
        if self.store.delete_many(QUIZZES, {"lesson_id": lesson_id}) == 0:
            raise NotFound("quiz_not_found")
        logger.info("quiz deleted lesson=%s", lesson_id)


__all__ = ["LessonContentService"]
