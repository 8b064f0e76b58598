"""Hierarchy store: CRUD for courses, sections and lessons plus live aggregates.

Why:
    Keeps the Course → Section → Lesson tree consistent (ownership checks,
    contiguous ordering) independently of the web framework and of the
    concrete document store.

Aggregates:
    `section_count`, `lesson_count` and `class_count` are always computed by
    live queries and never stored on the course document. Course listings use
    batched lookups so the number of store round-trips per page is constant.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
import math
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..collaborators import ClassAssignmentsProtocol, UserDirectoryProtocol
from ..errors import BadRequest, Conflict, NotFound, VersionConflict
from ..models import (
    CODE_MODES,
    CONTENT_STATUSES,
    COURSES,
    EDITOR_COMPLEXITIES,
    EXERCISES,
    LANGUAGES,
    LESSONS,
    QUIZZES,
    SECTIONS,
    Course,
    Exercise,
    Lesson,
    Locked,
    Quiz,
    Section,
    from_doc,
    lock_state_of,
    new_id,
    to_doc,
    to_iso,
    utcnow,
)
from ..ordering import SIBLING_SORT, OrderedCollection
from ..store import DocumentStoreProtocol
from .locks import lock_is_expired
from .validation import (
    _UNSET,
    normalize_optional_int,
    normalize_optional_text,
    normalize_text,
    normalize_title,
    require_choice,
)


logger = logging.getLogger("silveredge.curriculum.hierarchy")

UNKNOWN_CREATOR = "Unknown"
SORTABLE_COURSE_FIELDS = frozenset({"created_at", "updated_at", "title"})


@dataclass
class SectionWithLessons:
    section: Section
    lessons: List[Lesson]

    @property
    def lesson_count(self) -> int:
        return len(self.lessons)


@dataclass
class CourseDetail:
    course: Course
    created_by_name: str
    sections: List[SectionWithLessons]
    class_count: int

    @property
    def section_count(self) -> int:
        return len(self.sections)

    @property
    def lesson_count(self) -> int:
        return sum(s.lesson_count for s in self.sections)


@dataclass
class CourseSummary:
    course: Course
    created_by_name: str
    section_count: int
    lesson_count: int
    class_count: int


@dataclass
class PaginationMeta:
    total: int
    page: int
    limit: int
    total_pages: int


@dataclass
class CourseListResult:
    courses: List[CourseSummary]
    meta: PaginationMeta


@dataclass
class LessonWithContent:
    lesson: Lesson
    exercises: List[Exercise] = field(default_factory=list)
    quiz: Optional[Quiz] = None


# Lesson content fields: name -> normaliser(value) used for create and partial update.
def _lesson_field_normalizers() -> Dict[str, Callable[[Any], Any]]:
    return {
        "title": lambda v: normalize_title(v),
        "content": lambda v: normalize_text(v, code="invalid_content"),
        "code_mode": lambda v: require_choice(v, CODE_MODES, code="invalid_code_mode"),
        "editor_complexity": lambda v: require_choice(v, EDITOR_COMPLEXITIES, code="invalid_editor_complexity"),
        "starter_code": lambda v: normalize_optional_text(v, code="invalid_starter_code"),
        "duration": lambda v: normalize_optional_int(v, code="invalid_duration"),
        "xp_reward": lambda v: normalize_optional_int(v, code="invalid_xp_reward"),
        "status": lambda v: require_choice(v, CONTENT_STATUSES, code="invalid_status"),
    }


def _normalize_lesson_data(data: Mapping[str, Any]) -> Dict[str, Any]:
    normalizers = _lesson_field_normalizers()
    unknown = set(data) - set(normalizers)
    if unknown:
        raise BadRequest("unknown_lesson_fields", f"unknown lesson fields: {sorted(unknown)}")
    return {name: normalizers[name](value) for name, value in data.items()}


@dataclass
class HierarchyService:
    """Use cases for the content tree (framework-independent)."""

    store: DocumentStoreProtocol
    classes: ClassAssignmentsProtocol
    users: UserDirectoryProtocol
    clock: Callable[[], datetime] = utcnow
    default_page_size: int = 20
    max_page_size: int = 100

    def __post_init__(self) -> None:
        self.section_order = OrderedCollection(self.store, SECTIONS, "course_id", self.clock, parent_collection=COURSES)
        self.lesson_order = OrderedCollection(self.store, LESSONS, "section_id", self.clock, parent_collection=SECTIONS)
        self.exercise_order = OrderedCollection(self.store, EXERCISES, "lesson_id", self.clock, parent_collection=LESSONS)

    def _now(self) -> str:
        return to_iso(self.clock())

    # --- Lookups ------------------------------------------------------------------
    def get_course(self, course_id: str) -> Course:
        doc = self.store.get(COURSES, course_id)
        if doc is None:
            raise NotFound("course_not_found")
        return from_doc(Course, doc)

    def get_section(self, section_id: str, *, course_id: Optional[str] = None) -> Section:
        doc = self.store.get(SECTIONS, section_id)
        if doc is None or (course_id is not None and doc.get("course_id") != course_id):
            raise NotFound("section_not_found")
        return from_doc(Section, doc)

    def get_lesson_record(self, lesson_id: str, *, section_id: Optional[str] = None) -> Lesson:
        doc = self.store.get(LESSONS, lesson_id)
        if doc is None or (section_id is not None and doc.get("section_id") != section_id):
            raise NotFound("lesson_not_found")
        return from_doc(Lesson, doc)

    # --- Courses ------------------------------------------------------------------
    def create_course(
        self,
        *,
        title: object,
        language: object,
        created_by: str,
        description: object = None,
    ) -> Course:
        now = self._now()
        course = Course(
            id=new_id(),
            title=normalize_title(title),
            description=normalize_optional_text(description, code="invalid_description", max_len=2000),
            language=require_choice(language, LANGUAGES, code="invalid_language"),
            status="draft",
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        doc = self.store.insert(COURSES, _doc_without_version(course))
        logger.info("course created id=%s by=%s", course.id, created_by)
        return from_doc(Course, doc)

    def update_course(
        self,
        course_id: str,
        *,
        title: object = _UNSET,
        description: object = _UNSET,
        language: object = _UNSET,
    ) -> Course:
        self.get_course(course_id)
        changes: Dict[str, Any] = {}
        if title is not _UNSET:
            changes["title"] = normalize_title(title)
        if description is not _UNSET:
            changes["description"] = normalize_optional_text(description, code="invalid_description", max_len=2000)
        if language is not _UNSET:
            changes["language"] = require_choice(language, LANGUAGES, code="invalid_language")
        return self._update(COURSES, Course, course_id, changes, "course_not_found")

    # --- Sections -----------------------------------------------------------------
    def list_sections(self, course_id: str) -> List[Section]:
        self.get_course(course_id)
        return [from_doc(Section, d) for d in self.section_order.siblings(course_id)]

    def create_section(self, course_id: str, *, title: object, description: object = None) -> Section:
        self.get_course(course_id)
        now = self._now()
        doc = {
            "id": new_id(),
            "title": normalize_title(title),
            "description": normalize_optional_text(description, code="invalid_description", max_len=2000),
            "created_at": now,
            "updated_at": now,
        }
        stored = self.section_order.insert_last(course_id, doc)
        logger.info("section created id=%s course=%s index=%s", stored["id"], course_id, stored["order_index"])
        return from_doc(Section, stored)

    def update_section(
        self,
        course_id: str,
        section_id: str,
        *,
        title: object = _UNSET,
        description: object = _UNSET,
    ) -> Section:
        self.get_section(section_id, course_id=course_id)
        changes: Dict[str, Any] = {}
        if title is not _UNSET:
            changes["title"] = normalize_title(title)
        if description is not _UNSET:
            changes["description"] = normalize_optional_text(description, code="invalid_description", max_len=2000)
        return self._update(SECTIONS, Section, section_id, changes, "section_not_found")

    def reorder_sections(self, course_id: str, section_ids: List[str]) -> List[Section]:
        self.get_course(course_id)
        docs = self.section_order.apply_explicit_order(course_id, section_ids)
        return [from_doc(Section, d) for d in docs]

    # --- Lessons ------------------------------------------------------------------
    def list_lessons(self, section_id: str) -> List[Lesson]:
        self.get_section(section_id)
        return [from_doc(Lesson, d) for d in self.lesson_order.siblings(section_id)]

    def create_lesson(self, section_id: str, data: Mapping[str, Any]) -> Lesson:
        self.get_section(section_id)
        values = _normalize_lesson_data(data)
        if "title" not in values:
            raise BadRequest("invalid_title")
        now = self._now()
        template = Lesson(id=new_id(), section_id=section_id, title=values["title"], order_index=0,
                          created_at=now, updated_at=now)
        doc = dict(_doc_without_version(template), **values)
        stored = self.lesson_order.insert_last(section_id, doc)
        logger.info("lesson created id=%s section=%s index=%s", stored["id"], section_id, stored["order_index"])
        return from_doc(Lesson, stored)

    def get_lesson(self, section_id: str, lesson_id: str) -> LessonWithContent:
        lesson = self.get_lesson_record(lesson_id, section_id=section_id)
        exercises = [from_doc(Exercise, d) for d in self.exercise_order.siblings(lesson_id)]
        quiz_docs = self.store.find(QUIZZES, {"lesson_id": lesson_id}, limit=1)
        quiz = from_doc(Quiz, quiz_docs[0]) if quiz_docs else None
        return LessonWithContent(lesson=lesson, exercises=exercises, quiz=quiz)

    def update_lesson(self, section_id: str, lesson_id: str, user_id: str, data: Mapping[str, Any]) -> Lesson:
        """Apply a partial content update unless another user holds a live edit lock."""
        lesson = self.get_lesson_record(lesson_id, section_id=section_id)
        changes = _normalize_lesson_data(data)
        state = lock_state_of(lesson)
        if isinstance(state, Locked) and state.owner_id != user_id and not lock_is_expired(state, self.clock()):
            logger.warning("lesson update refused lesson=%s user=%s locked_by=%s", lesson_id, user_id, state.owner_id)
            raise Conflict("lesson_locked", "Lesson is currently being edited by another user")
        if not changes:
            return lesson
        changes["updated_at"] = self._now()
        try:
            doc = self.store.update(LESSONS, lesson_id, changes, expected_version=lesson.version)
        except VersionConflict as exc:
            raise Conflict("concurrent_modification", "Lesson changed concurrently; reload and retry") from exc
        if doc is None:
            raise NotFound("lesson_not_found")
        return from_doc(Lesson, doc)

    def duplicate_lesson(self, section_id: str, lesson_id: str) -> Lesson:
        """Copy a lesson with its exercises and quiz to the end of the same section.

        The copy starts unlocked and in draft status.
        """
        source = self.get_lesson(section_id, lesson_id)
        now = self._now()
        copy_doc = _doc_without_version(source.lesson)
        copy_doc.update(
            id=new_id(),
            title=f"{source.lesson.title} (Copy)"[:200],
            status="draft",
            locked_by=None,
            locked_at=None,
            created_at=now,
            updated_at=now,
        )
        stored = self.lesson_order.insert_last(section_id, copy_doc)
        new_lesson_id = stored["id"]
        for exercise in source.exercises:
            ex_doc = _doc_without_version(exercise)
            ex_doc.update(id=new_id(), lesson_id=new_lesson_id, created_at=now, updated_at=now)
            self.store.insert(EXERCISES, ex_doc)
        if source.quiz is not None:
            quiz_doc = _doc_without_version(source.quiz)
            quiz_doc.update(id=new_id(), lesson_id=new_lesson_id, created_at=now, updated_at=now)
            self.store.insert(QUIZZES, quiz_doc)
        logger.info("lesson duplicated source=%s copy=%s", lesson_id, new_lesson_id)
        return from_doc(Lesson, stored)

    def reorder_lessons(self, section_id: str, lesson_ids: List[str]) -> List[Lesson]:
        self.get_section(section_id)
        docs = self.lesson_order.apply_explicit_order(section_id, lesson_ids)
        return [from_doc(Lesson, d) for d in docs]

    # --- Aggregates ---------------------------------------------------------------
    def get_course_detail(self, course_id: str) -> CourseDetail:
        course = self.get_course(course_id)
        sections = [from_doc(Section, d) for d in self.section_order.siblings(course_id)]
        lessons_by_section = self._lessons_by_section([s.id for s in sections])
        names = self.users.display_names([course.created_by])
        return CourseDetail(
            course=course,
            created_by_name=names.get(course.created_by) or UNKNOWN_CREATOR,
            sections=[SectionWithLessons(section=s, lessons=lessons_by_section.get(s.id, [])) for s in sections],
            class_count=self.classes.count_classes_referencing_course(course_id),
        )

    def _lessons_by_section(self, section_ids: List[str]) -> Dict[str, List[Lesson]]:
        grouped: Dict[str, List[Lesson]] = {sid: [] for sid in section_ids}
        if not section_ids:
            return grouped
        for doc in self.store.find(LESSONS, {"section_id": {"$in": section_ids}}, sort=SIBLING_SORT):
            grouped.setdefault(doc["section_id"], []).append(from_doc(Lesson, doc))
        return grouped

    def list_courses(
        self,
        *,
        status: Optional[str] = None,
        language: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> CourseListResult:
        """Return one page of courses with live per-course counts.

        Query count per page is constant: count + page, sections of the page,
        lessons of those sections, one class-count batch and one creator-name
        batch.
        """
        filter_: Dict[str, Any] = {}
        if status is not None:
            filter_["status"] = require_choice(status, CONTENT_STATUSES, code="invalid_status")
        if language is not None:
            filter_["language"] = require_choice(language, LANGUAGES, code="invalid_language")
        if search:
            filter_["title"] = {"$contains_ci": search.strip()}
        if sort_by not in SORTABLE_COURSE_FIELDS:
            raise BadRequest("invalid_sort_by")
        if sort_order not in {"asc", "desc"}:
            raise BadRequest("invalid_sort_order")

        page = max(1, int(page))
        limit = self.default_page_size if limit is None else max(1, min(int(limit), self.max_page_size))
        direction = 1 if sort_order == "asc" else -1

        total = self.store.count(COURSES, filter_)
        docs = self.store.find(
            COURSES,
            filter_,
            sort=[(sort_by, direction), ("id", direction)],
            skip=(page - 1) * limit,
            limit=limit,
        )
        courses = [from_doc(Course, d) for d in docs]
        course_ids = [c.id for c in courses]

        section_count: Dict[str, int] = {cid: 0 for cid in course_ids}
        course_of_section: Dict[str, str] = {}
        lesson_count: Dict[str, int] = {cid: 0 for cid in course_ids}
        class_count: Dict[str, int] = {}
        names: Dict[str, str] = {}
        if course_ids:
            for sec in self.store.find(SECTIONS, {"course_id": {"$in": course_ids}}):
                section_count[sec["course_id"]] += 1
                course_of_section[sec["id"]] = sec["course_id"]
            if course_of_section:
                for les in self.store.find(LESSONS, {"section_id": {"$in": list(course_of_section)}}):
                    lesson_count[course_of_section[les["section_id"]]] += 1
            class_count = self.classes.count_classes_by_course(course_ids)
            names = self.users.display_names(sorted({c.created_by for c in courses}))

        summaries = [
            CourseSummary(
                course=c,
                created_by_name=names.get(c.created_by) or UNKNOWN_CREATOR,
                section_count=section_count.get(c.id, 0),
                lesson_count=lesson_count.get(c.id, 0),
                class_count=class_count.get(c.id, 0),
            )
            for c in courses
        ]
        meta = PaginationMeta(total=total, page=page, limit=limit, total_pages=math.ceil(total / limit) if total else 0)
        return CourseListResult(courses=summaries, meta=meta)

    # --- Helpers ------------------------------------------------------------------
    def _update(self, collection: str, cls, doc_id: str, changes: Dict[str, Any], not_found: str):
        if not changes:
            doc = self.store.get(collection, doc_id)
        else:
            changes["updated_at"] = self._now()
            doc = self.store.update(collection, doc_id, changes)
        if doc is None:
            raise NotFound(not_found)
        return from_doc(cls, doc)


def _doc_without_version(record: Any) -> Dict[str, Any]:
    doc = to_doc(record)
    doc.pop("version", None)
    return doc


__all__ = [
    "HierarchyService",
    "CourseDetail",
    "CourseSummary",
    "CourseListResult",
    "PaginationMeta",
    "SectionWithLessons",
    "LessonWithContent",
    "UNKNOWN_CREATOR",
]
