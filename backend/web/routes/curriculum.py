"""
Curriculum API routes (courses, sections, lessons, leaves, edit locks).

Why:
    Thin HTTP adapter over the framework-free curriculum services. The adapter
    resolves the caller identity, parses payloads and maps typed failures to
    status codes; all invariants live in `curriculum.services`.

Notes:
    - Status mapping: NotFound → 404, Conflict → 409, Forbidden → 403,
      BadRequest → 400, StoreUnavailable → 503.
    - Persistence is selected by `curriculum.wiring` from the environment;
      tests call `set_services` to inject an isolated bundle.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from curriculum.errors import (
    BadRequest,
    Conflict,
    CurriculumError,
    Forbidden,
    NotFound,
    StoreUnavailable,
)
from curriculum.services.hierarchy import CourseDetail, CourseSummary, LessonWithContent
from curriculum.wiring import CurriculumServices, build_services

curriculum_router = APIRouter(tags=["Curriculum"])
logger = logging.getLogger("silveredge.web.curriculum")


"""Lazy services accessor to avoid import-time store checks in tests."""
_SERVICES: Optional[CurriculumServices] = None


def _get_services() -> CurriculumServices:  # pragma: no cover - simple accessor
    global _SERVICES
    if _SERVICES is None:
        _SERVICES = build_services()
    return _SERVICES


def set_services(services: CurriculumServices) -> None:
    """Allow tests to swap the curriculum services bundle."""
    global _SERVICES
    _SERVICES = services


# --- Request models ---------------------------------------------------------------

class CourseCreatePayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    language: str
    description: Optional[str] = None


class CourseUpdatePayload(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    language: Optional[str] = None


class SectionCreatePayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None


class SectionUpdatePayload(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None


class SectionReorderPayload(BaseModel):
    section_ids: List[str]


class LessonPayload(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    code_mode: Optional[str] = None
    editor_complexity: Optional[str] = None
    starter_code: Optional[str] = None
    duration: Optional[int] = None
    xp_reward: Optional[int] = None
    status: Optional[str] = None


class LessonReorderPayload(BaseModel):
    lesson_ids: List[str]


class ExercisePayload(BaseModel):
    title: Optional[str] = None
    instructions: Optional[str] = None
    starter_code: Optional[str] = None
    solution: Optional[str] = None
    test_cases: Optional[List[Dict[str, Any]]] = None


class ExerciseReorderPayload(BaseModel):
    exercise_ids: List[str]


class QuizPayload(BaseModel):
    questions: List[Dict[str, Any]]


# --- Helpers ----------------------------------------------------------------------

def _json_private(payload, *, status_code: int = 200) -> JSONResponse:
    """Return a JSONResponse with cache disabled for shared caches and browsers."""
    return JSONResponse(content=payload, status_code=status_code, headers={"Cache-Control": "private, no-store"})


def _no_content() -> Response:
    return Response(status_code=204, headers={"Cache-Control": "private, no-store"})


_STATUS_BY_FAILURE = (
    (NotFound, 404),
    (Conflict, 409),
    (Forbidden, 403),
    (BadRequest, 400),
)


def _failure(exc: CurriculumError | StoreUnavailable) -> JSONResponse:
    """Map a typed failure to its HTTP status; the body carries the failure code."""
    if isinstance(exc, StoreUnavailable):
        logger.error("curriculum store unavailable: %s", exc)
        return _json_private({"error": "store_unavailable"}, status_code=503)
    status = next((code for cls, code in _STATUS_BY_FAILURE if isinstance(exc, cls)), 500)
    return _json_private({"error": exc.code, "detail": exc.detail}, status_code=status)


def _current_sub(request: Request) -> str:
    user = getattr(request.state, "user", None) or {}
    sub = user.get("sub") if isinstance(user, dict) else None
    return str(sub) if sub else ""


def _require_user(request: Request):
    """Return (sub, error_response); the identity middleware sets request.state.user."""
    sub = _current_sub(request)
    if not sub:
        return "", _json_private({"error": "unauthenticated"}, status_code=401)
    return sub, None


def _record(r) -> dict:
    data = asdict(r)
    data.pop("version", None)
    return data


def _serialize_summary(s: CourseSummary) -> dict:
    return {
        **_record(s.course),
        "created_by_name": s.created_by_name,
        "section_count": s.section_count,
        "lesson_count": s.lesson_count,
        "class_count": s.class_count,
    }


def _serialize_detail(d: CourseDetail) -> dict:
    return {
        **_record(d.course),
        "created_by_name": d.created_by_name,
        "section_count": d.section_count,
        "lesson_count": d.lesson_count,
        "class_count": d.class_count,
        "sections": [
            {
                **_record(s.section),
                "lesson_count": s.lesson_count,
                "lessons": [_record(lesson) for lesson in s.lessons],
            }
            for s in d.sections
        ],
    }


def _serialize_lesson_content(c: LessonWithContent) -> dict:
    return {
        **_record(c.lesson),
        "exercises": [_record(e) for e in c.exercises],
        "quiz": _record(c.quiz) if c.quiz else None,
    }


# --- Courses ----------------------------------------------------------------------

@curriculum_router.get("/api/courses")
async def list_courses(
    request: Request,
    status: Optional[str] = None,
    language: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: Optional[int] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
):
    """List courses with live section/lesson/class counts and pagination meta."""
    _, error = _require_user(request)
    if error:
        return error
    try:
        result = _get_services().hierarchy.list_courses(
            status=status,
            language=language,
            search=search,
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order,
        )
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private({"courses": [_serialize_summary(c) for c in result.courses], "meta": asdict(result.meta)})


@curriculum_router.post("/api/courses")
async def create_course(request: Request, payload: CourseCreatePayload):
    sub, error = _require_user(request)
    if error:
        return error
    try:
        course = _get_services().hierarchy.create_course(
            title=payload.title,
            language=payload.language,
            description=payload.description,
            created_by=sub,
        )
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private(_record(course), status_code=201)


@curriculum_router.get("/api/courses/{course_id}")
async def get_course(request: Request, course_id: str):
    """Return the course with its ordered sections and lessons and live counts."""
    _, error = _require_user(request)
    if error:
        return error
    try:
        detail = _get_services().hierarchy.get_course_detail(course_id)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private(_serialize_detail(detail))


@curriculum_router.patch("/api/courses/{course_id}")
async def update_course(request: Request, course_id: str, payload: CourseUpdatePayload):
    _, error = _require_user(request)
    if error:
        return error
    updates = payload.model_dump(mode="python", exclude_unset=True)
    if not updates:
        return _json_private({"error": "bad_request", "detail": "empty_payload"}, status_code=400)
    try:
        course = _get_services().hierarchy.update_course(course_id, **updates)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private(_record(course))


@curriculum_router.delete("/api/courses/{course_id}")
async def delete_course(request: Request, course_id: str):
    """Delete a course and everything below it; 409 while assigned to classes."""
    _, error = _require_user(request)
    if error:
        return error
    try:
        _get_services().deletion.delete_course(course_id)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _no_content()


@curriculum_router.post("/api/courses/{course_id}/publish")
async def publish_course(request: Request, course_id: str):
    _, error = _require_user(request)
    if error:
        return error
    try:
        course = _get_services().publication.publish(course_id)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private(_record(course))


@curriculum_router.post("/api/courses/{course_id}/unpublish")
async def unpublish_course(request: Request, course_id: str):
    _, error = _require_user(request)
    if error:
        return error
    try:
        course = _get_services().publication.unpublish(course_id)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private(_record(course))


# --- Sections ---------------------------------------------------------------------

@curriculum_router.post("/api/courses/{course_id}/sections")
async def create_section(request: Request, course_id: str, payload: SectionCreatePayload):
    _, error = _require_user(request)
    if error:
        return error
    try:
        section = _get_services().hierarchy.create_section(
            course_id, title=payload.title, description=payload.description
        )
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private(_record(section), status_code=201)


@curriculum_router.post("/api/courses/{course_id}/sections/reorder")
async def reorder_sections(request: Request, course_id: str, payload: SectionReorderPayload):
    """Reorder all sections of a course to positions 0..n-1 as provided (atomic)."""
    _, error = _require_user(request)
    if error:
        return error
    try:
        ordered = _get_services().hierarchy.reorder_sections(course_id, payload.section_ids)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private([_record(s) for s in ordered])


@curriculum_router.patch("/api/courses/{course_id}/sections/{section_id}")
async def update_section(request: Request, course_id: str, section_id: str, payload: SectionUpdatePayload):
    _, error = _require_user(request)
    if error:
        return error
    updates = payload.model_dump(mode="python", exclude_unset=True)
    if not updates:
        return _json_private({"error": "bad_request", "detail": "empty_payload"}, status_code=400)
    try:
        section = _get_services().hierarchy.update_section(course_id, section_id, **updates)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private(_record(section))


@curriculum_router.delete("/api/courses/{course_id}/sections/{section_id}")
async def delete_section(request: Request, course_id: str, section_id: str):
    """Delete an empty section; 409 while it still has lessons."""
    _, error = _require_user(request)
    if error:
        return error
    try:
        _get_services().deletion.delete_section(course_id, section_id)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _no_content()


# --- Lessons ----------------------------------------------------------------------

def _guard_section(services: CurriculumServices, course_id: str, section_id: str) -> None:
    services.hierarchy.get_section(section_id, course_id=course_id)


@curriculum_router.get("/api/courses/{course_id}/sections/{section_id}/lessons")
async def list_lessons(request: Request, course_id: str, section_id: str):
    _, error = _require_user(request)
    if error:
        return error
    services = _get_services()
    try:
        _guard_section(services, course_id, section_id)
        lessons = services.hierarchy.list_lessons(section_id)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private([_record(lesson) for lesson in lessons])


@curriculum_router.post("/api/courses/{course_id}/sections/{section_id}/lessons")
async def create_lesson(request: Request, course_id: str, section_id: str, payload: LessonPayload):
    _, error = _require_user(request)
    if error:
        return error
    services = _get_services()
    try:
        _guard_section(services, course_id, section_id)
        lesson = services.hierarchy.create_lesson(section_id, payload.model_dump(mode="python", exclude_unset=True))
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private(_record(lesson), status_code=201)


@curriculum_router.post("/api/courses/{course_id}/sections/{section_id}/lessons/reorder")
async def reorder_lessons(request: Request, course_id: str, section_id: str, payload: LessonReorderPayload):
    _, error = _require_user(request)
    if error:
        return error
    services = _get_services()
    try:
        _guard_section(services, course_id, section_id)
        ordered = services.hierarchy.reorder_lessons(section_id, payload.lesson_ids)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private([_record(lesson) for lesson in ordered])


@curriculum_router.get("/api/courses/{course_id}/sections/{section_id}/lessons/{lesson_id}")
async def get_lesson(request: Request, course_id: str, section_id: str, lesson_id: str):
    _, error = _require_user(request)
    if error:
        return error
    services = _get_services()
    try:
        _guard_section(services, course_id, section_id)
        content = services.hierarchy.get_lesson(section_id, lesson_id)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private(_serialize_lesson_content(content))


@curriculum_router.patch("/api/courses/{course_id}/sections/{section_id}/lessons/{lesson_id}")
async def update_lesson(request: Request, course_id: str, section_id: str, lesson_id: str, payload: LessonPayload):
    """Partially update lesson content; 409 while another user holds the edit lock."""
    sub, error = _require_user(request)
    if error:
        return error
    updates = payload.model_dump(mode="python", exclude_unset=True)
    if not updates:
        return _json_private({"error": "bad_request", "detail": "empty_payload"}, status_code=400)
    services = _get_services()
    try:
        _guard_section(services, course_id, section_id)
        lesson = services.hierarchy.update_lesson(section_id, lesson_id, sub, updates)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private(_record(lesson))


@curriculum_router.delete("/api/courses/{course_id}/sections/{section_id}/lessons/{lesson_id}")
async def delete_lesson(request: Request, course_id: str, section_id: str, lesson_id: str):
    _, error = _require_user(request)
    if error:
        return error
    services = _get_services()
    try:
        _guard_section(services, course_id, section_id)
        services.deletion.delete_lesson(section_id, lesson_id)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _no_content()


@curriculum_router.post("/api/courses/{course_id}/sections/{section_id}/lessons/{lesson_id}/duplicate")
async def duplicate_lesson(request: Request, course_id: str, section_id: str, lesson_id: str):
    _, error = _require_user(request)
    if error:
        return error
    services = _get_services()
    try:
        _guard_section(services, course_id, section_id)
        lesson = services.hierarchy.duplicate_lesson(section_id, lesson_id)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private(_record(lesson), status_code=201)


# --- Edit locks -------------------------------------------------------------------

@curriculum_router.post("/api/lessons/{lesson_id}/lock")
async def acquire_lesson_lock(request: Request, lesson_id: str):
    """Acquire or renew the caller's edit lock; 409 while another user holds a live lock."""
    sub, error = _require_user(request)
    if error:
        return error
    try:
        lesson = _get_services().locks.acquire_lock(lesson_id, sub)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private(_record(lesson))


@curriculum_router.delete("/api/lessons/{lesson_id}/lock")
async def release_lesson_lock(request: Request, lesson_id: str):
    """Release the caller's edit lock; idempotent when unlocked, 403 for non-owners."""
    sub, error = _require_user(request)
    if error:
        return error
    try:
        _get_services().locks.release_lock(lesson_id, sub)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _no_content()


# --- Exercises & quiz ---------------------------------------------------------------

@curriculum_router.get("/api/lessons/{lesson_id}/exercises")
async def list_exercises(request: Request, lesson_id: str):
    _, error = _require_user(request)
    if error:
        return error
    try:
        exercises = _get_services().content.list_exercises(lesson_id)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private([_record(e) for e in exercises])


@curriculum_router.post("/api/lessons/{lesson_id}/exercises")
async def create_exercise(request: Request, lesson_id: str, payload: ExercisePayload):
    _, error = _require_user(request)
    if error:
        return error
    try:
        exercise = _get_services().content.create_exercise(
            lesson_id, payload.model_dump(mode="python", exclude_unset=True)
        )
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private(_record(exercise), status_code=201)


@curriculum_router.post("/api/lessons/{lesson_id}/exercises/reorder")
async def reorder_exercises(request: Request, lesson_id: str, payload: ExerciseReorderPayload):
    _, error = _require_user(request)
    if error:
        return error
    try:
        ordered = _get_services().content.reorder_exercises(lesson_id, payload.exercise_ids)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private([_record(e) for e in ordered])


@curriculum_router.patch("/api/lessons/{lesson_id}/exercises/{exercise_id}")
async def update_exercise(request: Request, lesson_id: str, exercise_id: str, payload: ExercisePayload):
    _, error = _require_user(request)
    if error:
        return error
    try:
        exercise = _get_services().content.update_exercise(
            lesson_id, exercise_id, payload.model_dump(mode="python", exclude_unset=True)
        )
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private(_record(exercise))


@curriculum_router.delete("/api/lessons/{lesson_id}/exercises/{exercise_id}")
async def delete_exercise(request: Request, lesson_id: str, exercise_id: str):
    _, error = _require_user(request)
    if error:
        return error
    try:
        _get_services().deletion.delete_exercise(lesson_id, exercise_id)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _no_content()


@curriculum_router.get("/api/lessons/{lesson_id}/quiz")
async def get_quiz(request: Request, lesson_id: str):
    _, error = _require_user(request)
    if error:
        return error
    try:
        quiz = _get_services().content.get_quiz(lesson_id)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    if quiz is None:
        return _json_private({"error": "quiz_not_found", "detail": "quiz_not_found"}, status_code=404)
    return _json_private(_record(quiz))


@curriculum_router.post("/api/lessons/{lesson_id}/quiz")
async def create_quiz(request: Request, lesson_id: str, payload: QuizPayload):
    _, error = _require_user(request)
    if error:
        return error
    try:
        quiz = _get_services().content.create_quiz(lesson_id, payload.questions)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private(_record(quiz), status_code=201)


@curriculum_router.put("/api/lessons/{lesson_id}/quiz")
async def update_quiz(request: Request, lesson_id: str, payload: QuizPayload):
    _, error = _require_user(request)
    if error:
        return error
    try:
        quiz = _get_services().content.update_quiz(lesson_id, questions=payload.questions)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _json_private(_record(quiz))


@curriculum_router.delete("/api/lessons/{lesson_id}/quiz")
async def delete_quiz(request: Request, lesson_id: str):
    _, error = _require_user(request)
    if error:
        return error
    try:
        _get_services().content.delete_quiz(lesson_id)
    except (CurriculumError, StoreUnavailable) as exc:
        return _failure(exc)
    return _no_content()
