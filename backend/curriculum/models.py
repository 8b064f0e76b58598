"""Domain records for the content hierarchy (Course → Section → Lesson → leaves).

Records are plain dataclasses mirroring the persisted documents one-to-one.
Timestamps are stored as ISO 8601 strings (UTC) so documents stay JSON-safe
in every store implementation.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
import secrets
import time
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar, Union


COURSES = "courses"
SECTIONS = "sections"
LESSONS = "lessons"
EXERCISES = "exercises"
QUIZZES = "quizzes"

LANGUAGES = frozenset({"javascript", "python"})
CONTENT_STATUSES = frozenset({"draft", "published"})
CODE_MODES = frozenset({"none", "html", "js", "python"})
EDITOR_COMPLEXITIES = frozenset({"simple", "standard", "advanced"})


def new_id() -> str:
    """Return an opaque id that sorts by creation time (millisecond resolution)."""
    return f"{int(time.time() * 1000):012x}{secrets.token_hex(10)}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Course:
    id: str
    title: str
    description: Optional[str]
    language: str
    status: str
    created_by: str
    created_at: str
    updated_at: str
    version: int = 1


@dataclass
class Section:
    id: str
    course_id: str
    title: str
    description: Optional[str]
    order_index: int
    created_at: str
    updated_at: str
    version: int = 1


@dataclass
class Lesson:
    id: str
    section_id: str
    title: str
    order_index: int
    created_at: str
    updated_at: str
    content: str = ""
    code_mode: str = "none"
    editor_complexity: str = "simple"
    starter_code: Optional[str] = None
    duration: Optional[int] = None
    xp_reward: Optional[int] = None
    status: str = "draft"
    locked_by: Optional[str] = None
    locked_at: Optional[str] = None
    version: int = 1


@dataclass
class Exercise:
    id: str
    lesson_id: str
    title: str
    instructions: str
    order_index: int
    created_at: str
    updated_at: str
    starter_code: str = ""
    solution: str = ""
    test_cases: List[Dict[str, Any]] = field(default_factory=list)
    version: int = 1


@dataclass
class Quiz:
    id: str
    lesson_id: str
    questions: List[Dict[str, Any]]
    created_at: str
    updated_at: str
    version: int = 1


# --- Edit lock state ------------------------------------------------------------

@dataclass(frozen=True)
class Unlocked:
    pass


@dataclass(frozen=True)
class Locked:
    owner_id: str
    locked_at: datetime


LockState = Union[Unlocked, Locked]


def lock_state_of(lesson: Lesson) -> LockState:
    """Derive the tagged lock state from the persisted `locked_by`/`locked_at` pair.

    A half-present pair violates the lesson invariant; it is read as unlocked
    so the next acquire rewrites both fields together.
    """
    if lesson.locked_by and lesson.locked_at:
        return Locked(owner_id=lesson.locked_by, locked_at=parse_iso(lesson.locked_at))
    return Unlocked()


def lock_fields(state: LockState) -> Dict[str, Optional[str]]:
    if isinstance(state, Locked):
        return {"locked_by": state.owner_id, "locked_at": to_iso(state.locked_at)}
    return {"locked_by": None, "locked_at": None}


# --- Document mapping -----------------------------------------------------------

T = TypeVar("T")


def from_doc(cls: Type[T], doc: Mapping[str, Any]) -> T:
    names = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    return cls(**{k: v for k, v in doc.items() if k in names})


def to_doc(record: Any) -> Dict[str, Any]:
    return asdict(record)


__all__ = [
    "COURSES",
    "SECTIONS",
    "LESSONS",
    "EXERCISES",
    "QUIZZES",
    "LANGUAGES",
    "CONTENT_STATUSES",
    "CODE_MODES",
    "EDITOR_COMPLEXITIES",
    "Course",
    "Section",
    "Lesson",
    "Exercise",
    "Quiz",
    "Unlocked",
    "Locked",
    "LockState",
    "lock_state_of",
    "lock_fields",
    "new_id",
    "utcnow",
    "to_iso",
    "parse_iso",
    "from_doc",
    "to_doc",
]
