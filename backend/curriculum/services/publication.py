"""Publication gate: draft ⇄ published transitions for courses."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Callable

from ..errors import BadRequest, NotFound
from ..models import COURSES, SECTIONS, Course, from_doc, to_iso, utcnow
from ..store import DocumentStoreProtocol


logger = logging.getLogger("silveredge.curriculum.publication")


@dataclass
class PublicationService:
    store: DocumentStoreProtocol
    clock: Callable[[], datetime] = utcnow

    def _load(self, course_id: str) -> Course:
        doc = self.store.get(COURSES, course_id)
        if doc is None:
            raise NotFound("course_not_found")
        return from_doc(Course, doc)

    def _set_status(self, course_id: str, status: str) -> Course:
        doc = self.store.update(COURSES, course_id, {"status": status, "updated_at": to_iso(self.clock())})
        if doc is None:
            raise NotFound("course_not_found")
        logger.info("course %s id=%s", status, course_id)
        return from_doc(Course, doc)

    def publish(self, course_id: str) -> Course:
        course = self._load(course_id)
        if course.status == "published":
            raise BadRequest("already_published", "Course is already published")
        if self.store.count(SECTIONS, {"course_id": course_id}) == 0:
            raise BadRequest("course_has_no_sections", "Cannot publish course without sections")
        return self._set_status(course_id, "published")

    def unpublish(self, course_id: str) -> Course:
        course = self._load(course_id)
        if course.status == "draft":
            raise BadRequest("already_draft", "Course is already unpublished")
        return self._set_status(course_id, "draft")


__all__ = ["PublicationService"]
