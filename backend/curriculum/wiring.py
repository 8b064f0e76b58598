"""Assemble the curriculum services from configuration.

Prefers the Postgres-backed store when `CURRICULUM_STORE=db`; in dev a store
that cannot be constructed or reached degrades to the in-memory store with a warning,
while production/staging fail fast. Production/staging also require the class
assignment and user directory collaborators to be injected.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Callable, Optional

from .collaborators import (
    ClassAssignmentsProtocol,
    InMemoryClassAssignments,
    StaticUserDirectory,
    UserDirectoryProtocol,
)
from .config import CurriculumConfig, is_prod_like, load_curriculum_config
from .models import utcnow
from .services import (
    CascadeDeletionService,
    EditLockService,
    HierarchyService,
    LessonContentService,
    PublicationService,
)
from .errors import StoreUnavailable
from .store import DocumentStoreProtocol, InMemoryDocumentStore


logger = logging.getLogger("silveredge.curriculum")


@dataclass
class CurriculumServices:
    store: DocumentStoreProtocol
    hierarchy: HierarchyService
    content: LessonContentService
    deletion: CascadeDeletionService
    locks: EditLockService
    publication: PublicationService


def build_store(config: CurriculumConfig) -> DocumentStoreProtocol:
    if config.store_backend != "db":
        return InMemoryDocumentStore()
    try:
        from .store_db import DBDocumentStore

        store = DBDocumentStore(config.database_url)
        store.ensure_schema()
        return store
    except (ImportError, RuntimeError, StoreUnavailable) as exc:
        if is_prod_like():
            raise
        logger.warning("Curriculum DB store unavailable (%s); using in-memory fallback", exc)
        return InMemoryDocumentStore()


def _default_collaborator(name: str, fallback):
    """Return the in-memory stand-in for an uninjected collaborator (dev only).

    The stand-ins report zero class assignments and generic names, so in a
    prod-like environment they would silently disable the course delete guard.
    """
    if is_prod_like():
        raise RuntimeError(f"{name} must be injected in production/staging environments")
    logger.warning("No %s injected; using in-memory stand-in", name)
    return fallback()


def build_services(
    config: Optional[CurriculumConfig] = None,
    *,
    store: Optional[DocumentStoreProtocol] = None,
    classes: Optional[ClassAssignmentsProtocol] = None,
    users: Optional[UserDirectoryProtocol] = None,
    clock: Callable[[], datetime] = utcnow,
) -> CurriculumServices:
    config = config or load_curriculum_config()
    store = store if store is not None else build_store(config)
    if classes is None:
        classes = _default_collaborator("class assignments", InMemoryClassAssignments)
    if users is None:
        users = _default_collaborator("user directory", StaticUserDirectory)
    return CurriculumServices(
        store=store,
        hierarchy=HierarchyService(
            store,
            classes,
            users,
            clock=clock,
            default_page_size=config.default_page_size,
            max_page_size=config.max_page_size,
        ),
        content=LessonContentService(store, clock=clock),
        deletion=CascadeDeletionService(store, classes, clock=clock),
        locks=EditLockService(store, clock=clock),
        publication=PublicationService(store, clock=clock),
    )


__all__ = ["CurriculumServices", "build_services", "build_store"]
