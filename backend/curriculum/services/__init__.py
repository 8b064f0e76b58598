"""Use case layer for the curriculum core.

Re-export the services for convenient imports in adapters and tests.
"""

from .content import LessonContentService
from .deletion import CascadeDeletionService
from .hierarchy import HierarchyService
from .locks import EditLockService
from .publication import PublicationService

__all__ = [
    "CascadeDeletionService",
    "EditLockService",
    "HierarchyService",
    "LessonContentService",
    "PublicationService",
]
