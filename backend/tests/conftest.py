"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors).
Shared fixtures provide an isolated in-memory store and a controllable clock.
"""
import sys
from pathlib import Path

import pytest

# Ensure modules in backend/ and backend/web are importable across tests
REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_DIR = REPO_ROOT / "backend"
WEB_DIR = BACKEND_DIR / "web"
TESTS_DIR = BACKEND_DIR / "tests"
for p in (str(REPO_ROOT), str(BACKEND_DIR), str(WEB_DIR), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)

from curriculum.collaborators import InMemoryClassAssignments, StaticUserDirectory  # noqa: E402
from curriculum.config import CurriculumConfig  # noqa: E402
from curriculum.store import InMemoryDocumentStore  # noqa: E402
from curriculum.wiring import build_services  # noqa: E402
from support import FakeClock  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_curriculum_env(monkeypatch: pytest.MonkeyPatch):
    """Keep env-driven configuration deterministic unless a test opts in."""
    for var in (
        "SILVEREDGE_ENV",
        "CURRICULUM_STORE",
        "CURRICULUM_DATABASE_URL",
        "DATABASE_URL",
        "CURRICULUM_DEFAULT_PAGE_SIZE",
        "CURRICULUM_MAX_PAGE_SIZE",
        "ALLOW_SERVICE_DSN_FOR_TESTING",
    ):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def classes() -> InMemoryClassAssignments:
    return InMemoryClassAssignments()


@pytest.fixture
def users() -> StaticUserDirectory:
    return StaticUserDirectory({"teacher-1": "Ada Teacher", "teacher-2": "Grace Teacher"})


@pytest.fixture
def config() -> CurriculumConfig:
    return CurriculumConfig(store_backend="memory", database_url=None, default_page_size=20, max_page_size=100)


@pytest.fixture
def services(config, store, classes, users, clock):
    return build_services(config, store=store, classes=classes, users=users, clock=clock)
