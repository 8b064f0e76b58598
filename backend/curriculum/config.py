"""
Configuration for the curriculum core.

Intent:
    Provide a single place to read environment variables that control store
    selection (DI), the database DSN and pagination bounds.

Why:
    Centralising configuration keeps defaults and validation explicit and lets
    tests exercise config behaviour without booting the web app.
"""
from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Optional


# Edit locks older than this are considered abandoned and may be taken over.
# Any future "force unlock" capability must read this constant as well.
LESSON_LOCK_TIMEOUT_MINUTES = 30


@dataclass(frozen=True)
class CurriculumConfig:
    store_backend: str  # "memory" | "db"
    database_url: Optional[str]
    default_page_size: int
    max_page_size: int


def _int_env(name: str, default: int, *, lower: int = 1, upper: int = 1000) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}")
    if value < lower or value > upper:
        raise ValueError(f"{name} out of range ({lower}..{upper}), got: {value}")
    return value


def is_prod_like() -> bool:
    env = (os.getenv("SILVEREDGE_ENV") or "dev").lower()
    return env in {"prod", "production", "stage", "staging"}


def load_curriculum_config() -> CurriculumConfig:
    """
    Parse and validate curriculum configuration from environment variables.

    Behavior:
        - `CURRICULUM_STORE` selects the document store: "memory" (default) or "db".
        - "memory" is refused in production/staging environments.
        - Page sizes are validated; the default may not exceed the maximum.
    """
    backend = (os.getenv("CURRICULUM_STORE") or "memory").strip().lower()
    if backend not in {"memory", "db"}:
        raise ValueError("CURRICULUM_STORE must be 'memory' or 'db'")
    if backend == "memory" and is_prod_like():
        raise ValueError("CURRICULUM_STORE=memory is not allowed in production/staging environments.")

    database_url = os.getenv("CURRICULUM_DATABASE_URL") or os.getenv("DATABASE_URL") or None

    max_page_size = _int_env("CURRICULUM_MAX_PAGE_SIZE", 100)
    default_page_size = _int_env("CURRICULUM_DEFAULT_PAGE_SIZE", 20)
    if default_page_size > max_page_size:
        raise ValueError("CURRICULUM_DEFAULT_PAGE_SIZE must not exceed CURRICULUM_MAX_PAGE_SIZE")

    return CurriculumConfig(
        store_backend=backend,
        database_url=database_url,
        default_page_size=default_page_size,
        max_page_size=max_page_size,
    )


__all__ = [
    "LESSON_LOCK_TIMEOUT_MINUTES",
    "CurriculumConfig",
    "is_prod_like",
    "load_curriculum_config",
]
