"""
SilverEdge curriculum API application.

Why:
    Hosts the curriculum router behind a small identity middleware. Session
    handling lives in the gateway in front of this service; it forwards the
    authenticated subject in the `X-Authenticated-User` header.

Security:
    - Every `/api/` request without an identity gets a 401 JSON response.
    - Responses default to `Cache-Control: private, no-store`.
"""
from __future__ import annotations

import logging
import os
import sys

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from web.routes.curriculum import curriculum_router

IDENTITY_HEADER = "X-Authenticated-User"

logger = logging.getLogger("silveredge.web")


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via SILVEREDGE_ENABLE_DOTENV (default true
      outside pytest).
    """
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("SILVEREDGE_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


try:
    from dotenv import load_dotenv
    if _should_load_dotenv():
        load_dotenv()
except ImportError:
    pass


app = FastAPI(title="SilverEdge Curriculum", description="Content hierarchy and lesson edit locks", version="0.1.0")


def _is_public_path(path: str) -> bool:
    return path in ("/health", "/favicon.ico")


@app.middleware("http")
async def identity_enforcement(request: Request, call_next):
    path = request.url.path
    if _is_public_path(path):
        return await call_next(request)
    sub = (request.headers.get(IDENTITY_HEADER) or "").strip()
    if not sub:
        if path.startswith("/api/"):
            return JSONResponse({"error": "unauthenticated"}, status_code=401, headers={"Cache-Control": "private, no-store"})
        return await call_next(request)
    # Expose minimal, read-only user context for downstream handlers.
    request.state.user = {"sub": sub}
    return await call_next(request)


@app.exception_handler(Exception)
async def unexpected_error(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "internal_error"}, status_code=500, headers={"Cache-Control": "private, no-store"})


app.include_router(curriculum_router)


@app.get("/health")
async def health_check():
    # Security: include no-store to avoid caching any runtime status.
    return JSONResponse({"status": "healthy"}, headers={"Cache-Control": "private, no-store"})


def main() -> None:  # pragma: no cover - process entrypoint
    import uvicorn

    logging.basicConfig(
        level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8100")))


if __name__ == "__main__":  # pragma: no cover
    main()
