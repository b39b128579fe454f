"""
Health check endpoint for the trigger API.

GET /health returns ``{"status": "ok"}`` without authentication. It is meant
for container health checks and uptime monitors.

CHANGELOG:
- 2026-03-12: Initial creation (STORY-116)

TODO:
- None
"""

from fastapi import APIRouter

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, str]:
    """Return a simple liveness status."""
    return {"status": "ok"}
