"""
FastAPI dependency providers.

Route handlers reach the engine components and the cron-secret guard
through app.state, which the lifespan populates at startup.

CHANGELOG:
- 2026-03-12: Initial creation (STORY-116)
"""

from typing import Annotated

from fastapi import Depends, Request

from telemetry.src.main import Components


def get_components(request: Request) -> Components:
    """Return the components built during application startup."""
    return request.app.state.components


async def require_cron_secret(request: Request) -> None:
    """Delegate to the CronSecretAuth instance stored on app.state."""
    await request.app.state.auth.verify(request)


# Usage in route handlers:
#   async def my_route(components: EngineComponents, _: CronGuard):
EngineComponents = Annotated[Components, Depends(get_components)]
CronGuard = Annotated[None, Depends(require_cron_secret)]
