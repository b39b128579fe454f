"""
Trigger API package: FastAPI routes for the external scheduler.

CHANGELOG:
- 2026-03-12: Initial creation (STORY-116)
"""
