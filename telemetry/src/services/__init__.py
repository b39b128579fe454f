"""
Service layer over the storage schema.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-101)
"""
