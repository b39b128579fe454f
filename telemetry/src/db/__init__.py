"""
Storage schema and session helpers.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-101)
"""
