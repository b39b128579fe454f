"""
Engine source package: client, normalizer, scheduler, collector, alerts,
retention, storage, and the cron trigger API.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-101)
"""
