"""
Authentication package.

Exports the cron-secret dependency guarding the trigger API.

CHANGELOG:
- 2026-03-12: Initial creation (STORY-116)

TODO:
- None
"""

from telemetry.src.auth.bearer import CronSecretAuth, verify_cron_secret

__all__ = ["CronSecretAuth", "verify_cron_secret"]
