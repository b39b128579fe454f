"""
Telemetry engine for cloud-connected portable power stations.

Polls the EcoFlow device cloud, normalizes quota snapshots into readings,
evaluates user alert thresholds, and enforces per-user data retention.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-101)

TODO:
- None
"""
