"""Health check orchestration and evaluation engine.

Runs HTTP and SQL checks on a schedule, aggregates their outcomes into
metrics, evaluates SLA compliance and routes notifications.
"""
