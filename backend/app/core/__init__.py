"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables & settings
    logging     — structured JSON logging with job / request context
    errors      — exception hierarchy, retryability & handlers
    health      — health check aggregation
    database    — async SQLAlchemy engine & sessions
    middleware  — request ids, timing, access log
"""
