"""
Core utilities and configuration for the gallery sync service.

This package provides foundational components used throughout the engine:

Modules:
    config: Application configuration and environment variable management
    database: Database connection and session management
    exceptions: Sync error taxonomy with structured context
    logging: Logging configuration and the deletion audit logger
    tenants: Tenant identity (api_token + property_id) and lookup

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import FetchFailed, Throttled
    from core.logging import setup_logging
    from core.tenants import TenantDirectory

Example:
    setup_logging()

    async with async_session_maker() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    "get_audit_logger",
    "Tenant",
    "TenantDirectory",
    # Exceptions
    "SyncException",
    "RetryableError",
    "NonRetryableError",
    "FetchFailed",
    "NetworkError",
    "AuthenticationError",
    "UpstreamRejected",
    "ResourceNotFoundError",
    "Throttled",
    "MaterializeFailed",
    "DatabaseError",
    "ReconciliationError",
    "ReconciliationPartialFailure",
    "ReconciliationNotAllowed",
    "SessionError",
    "LockContention",
    "StaleLockReleased",
    "InvalidStageTransition",
    "SessionNotFound",
    "UnknownTenant",
]
