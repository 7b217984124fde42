# Core Module - Shared Utilities
#
# Core module provides shared functionality across the feed:
# - Configuration
# - Audit logging
# - SQLite connection helper
# - Bounded caches

from .audit_log import (
    AuditEventType,
    AuditLogger,
    AuditSeverity,
    get_audit_logger,
)
from .cache import LRUCache
from .config import FeedSettings, get_settings, reset_settings

__all__ = [
    # Audit Logging
    "AuditLogger",
    "AuditEventType",
    "AuditSeverity",
    "get_audit_logger",
    # Cache
    "LRUCache",
    # Configuration
    "FeedSettings",
    "get_settings",
    "reset_settings",
]
