# Threatfeed - Main Package
#
# Threat-intelligence feed for a wallet-gated crypto-security service:
# ingestion + dedup, correlation, pattern rules, aging, and
# per-subscriber fan-out of record mutations.

__version__ = "0.4.1"
__author__ = "Threatfeed Team"
__description__ = "Crypto threat-intelligence feed service"

from .core import get_audit_logger, get_settings, AuditEventType

__all__ = [
    "__version__",
    "get_audit_logger",
    "get_settings",
    "AuditEventType",
]
