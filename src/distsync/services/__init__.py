"""Services fed by coordination events."""

from .audit_logger import AuditLogger

__all__ = ["AuditLogger"]
