"""Privacy-preserving audit utilities."""

from .audit import AuditEvent, AuditLogger

__all__ = ["AuditEvent", "AuditLogger"]
