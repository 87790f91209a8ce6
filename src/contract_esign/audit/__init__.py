"""Persistence and audit trail for the Contract E-Sign Pipeline."""

from .audit_logger import AuditLogger
from .database import DatabaseManager, get_database_url
from .models import Base

__all__ = [
    "AuditLogger",
    "DatabaseManager",
    "get_database_url",
    "Base",
]
