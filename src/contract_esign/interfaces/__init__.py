"""Abstract interfaces for the Contract E-Sign Pipeline."""

from .audit import IAuditLogger
from .converter import IDocumentConverter
from .provider import ISignatureProvider
from .records import IContractRecords
from .storage import IObjectStorage

__all__ = [
    "IAuditLogger",
    "IDocumentConverter",
    "ISignatureProvider",
    "IContractRecords",
    "IObjectStorage",
]
