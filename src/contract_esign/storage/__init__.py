"""Reference implementations of the storage collaborators."""

from .local_storage import LocalObjectStorage
from .sql_records import SqlContractRecords

__all__ = ["LocalObjectStorage", "SqlContractRecords"]
