"""Audit trail types and interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class AuditEventType(Enum):
    """What happened to a contract or a template's calibration."""
    TEMPLATE_RESOLVED = "template_resolved"
    CONTRACT_RENDERED = "contract_rendered"
    ARTIFACT_CONVERTED = "artifact_converted"
    CALIBRATION_PROBED = "calibration_probed"
    CALIBRATION_COMMITTED = "calibration_committed"
    CALIBRATION_ROLLED_BACK = "calibration_rolled_back"
    DOCUMENT_UPLOADED = "document_uploaded"
    FIELDS_INJECTED = "fields_injected"
    INVITATION_SENT = "invitation_sent"
    STATE_CHANGED = "state_changed"
    DOCUMENT_VOIDED = "document_voided"
    PIPELINE_FAILED = "pipeline_failed"


@dataclass
class AuditEvent:
    """
    One audit record.

    Contract events carry ``contract_id``; calibration events carry
    ``template_id`` and the ``user_id`` of the staff member, if known.
    """
    id: str
    event_type: AuditEventType
    timestamp: datetime
    contract_id: Optional[str] = None
    template_id: Optional[str] = None
    user_id: Optional[str] = None
    details: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        self.details = self.details or {}
        self.metadata = self.metadata or {}


class IAuditLogger(ABC):
    """Append-only audit trail with filtered reads and per-contract export."""

    @abstractmethod
    def log_event(self, event: AuditEvent) -> None:
        pass

    @abstractmethod
    def get_events(
        self,
        contract_id: Optional[str] = None,
        template_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> List[AuditEvent]:
        """Events matching all given filters, newest first."""
        pass

    @abstractmethod
    def export_log(self, contract_id: str, format: str = "json") -> str:
        """
        Serialize one contract's events.

        Raises:
            ValueError: If ``format`` is neither "json" nor "csv".
        """
        pass
