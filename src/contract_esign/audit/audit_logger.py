"""SQL-backed audit trail for contracts, calibration and signing."""

import csv
import io
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select

from ..interfaces.audit import AuditEvent, AuditEventType, IAuditLogger
from .database import DatabaseManager
from .models import AuditEventModel


logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "id",
    "event_type",
    "timestamp",
    "contract_id",
    "template_id",
    "user_id",
    "details",
    "metadata",
]


def _type_value(event_type: Union[AuditEventType, str]) -> str:
    return event_type.value if isinstance(event_type, AuditEventType) else event_type


def _event_record(event: AuditEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "event_type": _type_value(event.event_type),
        "timestamp": event.timestamp.isoformat() if event.timestamp else None,
        "contract_id": event.contract_id,
        "template_id": event.template_id,
        "user_id": event.user_id,
        "details": event.details,
        "metadata": event.metadata,
    }


class AuditLogger(IAuditLogger):
    """
    Writes audit events to the ``audit_events`` table.

    Every lifecycle transition, provider call and calibration change of a
    contract or template is recorded here. Event details hold identifiers,
    counts and variable names; contract values are never written.
    """

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        database_url: Optional[str] = None,
    ):
        """
        Args:
            db_manager: Shared manager; left open by ``close``.
            database_url: Used to build a private manager when ``db_manager``
                is not given.
        """
        self._owns_db_manager = db_manager is None
        self._db_manager = db_manager or DatabaseManager(database_url=database_url)

    @staticmethod
    def _to_model(event: AuditEvent) -> AuditEventModel:
        return AuditEventModel(
            id=uuid.UUID(event.id) if isinstance(event.id, str) else event.id,
            event_type=_type_value(event.event_type),
            timestamp=event.timestamp,
            contract_id=event.contract_id,
            template_id=event.template_id,
            user_id=event.user_id,
            details=event.details or {},
            metadata_=event.metadata or {},
        )

    @staticmethod
    def _from_model(model: AuditEventModel) -> AuditEvent:
        return AuditEvent(
            id=str(model.id),
            event_type=AuditEventType(model.event_type),
            timestamp=model.timestamp,
            contract_id=model.contract_id,
            template_id=model.template_id,
            user_id=model.user_id,
            details=model.details or {},
            metadata=model.metadata_ or {},
        )

    def log_event(self, event: AuditEvent) -> None:
        with self._db_manager.get_session() as session:
            session.add(self._to_model(event))
        logger.debug(f"Audit {_type_value(event.event_type)} for {event.contract_id or event.template_id}")

    def get_events(
        self,
        contract_id: Optional[str] = None,
        template_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> List[AuditEvent]:
        """Events matching every given filter, newest first."""
        query = select(AuditEventModel)
        if contract_id:
            query = query.where(AuditEventModel.contract_id == contract_id)
        if template_id:
            query = query.where(AuditEventModel.template_id == template_id)
        if event_type:
            query = query.where(AuditEventModel.event_type == _type_value(event_type))
        if start_time:
            query = query.where(AuditEventModel.timestamp >= start_time)
        if end_time:
            query = query.where(AuditEventModel.timestamp <= end_time)
        query = query.order_by(AuditEventModel.timestamp.desc())

        with self._db_manager.get_session() as session:
            return [self._from_model(m) for m in session.execute(query).scalars().all()]

    def export_log(self, contract_id: str, format: str = "json") -> str:
        """
        Export one contract's audit trail as ``json`` or ``csv``.

        The JSON export also lists the lifecycle transitions in time order
        and the state the contract ended in.

        Raises:
            ValueError: If format is not supported.
        """
        exporters = {"json": self._export_json, "csv": self._export_csv}
        if format not in exporters:
            raise ValueError(f"Unsupported export format: {format}. Use 'json' or 'csv'.")
        return exporters[format](self.get_events(contract_id=contract_id))

    def _export_json(self, events: List[AuditEvent]) -> str:
        transitions = sorted(
            (e for e in events if e.event_type == AuditEventType.STATE_CHANGED),
            key=lambda e: e.timestamp or datetime.min,
        )
        state_timeline = [
            {
                "from_state": e.details.get("from_state"),
                "to_state": e.details.get("to_state"),
                "reason": e.details.get("reason"),
                "timestamp": e.timestamp.isoformat() if e.timestamp else None,
            }
            for e in transitions
        ]
        return json.dumps(
            {
                "export_timestamp": datetime.utcnow().isoformat(),
                "event_count": len(events),
                "state_timeline": state_timeline,
                "final_state": state_timeline[-1]["to_state"] if state_timeline else None,
                "events": [_event_record(e) for e in events],
            },
            indent=2,
            ensure_ascii=False,
        )

    def _export_csv(self, events: List[AuditEvent]) -> str:
        output = io.StringIO()
        writer = csv.DictWriter(output, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        for event in events:
            record = _event_record(event)
            record["details"] = json.dumps(record["details"], ensure_ascii=False)
            record["metadata"] = json.dumps(record["metadata"], ensure_ascii=False)
            writer.writerow({k: "" if v is None else v for k, v in record.items()})
        return output.getvalue()

    # ========== Event helpers ==========

    def _log(
        self,
        event_type: AuditEventType,
        details: Dict[str, Any],
        contract_id: Optional[str] = None,
        template_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        self.log_event(
            AuditEvent(
                id=str(uuid.uuid4()),
                event_type=event_type,
                timestamp=datetime.utcnow(),
                contract_id=contract_id,
                template_id=template_id,
                user_id=user_id,
                details=details,
            )
        )

    def log_template_resolved(self, contract_id: str, template_id: str, contract_type: str) -> None:
        """Log template selection for a contract."""
        self._log(
            AuditEventType.TEMPLATE_RESOLVED,
            {"contract_type": contract_type},
            contract_id=contract_id,
            template_id=template_id,
        )

    def log_contract_rendered(
        self,
        contract_id: str,
        template_id: str,
        variable_names: List[str],
        byte_count: int,
    ) -> None:
        """Log a template render. Variable values are not recorded."""
        self._log(
            AuditEventType.CONTRACT_RENDERED,
            {"variable_names": sorted(variable_names), "byte_count": byte_count},
            contract_id=contract_id,
            template_id=template_id,
        )

    def log_artifact_converted(
        self,
        contract_id: str,
        template_id: str,
        page_count: int,
        storage_url: Optional[str],
    ) -> None:
        """Log a successful layout-preserving conversion."""
        self._log(
            AuditEventType.ARTIFACT_CONVERTED,
            {"page_count": page_count, "storage_url": storage_url},
            contract_id=contract_id,
            template_id=template_id,
        )

    def log_calibration_probed(
        self,
        template_id: str,
        field_names: List[str],
        base_version: int,
        user_id: Optional[str] = None,
    ) -> None:
        """Log a calibration probe render."""
        self._log(
            AuditEventType.CALIBRATION_PROBED,
            {"field_names": field_names, "base_version": base_version},
            template_id=template_id,
            user_id=user_id,
        )

    def log_calibration_committed(
        self,
        template_id: str,
        version: int,
        base_version: int,
        entry_count: int,
        user_id: Optional[str] = None,
    ) -> None:
        """Log a committed coordinate map version."""
        self._log(
            AuditEventType.CALIBRATION_COMMITTED,
            {"version": version, "base_version": base_version, "entry_count": entry_count},
            template_id=template_id,
            user_id=user_id,
        )

    def log_calibration_rolled_back(
        self,
        template_id: str,
        restored_version: int,
        new_version: int,
        user_id: Optional[str] = None,
    ) -> None:
        """Log a rollback that re-committed an earlier entry set."""
        self._log(
            AuditEventType.CALIBRATION_ROLLED_BACK,
            {"restored_version": restored_version, "new_version": new_version},
            template_id=template_id,
            user_id=user_id,
        )

    def log_document_uploaded(
        self,
        contract_id: str,
        provider_document_id: str,
        provider_template_id: Optional[str] = None,
    ) -> None:
        details = {"provider_document_id": provider_document_id}
        if provider_template_id:
            details["provider_template_id"] = provider_template_id
        self._log(
            AuditEventType.DOCUMENT_UPLOADED,
            details,
            contract_id=contract_id,
        )

    def log_fields_injected(
        self,
        contract_id: str,
        provider_document_id: str,
        template_id: str,
        calibration_version: Optional[int],
        field_names: List[str],
    ) -> None:
        self._log(
            AuditEventType.FIELDS_INJECTED,
            {
                "provider_document_id": provider_document_id,
                "calibration_version": calibration_version,
                "field_names": field_names,
            },
            contract_id=contract_id,
            template_id=template_id,
        )

    def log_invitation_sent(
        self,
        contract_id: str,
        provider_document_id: str,
        signer_email: str,
        invite_id: Optional[str] = None,
    ) -> None:
        self._log(
            AuditEventType.INVITATION_SENT,
            {
                "provider_document_id": provider_document_id,
                "signer_email": signer_email,
                "invite_id": invite_id,
            },
            contract_id=contract_id,
        )

    def log_state_changed(
        self,
        contract_id: str,
        from_state: Optional[str],
        to_state: str,
        reason: Optional[str] = None,
    ) -> None:
        self._log(
            AuditEventType.STATE_CHANGED,
            {"from_state": from_state, "to_state": to_state, "reason": reason},
            contract_id=contract_id,
        )

    def log_document_voided(self, contract_id: str, provider_document_id: str, reason: Optional[str] = None) -> None:
        self._log(
            AuditEventType.DOCUMENT_VOIDED,
            {"provider_document_id": provider_document_id, "reason": reason},
            contract_id=contract_id,
        )

    def log_pipeline_failed(self, contract_id: str, error: Dict[str, Any], last_state: Optional[str]) -> None:
        """Log a fatal pipeline error with the state the contract was left in."""
        self._log(
            AuditEventType.PIPELINE_FAILED,
            {"error": error, "last_state": last_state},
            contract_id=contract_id,
        )

    def close(self) -> None:
        """Close the audit logger and release resources."""
        if self._owns_db_manager:
            self._db_manager.close()
