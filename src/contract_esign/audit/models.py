"""SQLAlchemy models for the Contract E-Sign Pipeline."""

from datetime import datetime
import uuid

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Integer,
    Float,
    Boolean,
    Text,
    LargeBinary,
    ForeignKey,
    Index,
    CheckConstraint,
    UniqueConstraint,
    JSON,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import DeclarativeBase, relationship
from sqlalchemy.types import TypeDecorator


class JSONType(TypeDecorator):
    """Platform-independent JSON type.

    Uses JSONB for PostgreSQL and JSON for other databases (like SQLite).
    """
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(JSONB())
        else:
            return dialect.type_descriptor(JSON())


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


_LIFECYCLE_STATES = (
    "'rendered', 'uploaded', 'fields_injected', 'invitation_sent', "
    "'viewed', 'signed', 'declined', 'expired', 'voided'"
)


class ContractRecordModel(Base):
    """Contract records read to build template variables."""
    __tablename__ = "contract_records"

    id = Column(String(64), primary_key=True)
    client_name = Column(String(255), nullable=False)
    client_email = Column(String(255), nullable=False, default="")
    service_type = Column(String(100), nullable=False, default="")
    total_amount = Column(String(50))
    deposit_amount = Column(String(50))
    balance_amount = Column(String(50))
    total_hours = Column(String(50))
    hourly_rate = Column(String(50))
    overnight_fee = Column(String(50))
    contract_date = Column(String(50))
    metadata_ = Column("metadata", JSONType)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)


class CoordinateMapModel(Base):
    """One committed coordinate map version."""
    __tablename__ = "coordinate_maps"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    template_id = Column(String(100), nullable=False)
    version = Column(Integer, nullable=False)
    unit_system = Column(String(10), nullable=False, default="pt")
    origin = Column(String(20), nullable=False, default="top_left")
    page_dimensions = Column(JSONType, nullable=False)
    comment = Column(Text)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    entries = relationship(
        "CoordinateEntryModel",
        back_populates="coordinate_map",
        cascade="all, delete-orphan",
        order_by="CoordinateEntryModel.position",
    )

    __table_args__ = (
        UniqueConstraint("template_id", "version", name="uq_coordinate_maps_template_version"),
        CheckConstraint("origin IN ('top_left', 'bottom_left')", name="check_coordinate_origin"),
        CheckConstraint("version > 0", name="check_coordinate_version"),
        Index("idx_coordinate_maps_template_id", "template_id"),
    )


class CoordinateEntryModel(Base):
    """One field coordinate within a coordinate map version."""
    __tablename__ = "coordinate_entries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    map_id = Column(UUID(as_uuid=True), ForeignKey("coordinate_maps.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False)
    field_name = Column(String(100), nullable=False)
    kind = Column(String(20), nullable=False)
    page_index = Column(Integer, nullable=False)
    x = Column(Float, nullable=False)
    y = Column(Float, nullable=False)
    width = Column(Float, nullable=False)
    height = Column(Float, nullable=False)
    label = Column(String(255))
    prefill_key = Column(String(100))
    required = Column(Boolean, nullable=False, default=True)

    coordinate_map = relationship("CoordinateMapModel", back_populates="entries")

    __table_args__ = (
        UniqueConstraint("map_id", "field_name", name="uq_coordinate_entries_field"),
        CheckConstraint("kind IN ('signature', 'text', 'initials', 'date')", name="check_entry_kind"),
        Index("idx_coordinate_entries_map_id", "map_id"),
    )


class ReferenceArtifactModel(Base):
    """Reference PDF used as the base for calibration probes."""
    __tablename__ = "reference_artifacts"

    template_id = Column(String(100), primary_key=True)
    content = Column(LargeBinary, nullable=False)
    page_dimensions = Column(JSONType, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)


class GeneratedArtifactModel(Base):
    """Generated artifact metadata, one row per contract."""
    __tablename__ = "generated_artifacts"

    contract_id = Column(String(64), primary_key=True)
    template_id = Column(String(100), nullable=False)
    template_version = Column(Integer, nullable=False)
    doc_format = Column(String(10), nullable=False, default="pdf")
    page_count = Column(Integer, nullable=False)
    page_dimensions = Column(JSONType, nullable=False)
    storage_url = Column(String(500))
    content = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("doc_format IN ('docx', 'pdf')", name="check_artifact_format"),
        Index("idx_generated_artifacts_template_id", "template_id"),
    )


class SigningSessionModel(Base):
    """Signing session state, one row per contract."""
    __tablename__ = "signing_sessions"

    contract_id = Column(String(64), primary_key=True)
    provider_document_id = Column(String(100), unique=True, nullable=True)
    state = Column(String(20), nullable=False, default="rendered")
    fields = Column(JSONType, nullable=False, default=list)
    invite_id = Column(String(100))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    transitions = relationship(
        "StateTransitionModel",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="StateTransitionModel.sequence",
    )

    __table_args__ = (
        CheckConstraint(f"state IN ({_LIFECYCLE_STATES})", name="check_session_state"),
        Index("idx_signing_sessions_state", "state"),
    )


class StateTransitionModel(Base):
    """Lifecycle transition history for a signing session."""
    __tablename__ = "state_transitions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    contract_id = Column(String(64), ForeignKey("signing_sessions.contract_id", ondelete="CASCADE"), nullable=False)
    sequence = Column(Integer, nullable=False)
    from_state = Column(String(20))
    to_state = Column(String(20), nullable=False)
    reason = Column(Text)
    timestamp = Column(DateTime(timezone=True), default=datetime.utcnow)

    session = relationship("SigningSessionModel", back_populates="transitions")

    __table_args__ = (
        UniqueConstraint("contract_id", "sequence", name="uq_state_transitions_sequence"),
        Index("idx_state_transitions_contract_id", "contract_id"),
    )


class AuditEventModel(Base):
    """Audit events table model."""
    __tablename__ = "audit_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_type = Column(String(50), nullable=False)
    timestamp = Column(DateTime(timezone=True), default=datetime.utcnow)
    contract_id = Column(String(64), nullable=True)
    template_id = Column(String(100), nullable=True)
    user_id = Column(String(100), nullable=True)
    details = Column(JSONType)
    metadata_ = Column("metadata", JSONType)

    __table_args__ = (
        Index("idx_audit_events_event_type", "event_type"),
        Index("idx_audit_events_timestamp", "timestamp"),
        Index("idx_audit_events_contract_id", "contract_id"),
        Index("idx_audit_events_template_id", "template_id"),
    )
