"""SQLAlchemy implementation of the contract records store."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from ..audit.database import DatabaseManager
from ..audit.models import (
    ContractRecordModel,
    GeneratedArtifactModel,
    SigningSessionModel,
    StateTransitionModel,
)
from ..exceptions import RecordNotFound
from ..interfaces.records import IContractRecords
from ..models.artifact import GeneratedArtifact
from ..models.coordinates import PageDimensions
from ..models.enums import DocumentFormat, LifecycleState
from ..models.signing import InjectedField, SigningSession, StateTransition
from ..models.template import ContractInput


logger = logging.getLogger(__name__)


class SqlContractRecords(IContractRecords):
    """Contract records, artifacts and signing sessions in SQL tables."""

    def __init__(self, db_manager: DatabaseManager):
        self._db_manager = db_manager

    # ========== Contract records ==========

    def add_contract(self, contract: ContractInput) -> None:
        """Insert or replace a contract record."""
        with self._db_manager.get_session() as session:
            session.merge(
                ContractRecordModel(
                    id=contract.contract_id,
                    client_name=contract.client_name,
                    client_email=contract.client_email,
                    service_type=contract.service_type,
                    total_amount=contract.total_amount,
                    deposit_amount=contract.deposit_amount,
                    balance_amount=contract.balance_amount,
                    total_hours=contract.total_hours,
                    hourly_rate=contract.hourly_rate,
                    overnight_fee=contract.overnight_fee,
                    contract_date=contract.contract_date,
                    metadata_=contract.metadata or {},
                )
            )

    def get_contract_input(self, contract_id: str) -> ContractInput:
        with self._db_manager.get_session() as session:
            model = session.get(ContractRecordModel, contract_id)
            if model is None:
                raise RecordNotFound("Contract not found", record_type="contract", record_id=contract_id)
            return ContractInput(
                contract_id=model.id,
                client_name=model.client_name,
                client_email=model.client_email or "",
                service_type=model.service_type or "",
                total_amount=model.total_amount,
                deposit_amount=model.deposit_amount,
                balance_amount=model.balance_amount,
                total_hours=model.total_hours,
                hourly_rate=model.hourly_rate,
                overnight_fee=model.overnight_fee,
                contract_date=model.contract_date,
                metadata=model.metadata_ or {},
            )

    # ========== Artifacts ==========

    def save_artifact(self, artifact: GeneratedArtifact) -> None:
        with self._db_manager.get_session() as session:
            if session.get(GeneratedArtifactModel, artifact.contract_id) is not None:
                raise ValueError(f"Artifact already stored for contract {artifact.contract_id}")
            session.add(
                GeneratedArtifactModel(
                    contract_id=artifact.contract_id,
                    template_id=artifact.template_id,
                    template_version=artifact.template_version,
                    doc_format=artifact.format.value,
                    page_count=artifact.page_count,
                    page_dimensions=[p.to_dict() for p in artifact.page_dimensions],
                    storage_url=artifact.storage_url,
                    content=artifact.content,
                )
            )

    def get_artifact(self, contract_id: str) -> Optional[GeneratedArtifact]:
        with self._db_manager.get_session() as session:
            model = session.get(GeneratedArtifactModel, contract_id)
            if model is None:
                return None
            return GeneratedArtifact(
                contract_id=model.contract_id,
                template_id=model.template_id,
                template_version=model.template_version,
                content=model.content,
                page_count=model.page_count,
                page_dimensions=[PageDimensions.from_dict(p) for p in model.page_dimensions],
                format=DocumentFormat(model.doc_format),
                storage_url=model.storage_url,
            )

    # ========== Signing sessions ==========

    def _session_from_model(self, model: SigningSessionModel) -> SigningSession:
        return SigningSession(
            contract_id=model.contract_id,
            provider_document_id=model.provider_document_id,
            state=LifecycleState(model.state),
            fields=[InjectedField.from_dict(f) for f in model.fields or []],
            history=[
                StateTransition(
                    from_state=LifecycleState(t.from_state) if t.from_state else None,
                    to_state=LifecycleState(t.to_state),
                    timestamp=t.timestamp,
                    reason=t.reason,
                )
                for t in model.transitions
            ],
            invite_id=model.invite_id,
        )

    def save_session(self, signing_session: SigningSession) -> None:
        """Upsert the session row and append transitions not yet stored."""
        with self._db_manager.get_session() as session:
            model = session.get(
                SigningSessionModel,
                signing_session.contract_id,
                options=[selectinload(SigningSessionModel.transitions)],
            )
            if model is None:
                model = SigningSessionModel(contract_id=signing_session.contract_id)
                session.add(model)
                stored = 0
            else:
                stored = len(model.transitions)

            model.provider_document_id = signing_session.provider_document_id
            model.state = signing_session.state.value
            model.fields = [f.to_dict() for f in signing_session.fields]
            model.invite_id = signing_session.invite_id

            for sequence, transition in enumerate(signing_session.history):
                if sequence < stored:
                    continue
                model.transitions.append(
                    StateTransitionModel(
                        sequence=sequence,
                        from_state=transition.from_state.value if transition.from_state else None,
                        to_state=transition.to_state.value,
                        reason=transition.reason,
                        timestamp=transition.timestamp,
                    )
                )

    def get_session(self, contract_id: str) -> Optional[SigningSession]:
        with self._db_manager.get_session() as session:
            query = (
                select(SigningSessionModel)
                .options(selectinload(SigningSessionModel.transitions))
                .where(SigningSessionModel.contract_id == contract_id)
            )
            model = session.execute(query).scalar()
            return self._session_from_model(model) if model else None

    def find_session_by_document(self, provider_document_id: str) -> Optional[SigningSession]:
        with self._db_manager.get_session() as session:
            query = (
                select(SigningSessionModel)
                .options(selectinload(SigningSessionModel.transitions))
                .where(SigningSessionModel.provider_document_id == provider_document_id)
            )
            model = session.execute(query).scalar()
            return self._session_from_model(model) if model else None
