"""Document lifecycle state machine."""

import logging
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from ..audit.audit_logger import AuditLogger
from ..exceptions import InvalidStateTransition
from ..interfaces.records import IContractRecords
from ..models.enums import LifecycleState
from ..models.signing import InjectedField, SigningSession, StateTransition


logger = logging.getLogger(__name__)

S = LifecycleState

ALLOWED_TRANSITIONS: Dict[LifecycleState, FrozenSet[LifecycleState]] = {
    S.RENDERED: frozenset({S.UPLOADED}),
    S.UPLOADED: frozenset({S.FIELDS_INJECTED, S.VOIDED}),
    S.FIELDS_INJECTED: frozenset({S.FIELDS_INJECTED, S.INVITATION_SENT, S.VOIDED}),
    S.INVITATION_SENT: frozenset({S.VIEWED, S.SIGNED, S.DECLINED, S.EXPIRED, S.VOIDED}),
    S.VIEWED: frozenset({S.SIGNED, S.DECLINED, S.EXPIRED, S.VOIDED}),
    S.SIGNED: frozenset(),
    S.DECLINED: frozenset(),
    S.EXPIRED: frozenset(),
    S.VOIDED: frozenset(),
}


def can_transition(from_state: LifecycleState, to_state: LifecycleState) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(from_state, frozenset())


class LifecycleTracker:
    """
    Owns the signing session of each contract.

    Every transition is checked against ALLOWED_TRANSITIONS, persisted
    through the records store and written to the audit trail.
    """

    def __init__(self, records: IContractRecords, audit_logger: Optional[AuditLogger] = None):
        self._records = records
        self._audit_logger = audit_logger

    def get(self, contract_id: str) -> Optional[SigningSession]:
        return self._records.get_session(contract_id)

    def find_by_document(self, provider_document_id: str) -> Optional[SigningSession]:
        return self._records.find_session_by_document(provider_document_id)

    def start(self, contract_id: str) -> SigningSession:
        """Return the contract's session, creating it in RENDERED if absent."""
        session = self._records.get_session(contract_id)
        if session is not None:
            return session
        session = SigningSession(contract_id=contract_id)
        session.history.append(
            StateTransition(
                from_state=None,
                to_state=LifecycleState.RENDERED,
                timestamp=datetime.utcnow(),
                reason="Artifact rendered",
            )
        )
        self._records.save_session(session)
        if self._audit_logger:
            self._audit_logger.log_state_changed(contract_id, None, LifecycleState.RENDERED.value)
        return session

    def transition(
        self,
        session: SigningSession,
        to_state: LifecycleState,
        reason: Optional[str] = None,
        provider_document_id: Optional[str] = None,
        fields: Optional[List[InjectedField]] = None,
        invite_id: Optional[str] = None,
    ) -> SigningSession:
        """
        Move a session to ``to_state`` and persist it.

        Raises:
            InvalidStateTransition: The move is not allowed from the current state.
        """
        from_state = session.state
        if not can_transition(from_state, to_state):
            raise InvalidStateTransition(
                f"Contract {session.contract_id} cannot move from {from_state.value} to {to_state.value}",
                from_state=from_state.value,
                to_state=to_state.value,
            )

        if provider_document_id is not None:
            session.provider_document_id = provider_document_id
        if fields is not None:
            session.fields = list(fields)
        if invite_id is not None:
            session.invite_id = invite_id
        session.state = to_state
        session.history.append(
            StateTransition(
                from_state=from_state,
                to_state=to_state,
                timestamp=datetime.utcnow(),
                reason=reason,
            )
        )
        self._records.save_session(session)

        if self._audit_logger:
            self._audit_logger.log_state_changed(
                session.contract_id, from_state.value, to_state.value, reason
            )
        logger.info(f"Contract {session.contract_id}: {from_state.value} -> {to_state.value}")
        return session

    def apply_observed(
        self,
        session: SigningSession,
        observed: LifecycleState,
        reason: str = "Observed at provider",
    ) -> SigningSession:
        """
        Apply a state reported by polling or a webhook.

        Observations that would not move the session forward (duplicates,
        out-of-order deliveries, states behind the current one) are ignored.
        """
        if observed == session.state or not can_transition(session.state, observed):
            logger.debug(
                f"Ignoring observed state {observed.value} for contract "
                f"{session.contract_id} in {session.state.value}"
            )
            return session
        return self.transition(session, observed, reason=reason)
