"""Relational store interface for contract records and signing state."""

from abc import ABC, abstractmethod
from typing import Optional

from ..models.artifact import GeneratedArtifact
from ..models.signing import SigningSession
from ..models.template import ContractInput


class IContractRecords(ABC):
    """
    Abstract interface for contract, artifact and signing session records.
    """

    @abstractmethod
    def get_contract_input(self, contract_id: str) -> ContractInput:
        """
        Read the raw contract record used to build template variables.

        Raises:
            RecordNotFound: If the contract does not exist.
        """
        pass

    @abstractmethod
    def save_artifact(self, artifact: GeneratedArtifact) -> None:
        """Persist artifact metadata. Called once per contract."""
        pass

    @abstractmethod
    def get_artifact(self, contract_id: str) -> Optional[GeneratedArtifact]:
        pass

    @abstractmethod
    def save_session(self, session: SigningSession) -> None:
        """Persist the session state and any new transitions."""
        pass

    @abstractmethod
    def get_session(self, contract_id: str) -> Optional[SigningSession]:
        pass

    @abstractmethod
    def find_session_by_document(self, provider_document_id: str) -> Optional[SigningSession]:
        pass
