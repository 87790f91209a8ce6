"""E-signature provider interface."""

from abc import ABC, abstractmethod
from typing import Any, List, Mapping, Optional, Tuple

from ..models.artifact import GeneratedArtifact
from ..models.coordinates import CoordinateMap, FieldCoordinate
from ..models.enums import ContractType, LifecycleState
from ..models.signing import InjectedField, SignerContact


class ISignatureProvider(ABC):
    """
    Abstract interface for an e-signature provider.

    Network failures surface as ``ProviderUnavailable`` (retryable) and
    explicit refusals as ``ProviderRejected`` (fatal).
    """

    @abstractmethod
    def upload(self, artifact: GeneratedArtifact) -> str:
        """Upload an artifact and return the provider document id."""
        pass

    @abstractmethod
    def create_from_template(self, provider_template_id: str, document_name: str) -> str:
        """Copy a provider-side template and return the new document id."""
        pass

    @abstractmethod
    def prefill_by_name(self, provider_document_id: str, values: Mapping[str, str]) -> List[str]:
        """
        Fill existing document fields by name and return the field ids written.

        Raises:
            PlaceholderMismatch: A name matches no field; nothing is written.
        """
        pass

    @abstractmethod
    def inject_fields(
        self,
        provider_document_id: str,
        coordinate_map: CoordinateMap,
        variables: Mapping[str, str],
        artifact: GeneratedArtifact,
        prefill: Optional[Mapping[str, str]] = None,
    ) -> List[InjectedField]:
        """
        Replace the document's field set with the map's fields.

        Raises:
            CalibrationMismatch: Artifact geometry differs from the map's.
            CoordinateOutOfBounds: A box falls outside its page; nothing sent.
        """
        pass

    @abstractmethod
    def send_invitation(
        self,
        provider_document_id: str,
        signer: SignerContact,
        contract_id: Optional[str] = None,
        contract_type: Optional[ContractType] = None,
    ) -> Optional[str]:
        """Invite the signer and return the provider invite id, if any."""
        pass

    @abstractmethod
    def poll_status(self, provider_document_id: str) -> LifecycleState:
        """Read the provider-reported state without changing anything."""
        pass

    @abstractmethod
    def void(self, provider_document_id: str) -> None:
        """Cancel pending invites and remove the provider document."""
        pass

    @abstractmethod
    def read_fields(self, provider_document_id: str) -> List[FieldCoordinate]:
        """Read field positions back from the provider, in points, top-left origin."""
        pass

    @abstractmethod
    def interpret_webhook(self, payload: Mapping[str, Any]) -> Optional[Tuple[str, LifecycleState]]:
        """
        Map a webhook body to (provider document id, observed state).

        Returns None for events that do not affect the lifecycle.
        """
        pass
