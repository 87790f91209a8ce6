"""Enumerations for the Contract E-Sign Pipeline."""

from enum import Enum


class ContractType(Enum):
    """Contract classifications, one template rule set per value."""
    LABOR_SUPPORT = "labor_support"
    POSTPARTUM_DOULA = "postpartum_doula"

    @classmethod
    def from_service_type(cls, service_type: str) -> "ContractType":
        """
        Classify a free-text service type as recorded on the contract.

        "Labor Support Services" resolves to LABOR_SUPPORT; anything else
        that names a postpartum service resolves to POSTPARTUM_DOULA.

        Raises:
            ValueError: If the text matches no known contract type.
        """
        text = (service_type or "").strip().lower().replace("_", " ")
        if not text:
            raise ValueError("Service type is empty")
        for member in cls:
            if text == member.value:
                return member
        if "labor support" in text:
            return cls.LABOR_SUPPORT
        if "postpartum" in text:
            return cls.POSTPARTUM_DOULA
        raise ValueError(f"Unrecognized service type: {service_type}")


class DocumentFormat(Enum):
    """Document formats handled by the renderer and converter."""
    DOCX = "docx"
    PDF = "pdf"


class FieldKind(Enum):
    """Kinds of signer-facing fields placed on an artifact."""
    SIGNATURE = "signature"
    TEXT = "text"
    INITIALS = "initials"
    DATE = "date"

    @property
    def provider_type(self) -> str:
        """Field type name understood by the e-signature provider."""
        # Dates are placed as free-text fields and pre-filled.
        if self is FieldKind.DATE:
            return "text"
        return self.value


class Origin(Enum):
    """Page origin convention for coordinates."""
    TOP_LEFT = "top_left"
    BOTTOM_LEFT = "bottom_left"


class LifecycleState(Enum):
    """States of a contract's signing session."""
    RENDERED = "rendered"
    UPLOADED = "uploaded"
    FIELDS_INJECTED = "fields_injected"
    INVITATION_SENT = "invitation_sent"
    VIEWED = "viewed"
    SIGNED = "signed"
    DECLINED = "declined"
    EXPIRED = "expired"
    VOIDED = "voided"

    @property
    def is_terminal(self) -> bool:
        return self in (
            LifecycleState.SIGNED,
            LifecycleState.DECLINED,
            LifecycleState.EXPIRED,
            LifecycleState.VOIDED,
        )
