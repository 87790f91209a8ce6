"""Exception taxonomy for the Contract E-Sign Pipeline.

Errors raised by mapping, rendering, conversion and calibration are
deterministic and never retried automatically. Only the provider layer
retries, and only errors marked ``retryable``.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, List, Optional


@dataclass
class ContractEsignError(Exception):
    """
    Base exception for pipeline errors.

    Attributes:
        message: Human-readable error description.
        details: Additional context for operators and audit records.
    """
    message: str
    details: Optional[dict] = field(default_factory=dict)

    retryable: ClassVar[bool] = False

    def __post_init__(self):
        if self.details is None:
            self.details = {}
        super().__init__(str(self))

    def __str__(self) -> str:
        parts = [self.message]
        parts.extend(self._context())
        return " | ".join(parts)

    def _context(self) -> List[str]:
        return []

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


@dataclass
class UnknownContractType(ContractEsignError):
    """No template is registered for the requested contract type."""
    contract_type: Optional[str] = None

    def _context(self) -> List[str]:
        return [f"Contract type: {self.contract_type}"] if self.contract_type else []


@dataclass
class MissingRequiredField(ContractEsignError):
    """A value required to build the contract variables is absent or blank."""
    field_name: Optional[str] = None

    def _context(self) -> List[str]:
        return [f"Field: {self.field_name}"] if self.field_name else []


@dataclass
class BalanceMismatch(MissingRequiredField):
    """The supplied balance does not equal total minus deposit."""
    expected: Optional[str] = None
    supplied: Optional[str] = None

    def _context(self) -> List[str]:
        return super()._context() + [f"Expected: {self.expected}", f"Supplied: {self.supplied}"]


@dataclass
class PlaceholderMismatch(ContractEsignError):
    """Variables and template placeholders disagree."""
    missing: List[str] = field(default_factory=list)
    unexpected: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.missing = sorted(self.missing or [])
        self.unexpected = sorted(self.unexpected or [])
        super().__post_init__()

    def _context(self) -> List[str]:
        parts = []
        if self.missing:
            parts.append(f"Missing: {', '.join(self.missing)}")
        if self.unexpected:
            parts.append(f"Unexpected: {', '.join(self.unexpected)}")
        return parts

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["missing"] = self.missing
        data["unexpected"] = self.unexpected
        return data


@dataclass
class ConversionFailed(ContractEsignError):
    """The external converter crashed, was missing, or timed out."""

    retryable: ClassVar[bool] = True


@dataclass
class DocumentUnreadable(ContractEsignError):
    """A document could not be opened for measurement or processing."""
    doc_format: Optional[str] = None

    def _context(self) -> List[str]:
        return [f"Format: {self.doc_format}"] if self.doc_format else []


@dataclass
class LayoutDriftError(ContractEsignError):
    """
    Page count or page size changed between two renditions of a document.

    The artifact must be regenerated; an existing coordinate map is never
    applied to a drifted artifact.
    """
    expected_pages: Optional[int] = None
    actual_pages: Optional[int] = None

    def _context(self) -> List[str]:
        if self.expected_pages is None and self.actual_pages is None:
            return []
        return [f"Pages: expected {self.expected_pages}, got {self.actual_pages}"]


@dataclass
class CalibrationMismatch(LayoutDriftError):
    """An artifact's geometry differs from the geometry its map was calibrated on."""
    template_id: Optional[str] = None
    version: Optional[int] = None

    def _context(self) -> List[str]:
        parts = super()._context()
        if self.template_id:
            parts.append(f"Calibration: {self.template_id} v{self.version}")
        return parts


@dataclass
class NoCalibration(ContractEsignError):
    """No coordinate map (or reference artifact) exists for a template."""
    template_id: Optional[str] = None

    def _context(self) -> List[str]:
        return [f"Template: {self.template_id}"] if self.template_id else []


@dataclass
class StaleCalibration(ContractEsignError):
    """A commit was based on a version that is no longer current."""
    template_id: Optional[str] = None
    base_version: Optional[int] = None
    current_version: Optional[int] = None

    def _context(self) -> List[str]:
        return [
            f"Template: {self.template_id}",
            f"Base version: {self.base_version}",
            f"Current version: {self.current_version}",
        ]


@dataclass
class CalibrationValidationError(ContractEsignError):
    """A proposed entry set is malformed; nothing was stored."""
    errors: List[str] = field(default_factory=list)

    def _context(self) -> List[str]:
        return list(self.errors)


@dataclass
class CoordinateOutOfBounds(ContractEsignError):
    """A field box falls outside its page; no field was injected."""
    field_name: Optional[str] = None
    page_index: Optional[int] = None

    def _context(self) -> List[str]:
        return [f"Field: {self.field_name}", f"Page: {self.page_index}"]


@dataclass
class ProviderUnavailable(ContractEsignError):
    """Timeout, connection failure, throttling or a provider-side 5xx."""
    status_code: Optional[int] = None

    retryable: ClassVar[bool] = True

    def _context(self) -> List[str]:
        return [f"Status: {self.status_code}"] if self.status_code else []


@dataclass
class ProviderRejected(ContractEsignError):
    """
    The provider refused a request. Not retryable.

    ``payload`` holds the provider's raw error body for diagnosis.
    """
    status_code: Optional[int] = None
    payload: Any = None

    def _context(self) -> List[str]:
        return [f"Status: {self.status_code}"] if self.status_code else []

    @property
    def error_codes(self) -> List[int]:
        """Numeric error codes reported in the provider payload."""
        if not isinstance(self.payload, dict):
            return []
        codes = []
        errors = self.payload.get("errors")
        if isinstance(errors, list):
            for error in errors:
                if isinstance(error, dict) and error.get("code") is not None:
                    try:
                        codes.append(int(error["code"]))
                    except (TypeError, ValueError):
                        continue
        if self.payload.get("code") is not None:
            try:
                codes.append(int(self.payload["code"]))
            except (TypeError, ValueError):
                pass
        return codes

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["status_code"] = self.status_code
        data["payload"] = self.payload
        return data


@dataclass
class InvalidStateTransition(ContractEsignError):
    """A lifecycle transition not allowed by the state machine."""
    from_state: Optional[str] = None
    to_state: Optional[str] = None

    def _context(self) -> List[str]:
        return [f"Transition: {self.from_state} -> {self.to_state}"]


@dataclass
class RecordNotFound(ContractEsignError, KeyError):
    """
    A contract, template or signing session lookup found nothing.

    Also a ``KeyError``, so callers that treat missing keys as "not found"
    keep working.
    """
    record_type: Optional[str] = None
    record_id: Optional[str] = None

    def _context(self) -> List[str]:
        return [f"{self.record_type}: {self.record_id}"] if self.record_type else []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["record_type"] = self.record_type
        data["record_id"] = self.record_id
        return data
