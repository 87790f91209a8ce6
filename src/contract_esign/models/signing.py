"""Signing session data models."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .enums import FieldKind, LifecycleState


DEFAULT_SIGNER_ROLE = "Signer 1"


@dataclass
class SignerContact:
    """The person invited to sign."""
    name: str
    email: str
    role: str = DEFAULT_SIGNER_ROLE


@dataclass
class InjectedField:
    """
    A field as sent to the provider, in the provider's coordinate frame.
    """
    field_name: str
    kind: FieldKind
    page_index: int
    x: float
    y: float
    width: float
    height: float
    label: Optional[str] = None
    required: bool = True
    prefilled_text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_name": self.field_name,
            "kind": self.kind.value,
            "page_index": self.page_index,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "label": self.label,
            "required": self.required,
            "prefilled_text": self.prefilled_text,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InjectedField":
        return cls(
            field_name=data["field_name"],
            kind=FieldKind(data["kind"]),
            page_index=int(data["page_index"]),
            x=float(data["x"]),
            y=float(data["y"]),
            width=float(data["width"]),
            height=float(data["height"]),
            label=data.get("label"),
            required=bool(data.get("required", True)),
            prefilled_text=data.get("prefilled_text"),
        )


@dataclass
class StateTransition:
    """One recorded lifecycle transition."""
    from_state: Optional[LifecycleState]
    to_state: LifecycleState
    timestamp: datetime
    reason: Optional[str] = None


@dataclass
class SigningSession:
    """
    Lifecycle record for one contract's artifact at the provider.

    The session starts in RENDERED before any provider call, so an
    interrupted run can be resumed from ``state``.
    """
    contract_id: str
    provider_document_id: Optional[str] = None
    state: LifecycleState = LifecycleState.RENDERED
    fields: List[InjectedField] = field(default_factory=list)
    history: List[StateTransition] = field(default_factory=list)
    invite_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def __post_init__(self):
        if self.fields is None:
            self.fields = []
        if self.history is None:
            self.history = []
