"""Data models for the Contract E-Sign Pipeline."""

from .enums import ContractType, DocumentFormat, FieldKind, LifecycleState, Origin
from .template import ContractInput, ContractVariables, Template
from .coordinates import (
    CoordinateMap,
    FieldCoordinate,
    PageDimensions,
    ProbeArtifact,
    ReferenceArtifact,
    dimensions_match,
    validate_entries,
)
from .artifact import ConversionResult, GeneratedArtifact
from .signing import InjectedField, SignerContact, SigningSession, StateTransition

__all__ = [
    "ContractType",
    "DocumentFormat",
    "FieldKind",
    "LifecycleState",
    "Origin",
    "ContractInput",
    "ContractVariables",
    "Template",
    "CoordinateMap",
    "FieldCoordinate",
    "PageDimensions",
    "ProbeArtifact",
    "ReferenceArtifact",
    "dimensions_match",
    "validate_entries",
    "ConversionResult",
    "GeneratedArtifact",
    "InjectedField",
    "SignerContact",
    "SigningSession",
    "StateTransition",
]
