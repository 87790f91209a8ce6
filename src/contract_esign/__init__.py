"""
Contract E-Sign Pipeline

Generates doula service contracts from templates, places signature and
data fields at calibrated coordinates, and tracks each contract through
the e-signature provider's signing lifecycle.
"""

__version__ = "0.1.0"

# Export main components
from .models.enums import ContractType, DocumentFormat, FieldKind, LifecycleState, Origin
from .models.template import ContractInput, ContractVariables, Template
from .models.coordinates import CoordinateMap, FieldCoordinate, PageDimensions
from .models.artifact import GeneratedArtifact
from .models.signing import InjectedField, SignerContact, SigningSession
from .exceptions import (
    ContractEsignError,
    UnknownContractType,
    MissingRequiredField,
    BalanceMismatch,
    PlaceholderMismatch,
    ConversionFailed,
    DocumentUnreadable,
    LayoutDriftError,
    CalibrationMismatch,
    NoCalibration,
    StaleCalibration,
    CalibrationValidationError,
    CoordinateOutOfBounds,
    ProviderUnavailable,
    ProviderRejected,
    InvalidStateTransition,
    RecordNotFound,
)
from .registry import TemplateRegistry
from .mapping import VariableMapper
from .rendering import TemplateRenderer
from .conversion import LibreOfficeConverter
from .calibration import CalibrationWorkflow, CoordinateMapStore
from .provider import SignNowAdapter, SignNowClient, SignNowCredentials
from .lifecycle import LifecycleTracker
from .audit import AuditLogger, DatabaseManager
from .config import ConfigurationManager, ValidationResult
from .pipeline import ContractPipeline, PipelineConfig, PipelineResult

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
    "GeneratedArtifact",
    "InjectedField",
    "SignerContact",
    "SigningSession",
    "ContractEsignError",
    "UnknownContractType",
    "MissingRequiredField",
    "BalanceMismatch",
    "PlaceholderMismatch",
    "ConversionFailed",
    "DocumentUnreadable",
    "LayoutDriftError",
    "CalibrationMismatch",
    "NoCalibration",
    "StaleCalibration",
    "CalibrationValidationError",
    "CoordinateOutOfBounds",
    "ProviderUnavailable",
    "ProviderRejected",
    "InvalidStateTransition",
    "RecordNotFound",
    "TemplateRegistry",
    "VariableMapper",
    "TemplateRenderer",
    "LibreOfficeConverter",
    "CalibrationWorkflow",
    "CoordinateMapStore",
    "SignNowAdapter",
    "SignNowClient",
    "SignNowCredentials",
    "LifecycleTracker",
    "AuditLogger",
    "DatabaseManager",
    "ConfigurationManager",
    "ValidationResult",
    "ContractPipeline",
    "PipelineConfig",
    "PipelineResult",
]
