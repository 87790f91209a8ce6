"""Data models for configuration management."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..models.coordinates import FieldCoordinate, PageDimensions
from ..models.enums import Origin
from ..models.template import Template


@dataclass
class CoordinateMapSeed:
    """
    Initial calibration for a template, shipped as configuration.

    Seeds are committed into the coordinate map store only when the
    template has no calibration yet; after that the store is authoritative.
    """
    template_id: str
    entries: List[FieldCoordinate]
    page_dimensions: List[PageDimensions]
    unit_system: str = "pt"
    origin: Origin = Origin.TOP_LEFT
    comment: Optional[str] = None


@dataclass
class ValidationResult:
    """
    Outcome of checking one configuration source.

    Errors make the source unusable; warnings are logged and loading
    continues.
    """
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.is_valid = False

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        """Combine two results into a new one; neither input is modified."""
        merged = ValidationResult(is_valid=self.is_valid and other.is_valid)
        merged.errors.extend(self.errors + other.errors)
        merged.warnings.extend(self.warnings + other.warnings)
        return merged


class ConfigurationError(Exception):
    """
    A configuration source could not be applied.

    ``validation_result`` carries the individual problems when the source
    parsed but failed validation.
    """

    def __init__(self, message: str, validation_result: Optional[ValidationResult] = None):
        super().__init__(message)
        self.message = message
        self.validation_result = validation_result


@dataclass
class SystemConfiguration:
    """
    Complete system configuration.

    Aggregates template definitions and seed coordinate maps.
    """
    templates: List[Template] = field(default_factory=list)
    coordinate_map_seeds: List[CoordinateMapSeed] = field(default_factory=list)
    version: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)

    def get_template(self, template_id: str) -> Optional[Template]:
        for template in self.templates:
            if template.id == template_id:
                return template
        return None

    def get_seed(self, template_id: str) -> Optional[CoordinateMapSeed]:
        for seed in self.coordinate_map_seeds:
            if seed.template_id == template_id:
                return seed
        return None
