"""Configuration management for the Contract E-Sign Pipeline."""

from .config_manager import ConfigurationManager
from .models import (
    CoordinateMapSeed,
    SystemConfiguration,
    ConfigurationError,
    ValidationResult,
)

__all__ = [
    "ConfigurationManager",
    "CoordinateMapSeed",
    "SystemConfiguration",
    "ConfigurationError",
    "ValidationResult",
]
