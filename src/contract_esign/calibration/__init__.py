"""Coordinate map storage and the calibration workflow."""

from .coordinate_store import CoordinateMapStore
from .probe import render_probe
from .workflow import CalibrationWorkflow

__all__ = [
    "CalibrationWorkflow",
    "CoordinateMapStore",
    "render_probe",
]
