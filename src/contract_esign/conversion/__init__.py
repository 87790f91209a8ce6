"""Layout-preserving document conversion."""

from .converter import LibreOfficeConverter
from .geometry import (
    DocxGeometry,
    check_docx_geometry,
    check_pdf_geometry,
    find_placeholder_residue,
    measure_geometry,
    measure_docx,
    measure_pdf,
)

__all__ = [
    "LibreOfficeConverter",
    "DocxGeometry",
    "check_docx_geometry",
    "check_pdf_geometry",
    "find_placeholder_residue",
    "measure_geometry",
    "measure_docx",
    "measure_pdf",
]
