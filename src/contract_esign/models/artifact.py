"""Rendered and converted document models."""

from dataclasses import dataclass, field
from typing import List, Optional

from .coordinates import PageDimensions
from .enums import DocumentFormat


@dataclass(frozen=True)
class ConversionResult:
    """Output of a layout-preserving conversion."""
    content: bytes
    format: DocumentFormat
    page_count: int
    page_dimensions: List[PageDimensions] = field(default_factory=list)


@dataclass(frozen=True)
class GeneratedArtifact:
    """
    The fixed-layout document produced for one contract.

    Produced once per contract and never modified. ``template_version`` is
    the coordinate map version the artifact was checked against.
    """
    contract_id: str
    template_id: str
    template_version: int
    content: bytes
    page_count: int
    page_dimensions: List[PageDimensions]
    format: DocumentFormat = DocumentFormat.PDF
    storage_url: Optional[str] = None

    @property
    def filename(self) -> str:
        return f"contract_{self.contract_id}.{self.format.value}"
