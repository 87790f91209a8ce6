"""Coordinate map data models.

All coordinates are in PDF points. A map carries exactly one unit system
and one origin convention; converting between origins is done on the
whole map with ``CoordinateMap.in_frame`` and never per field.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from .enums import FieldKind, Origin


POINTS = "pt"

# Allowed difference, in points, between page sizes that should be equal.
GEOMETRY_TOLERANCE = 1.0


@dataclass(frozen=True)
class PageDimensions:
    """Size of a single page in points."""
    width: float
    height: float

    def matches(self, other: "PageDimensions", tolerance: float = GEOMETRY_TOLERANCE) -> bool:
        """Check equality allowing for integer-unit rounding."""
        return (
            abs(self.width - other.width) <= tolerance
            and abs(self.height - other.height) <= tolerance
        )

    def to_dict(self) -> Dict[str, float]:
        return {"width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PageDimensions":
        return cls(width=float(data["width"]), height=float(data["height"]))


def dimensions_match(
    expected: List[PageDimensions],
    actual: List[PageDimensions],
    tolerance: float = GEOMETRY_TOLERANCE,
) -> bool:
    """Check that two page geometries have the same count and sizes."""
    if len(expected) != len(actual):
        return False
    return all(e.matches(a, tolerance) for e, a in zip(expected, actual))


@dataclass(frozen=True)
class FieldCoordinate:
    """
    Position of one semantic field on a template page.

    Attributes:
        field_name: Semantic field name, unique within a map.
        page_index: 0-based page index.
        x, y: Corner of the box nearest the map's origin.
        width, height: Box size.
        kind: Signer-facing field kind.
        label: Label shown to the signer.
        prefill_key: Variable whose value pre-fills the field.
        required: Whether the signer must complete the field.
    """
    field_name: str
    page_index: int
    x: float
    y: float
    width: float
    height: float
    kind: FieldKind = FieldKind.TEXT
    label: Optional[str] = None
    prefill_key: Optional[str] = None
    required: bool = True

    def fits_within(self, page: PageDimensions) -> bool:
        """Check that the whole box lies on the page."""
        return (
            self.x >= 0
            and self.y >= 0
            and self.x + self.width <= page.width
            and self.y + self.height <= page.height
        )

    def flipped(self, page_height: float) -> "FieldCoordinate":
        """Mirror the box vertically, switching between origin conventions."""
        return replace(self, y=page_height - self.y - self.height)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_name": self.field_name,
            "page_index": self.page_index,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "kind": self.kind.value,
            "label": self.label,
            "prefill_key": self.prefill_key,
            "required": self.required,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldCoordinate":
        return cls(
            field_name=data["field_name"],
            page_index=int(data["page_index"]),
            x=float(data["x"]),
            y=float(data["y"]),
            width=float(data["width"]),
            height=float(data["height"]),
            kind=FieldKind(data.get("kind", FieldKind.TEXT.value)),
            label=data.get("label"),
            prefill_key=data.get("prefill_key"),
            required=bool(data.get("required", True)),
        )


def validate_entries(
    entries: List[FieldCoordinate],
    page_dimensions: List[PageDimensions],
) -> List[str]:
    """
    Check an entry set against the page geometry it is calibrated on.

    Returns:
        Error messages; empty when the set is valid.
    """
    errors: List[str] = []
    if not page_dimensions:
        errors.append("Page dimensions are required")
    for page_index, page in enumerate(page_dimensions):
        if page.width <= 0 or page.height <= 0:
            errors.append(f"Page {page_index} has non-positive dimensions")

    seen = set()
    for entry in entries:
        name = entry.field_name
        if not name or not name.strip():
            errors.append("Field name must be a non-empty string")
            continue
        if name in seen:
            errors.append(f"Duplicate field name: {name}")
        seen.add(name)
        if entry.width <= 0 or entry.height <= 0:
            errors.append(f"{name}: width and height must be positive")
        if entry.page_index < 0 or entry.page_index >= len(page_dimensions):
            errors.append(
                f"{name}: page index {entry.page_index} outside "
                f"{len(page_dimensions)} page(s)"
            )
        elif not entry.fits_within(page_dimensions[entry.page_index]):
            errors.append(f"{name}: box lies outside page {entry.page_index}")
    return errors


@dataclass
class CoordinateMap:
    """
    A committed, versioned set of field coordinates for one template.

    ``page_dimensions`` is the page geometry the coordinates were
    calibrated against; artifacts are checked against it before any
    field is injected.
    """
    template_id: str
    version: int
    entries: List[FieldCoordinate] = field(default_factory=list)
    page_dimensions: List[PageDimensions] = field(default_factory=list)
    unit_system: str = POINTS
    origin: Origin = Origin.TOP_LEFT
    created_at: Optional[datetime] = None
    comment: Optional[str] = None

    @property
    def page_count(self) -> int:
        return len(self.page_dimensions)

    def entry(self, field_name: str) -> Optional[FieldCoordinate]:
        for entry in self.entries:
            if entry.field_name == field_name:
                return entry
        return None

    def in_frame(self, origin: Origin) -> "CoordinateMap":
        """
        Return this map expressed in the given origin convention.

        Entries on a page the map has no dimensions for are left as they
        are; bounds checks report them.
        """
        if origin == self.origin:
            return self
        pages = self.page_dimensions
        entries = [
            entry.flipped(pages[entry.page_index].height)
            if 0 <= entry.page_index < len(pages) else entry
            for entry in self.entries
        ]
        return replace(self, entries=entries, origin=origin)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "template_id": self.template_id,
            "version": self.version,
            "unit_system": self.unit_system,
            "origin": self.origin.value,
            "page_dimensions": [p.to_dict() for p in self.page_dimensions],
            "entries": [e.to_dict() for e in self.entries],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "comment": self.comment,
        }


@dataclass
class ProbeArtifact:
    """
    A throwaway copy of a reference artifact with calibration markers drawn on.

    ``base_version`` is the store version current when the probe was made,
    to be passed back as the compare-and-swap base on commit.
    """
    template_id: str
    base_version: int
    content: bytes
    entries: List[FieldCoordinate]
    page_count: int
    origin: Origin = Origin.TOP_LEFT


@dataclass
class ReferenceArtifact:
    """Base document used for calibration probes of one template."""
    template_id: str
    content: bytes
    page_dimensions: List[PageDimensions]
    updated_at: Optional[datetime] = None

    @property
    def page_count(self) -> int:
        return len(self.page_dimensions)
