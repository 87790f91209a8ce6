"""
Calibration workflow.

Staff calibrate field positions against a template's reference PDF:
propose coordinates, inspect the probe PDF with markers drawn on, then
commit the full entry set as a new coordinate map version. Probes never
touch the stored map.
"""

import logging
from dataclasses import replace
from typing import List, Optional

from ..audit.audit_logger import AuditLogger
from ..conversion.geometry import measure_geometry
from ..exceptions import CalibrationValidationError, LayoutDriftError
from ..interfaces.provider import ISignatureProvider
from ..models.coordinates import (
    CoordinateMap,
    FieldCoordinate,
    ProbeArtifact,
    ReferenceArtifact,
    validate_entries,
)
from ..models.enums import DocumentFormat, Origin
from .coordinate_store import CoordinateMapStore
from .probe import render_probe


logger = logging.getLogger(__name__)


class CalibrationWorkflow:
    """Probe, commit and roll back coordinate maps for one store."""

    def __init__(self, store: CoordinateMapStore, audit_logger: Optional[AuditLogger] = None):
        self._store = store
        self._audit_logger = audit_logger

    @property
    def store(self) -> CoordinateMapStore:
        return self._store

    def propose(
        self,
        template_id: str,
        field_name: str,
        coord: FieldCoordinate,
        origin: Origin = Origin.TOP_LEFT,
        user_id: Optional[str] = None,
    ) -> ProbeArtifact:
        """
        Render a single candidate position onto the reference artifact.

        Args:
            template_id: Template being calibrated.
            field_name: Field the coordinate is proposed for.
            coord: Candidate position; its own field name is replaced.
            origin: Origin convention of ``coord``.
            user_id: Staff member proposing, for the audit trail.

        Returns:
            A ProbeArtifact whose ``base_version`` should be passed to commit.

        Raises:
            NoCalibration: No reference artifact is registered.
            CalibrationValidationError: The box does not fit the reference.
        """
        return self.propose_map(
            template_id,
            [replace(coord, field_name=field_name)],
            origin=origin,
            user_id=user_id,
        )

    def propose_map(
        self,
        template_id: str,
        entries: List[FieldCoordinate],
        origin: Origin = Origin.TOP_LEFT,
        user_id: Optional[str] = None,
    ) -> ProbeArtifact:
        """Render every candidate entry onto one probe for review."""
        reference = self._store.get_reference(template_id)
        pages = reference.page_dimensions

        if origin == Origin.BOTTOM_LEFT:
            checked = [
                entry.flipped(pages[entry.page_index].height)
                if 0 <= entry.page_index < len(pages) else entry
                for entry in entries
            ]
        else:
            checked = list(entries)

        errors = validate_entries(checked, pages)
        if errors:
            raise CalibrationValidationError(
                f"Probe rejected for {template_id}",
                errors=errors,
            )

        base_version = self._store.current_version(template_id)
        content = render_probe(reference.content, pages, checked)

        if self._audit_logger:
            self._audit_logger.log_calibration_probed(
                template_id,
                [e.field_name for e in checked],
                base_version,
                user_id=user_id,
            )
        logger.info(f"Probe rendered for {template_id} ({len(checked)} fields, base v{base_version})")

        return ProbeArtifact(
            template_id=template_id,
            base_version=base_version,
            content=content,
            entries=checked,
            page_count=reference.page_count,
            origin=Origin.TOP_LEFT,
        )

    def commit(
        self,
        template_id: str,
        entries: List[FieldCoordinate],
        base_version: int,
        origin: Origin = Origin.TOP_LEFT,
        comment: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> CoordinateMap:
        """Commit a full entry set; see ``CoordinateMapStore.commit``."""
        committed = self._store.commit(
            template_id,
            entries,
            base_version=base_version,
            origin=origin,
            comment=comment,
        )
        if self._audit_logger:
            self._audit_logger.log_calibration_committed(
                template_id,
                committed.version,
                base_version,
                len(committed.entries),
                user_id=user_id,
            )
        return committed

    def rollback(
        self,
        template_id: str,
        version: int,
        base_version: int,
        user_id: Optional[str] = None,
    ) -> CoordinateMap:
        """Re-select an earlier entry set as a new version."""
        committed = self._store.rollback(template_id, version, base_version)
        if self._audit_logger:
            self._audit_logger.log_calibration_rolled_back(
                template_id,
                restored_version=version,
                new_version=committed.version,
                user_id=user_id,
            )
        logger.info(f"Rolled back {template_id} to v{version} as v{committed.version}")
        return committed

    def get(self, template_id: str, version: Optional[int] = None) -> CoordinateMap:
        return self._store.get(template_id, version)

    def history(self, template_id: str) -> List[CoordinateMap]:
        return self._store.history(template_id)

    def import_from_provider(
        self,
        provider: ISignatureProvider,
        provider_document_id: str,
    ) -> List[FieldCoordinate]:
        """
        Read fields placed manually in the provider's editor.

        The provider reports points with a top-left origin, so the result
        can be passed straight to ``propose_map`` or ``commit``.
        """
        entries = provider.read_fields(provider_document_id)
        logger.info(f"Imported {len(entries)} field(s) from provider document {provider_document_id}")
        return entries

    def register_reference(
        self,
        template_id: str,
        content: bytes,
        expected_page_count: Optional[int] = None,
    ) -> ReferenceArtifact:
        """
        Store the reference PDF that probes are drawn on.

        Raises:
            LayoutDriftError: The PDF's page count differs from the
                template's recorded reference page count.
        """
        page_count, pages = measure_geometry(content, DocumentFormat.PDF)
        if expected_page_count is not None and page_count != expected_page_count:
            raise LayoutDriftError(
                f"Reference artifact for {template_id} has the wrong page count",
                expected_pages=expected_page_count,
                actual_pages=page_count,
            )
        return self._store.register_reference(template_id, content, pages)
