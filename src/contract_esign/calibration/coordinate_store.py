"""Versioned coordinate map store backed by SQLAlchemy."""

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from ..audit.database import DatabaseManager
from ..audit.models import CoordinateEntryModel, CoordinateMapModel, ReferenceArtifactModel
from ..config.config_manager import ConfigurationManager
from ..conversion.geometry import measure_pdf
from ..exceptions import CalibrationValidationError, NoCalibration, StaleCalibration
from ..models.coordinates import (
    POINTS,
    CoordinateMap,
    FieldCoordinate,
    PageDimensions,
    ReferenceArtifact,
    validate_entries,
)
from ..models.enums import FieldKind, Origin


logger = logging.getLogger(__name__)


class CoordinateMapStore:
    """
    Versioned, per-template storage of field coordinates.

    Every commit writes a complete entry set as a new version inside one
    transaction. Commits are compare-and-swap against the version the
    caller calibrated from: a per-template lock serialises commits in this
    process and the unique (template_id, version) constraint rejects a
    commit that raced in from another process.
    """

    def __init__(self, db_manager: DatabaseManager):
        self._db_manager = db_manager
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, template_id: str) -> threading.Lock:
        with self._locks_guard:
            if template_id not in self._locks:
                self._locks[template_id] = threading.Lock()
            return self._locks[template_id]

    # ========== Conversion ==========

    def _entry_to_model(self, position: int, entry: FieldCoordinate) -> CoordinateEntryModel:
        return CoordinateEntryModel(
            position=position,
            field_name=entry.field_name,
            kind=entry.kind.value,
            page_index=entry.page_index,
            x=entry.x,
            y=entry.y,
            width=entry.width,
            height=entry.height,
            label=entry.label,
            prefill_key=entry.prefill_key,
            required=entry.required,
        )

    def _from_model(self, model: CoordinateMapModel) -> CoordinateMap:
        return CoordinateMap(
            template_id=model.template_id,
            version=model.version,
            unit_system=model.unit_system,
            origin=Origin(model.origin),
            page_dimensions=[PageDimensions.from_dict(p) for p in model.page_dimensions],
            entries=[
                FieldCoordinate(
                    field_name=e.field_name,
                    page_index=e.page_index,
                    x=e.x,
                    y=e.y,
                    width=e.width,
                    height=e.height,
                    kind=FieldKind(e.kind),
                    label=e.label,
                    prefill_key=e.prefill_key,
                    required=e.required,
                )
                for e in model.entries
            ],
            created_at=model.created_at,
            comment=model.comment,
        )

    # ========== Reads ==========

    def _latest_version(self, session: Session, template_id: str) -> int:
        query = select(func.max(CoordinateMapModel.version)).where(
            CoordinateMapModel.template_id == template_id
        )
        return session.execute(query).scalar() or 0

    def current_version(self, template_id: str) -> int:
        """Return the current version, or 0 when the template is uncalibrated."""
        with self._db_manager.get_session() as session:
            return self._latest_version(session, template_id)

    def get(self, template_id: str, version: Optional[int] = None) -> CoordinateMap:
        """
        Return a coordinate map version, the current one by default.

        Raises:
            NoCalibration: If the template (or that version) has no map.
        """
        with self._db_manager.get_session() as session:
            query = (
                select(CoordinateMapModel)
                .options(selectinload(CoordinateMapModel.entries))
                .where(CoordinateMapModel.template_id == template_id)
            )
            if version is not None:
                query = query.where(CoordinateMapModel.version == version)
            query = query.order_by(CoordinateMapModel.version.desc()).limit(1)

            model = session.execute(query).scalar()
            if model is None:
                message = "No calibration exists for template"
                if version is not None:
                    message = f"Calibration version {version} does not exist"
                raise NoCalibration(message, template_id=template_id)
            return self._from_model(model)

    def history(self, template_id: str) -> List[CoordinateMap]:
        """Return all versions, oldest first."""
        with self._db_manager.get_session() as session:
            query = (
                select(CoordinateMapModel)
                .options(selectinload(CoordinateMapModel.entries))
                .where(CoordinateMapModel.template_id == template_id)
                .order_by(CoordinateMapModel.version.asc())
            )
            return [self._from_model(m) for m in session.execute(query).scalars().all()]

    # ========== Writes ==========

    def commit(
        self,
        template_id: str,
        entries: List[FieldCoordinate],
        base_version: int,
        page_dimensions: Optional[List[PageDimensions]] = None,
        origin: Origin = Origin.TOP_LEFT,
        comment: Optional[str] = None,
    ) -> CoordinateMap:
        """
        Persist a complete entry set as the next version.

        Args:
            template_id: Template being calibrated.
            entries: The full entry set; fields absent here are absent
                from the new version.
            base_version: Version the entries were calibrated from, 0 for
                the first calibration.
            page_dimensions: Geometry the entries refer to. Defaults to
                the template's reference artifact.
            origin: Origin convention of ``entries``.
            comment: Free-text note stored with the version.

        Returns:
            The newly current CoordinateMap.

        Raises:
            StaleCalibration: Another commit landed after ``base_version``.
            CalibrationValidationError: The entry set is malformed.
            NoCalibration: No page dimensions given and no reference artifact.
        """
        entries = list(entries)
        if page_dimensions is None:
            page_dimensions = self.get_reference(template_id).page_dimensions

        errors = validate_entries(entries, page_dimensions)
        if not entries:
            errors.append("Entry set is empty")
        if errors:
            raise CalibrationValidationError(
                f"Rejected calibration for {template_id}",
                errors=errors,
            )

        with self._lock_for(template_id):
            try:
                with self._db_manager.get_session() as session:
                    current = self._latest_version(session, template_id)
                    if current != base_version:
                        raise StaleCalibration(
                            "Calibration was committed from an outdated version",
                            template_id=template_id,
                            base_version=base_version,
                            current_version=current,
                        )

                    new_version = current + 1
                    map_model = CoordinateMapModel(
                        template_id=template_id,
                        version=new_version,
                        unit_system=POINTS,
                        origin=origin.value,
                        page_dimensions=[p.to_dict() for p in page_dimensions],
                        comment=comment,
                        created_at=datetime.utcnow(),
                    )
                    for position, entry in enumerate(entries):
                        map_model.entries.append(self._entry_to_model(position, entry))
                    session.add(map_model)
                    session.flush()
            except IntegrityError as e:
                raise StaleCalibration(
                    "A concurrent calibration commit landed first",
                    template_id=template_id,
                    base_version=base_version,
                    current_version=self.current_version(template_id),
                ) from e

        logger.info(
            f"Committed calibration {template_id} v{new_version} "
            f"({len(entries)} fields, base v{base_version})"
        )
        return self.get(template_id, new_version)

    def rollback(self, template_id: str, version: int, base_version: int) -> CoordinateMap:
        """
        Make an earlier version current again by re-committing its entries.

        History is never rewritten; the restored set becomes a new version.
        """
        target = self.get(template_id, version)
        return self.commit(
            template_id,
            target.entries,
            base_version=base_version,
            page_dimensions=target.page_dimensions,
            origin=target.origin,
            comment=f"Rollback to version {version}",
        )

    # ========== Reference artifacts ==========

    def register_reference(
        self,
        template_id: str,
        content: bytes,
        page_dimensions: Optional[List[PageDimensions]] = None,
    ) -> ReferenceArtifact:
        """
        Store or replace the reference PDF used for calibration probes.

        Page dimensions are measured from ``content`` unless given.
        """
        if page_dimensions is None:
            page_dimensions = measure_pdf(content)
        with self._db_manager.get_session() as session:
            model = session.get(ReferenceArtifactModel, template_id)
            if model is None:
                model = ReferenceArtifactModel(template_id=template_id)
                session.add(model)
            model.content = content
            model.page_dimensions = [p.to_dict() for p in page_dimensions]
            model.updated_at = datetime.utcnow()
        logger.info(f"Registered reference artifact for {template_id} ({len(page_dimensions)} pages)")
        return ReferenceArtifact(
            template_id=template_id,
            content=content,
            page_dimensions=list(page_dimensions),
            updated_at=model.updated_at,
        )

    def get_reference(self, template_id: str) -> ReferenceArtifact:
        """
        Raises:
            NoCalibration: If no reference artifact is registered.
        """
        with self._db_manager.get_session() as session:
            model = session.get(ReferenceArtifactModel, template_id)
            if model is None:
                raise NoCalibration("No reference artifact registered", template_id=template_id)
            return ReferenceArtifact(
                template_id=template_id,
                content=model.content,
                page_dimensions=[PageDimensions.from_dict(p) for p in model.page_dimensions],
                updated_at=model.updated_at,
            )

    def has_reference(self, template_id: str) -> bool:
        with self._db_manager.get_session() as session:
            query = select(func.count()).select_from(ReferenceArtifactModel).where(
                ReferenceArtifactModel.template_id == template_id
            )
            return bool(session.execute(query).scalar())

    # ========== Bootstrap ==========

    def seed_from_config(self, config_manager: ConfigurationManager) -> List[CoordinateMap]:
        """
        Commit configured seed maps for templates that have no calibration.

        Templates already calibrated are left alone.
        """
        committed = []
        for seed in config_manager.configuration.coordinate_map_seeds:
            if self.current_version(seed.template_id) > 0:
                logger.debug(f"Skipping seed for {seed.template_id}: already calibrated")
                continue
            committed.append(
                self.commit(
                    seed.template_id,
                    seed.entries,
                    base_version=0,
                    page_dimensions=seed.page_dimensions,
                    origin=seed.origin,
                    comment=seed.comment or "Seeded from configuration",
                )
            )
        return committed
