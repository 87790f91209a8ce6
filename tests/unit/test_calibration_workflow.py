"""Unit tests for calibration probes and the calibration workflow."""

import io
from unittest.mock import MagicMock

import pdfplumber
import pytest

from contract_esign.calibration import CalibrationWorkflow, CoordinateMapStore, render_probe
from contract_esign.conversion import measure_pdf
from contract_esign.exceptions import (
    CalibrationValidationError,
    LayoutDriftError,
    NoCalibration,
    StaleCalibration,
)
from contract_esign.models.coordinates import FieldCoordinate, PageDimensions
from contract_esign.models.enums import FieldKind, Origin


TEMPLATE_ID = "labor-support-v1"
LETTER = PageDimensions(width=612.0, height=792.0)


def _entry(name="client_signature", page_index=0, x=380.0, y=600.0, kind=FieldKind.SIGNATURE, label=None):
    return FieldCoordinate(
        field_name=name,
        page_index=page_index,
        x=x,
        y=y,
        width=150.0,
        height=35.0,
        kind=kind,
        label=label,
    )


def _words(pdf_bytes, page_index):
    with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
        return pdf.pages[page_index].extract_words()


class TestRenderProbe:
    """Tests for probe PDF rendering."""

    def test_probe_keeps_reference_geometry(self, make_pdf):
        reference = make_pdf(page_count=2)

        probe = render_probe(reference, [LETTER, LETTER], [_entry(page_index=1)])

        assert measure_pdf(probe) == [LETTER, LETTER]

    def test_label_drawn_above_box_in_top_left_frame(self, make_pdf):
        reference = make_pdf(page_count=1, texts=[[]])

        probe = render_probe(reference, [LETTER], [_entry(label="Client Signature")])

        words = [w for w in _words(probe, 0) if w["text"] in ("Client", "Signature")]
        assert words
        # Top-left frame: the label sits just above y=600 measured from the top.
        assert all(585 <= w["top"] <= 600 for w in words)
        assert all(w["x0"] >= 380 for w in words)

    def test_field_name_used_without_label(self, make_pdf):
        probe = render_probe(make_pdf(texts=[[]]), [LETTER], [_entry(name="client_initials_p1")])
        assert "client_initials_p1" in [w["text"] for w in _words(probe, 0)]

    def test_reference_bytes_untouched(self, make_pdf):
        reference = make_pdf(page_count=1)
        snapshot = bytes(reference)

        render_probe(reference, [LETTER], [_entry()])

        assert reference == snapshot


class TestCalibrationWorkflow:
    """Tests for CalibrationWorkflow class."""

    @pytest.fixture
    def store(self, db_manager):
        return CoordinateMapStore(db_manager)

    @pytest.fixture
    def audit_logger(self):
        return MagicMock()

    @pytest.fixture
    def workflow(self, store, audit_logger, make_pdf):
        workflow = CalibrationWorkflow(store, audit_logger)
        workflow.register_reference(TEMPLATE_ID, make_pdf(page_count=2), expected_page_count=2)
        return workflow

    def test_propose_returns_probe_with_base_version(self, workflow, audit_logger):
        probe = workflow.propose(TEMPLATE_ID, "client_signature", _entry(name="ignored"))

        assert probe.base_version == 0
        assert probe.page_count == 2
        assert probe.entries[0].field_name == "client_signature"
        assert measure_pdf(probe.content) == [LETTER, LETTER]
        audit_logger.log_calibration_probed.assert_called_once()

    def test_probe_does_not_touch_store(self, workflow, store):
        workflow.propose_map(TEMPLATE_ID, [_entry(), _entry(name="client_date", y=650.0, kind=FieldKind.DATE)])
        assert store.current_version(TEMPLATE_ID) == 0

    def test_bottom_left_proposal_converted_to_top_left(self, workflow):
        probe = workflow.propose(TEMPLATE_ID, "client_signature", _entry(y=157.0), origin=Origin.BOTTOM_LEFT)
        assert probe.origin == Origin.TOP_LEFT
        assert probe.entries[0].y == 600.0

    def test_out_of_bounds_proposal_rejected(self, workflow):
        with pytest.raises(CalibrationValidationError):
            workflow.propose(TEMPLATE_ID, "client_signature", _entry(x=600.0))

    def test_proposal_on_missing_page_rejected(self, workflow):
        with pytest.raises(CalibrationValidationError):
            workflow.propose(TEMPLATE_ID, "client_signature", _entry(page_index=5))

    def test_propose_without_reference(self, store):
        with pytest.raises(NoCalibration):
            CalibrationWorkflow(store).propose("postpartum-doula-v1", "client_signature", _entry())

    def test_probe_then_commit(self, workflow, audit_logger):
        entries = [_entry(), _entry(name="client_date", page_index=1, y=100.0, kind=FieldKind.DATE)]
        probe = workflow.propose_map(TEMPLATE_ID, entries)

        committed = workflow.commit(TEMPLATE_ID, probe.entries, base_version=probe.base_version, user_id="staff-1")

        assert committed.version == 1
        assert committed.page_dimensions == [LETTER, LETTER]
        audit_logger.log_calibration_committed.assert_called_once_with(
            TEMPLATE_ID, 1, 0, 2, user_id="staff-1"
        )

    def test_commit_from_stale_probe(self, workflow):
        stale_probe = workflow.propose(TEMPLATE_ID, "client_signature", _entry())
        workflow.commit(TEMPLATE_ID, [_entry(x=300.0)], base_version=0)

        with pytest.raises(StaleCalibration):
            workflow.commit(TEMPLATE_ID, stale_probe.entries, base_version=stale_probe.base_version)

    def test_rollback(self, workflow, audit_logger):
        workflow.commit(TEMPLATE_ID, [_entry()], base_version=0)
        workflow.commit(TEMPLATE_ID, [_entry(x=10.0)], base_version=1)

        restored = workflow.rollback(TEMPLATE_ID, 1, base_version=2, user_id="staff-2")

        assert restored.version == 3
        assert workflow.get(TEMPLATE_ID).entries[0].x == 380.0
        assert [m.version for m in workflow.history(TEMPLATE_ID)] == [1, 2, 3]
        audit_logger.log_calibration_rolled_back.assert_called_once_with(
            TEMPLATE_ID, restored_version=1, new_version=3, user_id="staff-2"
        )

    def test_reference_page_count_checked(self, store, make_pdf):
        workflow = CalibrationWorkflow(store)
        with pytest.raises(LayoutDriftError):
            workflow.register_reference(TEMPLATE_ID, make_pdf(page_count=1), expected_page_count=3)
        assert not store.has_reference(TEMPLATE_ID)

    def test_import_from_provider(self, workflow):
        provider = MagicMock()
        provider.read_fields.return_value = [_entry()]

        entries = workflow.import_from_provider(provider, "doc-1")

        provider.read_fields.assert_called_once_with("doc-1")
        assert entries[0].field_name == "client_signature"
