"""Integration tests for the contract signing pipeline.

Runs the real registry, mapper, renderer, coordinate store, lifecycle
tracker, SQL records and SignNow adapter against SQLite, with a fake
converter and an in-memory SignNow account.
"""

import io
import threading

import pdfplumber
import pytest
from docx import Document
from reportlab.lib.pagesizes import A4, letter

from contract_esign.audit.audit_logger import AuditLogger
from contract_esign.calibration import CoordinateMapStore
from contract_esign.conversion import measure_pdf
from contract_esign.exceptions import (
    InvalidStateTransition,
    ProviderRejected,
    ProviderUnavailable,
    RecordNotFound,
)
from contract_esign.interfaces.audit import AuditEventType
from contract_esign.interfaces.converter import IDocumentConverter
from contract_esign.models.artifact import ConversionResult
from contract_esign.models.coordinates import FieldCoordinate, PageDimensions
from contract_esign.models.enums import ContractType, DocumentFormat, FieldKind, LifecycleState
from contract_esign.models.template import ContractInput, Template
from contract_esign.pipeline import ContractPipeline, PipelineConfig
from contract_esign.provider import SignNowAdapter
from contract_esign.registry import TemplateRegistry
from contract_esign.storage import LocalObjectStorage, SqlContractRecords


LETTER = PageDimensions(width=612.0, height=792.0)
TEMPLATE_ID = "labor-support-v1"

LABOR_BODY = [
    "Labor Support Agreement",
    "Client: {client_name}",
    "Initials: {client_initials} / {client_intials}",
    "Total fee: {total_amount}",
    "Deposit due at signing: {deposit_amount}",
    "Balance due: {balance_amount}",
]


class FakeConverter(IDocumentConverter):
    """Draws the .docx paragraph text onto PDF pages with reportlab."""

    def __init__(self, make_pdf, pagesize=letter, extra_lines=None):
        self._make_pdf = make_pdf
        self.pagesize = pagesize
        self.extra_lines = list(extra_lines or [])
        self.calls = 0

    def convert(self, content, from_format, to_format):
        self.calls += 1
        lines = [p.text for p in Document(io.BytesIO(content)).paragraphs if p.text]
        pdf = self._make_pdf(page_count=1, texts=[lines + self.extra_lines], pagesize=self.pagesize)
        pages = measure_pdf(pdf)
        return ConversionResult(content=pdf, format=DocumentFormat.PDF, page_count=len(pages), page_dimensions=pages)


class FakeSignNowAccount:
    """In-memory SignNow account behind the client interface."""

    def __init__(self):
        self.documents = {}
        self.templates = {}
        self.copies = 0
        self.uploads = 0
        self.field_puts = 0
        self.invites = []
        self.deletes = []
        self.failures = []
        self._lock = threading.Lock()

    def fail_next(self, method, suffix, error):
        self.failures.append((method, suffix, error))

    def _maybe_fail(self, method, path):
        for failure in list(self.failures):
            if failure[0] == method and path.endswith(failure[1]):
                self.failures.remove(failure)
                raise failure[2]

    def request_json(self, method, path, **kwargs):
        with self._lock:
            self._maybe_fail(method, path)
            parts = path.strip("/").split("/")
            if method == "POST" and parts == ["document"]:
                self.uploads += 1
                doc_id = f"doc-{self.uploads}"
                self.documents[doc_id] = {"id": doc_id, "fields": [], "field_invites": []}
                return {"id": doc_id}
            if parts[0] == "template" and parts[-1] == "copy":
                self.uploads += 1
                self.copies += 1
                doc_id = f"doc-{self.uploads}"
                fields = [dict(f) for f in self.templates[parts[1]]]
                self.documents[doc_id] = {"id": doc_id, "fields": fields, "field_invites": []}
                return {"id": doc_id}
            document = self.documents.get(parts[1])
            if document is None:
                raise ProviderRejected("not found", status_code=404)
            if method == "PUT":
                self.field_puts += 1
                if "field_values" in kwargs["json"]:
                    values = {v["field_id"]: v["value"] for v in kwargs["json"]["field_values"]}
                    for f in document["fields"]:
                        f["prefilled_text"] = values.get(f["id"], f.get("prefilled_text"))
                    return {"id": parts[1]}
                document["fields"] = [
                    {"type": f["type"], "json_attributes": dict(f)} for f in kwargs["json"]["fields"]
                ]
                return {"id": parts[1]}
            if method == "POST" and parts[-1] == "invite":
                invite_id = f"inv-{len(self.invites) + 1}"
                self.invites.append(kwargs["json"])
                email = kwargs["json"]["to"][0]["email"]
                document["field_invites"].append({"id": invite_id, "status": "pending", "email": email})
                return {"id": invite_id}
            return document

    def request(self, method, path, **kwargs):
        with self._lock:
            self.deletes.append(path)
            parts = path.strip("/").split("/")
            if len(parts) == 2:
                self.documents.pop(parts[1], None)


@pytest.fixture
def storage(tmp_path, make_docx):
    storage = LocalObjectStorage(tmp_path / "storage")
    storage.put_template("labor.docx", make_docx(LABOR_BODY))
    return storage


@pytest.fixture
def records(db_manager):
    records = SqlContractRecords(db_manager)
    records.add_contract(
        ContractInput(
            contract_id="c-1",
            client_name="Jerry Techluminate",
            client_email="jerry@example.com",
            service_type="Labor Support Services",
            total_amount="$2,500",
            deposit_amount="$500",
            balance_amount="$2,000",
            contract_date="05/01/2024",
        )
    )
    return records


@pytest.fixture
def coordinate_store(db_manager):
    return CoordinateMapStore(db_manager)


@pytest.fixture
def calibrated(coordinate_store):
    return coordinate_store.commit(
        TEMPLATE_ID,
        [
            FieldCoordinate("client_signature", 0, 380, 600, 150, 35, FieldKind.SIGNATURE, "Client Signature"),
            FieldCoordinate("client_signed_date", 0, 100, 650, 120, 20, FieldKind.DATE, "Date", "contract_date"),
        ],
        base_version=0,
        page_dimensions=[LETTER],
    )


@pytest.fixture
def account():
    return FakeSignNowAccount()


@pytest.fixture
def converter(make_pdf):
    return FakeConverter(make_pdf)


@pytest.fixture
def pipeline(tmp_path, db_manager, records, storage, coordinate_store, labor_template, converter, account):
    return ContractPipeline(
        config=PipelineConfig(config_dir=None, storage_dir=str(tmp_path / "storage")),
        records=records,
        storage=storage,
        registry=TemplateRegistry(templates=[labor_template], storage=storage),
        converter=converter,
        provider=SignNowAdapter(
            account,
            sender_email="contracts@example.com",
            redirect_base_url="https://app.example.com",
        ),
        coordinate_store=coordinate_store,
        db_manager=db_manager,
    )


def _webhook(event, document_id):
    return {"meta": {"event": event}, "content": {"document_id": document_id}}


class TestPipelineRun:
    """End-to-end runs of ContractPipeline."""

    def test_happy_path_reaches_invitation_sent(self, pipeline, calibrated, account, records, db_manager):
        result = pipeline.run("c-1")

        assert result.success, result.errors
        assert result.state == "invitation_sent"
        assert result.template_id == TEMPLATE_ID
        assert result.provider_document_id == "doc-1"

        artifact = records.get_artifact("c-1")
        assert artifact.page_dimensions == [LETTER]
        assert artifact.template_version == calibrated.version
        assert artifact.storage_url.startswith("file://")
        assert artifact.storage_url.endswith("contract_c-1.pdf")

        fields = account.documents["doc-1"]["fields"]
        assert [f["json_attributes"]["name"] for f in fields] == ["client_signature", "client_signed_date"]
        assert fields[1]["json_attributes"]["prefilled_text"] == "05/01/2024"
        assert account.invites[0]["to"][0]["email"] == "jerry@example.com"
        assert account.invites[0]["redirect_uri"] == "https://app.example.com/payment?contract_id=c-1"

        session = pipeline.status("c-1")
        assert [t.to_state for t in session.history] == [
            LifecycleState.RENDERED,
            LifecycleState.UPLOADED,
            LifecycleState.FIELDS_INJECTED,
            LifecycleState.INVITATION_SENT,
        ]

    def test_rendered_values_reach_the_artifact(self, pipeline, calibrated, records):
        pipeline.run("c-1")

        with pdfplumber.open(io.BytesIO(records.get_artifact("c-1").content)) as pdf:
            text = pdf.pages[0].extract_text()

        assert "Client: Jerry Techluminate" in text
        assert "Initials: JT / JT" in text
        assert "Balance due: $2,000" in text
        assert "{" not in text

    def test_audit_trail(self, pipeline, calibrated, db_manager):
        pipeline.run("c-1")

        events = AuditLogger(db_manager=db_manager).get_events(contract_id="c-1")
        types = {e.event_type for e in events}

        assert {
            AuditEventType.TEMPLATE_RESOLVED,
            AuditEventType.CONTRACT_RENDERED,
            AuditEventType.ARTIFACT_CONVERTED,
            AuditEventType.DOCUMENT_UPLOADED,
            AuditEventType.FIELDS_INJECTED,
            AuditEventType.INVITATION_SENT,
            AuditEventType.STATE_CHANGED,
        } <= types
        rendered = next(e for e in events if e.event_type == AuditEventType.CONTRACT_RENDERED)
        assert "Jerry Techluminate" not in str(rendered.details)

    def test_uncalibrated_template_stops_before_rendering(self, pipeline, converter, account, records):
        result = pipeline.run("c-1")

        assert not result.success
        assert result.metadata["error"]["error_type"] == "NoCalibration"
        assert result.state is None
        assert converter.calls == 0
        assert account.uploads == 0
        assert records.get_artifact("c-1") is None

    def test_unknown_contract(self, pipeline, calibrated):
        result = pipeline.run("missing")
        assert not result.success
        assert result.metadata["error"]["error_type"] == "RecordNotFound"
        assert result.metadata["error"]["record_id"] == "missing"

    def test_internal_key_error_is_not_a_missing_record(self, pipeline, calibrated, monkeypatch):
        def broken_map(*args, **kwargs):
            raise KeyError("client_name")

        monkeypatch.setattr(pipeline._mapper, "map", broken_map)

        result = pipeline.run("c-1")

        assert result.metadata["error"]["error_type"] == "KeyError"
        assert result.errors[0].startswith("Pipeline execution failed")

    def test_unknown_service_type(self, pipeline, calibrated, records):
        records.add_contract(ContractInput(contract_id="c-9", client_name="A B", service_type="Sleep Coaching"))
        result = pipeline.run("c-9")
        assert result.metadata["error"]["error_type"] == "UnknownContractType"

    def test_balance_mismatch_blocks_rendering(self, pipeline, calibrated, records, converter):
        records.add_contract(
            ContractInput(
                contract_id="c-2",
                client_name="Jerry Techluminate",
                client_email="jerry@example.com",
                service_type="Labor Support Services",
                total_amount="$2,500",
                deposit_amount="$500",
                balance_amount="$1,900",
            )
        )

        result = pipeline.run("c-2")

        assert result.metadata["error"]["error_type"] == "BalanceMismatch"
        assert not result.metadata["retryable"]
        assert converter.calls == 0

    def test_placeholder_residue_blocks_upload(self, pipeline, calibrated, converter, account, records):
        converter.extra_lines = ["Payment schedule: undefined"]

        result = pipeline.run("c-1")

        assert result.metadata["error"]["error_type"] == "PlaceholderMismatch"
        assert account.uploads == 0
        assert records.get_artifact("c-1") is None
        assert pipeline.status("c-1") is None

    def test_geometry_mismatch_blocks_upload(self, pipeline, calibrated, converter, account):
        converter.pagesize = A4

        result = pipeline.run("c-1")

        assert result.metadata["error"]["error_type"] == "CalibrationMismatch"
        assert account.uploads == 0

    def test_resume_after_provider_outage(self, pipeline, calibrated, account, converter):
        account.fail_next("PUT", "/document/doc-1", ProviderUnavailable("busy", status_code=503))

        first = pipeline.run("c-1")

        assert not first.success
        assert first.state == "uploaded"
        assert first.provider_document_id == "doc-1"
        assert first.metadata["retryable"]

        second = pipeline.run("c-1")

        assert second.success
        assert second.state == "invitation_sent"
        assert account.uploads == 1
        assert converter.calls == 1

    def test_missing_email_stops_before_invite(self, pipeline, calibrated, records, account):
        records.add_contract(
            ContractInput(
                contract_id="c-3",
                client_name="Jerry Techluminate",
                service_type="Labor Support Services",
                total_amount="$2,500",
                deposit_amount="$500",
                balance_amount="$2,000",
            )
        )

        first = pipeline.run("c-3")

        assert first.metadata["error"]["error_type"] == "MissingRequiredField"
        assert first.state == "fields_injected"
        assert account.invites == []

        records.add_contract(
            ContractInput(
                contract_id="c-3",
                client_name="Jerry Techluminate",
                client_email="jerry@example.com",
                service_type="Labor Support Services",
                total_amount="$2,500",
                deposit_amount="$500",
                balance_amount="$2,000",
            )
        )
        second = pipeline.run("c-3")

        assert second.state == "invitation_sent"
        assert account.uploads == 1
        assert account.field_puts == 1

    def test_rerun_after_invitation_sends_no_second_invite(self, pipeline, calibrated, account):
        pipeline.run("c-1")

        again = pipeline.run("c-1")

        assert again.success
        assert again.state == "invitation_sent"
        assert len(account.invites) == 1
        assert account.field_puts == 1

    def test_resume_after_lost_invitation_state(self, pipeline, calibrated, account, monkeypatch):
        real_transition = pipeline.tracker.transition
        failed = []

        def transition(session, to_state, **kwargs):
            if to_state == LifecycleState.INVITATION_SENT and not failed:
                failed.append(to_state)
                raise RuntimeError("database is locked")
            return real_transition(session, to_state, **kwargs)

        monkeypatch.setattr(pipeline.tracker, "transition", transition)

        first = pipeline.run("c-1")
        second = pipeline.run("c-1")

        assert first.state == "fields_injected"
        assert len(account.invites) == 1
        assert second.state == "invitation_sent"
        assert pipeline.status("c-1").invite_id == "inv-1"

    def test_completed_run_is_noop(self, pipeline, calibrated, account):
        pipeline.run("c-1")
        pipeline.handle_webhook(_webhook("document.complete", "doc-1"))

        result = pipeline.run("c-1")

        assert result.success
        assert result.state == "signed"
        assert result.warnings == ["Contract is already signed"]
        assert account.uploads == 1
        assert len(account.invites) == 1

    def test_concurrent_runs_of_one_contract(self, pipeline, calibrated, account):
        results = []

        def run():
            results.append(pipeline.run("c-1"))

        threads = [threading.Thread(target=run) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert [r.state for r in results] == ["invitation_sent", "invitation_sent"]
        assert account.uploads == 1
        assert len(account.invites) == 1
        assert pipeline._locks == {}

    def test_contract_locks_released_after_runs(self, pipeline, calibrated, records):
        records.add_contract(ContractInput(contract_id="c-5", client_name="A B", service_type="Sleep Coaching"))

        pipeline.run("c-1")
        pipeline.run("c-5")
        pipeline.refresh_status("c-1")

        assert pipeline._locks == {}


class TestLifecycleOperations:
    """Status, cancellation and provider notifications."""

    def test_webhooks_advance_state(self, pipeline, calibrated):
        pipeline.run("c-1")

        viewed = pipeline.handle_webhook(_webhook("document.open", "doc-1"))
        signed = pipeline.handle_webhook(_webhook("document.complete", "doc-1"))

        assert viewed.state == LifecycleState.VIEWED
        assert signed.state == LifecycleState.SIGNED

    def test_late_webhook_ignored(self, pipeline, calibrated):
        pipeline.run("c-1")
        pipeline.handle_webhook(_webhook("document.complete", "doc-1"))

        session = pipeline.handle_webhook(_webhook("document.open", "doc-1"))

        assert session.state == LifecycleState.SIGNED

    def test_webhook_for_unknown_document(self, pipeline, calibrated):
        assert pipeline.handle_webhook(_webhook("document.complete", "doc-404")) is None
        assert pipeline.handle_webhook({"meta": {"event": "user.created"}}) is None

    def test_refresh_status_polls_provider(self, pipeline, calibrated, account):
        pipeline.run("c-1")
        account.documents["doc-1"]["field_invites"][0]["status"] = "fulfilled"

        session = pipeline.refresh_status("c-1")

        assert session.state == LifecycleState.SIGNED

    def test_refresh_without_session(self, pipeline):
        with pytest.raises(RecordNotFound):
            pipeline.refresh_status("c-1")

    def test_cancel_voids_document(self, pipeline, calibrated, account, db_manager):
        pipeline.run("c-1")

        session = pipeline.cancel("c-1", reason="Client changed plans")

        assert session.state == LifecycleState.VOIDED
        assert account.deletes == ["/document/doc-1/fieldinvite/inv-1", "/document/doc-1"]
        events = AuditLogger(db_manager=db_manager).get_events(
            contract_id="c-1", event_type=AuditEventType.DOCUMENT_VOIDED
        )
        assert events[0].details["reason"] == "Client changed plans"

    def test_cancel_signed_contract_rejected(self, pipeline, calibrated, account):
        pipeline.run("c-1")
        pipeline.handle_webhook(_webhook("document.complete", "doc-1"))

        with pytest.raises(InvalidStateTransition):
            pipeline.cancel("c-1")
        assert account.deletes == []

    def test_cancel_without_session(self, pipeline):
        with pytest.raises(RecordNotFound):
            pipeline.cancel("c-1")


PROVIDER_FIELDS = [
    {"id": "pf-1", "name": "Client Name"},
    {"id": "pf-2", "json_attributes": {"name": "Initials"}},
    {"id": "pf-3", "name": "Total Fee"},
    {"id": "pf-4", "name": "Deposit"},
    {"id": "pf-5", "name": "Balance Due"},
    {"id": "pf-6", "type": "signature"},
]


@pytest.fixture
def provider_pipeline(tmp_path, db_manager, records, coordinate_store, converter, account, labor_template):
    template = Template(
        id="labor-support-signnow-v1",
        contract_type=ContractType.LABOR_SUPPORT,
        storage_key=None,
        placeholder_schema=labor_template.placeholder_schema,
        provider_template_id="tpl-labor",
        provider_field_names={
            "client_name": "Client Name",
            "client_initials": "Initials",
            "total_amount": "Total Fee",
            "deposit_amount": "Deposit",
            "balance_amount": "Balance Due",
        },
    )
    account.templates["tpl-labor"] = PROVIDER_FIELDS
    return ContractPipeline(
        config=PipelineConfig(config_dir=None, storage_dir=str(tmp_path / "storage")),
        records=records,
        registry=TemplateRegistry(templates=[template]),
        converter=converter,
        provider=SignNowAdapter(account, sender_email="contracts@example.com"),
        coordinate_store=coordinate_store,
        db_manager=db_manager,
    )


class TestProviderTemplateRun:
    """Runs for templates that live at the provider with their fields placed."""

    def test_copy_and_prefill_reach_invitation_sent(self, provider_pipeline, account, converter, records):
        result = provider_pipeline.run("c-1")

        assert result.success, result.errors
        assert result.state == "invitation_sent"
        assert result.provider_document_id == "doc-1"
        assert account.copies == 1
        assert converter.calls == 0
        assert records.get_artifact("c-1") is None

        prefilled = {f["id"]: f.get("prefilled_text") for f in account.documents["doc-1"]["fields"]}
        assert prefilled == {
            "pf-1": "Jerry Techluminate",
            "pf-2": "JT",
            "pf-3": "$2,500",
            "pf-4": "$500",
            "pf-5": "$2,000",
            "pf-6": None,
        }
        assert account.invites[0]["to"][0]["email"] == "jerry@example.com"
        assert [t.to_state for t in provider_pipeline.status("c-1").history] == [
            LifecycleState.RENDERED,
            LifecycleState.UPLOADED,
            LifecycleState.FIELDS_INJECTED,
            LifecycleState.INVITATION_SENT,
        ]

    def test_audit_names_the_provider_template(self, provider_pipeline, db_manager):
        provider_pipeline.run("c-1")

        audit = AuditLogger(db_manager=db_manager)
        uploaded = audit.get_events(contract_id="c-1", event_type=AuditEventType.DOCUMENT_UPLOADED)
        injected = audit.get_events(contract_id="c-1", event_type=AuditEventType.FIELDS_INJECTED)

        assert uploaded[0].details["provider_template_id"] == "tpl-labor"
        assert injected[0].details["calibration_version"] is None
        assert "Balance Due" in injected[0].details["field_names"]

    def test_missing_provider_field_stops_before_invite(self, provider_pipeline, account):
        account.templates["tpl-labor"] = PROVIDER_FIELDS[:4]

        first = provider_pipeline.run("c-1")

        assert not first.success
        assert first.state == "uploaded"
        assert first.metadata["error"]["error_type"] == "PlaceholderMismatch"
        assert first.metadata["error"]["missing"] == ["Balance Due"]
        assert account.invites == []

        account.documents["doc-1"]["fields"].append({"id": "pf-5", "name": "Balance Due"})
        second = provider_pipeline.run("c-1")

        assert second.success
        assert second.state == "invitation_sent"
        assert account.copies == 1
