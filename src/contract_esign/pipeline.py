"""End-to-end contract signing pipeline.

Wires the template registry, variable mapper, renderer, converter,
coordinate map store and signature provider together, taking one contract
from its database record to an invitation sent for signature. A run that
fails stops at the last lifecycle state it reached and can be resumed by
running it again.
"""

import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Generator, List, Mapping, Optional, Tuple

from .audit.audit_logger import AuditLogger
from .audit.database import DatabaseManager
from .calibration.coordinate_store import CoordinateMapStore
from .calibration.workflow import CalibrationWorkflow
from .config.config_manager import ConfigurationManager
from .conversion.converter import LibreOfficeConverter
from .conversion.geometry import find_placeholder_residue
from .exceptions import (
    CalibrationMismatch,
    ContractEsignError,
    InvalidStateTransition,
    MissingRequiredField,
    PlaceholderMismatch,
    RecordNotFound,
)
from .interfaces.converter import IDocumentConverter
from .interfaces.provider import ISignatureProvider
from .interfaces.records import IContractRecords
from .interfaces.storage import IObjectStorage
from .lifecycle.tracker import LifecycleTracker, can_transition
from .mapping.variable_mapper import VariableMapper
from .models.artifact import GeneratedArtifact
from .models.coordinates import CoordinateMap, dimensions_match
from .models.enums import ContractType, DocumentFormat, LifecycleState
from .models.signing import SignerContact, SigningSession
from .models.template import ContractInput, ContractVariables, Template
from .performance import PerformanceMonitor, SimpleCache
from .provider.adapter import SignNowAdapter
from .provider.client import RetryPolicy, SignNowClient, SignNowCredentials
from .registry.template_registry import TemplateRegistry
from .rendering.template_renderer import TemplateRenderer
from .storage.local_storage import LocalObjectStorage
from .storage.sql_records import SqlContractRecords


logger = logging.getLogger(__name__)


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class PipelineConfig:
    """Configuration for the signing pipeline."""

    # Database configuration
    database_url: Optional[str] = None
    create_tables: bool = False

    # Directories
    storage_dir: str = "data/storage"
    temp_dir: str = "data/temp"
    config_dir: Optional[str] = "config"

    # Converter
    converter_binary: str = "soffice"
    converter_timeout: float = 120.0

    # Provider
    signnow_base_url: Optional[str] = None
    signnow_client_id: str = ""
    signnow_client_secret: str = ""
    signnow_username: str = ""
    signnow_password: str = ""
    provider_timeout: float = 30.0
    provider_max_attempts: int = 3
    sender_email: str = ""
    redirect_base_url: Optional[str] = None

    # Performance / features
    max_stage_time: float = 120.0
    enable_audit_logging: bool = True

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Build configuration from ESIGN_*, SIGNNOW_* and DATABASE_URL variables."""
        return cls(
            database_url=os.environ.get("DATABASE_URL"),
            create_tables=_env_flag("ESIGN_CREATE_TABLES", False),
            storage_dir=os.environ.get("ESIGN_STORAGE_DIR", "data/storage"),
            temp_dir=os.environ.get("ESIGN_TEMP_DIR", "data/temp"),
            config_dir=os.environ.get("ESIGN_CONFIG_DIR", "config"),
            converter_binary=os.environ.get("ESIGN_CONVERTER_BINARY", "soffice"),
            converter_timeout=float(os.environ.get("ESIGN_CONVERTER_TIMEOUT", "120")),
            signnow_base_url=os.environ.get("SIGNNOW_BASE_URL"),
            signnow_client_id=os.environ.get("SIGNNOW_CLIENT_ID", ""),
            signnow_client_secret=os.environ.get("SIGNNOW_CLIENT_SECRET", ""),
            signnow_username=os.environ.get("SIGNNOW_USERNAME", ""),
            signnow_password=os.environ.get("SIGNNOW_PASSWORD", ""),
            provider_timeout=float(os.environ.get("SIGNNOW_TIMEOUT", "30")),
            provider_max_attempts=int(os.environ.get("SIGNNOW_MAX_ATTEMPTS", "3")),
            sender_email=os.environ.get("SIGNNOW_SENDER_EMAIL", ""),
            redirect_base_url=os.environ.get("ESIGN_REDIRECT_BASE_URL"),
            max_stage_time=float(os.environ.get("ESIGN_MAX_STAGE_TIME", "120")),
            enable_audit_logging=_env_flag("ESIGN_AUDIT_LOGGING", True),
        )


@dataclass
class PipelineResult:
    """Result of one pipeline run."""

    success: bool
    contract_id: str
    state: Optional[str] = None
    provider_document_id: Optional[str] = None
    template_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    processing_time: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "contract_id": self.contract_id,
            "state": self.state,
            "provider_document_id": self.provider_document_id,
            "template_id": self.template_id,
            "errors": self.errors,
            "warnings": self.warnings,
            "processing_time": self.processing_time,
            "metadata": self.metadata,
        }


class ContractPipeline:
    """
    Orchestrates contract generation and signing.

    Runs are single-flight per contract: a second run of the same contract
    waits for the first and then resumes from whatever state it left.
    Different contracts run in parallel.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        records: Optional[IContractRecords] = None,
        storage: Optional[IObjectStorage] = None,
        registry: Optional[TemplateRegistry] = None,
        mapper: Optional[VariableMapper] = None,
        renderer: Optional[TemplateRenderer] = None,
        converter: Optional[IDocumentConverter] = None,
        provider: Optional[ISignatureProvider] = None,
        coordinate_store: Optional[CoordinateMapStore] = None,
        audit_logger: Optional[AuditLogger] = None,
        config_manager: Optional[ConfigurationManager] = None,
        db_manager: Optional[DatabaseManager] = None,
    ):
        """
        Initialize the pipeline.

        Any collaborator not supplied is built from ``config``.
        """
        self.config = config or PipelineConfig()
        self.performance_monitor = PerformanceMonitor(max_stage_time=self.config.max_stage_time)

        self._db_manager = db_manager
        if self._db_manager is None and (records is None or coordinate_store is None or (
            audit_logger is None and self.config.enable_audit_logging
        )):
            self._db_manager = DatabaseManager(database_url=self.config.database_url)
        if self._db_manager is not None and self.config.create_tables:
            self._db_manager.init_database()

        self._config_manager = config_manager or ConfigurationManager()
        if self.config.config_dir and not self._config_manager.is_loaded:
            if Path(self.config.config_dir).is_dir():
                result = self._config_manager.load_from_directory(self.config.config_dir)
                for warning in result.warnings:
                    logger.warning(f"Configuration: {warning}")
                logger.info(f"Loaded configuration from {self.config.config_dir}")

        self._storage = storage or LocalObjectStorage(self.config.storage_dir)
        self._records = records or SqlContractRecords(self._db_manager)

        self._audit_logger = audit_logger
        if self._audit_logger is None and self.config.enable_audit_logging:
            self._audit_logger = AuditLogger(db_manager=self._db_manager)

        self._registry = registry or TemplateRegistry(
            templates=self._config_manager.configuration.templates,
            storage=self._storage,
            cache=SimpleCache(max_size=20),
        )
        self._mapper = mapper or VariableMapper()
        self._renderer = renderer or TemplateRenderer(self._registry)
        self._converter = converter or LibreOfficeConverter(
            binary=self.config.converter_binary,
            timeout=self.config.converter_timeout,
            work_dir=self.config.temp_dir,
        )
        self._provider = provider or self._build_provider()

        self._coordinate_store = coordinate_store or CoordinateMapStore(self._db_manager)
        if self._config_manager.is_loaded:
            self._coordinate_store.seed_from_config(self._config_manager)

        self._tracker = LifecycleTracker(self._records, self._audit_logger)
        self._calibration = CalibrationWorkflow(self._coordinate_store, self._audit_logger)

        # contract id -> (lock, runs holding or waiting for it)
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}
        self._locks_guard = threading.Lock()

        logger.info("Contract pipeline initialized")

    def _build_provider(self) -> ISignatureProvider:
        client = SignNowClient(
            SignNowCredentials(
                client_id=self.config.signnow_client_id,
                client_secret=self.config.signnow_client_secret,
                username=self.config.signnow_username,
                password=self.config.signnow_password,
            ),
            base_url=self.config.signnow_base_url,
            timeout=self.config.provider_timeout,
            retry_policy=RetryPolicy(max_attempts=self.config.provider_max_attempts),
        )
        return SignNowAdapter(
            client,
            sender_email=self.config.sender_email,
            redirect_base_url=self.config.redirect_base_url,
        )

    # ========== Accessors ==========

    @property
    def calibration(self) -> CalibrationWorkflow:
        return self._calibration

    @property
    def registry(self) -> TemplateRegistry:
        return self._registry

    @property
    def provider(self) -> ISignatureProvider:
        return self._provider

    @property
    def tracker(self) -> LifecycleTracker:
        return self._tracker

    @contextmanager
    def _contract_lock(self, contract_id: str) -> Generator[None, None, None]:
        """Hold the contract's lock; it is dropped once no run holds or awaits it."""
        with self._locks_guard:
            lock, users = self._locks.get(contract_id, (threading.Lock(), 0))
            self._locks[contract_id] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                _, users = self._locks[contract_id]
                if users == 1:
                    del self._locks[contract_id]
                else:
                    self._locks[contract_id] = (lock, users - 1)

    # ========== Run ==========

    def run(self, contract_id: str) -> PipelineResult:
        """
        Take a contract as far as an invitation sent for signature.

        Each step runs only if the contract's lifecycle state shows it has
        not run yet, so calling ``run`` again after a failure resumes where
        the previous run stopped and a completed run is a no-op.

        Returns:
            PipelineResult with the state reached and any errors.
        """
        start_time = time.time()
        result = PipelineResult(success=False, contract_id=contract_id)

        with self._contract_lock(contract_id):
            overall_metric = self.performance_monitor.start_operation(
                "pipeline_execution", contract_id=contract_id
            )
            try:
                self._run_steps(contract_id, result)
                result.success = True
                self.performance_monitor.end_operation(overall_metric, success=True)
                logger.info(f"Pipeline run for contract {contract_id} reached {result.state}")

            except ContractEsignError as e:
                self._record_failure(result, e.to_dict(), str(e))
                result.metadata["retryable"] = e.retryable
                self.performance_monitor.end_operation(overall_metric, success=False, error=str(e))

            except Exception as e:
                message = f"Pipeline execution failed: {e}"
                logger.exception(message)
                self._record_failure(
                    result, {"error_type": type(e).__name__, "message": str(e)}, message
                )
                self.performance_monitor.end_operation(overall_metric, success=False, error=message)

            finally:
                result.processing_time = time.time() - start_time
                result.metadata["performance_stats"] = self.performance_monitor.get_all_stats()

        return result

    def _record_failure(self, result: PipelineResult, error: Dict[str, Any], message: str) -> None:
        session = self._tracker.get(result.contract_id)
        if session is not None:
            result.state = session.state.value
            result.provider_document_id = session.provider_document_id
        result.errors.append(message)
        result.metadata["error"] = error
        logger.error(f"Contract {result.contract_id} stopped at {result.state}: {message}")
        if self._audit_logger:
            self._audit_logger.log_pipeline_failed(result.contract_id, error, result.state)

    def _run_steps(self, contract_id: str, result: PipelineResult) -> None:
        session = self._tracker.get(contract_id)
        if session is not None and session.is_terminal:
            result.state = session.state.value
            result.provider_document_id = session.provider_document_id
            result.warnings.append(f"Contract is already {session.state.value}")
            return

        # Step 1: Load contract record
        contract = self._load_contract(contract_id)

        # Step 2: Resolve template
        template, contract_type = self._resolve_template(contract)
        result.template_id = template.id

        # Step 3: Map variables
        variables = self._map_variables(contract, contract_type, template)

        if template.is_provider_template:
            # Provider-side templates already carry their fields
            if session is None:
                session = self._tracker.start(contract_id)
            if session.state == LifecycleState.RENDERED:
                session = self._copy_template(session, template, contract)
            if session.state == LifecycleState.UPLOADED:
                session = self._prefill(session, template, variables)
        else:
            # Step 4: Look up calibration
            coordinate_map = self._load_calibration(template)

            # Steps 5-7: Render, convert and store the artifact once per contract
            artifact = self._records.get_artifact(contract_id)
            if artifact is None:
                artifact = self._generate_artifact(contract, template, variables, coordinate_map)
            if session is None:
                session = self._tracker.start(contract_id)

            # Step 8: Upload
            if session.state == LifecycleState.RENDERED:
                session = self._upload(session, artifact)

            # Step 9: Inject fields
            if session.state == LifecycleState.UPLOADED:
                session = self._inject(session, coordinate_map, variables, artifact, contract)

        # Step 10: Invite signer
        if session.state == LifecycleState.FIELDS_INJECTED:
            session = self._invite(session, contract, contract_type)

        result.state = session.state.value
        result.provider_document_id = session.provider_document_id

    def _load_contract(self, contract_id: str) -> ContractInput:
        logger.info(f"Step 1: Loading contract {contract_id}")
        with self.performance_monitor.track("load_contract", contract_id=contract_id):
            return self._records.get_contract_input(contract_id)

    def _resolve_template(self, contract: ContractInput):
        logger.info(f"Step 2: Resolving template for service type {contract.service_type!r}")
        template = self._registry.resolve_service_type(contract.service_type)
        if self._audit_logger:
            self._audit_logger.log_template_resolved(
                contract.contract_id, template.id, template.contract_type.value
            )
        return template, template.contract_type

    def _map_variables(
        self,
        contract: ContractInput,
        contract_type: ContractType,
        template: Template,
    ) -> ContractVariables:
        logger.info("Step 3: Mapping contract variables")
        with self.performance_monitor.track("map_variables", contract_id=contract.contract_id):
            return self._mapper.map(contract_type, contract, template)

    def _load_calibration(self, template: Template) -> CoordinateMap:
        logger.info(f"Step 4: Loading calibration for {template.id}")
        return self._coordinate_store.get(template.id)

    def _generate_artifact(
        self,
        contract: ContractInput,
        template: Template,
        variables: ContractVariables,
        coordinate_map: CoordinateMap,
    ) -> GeneratedArtifact:
        contract_id = contract.contract_id

        logger.info("Step 5: Rendering template")
        with self.performance_monitor.track("render_template", contract_id=contract_id):
            docx = self._renderer.render(template, variables)
        if self._audit_logger:
            self._audit_logger.log_contract_rendered(contract_id, template.id, list(variables), len(docx))

        logger.info("Step 6: Converting to PDF")
        with self.performance_monitor.track("convert_document", contract_id=contract_id):
            converted = self._converter.convert(docx, DocumentFormat.DOCX, DocumentFormat.PDF)

        residue = find_placeholder_residue(converted.content)
        if residue:
            raise PlaceholderMismatch(
                f"Converted contract {contract_id} still contains placeholders",
                missing=residue,
            )
        if not dimensions_match(coordinate_map.page_dimensions, converted.page_dimensions):
            raise CalibrationMismatch(
                "Converted contract does not match the calibrated page geometry",
                expected_pages=coordinate_map.page_count,
                actual_pages=converted.page_count,
                template_id=coordinate_map.template_id,
                version=coordinate_map.version,
            )

        logger.info("Step 7: Storing artifact")
        name = f"contract_{contract_id}.pdf"
        storage_url = self._storage.upload_artifact(name, converted.content)
        artifact = GeneratedArtifact(
            contract_id=contract_id,
            template_id=template.id,
            template_version=coordinate_map.version,
            content=converted.content,
            page_count=converted.page_count,
            page_dimensions=list(converted.page_dimensions),
            format=DocumentFormat.PDF,
            storage_url=storage_url,
        )
        self._records.save_artifact(artifact)
        if self._audit_logger:
            self._audit_logger.log_artifact_converted(
                contract_id, template.id, artifact.page_count, storage_url
            )
        return artifact

    def _upload(self, session: SigningSession, artifact: GeneratedArtifact) -> SigningSession:
        logger.info("Step 8: Uploading artifact to provider")
        with self.performance_monitor.track("provider_upload", contract_id=session.contract_id):
            document_id = self._provider.upload(artifact)
        if self._audit_logger:
            self._audit_logger.log_document_uploaded(session.contract_id, document_id)
        return self._tracker.transition(
            session,
            LifecycleState.UPLOADED,
            reason="Artifact uploaded",
            provider_document_id=document_id,
        )

    def _inject(
        self,
        session: SigningSession,
        coordinate_map: CoordinateMap,
        variables: ContractVariables,
        artifact: GeneratedArtifact,
        contract: ContractInput,
    ) -> SigningSession:
        logger.info(f"Step 9: Injecting fields from {coordinate_map.template_id} v{coordinate_map.version}")
        prefill = {"contract_date": contract.contract_date} if contract.contract_date else {}
        with self.performance_monitor.track("provider_inject", contract_id=session.contract_id):
            fields = self._provider.inject_fields(
                session.provider_document_id, coordinate_map, variables, artifact, prefill
            )
        if self._audit_logger:
            self._audit_logger.log_fields_injected(
                session.contract_id,
                session.provider_document_id,
                coordinate_map.template_id,
                coordinate_map.version,
                [f.field_name for f in fields],
            )
        return self._tracker.transition(
            session,
            LifecycleState.FIELDS_INJECTED,
            reason=f"Injected {len(fields)} field(s)",
            fields=fields,
        )

    def _copy_template(
        self,
        session: SigningSession,
        template: Template,
        contract: ContractInput,
    ) -> SigningSession:
        logger.info(f"Step 4: Copying provider template {template.provider_template_id}")
        with self.performance_monitor.track("provider_copy", contract_id=session.contract_id):
            document_id = self._provider.create_from_template(
                template.provider_template_id, f"contract_{contract.contract_id}"
            )
        if self._audit_logger:
            self._audit_logger.log_document_uploaded(
                session.contract_id, document_id, template.provider_template_id
            )
        return self._tracker.transition(
            session,
            LifecycleState.UPLOADED,
            reason="Provider template copied",
            provider_document_id=document_id,
        )

    def _prefill(
        self,
        session: SigningSession,
        template: Template,
        variables: ContractVariables,
    ) -> SigningSession:
        logger.info("Step 5: Prefilling provider template fields")
        values = template.provider_values(variables)
        with self.performance_monitor.track("provider_prefill", contract_id=session.contract_id):
            self._provider.prefill_by_name(session.provider_document_id, values)
        if self._audit_logger:
            self._audit_logger.log_fields_injected(
                session.contract_id,
                session.provider_document_id,
                template.id,
                None,
                list(values),
            )
        return self._tracker.transition(
            session,
            LifecycleState.FIELDS_INJECTED,
            reason=f"Prefilled {len(values)} field(s)",
        )

    def _invite(
        self,
        session: SigningSession,
        contract: ContractInput,
        contract_type: ContractType,
    ) -> SigningSession:
        logger.info("Step 10: Inviting signer")
        if not contract.client_email or not contract.client_email.strip():
            raise MissingRequiredField("Signer email is required", field_name="client_email")
        signer = SignerContact(name=contract.client_name, email=contract.client_email.strip())
        with self.performance_monitor.track("provider_invite", contract_id=session.contract_id):
            invite_id = self._provider.send_invitation(
                session.provider_document_id,
                signer,
                contract_id=contract.contract_id,
                contract_type=contract_type,
            )
        if self._audit_logger:
            self._audit_logger.log_invitation_sent(
                session.contract_id, session.provider_document_id, signer.email, invite_id
            )
        return self._tracker.transition(
            session,
            LifecycleState.INVITATION_SENT,
            reason="Invitation sent",
            invite_id=invite_id,
        )

    # ========== Lifecycle ==========

    def status(self, contract_id: str) -> Optional[SigningSession]:
        return self._tracker.get(contract_id)

    def cancel(self, contract_id: str, reason: str = "Cancelled") -> SigningSession:
        """
        Void a contract that has reached the provider.

        Raises:
            RecordNotFound: The contract has no signing session.
            InvalidStateTransition: The contract cannot be voided from its state.
        """
        with self._contract_lock(contract_id):
            session = self._tracker.get(contract_id)
            if session is None:
                raise RecordNotFound("No signing session", record_type="contract", record_id=contract_id)
            if not can_transition(session.state, LifecycleState.VOIDED):
                raise InvalidStateTransition(
                    f"Contract {contract_id} cannot be voided",
                    from_state=session.state.value,
                    to_state=LifecycleState.VOIDED.value,
                )
            self._provider.void(session.provider_document_id)
            if self._audit_logger:
                self._audit_logger.log_document_voided(contract_id, session.provider_document_id, reason)
            return self._tracker.transition(session, LifecycleState.VOIDED, reason=reason)

    def refresh_status(self, contract_id: str) -> SigningSession:
        """
        Poll the provider and apply the state it reports.

        Raises:
            RecordNotFound: The contract has no signing session.
        """
        with self._contract_lock(contract_id):
            session = self._tracker.get(contract_id)
            if session is None:
                raise RecordNotFound("No signing session", record_type="contract", record_id=contract_id)
            if session.provider_document_id is None or session.is_terminal:
                return session
            observed = self._provider.poll_status(session.provider_document_id)
            return self._tracker.apply_observed(session, observed, reason="Provider status poll")

    def handle_webhook(self, payload: Mapping[str, Any]) -> Optional[SigningSession]:
        """Apply a provider webhook; returns the session it touched, if any."""
        interpreted = self._provider.interpret_webhook(payload)
        if interpreted is None:
            return None
        document_id, observed = interpreted
        session = self._tracker.find_by_document(document_id)
        if session is None:
            logger.warning(f"Webhook for unknown provider document {document_id}")
            return None
        with self._contract_lock(session.contract_id):
            session = self._tracker.get(session.contract_id)
            return self._tracker.apply_observed(session, observed, reason="Provider webhook")

    def get_performance_stats(self) -> Dict[str, Dict[str, Any]]:
        return self.performance_monitor.get_all_stats()

    def close(self) -> None:
        """Close the pipeline and release resources."""
        if self._audit_logger:
            self._audit_logger.close()
        if self._db_manager:
            self._db_manager.close()
        logger.info("Contract pipeline closed")
