"""Template registry: contract type to template lookup."""

import logging
import threading
from typing import Dict, Iterable, List, Optional

from ..exceptions import RecordNotFound, UnknownContractType
from ..interfaces.storage import IObjectStorage
from ..models.enums import ContractType
from ..models.template import Template
from ..performance import SimpleCache


logger = logging.getLogger(__name__)


class TemplateRegistry:
    """
    Registry of contract templates keyed by id and by contract type.

    ``resolve`` is a pure lookup. Each contract type maps to its active
    template; registering a new template for a type makes it the active one
    while earlier ids remain resolvable through ``get`` for contracts that
    were already generated from them.
    """

    def __init__(
        self,
        templates: Optional[Iterable[Template]] = None,
        storage: Optional[IObjectStorage] = None,
        cache: Optional[SimpleCache] = None,
    ):
        self._templates: Dict[str, Template] = {}
        self._active: Dict[ContractType, str] = {}
        self._storage = storage
        self._cache = cache if cache is not None else SimpleCache(max_size=20)
        self._lock = threading.Lock()
        for template in templates or []:
            self.register(template)

    def register(self, template: Template) -> Template:
        """
        Register a template and make it active for its contract type.

        Raises:
            ValueError: If the id is already registered with a different
                placeholder schema or contract type.
        """
        with self._lock:
            existing = self._templates.get(template.id)
            if existing is not None:
                if existing.placeholder_schema != template.placeholder_schema:
                    raise ValueError(
                        f"Template {template.id} is already registered with a different "
                        f"placeholder schema; register the revision under a new id"
                    )
                if existing.contract_type != template.contract_type:
                    raise ValueError(
                        f"Template {template.id} is already registered for "
                        f"{existing.contract_type.value}"
                    )
            self._templates[template.id] = template
            self._active[template.contract_type] = template.id
        logger.info(f"Registered template {template.id} for {template.contract_type.value}")
        return template

    def resolve(self, contract_type: ContractType) -> Template:
        """
        Return the active template for a contract type.

        Raises:
            UnknownContractType: If no template is registered for the type.
        """
        template_id = self._active.get(contract_type)
        if template_id is None:
            raise UnknownContractType(
                "No template registered for contract type",
                contract_type=getattr(contract_type, "value", str(contract_type)),
            )
        return self._templates[template_id]

    def resolve_service_type(self, service_type: str) -> Template:
        """Resolve the template for a free-text service type."""
        try:
            contract_type = ContractType.from_service_type(service_type)
        except ValueError as e:
            raise UnknownContractType(str(e), contract_type=service_type) from e
        return self.resolve(contract_type)

    def get(self, template_id: str) -> Template:
        """
        Return a template by id.

        Raises:
            RecordNotFound: If the id is not registered.
        """
        try:
            return self._templates[template_id]
        except KeyError:
            raise RecordNotFound("Template not registered", record_type="template", record_id=template_id) from None

    def list_templates(self) -> List[Template]:
        return sorted(self._templates.values(), key=lambda t: t.id)

    def load_template_bytes(self, template: Template) -> bytes:
        """
        Download a template's .docx source through object storage, cached by id.

        Raises:
            RuntimeError: If the registry has no storage collaborator.
            ValueError: If the template lives at the provider and has no source.
        """
        if template.storage_key is None:
            raise ValueError(f"Template {template.id} has no stored source document")
        cached = self._cache.get(template.id)
        if cached is not None:
            return cached
        if self._storage is None:
            raise RuntimeError("Template registry has no object storage configured")
        content = self._storage.download_template(template.storage_key)
        self._cache.set(template.id, content)
        logger.debug(f"Loaded template {template.id} ({len(content)} bytes)")
        return content
