"""Unit tests for the Template Registry and local object storage."""

import pytest

from contract_esign.exceptions import RecordNotFound, UnknownContractType
from contract_esign.models.enums import ContractType
from contract_esign.models.template import Template
from contract_esign.performance import SimpleCache
from contract_esign.registry import TemplateRegistry
from contract_esign.storage import LocalObjectStorage


class TestTemplateRegistry:
    """Tests for TemplateRegistry class."""

    @pytest.fixture
    def registry(self, labor_template, postpartum_template):
        return TemplateRegistry(templates=[labor_template, postpartum_template])

    def test_resolve_by_contract_type(self, registry):
        assert registry.resolve(ContractType.LABOR_SUPPORT).id == "labor-support-v1"
        assert registry.resolve(ContractType.POSTPARTUM_DOULA).id == "postpartum-doula-v1"

    def test_resolve_is_stable(self, registry):
        assert registry.resolve(ContractType.LABOR_SUPPORT) is registry.resolve(ContractType.LABOR_SUPPORT)

    @pytest.mark.parametrize(
        "service_type,expected",
        [
            ("Labor Support Services", "labor-support-v1"),
            ("labor_support", "labor-support-v1"),
            ("Postpartum Doula Services", "postpartum-doula-v1"),
            ("Postpartum overnight care", "postpartum-doula-v1"),
        ],
    )
    def test_resolve_service_type(self, registry, service_type, expected):
        assert registry.resolve_service_type(service_type).id == expected

    @pytest.mark.parametrize("service_type", ["", "Birth photography"])
    def test_unknown_service_type(self, registry, service_type):
        with pytest.raises(UnknownContractType):
            registry.resolve_service_type(service_type)

    def test_unregistered_contract_type(self, labor_template):
        registry = TemplateRegistry(templates=[labor_template])
        with pytest.raises(UnknownContractType) as exc_info:
            registry.resolve(ContractType.POSTPARTUM_DOULA)
        assert exc_info.value.contract_type == "postpartum_doula"

    def test_new_template_becomes_active_old_stays_resolvable(self, registry, labor_template):
        revised = Template(
            id="labor-support-v2",
            contract_type=ContractType.LABOR_SUPPORT,
            storage_key="labor-v2.docx",
            placeholder_schema=labor_template.placeholder_schema + ("due_date",),
        )
        registry.register(revised)

        assert registry.resolve(ContractType.LABOR_SUPPORT).id == "labor-support-v2"
        assert registry.get("labor-support-v1") == labor_template

    def test_schema_change_under_same_id_rejected(self, registry, labor_template):
        changed = Template(
            id=labor_template.id,
            contract_type=ContractType.LABOR_SUPPORT,
            storage_key=labor_template.storage_key,
            placeholder_schema=("client_name",),
        )
        with pytest.raises(ValueError):
            registry.register(changed)

    def test_duplicate_placeholders_rejected(self):
        with pytest.raises(ValueError):
            Template(
                id="bad",
                contract_type=ContractType.LABOR_SUPPORT,
                storage_key="bad.docx",
                placeholder_schema=("client_name", "client_name"),
            )

    def test_get_unknown_id(self, registry):
        with pytest.raises(RecordNotFound):
            registry.get("missing")

    def test_list_templates_sorted(self, registry):
        assert [t.id for t in registry.list_templates()] == ["labor-support-v1", "postpartum-doula-v1"]

    def test_template_bytes_cached(self, tmp_path, labor_template):
        storage = LocalObjectStorage(tmp_path)
        storage.put_template(labor_template.storage_key, b"v1")
        cache = SimpleCache(max_size=5)
        registry = TemplateRegistry(templates=[labor_template], storage=storage, cache=cache)

        assert registry.load_template_bytes(labor_template) == b"v1"
        storage.put_template(labor_template.storage_key, b"v2")
        assert registry.load_template_bytes(labor_template) == b"v1"

        cache.invalidate(labor_template.id)
        assert registry.load_template_bytes(labor_template) == b"v2"

    def test_template_bytes_without_storage(self, registry, labor_template):
        with pytest.raises(RuntimeError):
            registry.load_template_bytes(labor_template)

    def test_provider_template_has_no_source(self, tmp_path, labor_template):
        template = Template(
            id="labor-support-signnow-v1",
            contract_type=ContractType.LABOR_SUPPORT,
            storage_key=None,
            placeholder_schema=labor_template.placeholder_schema,
            provider_template_id="tpl-labor",
        )
        registry = TemplateRegistry(templates=[template], storage=LocalObjectStorage(tmp_path))

        assert registry.resolve(ContractType.LABOR_SUPPORT).is_provider_template
        with pytest.raises(ValueError):
            registry.load_template_bytes(template)


class TestProviderValues:
    """Tests for naming variables after provider template fields."""

    def _template(self, **overrides):
        data = dict(
            id="labor-support-signnow-v1",
            contract_type=ContractType.LABOR_SUPPORT,
            storage_key=None,
            placeholder_schema=("client_name", "total_amount"),
            provider_template_id="tpl-labor",
        )
        data.update(overrides)
        return Template(**data)

    def test_unmapped_template_uses_placeholder_names(self):
        values = self._template().provider_values({"client_name": "Jerry", "total_amount": "$2,500"})
        assert values == {"client_name": "Jerry", "total_amount": "$2,500"}

    def test_mapping_renames_and_selects(self):
        template = self._template(provider_field_names={"client_name": "Client Name"})
        values = template.provider_values({"client_name": "Jerry", "total_amount": "$2,500"})
        assert values == {"Client Name": "Jerry"}

    def test_docx_template_is_not_a_provider_template(self, labor_template):
        assert not labor_template.is_provider_template
        assert labor_template.to_dict()["provider_field_names"] == {}


class TestLocalObjectStorage:
    """Tests for LocalObjectStorage class."""

    def test_upload_artifact_returns_file_uri(self, tmp_path):
        storage = LocalObjectStorage(tmp_path)

        url = storage.upload_artifact("contract_c-1.pdf", b"%PDF")

        assert url.startswith("file://")
        assert (tmp_path / "artifacts" / "contract_c-1.pdf").read_bytes() == b"%PDF"

    def test_missing_template(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            LocalObjectStorage(tmp_path).download_template("nope.docx")

    @pytest.mark.parametrize("name", ["../escape.docx", "nested/name.docx", ""])
    def test_path_components_rejected(self, tmp_path, name):
        with pytest.raises(ValueError):
            LocalObjectStorage(tmp_path).upload_artifact(name, b"x")

    def test_template_names_with_spaces(self, tmp_path):
        storage = LocalObjectStorage(tmp_path)
        storage.put_template("Labor Support Agreement for Service.docx", b"docx")
        assert storage.download_template("Labor Support Agreement for Service.docx") == b"docx"


class TestSimpleCache:
    """Tests for SimpleCache class."""

    def test_evicts_oldest_when_full(self):
        cache = SimpleCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)

        assert cache.size() == 2
        assert cache.get("c") == 3

    def test_expired_entries(self):
        cache = SimpleCache(ttl=-1)
        cache.set("a", 1)
        assert cache.get("a") is None
