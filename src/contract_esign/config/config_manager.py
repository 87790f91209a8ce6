"""Template definitions and seed coordinate maps loaded from JSON.

A configuration directory holds `templates.json` and `coordinate_maps.json`.
Both are validated in full before anything is applied, so a bad file never
leaves the manager half loaded.
"""

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..models.coordinates import FieldCoordinate, PageDimensions, validate_entries
from ..models.enums import ContractType, FieldKind, Origin
from ..models.template import Template
from .models import (
    ConfigurationError,
    CoordinateMapSeed,
    SystemConfiguration,
    ValidationResult,
)


PLACEHOLDER_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Source = Union[str, Path, Dict[str, Any], List[Dict[str, Any]]]


class ConfigurationManager:
    """Holds the validated configuration and reads or writes it as JSON."""

    def __init__(self, config_dir: Optional[Union[str, Path]] = None):
        self._config_dir = Path(config_dir) if config_dir else None
        self._configuration = SystemConfiguration()
        self._is_loaded = False

    @property
    def configuration(self) -> SystemConfiguration:
        return self._configuration

    @property
    def is_loaded(self) -> bool:
        """True once any source has been applied."""
        return self._is_loaded

    def load_templates(self, source: Source) -> ValidationResult:
        """
        Replace the template definitions.

        ``source`` is a JSON path, a dict with a "templates" list, or the list
        itself. A template id already known with a different placeholder
        schema is rejected.

        Raises:
            ConfigurationError: With the collected problems when any
                definition is invalid. Nothing is applied in that case.
        """
        raw_data = self._parse_source(source)

        if isinstance(raw_data, dict):
            templates_data = raw_data.get("templates", [raw_data])
        else:
            templates_data = raw_data

        result = ValidationResult(is_valid=True)
        templates: List[Template] = []

        for i, template_dict in enumerate(templates_data):
            template_result, template = self._validate_template(template_dict, index=i)
            result = result.merge(template_result)
            if template:
                templates.append(template)

        ids = [t.id for t in templates]
        duplicates = sorted({tid for tid in ids if ids.count(tid) > 1})
        if duplicates:
            result.add_error(f"Duplicate template IDs found: {duplicates}")

        if not result.is_valid:
            raise ConfigurationError(
                "Template validation failed",
                validation_result=result
            )

        self._configuration.templates = templates
        self._is_loaded = True

        return result

    def _validate_template(
        self,
        data: Dict[str, Any],
        index: int = 0
    ) -> tuple[ValidationResult, Optional[Template]]:
        """Check one definition; the template is None when it has errors."""
        result = ValidationResult(is_valid=True)
        prefix = f"Template [{index}]"

        if not isinstance(data, dict):
            result.add_error(f"{prefix}: Must be an object")
            return result, None

        required_fields = ["id", "contract_type", "placeholder_schema"]
        if not data.get("provider_template_id"):
            required_fields.append("storage_key")
        for name in required_fields:
            if name not in data:
                result.add_error(f"{prefix}: Missing required field '{name}'")

        if not result.is_valid:
            return result, None

        if not isinstance(data["id"], str) or not data["id"].strip():
            result.add_error(f"{prefix}: 'id' must be a non-empty string")

        valid_types = [t.value for t in ContractType]
        if data["contract_type"] not in valid_types:
            result.add_error(f"{prefix}: 'contract_type' must be one of {valid_types}")

        storage_key = data.get("storage_key")
        if storage_key is not None and (not isinstance(storage_key, str) or not storage_key.strip()):
            result.add_error(f"{prefix}: 'storage_key' must be a non-empty string")

        provider_template_id = data.get("provider_template_id")
        if provider_template_id is not None and (
            not isinstance(provider_template_id, str) or not provider_template_id.strip()
        ):
            result.add_error(f"{prefix}: 'provider_template_id' must be a non-empty string")

        schema = data["placeholder_schema"]
        if not isinstance(schema, list) or not schema:
            result.add_error(f"{prefix}: 'placeholder_schema' must be a non-empty list")
        else:
            for name in schema:
                if not isinstance(name, str) or not PLACEHOLDER_NAME.match(name):
                    result.add_error(f"{prefix}: Invalid placeholder name {name!r}")
            duplicates = sorted({n for n in schema if isinstance(n, str) and schema.count(n) > 1})
            if duplicates:
                result.add_error(f"{prefix}: Duplicate placeholders {duplicates}")

        field_names = data.get("provider_field_names") or {}
        if not isinstance(field_names, dict) or not all(
            isinstance(k, str) and isinstance(v, str) and v.strip() for k, v in field_names.items()
        ):
            result.add_error(f"{prefix}: 'provider_field_names' must map placeholders to field names")
        elif isinstance(schema, list):
            unknown = sorted(set(field_names) - set(schema))
            if unknown:
                result.add_error(f"{prefix}: 'provider_field_names' has unknown placeholders {unknown}")

        page_count = data.get("reference_page_count")
        if page_count is not None and (not isinstance(page_count, int) or page_count <= 0):
            result.add_error(f"{prefix}: 'reference_page_count' must be a positive integer")

        if not result.is_valid:
            return result, None

        existing = self._configuration.get_template(data["id"].strip())
        if existing is not None and list(existing.placeholder_schema) != list(schema):
            result.add_error(
                f"{prefix}: Template '{existing.id}' is already registered with a "
                f"different placeholder schema; register a new template id instead"
            )
            return result, None

        template = Template(
            id=data["id"].strip(),
            contract_type=ContractType(data["contract_type"]),
            storage_key=storage_key.strip() if storage_key else None,
            placeholder_schema=tuple(schema),
            reference_page_count=page_count,
            description=data.get("description"),
            provider_template_id=provider_template_id.strip() if provider_template_id else None,
            provider_field_names=dict(field_names),
        )
        return result, template

    def get_template(self, template_id: str) -> Optional[Template]:
        return self._configuration.get_template(template_id)

    def load_coordinate_maps(self, source: Source) -> ValidationResult:
        """
        Replace the seed coordinate maps.

        Accepts the same source shapes as ``load_templates`` under a
        "coordinate_maps" key. Seeds are checked against the templates
        already loaded.

        Raises:
            ConfigurationError: If any seed is invalid.
        """
        raw_data = self._parse_source(source)

        if isinstance(raw_data, dict):
            maps_data = raw_data.get("coordinate_maps", [raw_data])
        else:
            maps_data = raw_data

        result = ValidationResult(is_valid=True)
        seeds: List[CoordinateMapSeed] = []

        for i, map_dict in enumerate(maps_data):
            map_result, seed = self._validate_coordinate_map(map_dict, index=i)
            result = result.merge(map_result)
            if seed:
                seeds.append(seed)

        ids = [s.template_id for s in seeds]
        duplicates = sorted({tid for tid in ids if ids.count(tid) > 1})
        if duplicates:
            result.add_error(f"Duplicate coordinate maps for templates: {duplicates}")

        if not result.is_valid:
            raise ConfigurationError(
                "Coordinate map validation failed",
                validation_result=result
            )

        self._configuration.coordinate_map_seeds = seeds
        self._is_loaded = True

        return result

    def _validate_coordinate_map(
        self,
        data: Dict[str, Any],
        index: int = 0
    ) -> tuple[ValidationResult, Optional[CoordinateMapSeed]]:
        result = ValidationResult(is_valid=True)
        prefix = f"Coordinate map [{index}]"

        if not isinstance(data, dict):
            result.add_error(f"{prefix}: Must be an object")
            return result, None

        for name in ["template_id", "page_dimensions", "entries"]:
            if name not in data:
                result.add_error(f"{prefix}: Missing required field '{name}'")
        if not result.is_valid:
            return result, None

        prefix = f"{prefix} ({data['template_id']})"

        unit_system = data.get("unit_system", "pt")
        if unit_system != "pt":
            result.add_error(f"{prefix}: 'unit_system' must be 'pt'")

        valid_origins = [o.value for o in Origin]
        origin = data.get("origin", Origin.TOP_LEFT.value)
        if origin not in valid_origins:
            result.add_error(f"{prefix}: 'origin' must be one of {valid_origins}")

        try:
            pages = [PageDimensions.from_dict(p) for p in data["page_dimensions"]]
        except (KeyError, TypeError, ValueError) as e:
            result.add_error(f"{prefix}: Invalid page dimensions: {e}")
            return result, None

        valid_kinds = [k.value for k in FieldKind]
        entries: List[FieldCoordinate] = []
        for j, entry in enumerate(data["entries"]):
            if not isinstance(entry, dict):
                result.add_error(f"{prefix}: Entry [{j}] must be an object")
                continue
            missing = [
                name for name in ("field_name", "page_index", "x", "y", "width", "height")
                if name not in entry
            ]
            if missing:
                result.add_error(f"{prefix}: Entry [{j}] missing fields {missing}")
                continue
            if entry.get("kind", FieldKind.TEXT.value) not in valid_kinds:
                result.add_error(f"{prefix}: Entry [{j}] 'kind' must be one of {valid_kinds}")
                continue
            try:
                entries.append(FieldCoordinate.from_dict(entry))
            except (TypeError, ValueError) as e:
                result.add_error(f"{prefix}: Entry [{j}] is invalid: {e}")

        for message in validate_entries(entries, pages):
            result.add_error(f"{prefix}: {message}")

        template = self._configuration.get_template(data["template_id"])
        if template is None:
            result.add_warning(f"{prefix}: No template is registered with this id")
        elif template.reference_page_count and template.reference_page_count != len(pages):
            result.add_error(
                f"{prefix}: Calibrated on {len(pages)} page(s) but the template "
                f"reference has {template.reference_page_count}"
            )

        if not result.is_valid:
            return result, None

        seed = CoordinateMapSeed(
            template_id=data["template_id"],
            entries=entries,
            page_dimensions=pages,
            unit_system=unit_system,
            origin=Origin(origin),
            comment=data.get("comment"),
        )
        return result, seed

    def get_coordinate_map_seed(self, template_id: str) -> Optional[CoordinateMapSeed]:
        return self._configuration.get_seed(template_id)

    def validate_configuration(self) -> ValidationResult:
        """
        Validate the loaded configuration as a whole.

        Checks that every contract type has a template and that every seed
        map refers to a registered template.
        """
        result = ValidationResult(is_valid=True)
        config = self._configuration

        covered = {t.contract_type for t in config.templates}
        for contract_type in ContractType:
            if contract_type not in covered:
                result.add_warning(f"No template registered for contract type '{contract_type.value}'")

        template_ids = {t.id for t in config.templates}
        for seed in config.coordinate_map_seeds:
            if seed.template_id not in template_ids:
                result.add_error(f"Coordinate map refers to unknown template '{seed.template_id}'")

        for template in config.templates:
            if config.get_seed(template.id) is None:
                result.add_warning(f"Template '{template.id}' has no seed coordinate map")

        return result

    def _parse_source(self, source: Source) -> Union[Dict[str, Any], List[Dict[str, Any]]]:
        if isinstance(source, (str, Path)):
            path = Path(source)
            if not path.exists():
                raise ConfigurationError(f"Configuration file not found: {path}")

            with open(path, "r", encoding="utf-8") as f:
                try:
                    return json.load(f)
                except json.JSONDecodeError as e:
                    raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e

        return source

    def load_from_directory(self, config_dir: Union[str, Path]) -> ValidationResult:
        """
        Load `templates.json` then `coordinate_maps.json` from ``config_dir``.

        Missing files are skipped. Load failures are reported in the
        returned result instead of raised.
        """
        config_dir = Path(config_dir)
        result = ValidationResult(is_valid=True)

        templates_file = config_dir / "templates.json"
        if templates_file.exists():
            try:
                result = result.merge(self.load_templates(templates_file))
            except ConfigurationError as e:
                result.add_error(f"Templates loading failed: {e.message}")
                if e.validation_result:
                    result = result.merge(e.validation_result)

        maps_file = config_dir / "coordinate_maps.json"
        if maps_file.exists():
            try:
                result = result.merge(self.load_coordinate_maps(maps_file))
            except ConfigurationError as e:
                result.add_error(f"Coordinate maps loading failed: {e.message}")
                if e.validation_result:
                    result = result.merge(e.validation_result)

        self._config_dir = config_dir
        return result

    def save_to_directory(
        self,
        config_dir: Optional[Union[str, Path]] = None
    ) -> None:
        """Write the files `load_from_directory` reads, into ``config_dir`` or the last loaded directory."""
        config_dir = Path(config_dir) if config_dir else self._config_dir
        if not config_dir:
            raise ConfigurationError("No configuration directory specified")

        config_dir.mkdir(parents=True, exist_ok=True)
        data = self.to_dict()

        if self._configuration.templates:
            with open(config_dir / "templates.json", "w", encoding="utf-8") as f:
                json.dump({"templates": data["templates"]}, f, indent=2, ensure_ascii=False)

        if self._configuration.coordinate_map_seeds:
            with open(config_dir / "coordinate_maps.json", "w", encoding="utf-8") as f:
                json.dump({"coordinate_maps": data["coordinate_maps"]}, f, indent=2, ensure_ascii=False)

    def to_dict(self) -> Dict[str, Any]:
        """Plain-dict form, in the layout of the JSON files."""
        return {
            "version": self._configuration.version,
            "templates": [t.to_dict() for t in self._configuration.templates],
            "coordinate_maps": [
                {
                    "template_id": s.template_id,
                    "unit_system": s.unit_system,
                    "origin": s.origin.value,
                    "page_dimensions": [p.to_dict() for p in s.page_dimensions],
                    "entries": [e.to_dict() for e in s.entries],
                    "comment": s.comment,
                }
                for s in self._configuration.coordinate_map_seeds
            ],
            "metadata": self._configuration.metadata,
        }
