"""Template and contract input data models."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from .enums import ContractType


# Flat placeholder name -> display value mapping for one contract instance.
ContractVariables = Dict[str, str]


@dataclass(frozen=True)
class Template:
    """
    A registered contract template.

    The placeholder schema is the ordered set of tag names the template
    body contains. A template id's schema never changes; a revised
    template is registered under a new id.

    A template with a ``provider_template_id`` lives at the signature
    provider with its fields already placed. Contracts for it are copies of
    that template with the variables written into its fields by name, so
    nothing is rendered, converted or calibrated locally.

    Attributes:
        id: Unique template identifier (e.g. "labor-support-v1").
        contract_type: Contract classification this template serves.
        storage_key: Object storage name of the .docx source; None for
            provider-side templates.
        placeholder_schema: Ordered placeholder names required by the body.
        reference_page_count: Page count of the reference artifact, if known.
        description: Optional human-readable description.
        provider_template_id: Provider-side template copied for each contract.
        provider_field_names: Placeholder -> provider field name. When
            empty every placeholder is written to the field of the same name.
    """
    id: str
    contract_type: ContractType
    storage_key: Optional[str]
    placeholder_schema: Tuple[str, ...]
    reference_page_count: Optional[int] = None
    description: Optional[str] = None
    provider_template_id: Optional[str] = None
    provider_field_names: Dict[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        schema = tuple(self.placeholder_schema)
        duplicates = sorted({name for name in schema if schema.count(name) > 1})
        if duplicates:
            raise ValueError(
                f"Template {self.id} has duplicate placeholders: {duplicates}"
            )
        object.__setattr__(self, "placeholder_schema", schema)

    @property
    def schema_set(self) -> frozenset:
        return frozenset(self.placeholder_schema)

    @property
    def is_provider_template(self) -> bool:
        return self.provider_template_id is not None

    def provider_values(self, variables: Mapping[str, str]) -> Dict[str, str]:
        """Variables keyed by the provider field they are written to."""
        if not self.provider_field_names:
            return dict(variables)
        return {
            field_name: variables[placeholder]
            for placeholder, field_name in self.provider_field_names.items()
            if placeholder in variables
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "contract_type": self.contract_type.value,
            "storage_key": self.storage_key,
            "placeholder_schema": list(self.placeholder_schema),
            "reference_page_count": self.reference_page_count,
            "description": self.description,
            "provider_template_id": self.provider_template_id,
            "provider_field_names": dict(self.provider_field_names),
        }


@dataclass
class ContractInput:
    """
    Raw contract record as read from the relational store.

    Currency amounts are pre-formatted display strings (e.g. "$2,500");
    the balance is supplied by the caller, never computed here.
    """
    contract_id: str
    client_name: str
    client_email: str = ""
    service_type: str = ""
    total_amount: Optional[str] = None
    deposit_amount: Optional[str] = None
    balance_amount: Optional[str] = None
    total_hours: Optional[str] = None
    hourly_rate: Optional[str] = None
    overnight_fee: Optional[str] = None
    contract_date: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
