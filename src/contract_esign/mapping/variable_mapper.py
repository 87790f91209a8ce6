"""Variable mapper: raw contract records to template placeholder values."""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from ..exceptions import BalanceMismatch, MissingRequiredField, PlaceholderMismatch, UnknownContractType
from ..models.enums import ContractType
from ..models.template import ContractInput, ContractVariables, Template


logger = logging.getLogger(__name__)

RawInput = Union[ContractInput, Mapping[str, Any]]


def derive_initials(name: Optional[str]) -> str:
    """
    Take the first character of each whitespace-separated token, upper-cased.

    Raises:
        MissingRequiredField: If the name is empty.
    """
    tokens = (name or "").split()
    if not tokens:
        raise MissingRequiredField("Cannot derive initials from an empty name", field_name="client_name")
    return "".join(token[0].upper() for token in tokens)


def parse_currency(value: str, field_name: str) -> Decimal:
    """Parse a display amount such as "$2,500" or "2,500.00"."""
    cleaned = value.replace("$", "").replace(",", "").strip()
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise MissingRequiredField(
            f"Amount is not a valid currency value: {value!r}",
            field_name=field_name,
        ) from None
    if not amount.is_finite():
        raise MissingRequiredField(f"Amount is not finite: {value!r}", field_name=field_name)
    return amount


def format_currency(amount: Decimal) -> str:
    if amount == amount.to_integral_value():
        return f"${amount:,.0f}"
    return f"${amount:,.2f}"


@dataclass(frozen=True)
class PlaceholderRule:
    """
    How one placeholder is filled.

    Either copies the raw input field ``source`` or applies ``derive`` to
    the value of ``source``.
    """
    placeholder: str
    source: str
    derive: Optional[Callable[[str], str]] = None


@dataclass(frozen=True)
class RuleSet:
    """
    Placeholder rules for one contract type.

    ``aliases`` duplicates a value under a second placeholder name for
    templates that contain a misspelled tag next to the correct one.
    ``balance`` names the (total, deposit, balance) placeholders whose
    values must satisfy total = deposit + balance.
    """
    rules: Tuple[PlaceholderRule, ...]
    aliases: Dict[str, str] = field(default_factory=dict)
    balance: Optional[Tuple[str, str, str]] = None

    @property
    def placeholders(self) -> List[str]:
        return [r.placeholder for r in self.rules] + list(self.aliases)


DEFAULT_RULE_SETS: Dict[ContractType, RuleSet] = {
    ContractType.LABOR_SUPPORT: RuleSet(
        rules=(
            PlaceholderRule("client_name", "client_name"),
            PlaceholderRule("client_initials", "client_name", derive_initials),
            PlaceholderRule("total_amount", "total_amount"),
            PlaceholderRule("deposit_amount", "deposit_amount"),
            PlaceholderRule("balance_amount", "balance_amount"),
        ),
        # The labor support template body contains {client_intials} verbatim.
        aliases={"client_intials": "client_initials"},
        balance=("total_amount", "deposit_amount", "balance_amount"),
    ),
    ContractType.POSTPARTUM_DOULA: RuleSet(
        rules=(
            PlaceholderRule("clientName", "client_name"),
            PlaceholderRule("clientInitials", "client_name", derive_initials),
            PlaceholderRule("totalHours", "total_hours"),
            PlaceholderRule("hourlyRate", "hourly_rate"),
            PlaceholderRule("overnightFee", "overnight_fee"),
            PlaceholderRule("deposit", "deposit_amount"),
            PlaceholderRule("totalAmount", "total_amount"),
        ),
    ),
}


class VariableMapper:
    """
    Builds the exact placeholder dictionary a template requires.

    Currency values pass through as display strings. The only arithmetic
    is the check that a caller-supplied balance equals total minus deposit.
    """

    def __init__(self, rule_sets: Optional[Dict[ContractType, RuleSet]] = None):
        self._rule_sets = dict(rule_sets or DEFAULT_RULE_SETS)

    def rule_set(self, contract_type: ContractType) -> RuleSet:
        try:
            return self._rule_sets[contract_type]
        except KeyError:
            raise UnknownContractType(
                "No variable mapping rules for contract type",
                contract_type=contract_type.value,
            ) from None

    def map(
        self,
        contract_type: ContractType,
        raw_input: RawInput,
        template: Optional[Template] = None,
    ) -> ContractVariables:
        """
        Produce the placeholder values for one contract.

        Args:
            contract_type: Contract classification.
            raw_input: Contract record or plain mapping of raw fields.
            template: When given, the result must match its placeholder
                schema exactly.

        Returns:
            Placeholder name to display value.

        Raises:
            MissingRequiredField: A required raw field is absent or blank.
            BalanceMismatch: The supplied balance is not total minus deposit.
            PlaceholderMismatch: The result does not match the template schema.
        """
        rule_set = self.rule_set(contract_type)
        raw = raw_input.to_dict() if isinstance(raw_input, ContractInput) else dict(raw_input)

        variables: ContractVariables = {}
        for rule in rule_set.rules:
            value = self._require(raw, rule.source)
            variables[rule.placeholder] = rule.derive(value) if rule.derive else value

        for alias, canonical in rule_set.aliases.items():
            variables[alias] = variables[canonical]

        if rule_set.balance:
            self._check_balance(variables, *rule_set.balance)

        if template is not None:
            self.check_schema(template, variables)

        logger.debug(f"Mapped {len(variables)} variables for {contract_type.value}")
        return variables

    @staticmethod
    def check_schema(template: Template, variables: Mapping[str, str]) -> None:
        """Raise PlaceholderMismatch unless the key set equals the schema."""
        expected = template.schema_set
        actual = set(variables)
        if expected != actual:
            raise PlaceholderMismatch(
                f"Variables do not match the placeholder schema of template {template.id}",
                missing=list(expected - actual),
                unexpected=list(actual - expected),
            )

    @staticmethod
    def _require(raw: Mapping[str, Any], key: str) -> str:
        value = raw.get(key)
        if value is None or not str(value).strip():
            raise MissingRequiredField(f"Required contract field is missing: {key}", field_name=key)
        return str(value).strip()

    @staticmethod
    def _check_balance(variables: Mapping[str, str], total_key: str, deposit_key: str, balance_key: str) -> None:
        total = parse_currency(variables[total_key], total_key)
        deposit = parse_currency(variables[deposit_key], deposit_key)
        balance = parse_currency(variables[balance_key], balance_key)
        if total != deposit + balance:
            raise BalanceMismatch(
                "Balance must equal total minus deposit",
                field_name=balance_key,
                expected=format_currency(total - deposit),
                supplied=variables[balance_key],
            )
