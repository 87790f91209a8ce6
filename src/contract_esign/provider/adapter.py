"""SignNow implementation of the signature provider interface."""

import logging
import time
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Tuple

from jinja2 import Environment, StrictUndefined

from ..exceptions import (
    CalibrationMismatch,
    CoordinateOutOfBounds,
    PlaceholderMismatch,
    ProviderRejected,
)
from ..interfaces.provider import ISignatureProvider
from ..models.artifact import GeneratedArtifact
from ..models.coordinates import CoordinateMap, FieldCoordinate, dimensions_match
from ..models.enums import ContractType, FieldKind, LifecycleState, Origin
from ..models.signing import DEFAULT_SIGNER_ROLE, InjectedField, SignerContact
from .client import SignNowClient


logger = logging.getLogger(__name__)

PLAN_RESTRICTION_CODE = 65582
DAILY_INVITE_LIMIT_CODE = 65639

# Invites in these states mean the signer already has a signing session.
ACTIVE_INVITE_STATUSES = {"pending", "fulfilled"}

DATE_FORMAT = "%m/%d/%Y"

DEFAULT_SUBJECT = "{{ signer.name }}, your {{ contract_label }} agreement is ready to sign"
DEFAULT_MESSAGE = (
    "Hi {{ signer.name }},\n\n"
    "Please review and sign your {{ contract_label }} agreement"
    "{% if contract_id %} (contract {{ contract_id }}){% endif %}."
)

CONTRACT_LABELS = {
    ContractType.LABOR_SUPPORT: "Labor Support",
    ContractType.POSTPARTUM_DOULA: "Postpartum Doula",
}

# Labor support contracts go on to the deposit payment page after signing.
SIGNED_REDIRECT_PATHS = {
    ContractType.LABOR_SUPPORT: "/payment",
    ContractType.POSTPARTUM_DOULA: "/contract-signed",
}
DECLINED_REDIRECT_PATH = "/dashboard"

WEBHOOK_EVENTS = {
    "document.complete": LifecycleState.SIGNED,
    "document.open": LifecycleState.VIEWED,
    "invite.decline": LifecycleState.DECLINED,
    "invite.expired": LifecycleState.EXPIRED,
}


def interpret_status(document: Mapping[str, Any]) -> LifecycleState:
    """
    Derive a lifecycle state from a ``GET /document/{id}`` body.

    SignNow does not report document views here; VIEWED is only learned
    from webhooks.
    """
    invites = document.get("field_invites") or []
    statuses = {str(invite.get("status", "")).lower() for invite in invites}

    if "declined" in statuses:
        return LifecycleState.DECLINED
    if "expired" in statuses:
        return LifecycleState.EXPIRED
    if invites and statuses <= {"fulfilled", "skipped"}:
        return LifecycleState.SIGNED
    if not invites and document.get("signatures"):
        return LifecycleState.SIGNED
    if invites:
        return LifecycleState.INVITATION_SENT
    if document.get("fields"):
        return LifecycleState.FIELDS_INJECTED
    return LifecycleState.UPLOADED


class SignNowAdapter(ISignatureProvider):
    """
    Drives one SignNow account: upload, field placement, invitation,
    status polling and voiding.

    Fields are always sent as the complete set with ``PUT /document/{id}``,
    so repeating an injection replaces rather than duplicates them.
    """

    def __init__(
        self,
        client: SignNowClient,
        sender_email: str,
        redirect_base_url: Optional[str] = None,
        subject_template: str = DEFAULT_SUBJECT,
        message_template: str = DEFAULT_MESSAGE,
        today=date.today,
    ):
        self._client = client
        self._sender_email = sender_email
        self._redirect_base_url = (redirect_base_url or "").rstrip("/")
        self._jinja = Environment(undefined=StrictUndefined, autoescape=False)
        self._subject = self._jinja.from_string(subject_template)
        self._message = self._jinja.from_string(message_template)
        self._today = today

    # ========== Upload ==========

    def upload(self, artifact: GeneratedArtifact) -> str:
        body = self._client.request_json(
            "POST",
            "/document",
            files={"file": (artifact.filename, artifact.content, "application/pdf")},
        )
        document_id = body.get("id") if isinstance(body, dict) else None
        if not document_id:
            raise ProviderRejected("Upload response carried no document id", payload=body)
        logger.info(f"Uploaded {artifact.filename} as provider document {document_id}")
        return document_id

    # ========== Provider templates ==========

    def create_from_template(self, provider_template_id: str, document_name: str) -> str:
        """
        Copy a provider-side template into a new document.

        Accounts without the template copy endpoint answer 404 there; the
        plain document copy endpoint is tried next.
        """
        payload = {"document_name": document_name}
        try:
            body = self._client.request_json(
                "POST", f"/template/{provider_template_id}/copy", json=payload
            )
        except ProviderRejected as e:
            if e.status_code != 404:
                raise
            logger.info(
                f"Template copy unavailable for {provider_template_id}; copying it as a document"
            )
            body = self._client.request_json(
                "POST", f"/document/{provider_template_id}/copy", json=payload
            )
        document_id = body.get("id") if isinstance(body, dict) else None
        if not document_id:
            raise ProviderRejected("Template copy response carried no document id", payload=body)
        logger.info(f"Copied provider template {provider_template_id} as document {document_id}")
        return document_id

    @staticmethod
    def _field_lookup(document: Mapping[str, Any]) -> Dict[str, str]:
        # Attribute name wins over the plain name, which wins over the id.
        lookup: Dict[str, str] = {}
        for keys in (("json_attributes", "name"), ("name",), ("id",)):
            for raw in document.get("fields") or []:
                value: Any = raw
                for key in keys:
                    value = value.get(key) if isinstance(value, dict) else None
                if value and raw.get("id") and str(value) not in lookup:
                    lookup[str(value)] = raw["id"]
        return lookup

    def prefill_by_name(self, provider_document_id: str, values: Mapping[str, str]) -> List[str]:
        """
        Write values into an existing document's fields, matched by field name.

        Returns the provider field ids written, in the order of ``values``.

        Raises:
            PlaceholderMismatch: A value names no field on the document;
                nothing is written.
        """
        document = self._client.request_json("GET", f"/document/{provider_document_id}")
        lookup = self._field_lookup(document)
        missing = [name for name in values if name not in lookup]
        if missing:
            raise PlaceholderMismatch(
                f"Provider document {provider_document_id} has no field for some values",
                missing=missing,
            )
        field_values = [
            {"field_id": lookup[name], "value": value} for name, value in values.items()
        ]
        if field_values:
            self._client.request_json(
                "PUT",
                f"/document/{provider_document_id}",
                json={"field_values": field_values},
            )
        logger.info(f"Prefilled {len(field_values)} field(s) on {provider_document_id}")
        return [item["field_id"] for item in field_values]

    # ========== Fields ==========

    def build_fields(
        self,
        coordinate_map: CoordinateMap,
        variables: Mapping[str, str],
        artifact: GeneratedArtifact,
        prefill: Optional[Mapping[str, str]] = None,
    ) -> List[InjectedField]:
        """
        Build the provider field list for an artifact.

        Raises:
            CalibrationMismatch: The artifact's geometry differs from the map's.
            CoordinateOutOfBounds: An entry does not fit its page.
        """
        if not dimensions_match(coordinate_map.page_dimensions, artifact.page_dimensions):
            raise CalibrationMismatch(
                "Artifact geometry does not match the calibration",
                expected_pages=coordinate_map.page_count,
                actual_pages=artifact.page_count,
                template_id=coordinate_map.template_id,
                version=coordinate_map.version,
            )

        frame = coordinate_map.in_frame(Origin.TOP_LEFT)
        pages = artifact.page_dimensions
        for entry in frame.entries:
            if not 0 <= entry.page_index < len(pages) or not entry.fits_within(pages[entry.page_index]):
                raise CoordinateOutOfBounds(
                    f"Field box does not fit page {entry.page_index}",
                    field_name=entry.field_name,
                    page_index=entry.page_index,
                )

        values: Dict[str, str] = dict(variables)
        values.update(prefill or {})

        fields = []
        for entry in frame.entries:
            prefilled = values.get(entry.prefill_key) if entry.prefill_key else None
            if entry.kind == FieldKind.DATE and not prefilled:
                prefilled = self._today().strftime(DATE_FORMAT)
            fields.append(
                InjectedField(
                    field_name=entry.field_name,
                    kind=entry.kind,
                    page_index=entry.page_index,
                    x=entry.x,
                    y=entry.y,
                    width=entry.width,
                    height=entry.height,
                    label=entry.label,
                    required=entry.required,
                    prefilled_text=prefilled,
                )
            )
        return fields

    @staticmethod
    def _field_payload(field: InjectedField) -> Dict[str, Any]:
        payload = {
            "page_number": field.page_index,
            "type": field.kind.provider_type,
            "name": field.field_name,
            "role": DEFAULT_SIGNER_ROLE,
            "required": field.required,
            "x": field.x,
            "y": field.y,
            "width": field.width,
            "height": field.height,
        }
        if field.label:
            payload["label"] = field.label
        if field.prefilled_text:
            payload["prefilled_text"] = field.prefilled_text
        return payload

    def inject_fields(
        self,
        provider_document_id: str,
        coordinate_map: CoordinateMap,
        variables: Mapping[str, str],
        artifact: GeneratedArtifact,
        prefill: Optional[Mapping[str, str]] = None,
    ) -> List[InjectedField]:
        fields = self.build_fields(coordinate_map, variables, artifact, prefill)
        self._client.request_json(
            "PUT",
            f"/document/{provider_document_id}",
            json={
                "client_timestamp": int(time.time()),
                "fields": [self._field_payload(f) for f in fields],
            },
        )
        logger.info(
            f"Injected {len(fields)} field(s) into {provider_document_id} "
            f"from {coordinate_map.template_id} v{coordinate_map.version}"
        )
        return fields

    def read_fields(self, provider_document_id: str) -> List[FieldCoordinate]:
        document = self._client.request_json("GET", f"/document/{provider_document_id}")
        entries = []
        for raw in document.get("fields") or []:
            attrs = raw.get("json_attributes") or {}
            name = attrs.get("name") or raw.get("name")
            if not name:
                continue
            field_type = str(raw.get("type", "text")).lower()
            if field_type == FieldKind.SIGNATURE.value:
                kind = FieldKind.SIGNATURE
            elif field_type == FieldKind.INITIALS.value:
                kind = FieldKind.INITIALS
            elif "date" in name.lower():
                kind = FieldKind.DATE
            else:
                kind = FieldKind.TEXT
            entries.append(
                FieldCoordinate(
                    field_name=name,
                    page_index=int(attrs.get("page_number", 0)),
                    x=float(attrs.get("x", 0)),
                    y=float(attrs.get("y", 0)),
                    width=float(attrs.get("width", 0)),
                    height=float(attrs.get("height", 0)),
                    kind=kind,
                    label=attrs.get("label"),
                    required=bool(attrs.get("required", True)),
                )
            )
        return entries

    # ========== Invitations ==========

    def _redirects(self, contract_id: Optional[str], contract_type: Optional[ContractType]) -> Dict[str, str]:
        if not self._redirect_base_url:
            return {}
        path = SIGNED_REDIRECT_PATHS.get(contract_type, "/contract-signed")
        redirect = f"{self._redirect_base_url}{path}"
        if contract_id:
            redirect = f"{redirect}?contract_id={contract_id}"
        return {
            "redirect_uri": redirect,
            "decline_redirect_uri": f"{self._redirect_base_url}{DECLINED_REDIRECT_PATH}",
        }

    def _invite_payload(
        self,
        provider_document_id: str,
        signer: SignerContact,
        contract_id: Optional[str],
        contract_type: Optional[ContractType],
        include_custom: bool,
    ) -> Dict[str, Any]:
        payload = {
            "document_id": provider_document_id,
            "from": self._sender_email,
            "to": [{"email": signer.email, "role": signer.role, "order": 1, "name": signer.name}],
        }
        payload.update(self._redirects(contract_id, contract_type))
        if include_custom:
            context = {
                "signer": signer,
                "contract_id": contract_id,
                "contract_label": CONTRACT_LABELS.get(contract_type, "service"),
            }
            payload["subject"] = self._subject.render(**context)
            payload["message"] = self._message.render(**context)
        return payload

    @staticmethod
    def _existing_invite(document: Mapping[str, Any], signer: SignerContact) -> Optional[Mapping[str, Any]]:
        for invite in document.get("field_invites") or []:
            if str(invite.get("status", "")).lower() not in ACTIVE_INVITE_STATUSES:
                continue
            email = invite.get("email")
            if email and email.lower() != signer.email.lower():
                continue
            return invite
        return None

    def send_invitation(
        self,
        provider_document_id: str,
        signer: SignerContact,
        contract_id: Optional[str] = None,
        contract_type: Optional[ContractType] = None,
    ) -> Optional[str]:
        """
        Invite the signer unless the document already has a pending or
        fulfilled invite for them, in which case that invite's id is returned
        and nothing is sent.

        Falls back to the provider's default subject and message when the
        account plan forbids custom ones.

        Raises:
            ProviderRejected: The provider refused the invitation, including
                when the daily invite limit is reached.
        """
        document = self._client.request_json("GET", f"/document/{provider_document_id}")
        existing = self._existing_invite(document, signer)
        if existing is not None:
            logger.info(f"Invitation for {provider_document_id} already sent; not sending again")
            return existing.get("id")

        path = f"/document/{provider_document_id}/invite"
        payload = self._invite_payload(provider_document_id, signer, contract_id, contract_type, True)
        try:
            body = self._client.request_json("POST", path, json=payload)
        except ProviderRejected as e:
            if DAILY_INVITE_LIMIT_CODE in e.error_codes:
                raise ProviderRejected(
                    "Daily invite limit exceeded",
                    status_code=e.status_code,
                    payload=e.payload,
                ) from e
            if PLAN_RESTRICTION_CODE not in e.error_codes:
                raise
            logger.warning("Custom invite subject/message not allowed by plan; sending defaults")
            payload = self._invite_payload(provider_document_id, signer, contract_id, contract_type, False)
            body = self._client.request_json("POST", path, json=payload)

        invite_id = body.get("id") if isinstance(body, dict) else None
        logger.info(f"Invitation sent for {provider_document_id}")
        return invite_id

    # ========== Status ==========

    def poll_status(self, provider_document_id: str) -> LifecycleState:
        document = self._client.request_json("GET", f"/document/{provider_document_id}")
        return interpret_status(document)

    def void(self, provider_document_id: str) -> None:
        """
        Cancel pending invites, then delete the document.

        A document already gone at the provider counts as voided.
        """
        try:
            document = self._client.request_json("GET", f"/document/{provider_document_id}")
        except ProviderRejected as e:
            if e.status_code == 404:
                logger.info(f"Provider document {provider_document_id} already removed")
                return
            raise

        for invite in document.get("field_invites") or []:
            if str(invite.get("status", "")).lower() != "pending" or not invite.get("id"):
                continue
            self._client.request(
                "DELETE",
                f"/document/{provider_document_id}/fieldinvite/{invite['id']}",
            )

        try:
            self._client.request("DELETE", f"/document/{provider_document_id}")
        except ProviderRejected as e:
            if e.status_code != 404:
                raise
        logger.info(f"Voided provider document {provider_document_id}")

    def interpret_webhook(self, payload: Mapping[str, Any]) -> Optional[Tuple[str, LifecycleState]]:
        meta = payload.get("meta") or {}
        content = payload.get("content") or {}
        event = meta.get("event") or payload.get("event")
        document_id = content.get("document_id") or payload.get("document_id")
        state = WEBHOOK_EVENTS.get(event)
        if state is None or not document_id:
            logger.debug(f"Ignoring webhook event {event!r}")
            return None
        return document_id, state
