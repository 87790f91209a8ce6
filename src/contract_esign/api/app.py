"""FastAPI application for the Contract E-Sign Pipeline.

Usage (from project root, after installing fastapi and uvicorn):

    uvicorn contract_esign.api.app:app

The pipeline is configured from the environment (see
``PipelineConfig.from_env``).
"""

from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response

from ..exceptions import ContractEsignError
from ..models.coordinates import FieldCoordinate
from ..models.enums import Origin
from ..models.signing import SigningSession
from ..pipeline import ContractPipeline, PipelineConfig


app = FastAPI(title="Contract E-Sign API", version="0.1.0")

ERROR_STATUS = {
    "NoCalibration": 404,
    "UnknownContractType": 404,
    "RecordNotFound": 404,
    "StaleCalibration": 409,
    "InvalidStateTransition": 409,
    "CalibrationValidationError": 422,
    "PlaceholderMismatch": 422,
    "MissingRequiredField": 422,
    "BalanceMismatch": 422,
    "LayoutDriftError": 422,
    "CalibrationMismatch": 422,
    "CoordinateOutOfBounds": 422,
    "DocumentUnreadable": 422,
    "ConversionFailed": 503,
    "ProviderRejected": 502,
    "ProviderUnavailable": 503,
}


@lru_cache(maxsize=1)
def get_pipeline() -> ContractPipeline:
    """Process-wide pipeline built from the environment."""
    return ContractPipeline(config=PipelineConfig.from_env())


@app.exception_handler(ContractEsignError)
async def handle_pipeline_error(request: Request, exc: ContractEsignError) -> JSONResponse:
    status = ERROR_STATUS.get(type(exc).__name__, 500)
    return JSONResponse(status_code=status, content=exc.to_dict())


def _session_payload(session: SigningSession) -> Dict[str, Any]:
    return {
        "contract_id": session.contract_id,
        "provider_document_id": session.provider_document_id,
        "state": session.state.value,
        "invite_id": session.invite_id,
        "fields": [f.to_dict() for f in session.fields],
        "history": [
            {
                "from_state": t.from_state.value if t.from_state else None,
                "to_state": t.to_state.value,
                "timestamp": t.timestamp.isoformat() if t.timestamp else None,
                "reason": t.reason,
            }
            for t in session.history
        ],
    }


def _parse_entries(payload: Dict[str, Any]) -> List[FieldCoordinate]:
    raw_entries = payload.get("entries")
    if not isinstance(raw_entries, list) or not raw_entries:
        raise HTTPException(status_code=422, detail="'entries' must be a non-empty list")
    try:
        return [FieldCoordinate.from_dict(entry) for entry in raw_entries]
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=422, detail=f"Invalid entry: {exc}") from exc


def _parse_origin(payload: Dict[str, Any]) -> Origin:
    try:
        return Origin(payload.get("origin", Origin.TOP_LEFT.value))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _parse_base_version(payload: Dict[str, Any]) -> int:
    if "base_version" not in payload:
        raise HTTPException(status_code=422, detail="'base_version' is required")
    try:
        return int(payload["base_version"])
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=422, detail="'base_version' must be an integer") from exc


# ========== Contracts ==========

@app.post("/api/contracts/{contract_id}/run")
def run_contract(contract_id: str, pipeline: ContractPipeline = Depends(get_pipeline)) -> JSONResponse:
    """Generate, upload and send a contract for signature, resuming if interrupted."""
    result = pipeline.run(contract_id)
    status = 200
    if not result.success:
        error_type = result.metadata.get("error", {}).get("error_type")
        status = ERROR_STATUS.get(error_type, 500)
    return JSONResponse(status_code=status, content=result.to_dict())


@app.get("/api/contracts/{contract_id}/status")
def get_contract_status(contract_id: str, pipeline: ContractPipeline = Depends(get_pipeline)) -> JSONResponse:
    session = pipeline.status(contract_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No signing session for contract {contract_id}")
    return JSONResponse(status_code=200, content=_session_payload(session))


@app.post("/api/contracts/{contract_id}/refresh")
def refresh_contract_status(contract_id: str, pipeline: ContractPipeline = Depends(get_pipeline)) -> JSONResponse:
    """Poll the provider for the contract's signing state."""
    session = pipeline.refresh_status(contract_id)
    return JSONResponse(status_code=200, content=_session_payload(session))


@app.post("/api/contracts/{contract_id}/cancel")
def cancel_contract(
    contract_id: str,
    payload: Optional[Dict[str, Any]] = Body(default=None),
    pipeline: ContractPipeline = Depends(get_pipeline),
) -> JSONResponse:
    reason = (payload or {}).get("reason") or "Cancelled"
    session = pipeline.cancel(contract_id, reason=reason)
    return JSONResponse(status_code=200, content=_session_payload(session))


@app.post("/api/webhooks/signnow")
def signnow_webhook(
    payload: Dict[str, Any] = Body(...),
    pipeline: ContractPipeline = Depends(get_pipeline),
) -> JSONResponse:
    session = pipeline.handle_webhook(payload)
    if session is None:
        return JSONResponse(status_code=202, content={"applied": False})
    return JSONResponse(
        status_code=200,
        content={"applied": True, "contract_id": session.contract_id, "state": session.state.value},
    )


# ========== Calibration ==========

@app.get("/api/calibration/{template_id}")
def get_calibration(
    template_id: str,
    version: Optional[int] = Query(default=None),
    pipeline: ContractPipeline = Depends(get_pipeline),
) -> JSONResponse:
    coordinate_map = pipeline.calibration.get(template_id, version)
    return JSONResponse(status_code=200, content=coordinate_map.to_dict())


@app.get("/api/calibration/{template_id}/versions")
def list_calibration_versions(template_id: str, pipeline: ContractPipeline = Depends(get_pipeline)) -> JSONResponse:
    history = pipeline.calibration.history(template_id)
    return JSONResponse(
        status_code=200,
        content={
            "template_id": template_id,
            "current_version": history[-1].version if history else 0,
            "versions": [
                {
                    "version": m.version,
                    "entry_count": len(m.entries),
                    "created_at": m.created_at.isoformat() if m.created_at else None,
                    "comment": m.comment,
                }
                for m in history
            ],
        },
    )


@app.post("/api/calibration/{template_id}/reference")
async def upload_reference(
    template_id: str,
    file: UploadFile = File(..., description="Reference PDF rendered from the template"),
    pipeline: ContractPipeline = Depends(get_pipeline),
) -> JSONResponse:
    content = await file.read()
    expected = pipeline.registry.get(template_id).reference_page_count
    reference = pipeline.calibration.register_reference(template_id, content, expected)
    return JSONResponse(
        status_code=200,
        content={
            "template_id": template_id,
            "page_dimensions": [p.to_dict() for p in reference.page_dimensions],
        },
    )


@app.post("/api/calibration/{template_id}/probe")
def probe_calibration(
    template_id: str,
    payload: Dict[str, Any] = Body(...),
    pipeline: ContractPipeline = Depends(get_pipeline),
) -> Response:
    """Return a PDF with the proposed entries drawn on the reference artifact."""
    probe = pipeline.calibration.propose_map(
        template_id,
        _parse_entries(payload),
        origin=_parse_origin(payload),
        user_id=payload.get("user_id"),
    )
    return Response(
        content=probe.content,
        media_type="application/pdf",
        headers={"X-Base-Version": str(probe.base_version)},
    )


@app.post("/api/calibration/{template_id}/commit")
def commit_calibration(
    template_id: str,
    payload: Dict[str, Any] = Body(...),
    pipeline: ContractPipeline = Depends(get_pipeline),
) -> JSONResponse:
    committed = pipeline.calibration.commit(
        template_id,
        _parse_entries(payload),
        base_version=_parse_base_version(payload),
        origin=_parse_origin(payload),
        comment=payload.get("comment"),
        user_id=payload.get("user_id"),
    )
    return JSONResponse(status_code=201, content=committed.to_dict())


@app.post("/api/calibration/{template_id}/rollback")
def rollback_calibration(
    template_id: str,
    payload: Dict[str, Any] = Body(...),
    pipeline: ContractPipeline = Depends(get_pipeline),
) -> JSONResponse:
    if "version" not in payload:
        raise HTTPException(status_code=422, detail="'version' is required")
    committed = pipeline.calibration.rollback(
        template_id,
        int(payload["version"]),
        base_version=_parse_base_version(payload),
        user_id=payload.get("user_id"),
    )
    return JSONResponse(status_code=201, content=committed.to_dict())


@app.post("/api/calibration/{template_id}/import/{provider_document_id}")
def import_calibration(
    template_id: str,
    provider_document_id: str,
    pipeline: ContractPipeline = Depends(get_pipeline),
) -> JSONResponse:
    """Read fields placed by hand in the provider's editor, for review before commit."""
    entries = pipeline.calibration.import_from_provider(pipeline.provider, provider_document_id)
    return JSONResponse(
        status_code=200,
        content={
            "template_id": template_id,
            "origin": Origin.TOP_LEFT.value,
            "entries": [e.to_dict() for e in entries],
        },
    )
