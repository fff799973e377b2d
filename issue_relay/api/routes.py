"""
API Routes and Endpoints

This file only handles:
- HTTP routing
- Request method and body checks
- Mapping pipeline outcomes onto HTTP envelopes

All workflow logic lives in PipelineOrchestrator.
"""

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from issue_relay.integrations.connection_config import get_settings
from issue_relay.models.schemas import ErrorKind, PipelineResponse
from issue_relay.orchestrator import PipelineOrchestrator
from issue_relay.utils.logger import get_logger

from .models import HealthResponse, SubmitErrorResponse, SubmitSuccessResponse

logger = get_logger("routes")

router = APIRouter()

SUBMIT_METHOD = "POST"

_orchestrator: PipelineOrchestrator | None = None


class InvalidRequestError(Exception):
    """Inbound request rejected before the pipeline runs."""

    def __init__(self, status_code: int, *reasons: str):
        self.status_code = status_code
        self.reasons = list(reasons)
        super().__init__("; ".join(self.reasons))


def get_orchestrator() -> PipelineOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = PipelineOrchestrator(get_settings())
    return _orchestrator


def validate_method(method: str) -> None:
    if method.upper() != SUBMIT_METHOD:
        raise InvalidRequestError(405, f"Method Not Allowed. Please use {SUBMIT_METHOD}.")


async def read_json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise InvalidRequestError(400, "Request body must be valid JSON")


def error_envelope(status_code: int, error: str, detail: str | None = None) -> JSONResponse:
    body = SubmitErrorResponse(error=error, detail=detail)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def shape_response(response: PipelineResponse) -> JSONResponse:
    """Map a pipeline outcome onto the outbound envelope and status code."""
    if response.success:
        body = SubmitSuccessResponse(
            lookupOutput=response.lookup_output or "",
            issueOutput=response.issue_output or "",
            detail=response.detail,
        )
        return JSONResponse(status_code=200, content=body.model_dump(exclude_none=True))

    status_code = 400 if response.error_kind == ErrorKind.INVALID_REQUEST else 500
    body = SubmitErrorResponse(
        stage=response.stage,
        lookupOutput=response.lookup_output,
        error=response.error or "Pipeline failed",
        detail=response.detail,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


# =========================================================================
# SYSTEM ENDPOINTS
# =========================================================================

@router.get("/api/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(status="healthy", timestamp=datetime.now(timezone.utc).isoformat())


# =========================================================================
# SUBMISSION
# =========================================================================

@router.api_route("/api/submit", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def submit_problem(
    request: Request,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """
    Look up the reporting user's records, then file an issue about the problem.

    Body: {"email": str, "problemDescription": str}
    """
    try:
        validate_method(request.method)
        payload = await read_json_body(request)
    except InvalidRequestError as e:
        logger.info("Submission rejected", extra={
            "action": "invalid_request", "extra": {"status": e.status_code, "reasons": e.reasons},
        })
        return error_envelope(e.status_code, str(e))

    response = await orchestrator.handle(payload)
    return shape_response(response)
