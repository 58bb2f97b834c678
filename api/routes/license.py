"""
api/routes/license.py -- Machine-to-machine license validation endpoint.

Routes:
  POST /api/validate-license -- X-API-Key header + {"licenseKey": "..."} body

Status codes:
  200 valid and active
  400 malformed JSON, or licenseKey missing / not a non-empty string
  401 X-API-Key missing, unknown or inactive (checked before the body)
  403 license key exists but is inactive
  404 license key unknown
  500 store failure (generic message, details in the server log)

All policy lives in auth.flows.validate_license(); this module only reads the
raw request and renders the Outcome.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from api.models import LicenseValidationRequest, LicenseValidationResponse
from auth import flows
from auth.dependencies import get_store, to_response
from auth.store import CredentialStore

router = APIRouter()

_RESPONSES = {
    status: {"model": LicenseValidationResponse, "description": description}
    for status, description in (
        (400, "Invalid JSON body or missing licenseKey"),
        (401, "Missing or invalid API key"),
        (403, "License key is inactive"),
        (404, "License key not found"),
        (500, "Internal server error during validation"),
    )
}


@router.post(
    "/validate-license",
    response_model=LicenseValidationResponse,
    responses=_RESPONSES,
    openapi_extra={
        "requestBody": {
            "required": True,
            "content": {"application/json": {"schema": LicenseValidationRequest.model_json_schema(by_alias=True)}},
        }
    },
)
async def validate_license(request: Request, store: CredentialStore = Depends(get_store)) -> Response:
    """Validate a license key for an API client identified by X-API-Key."""
    body = await request.body()
    outcome = flows.validate_license(store, request.headers.get("X-API-Key"), body)
    return to_response(outcome)
