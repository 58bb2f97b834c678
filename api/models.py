"""
API request and response models for LicensePortal REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer
and feed the OpenAPI schema. They are intentionally separate from the
dataclasses in auth/models.py, which own the internal domain representation.

The license validation route parses its body by hand (so malformed JSON is a
400 with the documented message rather than FastAPI's 422), which is why the
request model is used for the schema only.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# License validation
# ---------------------------------------------------------------------------


class LicenseValidationRequest(BaseModel):
    """Documented body for POST /api/validate-license."""

    model_config = ConfigDict(populate_by_name=True)

    license_key: str = Field(alias="licenseKey", min_length=1)


class LicenseValidationResponse(BaseModel):
    """Every response from POST /api/validate-license, success or failure.

    username and email are present only when valid is True; error only when
    valid is False.
    """

    valid: bool
    username: Optional[str] = None
    email: Optional[str] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Structured error body. message is always client-safe; internals stay in the log."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorDetail


class HealthResponse(BaseModel):
    """Liveness payload for GET /api/health.

    components["database"] is "ok" when the credential store answers a
    trivial query, "error" otherwise.
    """

    status: str = "healthy"
    version: str
    components: dict[str, str]
