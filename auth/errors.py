"""
auth/errors.py -- Error taxonomy for the authentication flows.

Helpers inside auth/flows.py raise these; every flow entry point catches them
and converts them into an Outcome, so none of them ever reaches the HTTP layer.
The message attribute is always safe to show to a client. Internal detail
(SQL errors, stack traces) goes to the server log only.

Layer rule: no imports from api/, web/ or core/.
"""

from __future__ import annotations


class AuthFlowError(Exception):
    """Base class. status_code is the HTTP status the boundary should use."""

    status_code: int = 500

    def __init__(self, message: str, field: str = "form") -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    @property
    def errors(self) -> dict[str, str]:
        """Field-scoped view used by the form flows: {field: message}."""
        return {self.field: self.message}


class ValidationError(AuthFlowError):
    """Malformed or missing input. Carries one message per offending field."""

    status_code = 400

    def __init__(self, errors: dict[str, str]) -> None:
        super().__init__("; ".join(errors.values()))
        self._errors = dict(errors)

    @property
    def errors(self) -> dict[str, str]:
        return dict(self._errors)


class AuthenticationError(AuthFlowError):
    """Bad credentials, or a missing/unknown/inactive API key."""

    status_code = 401


class AuthorizationError(AuthFlowError):
    """Identity is known but the credential it presents is inactive."""

    status_code = 403


class NotFoundError(AuthFlowError):
    status_code = 404


class ConflictError(AuthFlowError):
    """Duplicate email or username.

    Reported as 400 with one generic message so a caller cannot learn which
    of the two fields collided.
    """

    status_code = 400


class TransientStoreError(AuthFlowError):
    """Unexpected store failure. The message is generic by construction."""

    status_code = 500
