"""
auth/flows.py -- Request -> decision -> Outcome for every authentication flow.

Each public function is one endpoint's policy. Collaborators are passed in
explicitly (store, codec, settings values, clock); there is no module-level
store handle. Every function returns an Outcome from auth/outcomes.py and never
raises for an expected condition.

Error handling:
  Helpers raise the AuthFlowError subclasses from auth/errors.py. Each public
  flow catches AuthFlowError at its boundary and converts it to an Outcome.
  SQLAlchemyError is caught by _store_errors(), logged with full detail, and
  re-raised as TransientStoreError whose message is generic -- SQL text and
  stack traces never reach a client.

Enumeration resistance:
  - register: one message for "email taken" and "username taken".
  - login: one 401 message for "no such user" and "wrong password", and
    authenticate_user() runs bcrypt in both cases.
  - forgot_password: one success message whether or not the email exists.

Reset tokens are re-validated when the new password is submitted, never
trusted from the earlier page load, and consumed by a conditional UPDATE so
they work once.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any
from urllib.parse import urlencode, urlsplit

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import (
    AuthenticationError,
    AuthFlowError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from auth.models import User
from auth.outcomes import Json, Outcome, Redirect, Rendered
from auth.session import Session, SessionCodec
from auth.store import CredentialStore
from auth.tokens import (
    MAX_PASSWORD_BYTES,
    RESET_TOKEN_TTL_SECONDS,
    authenticate_user,
    hash_password,
    hash_reset_token,
    issue_reset_token,
    reset_token_expiry,
    reset_token_is_live,
)

logger = logging.getLogger("licenseportal.auth")

DASHBOARD_PATH = "/dashboard"
LOGIN_PATH = "/login"

MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 6

_UNEXPECTED_ERROR = "An unexpected error occurred. Please try again."
_ACCOUNT_EXISTS = "An account with this email or username already exists."
_BAD_CREDENTIALS = "Invalid username/email or password."
_INVALID_RESET_TOKEN = "Invalid or expired password reset token."
_RESET_REQUESTED = "If an account with that email exists, a password reset link has been generated."

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _store_errors(action: str, message: str = _UNEXPECTED_ERROR) -> Iterator[None]:
    """Translate store failures into TransientStoreError with a client-safe message."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Store failure during %s", action)
        raise TransientStoreError(message) from exc


def _safe_redirect(target: Any) -> str:
    """Accept only same-site relative paths as a post-login target.

    Rejects absolute URLs and protocol-relative paths ("//evil.example") so
    the login form cannot be used as an open redirect. Control characters are
    rejected too: browsers strip tab/CR/LF, turning "/\\t/evil.example" into
    "//evil.example".
    """
    if not isinstance(target, str) or not target.startswith("/"):
        return DASHBOARD_PATH
    if target.startswith("//") or "\\" in target or any(ord(c) < 0x20 or ord(c) == 0x7F for c in target):
        return DASHBOARD_PATH
    parts = urlsplit(target)
    if parts.scheme or parts.netloc:
        return DASHBOARD_PATH
    return target


def _password_errors(password: Any, confirm_password: Any) -> dict[str, str]:
    errors: dict[str, str] = {}
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH or not password.strip():
        errors["password"] = f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
    elif len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        errors["password"] = f"Password must be at most {MAX_PASSWORD_BYTES} bytes long"
    if password != confirm_password:
        errors["confirmPassword"] = "Passwords do not match"
    return errors


def _validate_registration(email: Any, username: Any, password: Any, confirm_password: Any) -> None:
    errors: dict[str, str] = {}
    if not isinstance(email, str) or "@" not in email:
        errors["email"] = "Invalid email address"
    if not isinstance(username, str) or len(username) < MIN_USERNAME_LENGTH:
        errors["username"] = f"Username must be at least {MIN_USERNAME_LENGTH} characters long"
    errors.update(_password_errors(password, confirm_password))
    if errors:
        raise ValidationError(errors)


def _create_account(store: CredentialStore, email: str, username: str, password: str) -> int:
    """Insert the user. The UNIQUE constraints are authoritative; the pre-check only saves a bcrypt round."""
    if store.email_or_username_taken(email, username):
        raise ConflictError(_ACCOUNT_EXISTS)
    try:
        return store.create_user(User(email=email, username=username, password_hash=hash_password(password)))
    except IntegrityError as exc:
        logger.info("Registration lost a uniqueness race; reporting conflict")
        raise ConflictError(_ACCOUNT_EXISTS) from exc


def _require_live_reset_user(store: CredentialStore, token_hash: str, now: datetime | None) -> User:
    user = store.get_by_reset_token(token_hash)
    if user is None or not reset_token_is_live(user, now):
        raise ValidationError({"form": _INVALID_RESET_TOKEN})
    return user


def _parse_license_request(body: bytes) -> str:
    try:
        data = json.loads(body or b"")
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValidationError({"body": "Invalid JSON body"}) from exc
    license_key = data.get("licenseKey") if isinstance(data, dict) else None
    if not isinstance(license_key, str) or not license_key:
        raise ValidationError({"licenseKey": "Missing or invalid licenseKey in request body"})
    return license_key


def _sign_in(codec: SessionCodec, user_id: int, username: str, location: str) -> Redirect:
    session = codec.create(user_id, username)
    return Redirect(location, set_cookies=[codec.commit(session)], no_store=True)


# ---------------------------------------------------------------------------
# Session-only flows
# ---------------------------------------------------------------------------


def current_session(codec: SessionCodec, cookie_header: str | None) -> Session | None:
    """Return the signed-in identity, or None for an anonymous request."""
    return codec.read(cookie_header)


def index(codec: SessionCodec, cookie_header: str | None) -> Redirect:
    """GET / -- send signed-in users to the dashboard, everyone else to login."""
    if current_session(codec, cookie_header) is not None:
        return Redirect(DASHBOARD_PATH)
    return Redirect(LOGIN_PATH)


def redirect_if_signed_in(codec: SessionCodec, cookie_header: str | None) -> Redirect | None:
    """Page loaders for login/register/forgot-password bounce signed-in users to the dashboard."""
    if current_session(codec, cookie_header) is not None:
        return Redirect(DASHBOARD_PATH)
    return None


def logout(codec: SessionCodec, method: str) -> Redirect:
    """POST destroys the session cookie. GET only redirects; it changes nothing."""
    if method.upper() != "POST":
        return Redirect("/")
    return Redirect(LOGIN_PATH, set_cookies=[codec.destroy()])


# ---------------------------------------------------------------------------
# Register / login
# ---------------------------------------------------------------------------


def register(
    store: CredentialStore,
    codec: SessionCodec,
    email: Any,
    username: Any,
    password: Any,
    confirm_password: Any,
) -> Outcome:
    """Create an account and sign it in.

    400 with field errors for bad input, 400 with one generic form error for a
    duplicate email or username, otherwise a redirect to the dashboard with a
    fresh session cookie.
    """
    try:
        _validate_registration(email, username, password, confirm_password)
        with _store_errors("registration"):
            user_id = _create_account(store, email, username, password)
    except AuthFlowError as exc:
        return Rendered(exc.errors, status_code=exc.status_code)

    logger.info("Registered user_id=%s", user_id)
    return _sign_in(codec, user_id, username, DASHBOARD_PATH)


def login(
    store: CredentialStore,
    codec: SessionCodec,
    username_or_email: Any,
    password: Any,
    redirect_to: Any = None,
) -> Outcome:
    """Authenticate by username or email and sign in.

    Unknown account and wrong password produce the same 401 body.
    """
    errors: dict[str, str] = {}
    if not isinstance(username_or_email, str) or not username_or_email:
        errors["usernameOrEmail"] = "Username or Email is required"
    if not isinstance(password, str) or not password:
        errors["password"] = "Password is required"

    try:
        if errors:
            raise ValidationError(errors)
        with _store_errors("login"):
            user = authenticate_user(store, username_or_email, password)
        if user is None:
            raise AuthenticationError(_BAD_CREDENTIALS)
    except AuthFlowError as exc:
        return Rendered(exc.errors, status_code=exc.status_code)

    return _sign_in(codec, user.id, user.username, _safe_redirect(redirect_to or DASHBOARD_PATH))


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


def forgot_password(
    store: CredentialStore,
    email: Any,
    base_url: str,
    expose_link: bool,
    ttl_seconds: int = RESET_TOKEN_TTL_SECONDS,
    now: datetime | None = None,
) -> Rendered:
    """Issue a reset token for email if an account has it.

    The response is identical for known and unknown emails. The reset link is
    included in resetLink only when expose_link is on (development mode, where
    no mail transport exists); otherwise it is never surfaced over HTTP.
    """
    if not isinstance(email, str) or "@" not in email:
        return Rendered(
            {"email": "Please enter a valid email address."},
            extra={"message": None, "resetLink": None},
        )

    reset_link: str | None = None
    try:
        with _store_errors("forgot-password"):
            user = store.get_by_email(email)
            if user is not None:
                token, token_hash = issue_reset_token()
                store.set_reset_token(user.id, token_hash, reset_token_expiry(now, ttl_seconds))
                logger.info("Issued password reset token for user_id=%s", user.id)
                if expose_link:
                    reset_link = f"{base_url.rstrip('/')}/reset-password/{token}"
    except AuthFlowError as exc:
        return Rendered(exc.errors, status_code=exc.status_code, extra={"message": None, "resetLink": None})

    return Rendered({}, status_code=200, extra={"message": _RESET_REQUESTED, "resetLink": reset_link})


def check_reset_token(store: CredentialStore, token: Any, now: datetime | None = None) -> Json:
    """GET /reset-password/{token} -- say whether the form should be shown."""
    invalid = {"error": _INVALID_RESET_TOKEN, "tokenIsValid": False}
    if not isinstance(token, str) or not token:
        return Json(invalid)
    try:
        with _store_errors("reset-token check"):
            _require_live_reset_user(store, hash_reset_token(token), now)
    except TransientStoreError:
        return Json({"error": "An error occurred validating the token.", "tokenIsValid": False}, status_code=500)
    except AuthFlowError:
        return Json(invalid)
    return Json({"error": None, "tokenIsValid": True, "token": token})


def reset_password(
    store: CredentialStore,
    token: Any,
    password: Any,
    confirm_password: Any,
    now: datetime | None = None,
) -> Outcome:
    """Set a new password if token is still valid, then send the user to login.

    The token is re-checked here; a successful reset clears it so the same
    link cannot be used again.
    """
    try:
        if not isinstance(token, str) or not token:
            raise ValidationError({"form": "Reset token is missing."})
        errors = _password_errors(password, confirm_password)
        if errors:
            raise ValidationError(errors)

        token_hash = hash_reset_token(token)
        with _store_errors("password reset"):
            user = _require_live_reset_user(store, token_hash, now)
            if not store.consume_reset_token(user.id, token_hash, hash_password(password)):
                # Another submit spent the token between the check and the update.
                raise ValidationError({"form": _INVALID_RESET_TOKEN})
    except AuthFlowError as exc:
        return Rendered(exc.errors, status_code=exc.status_code, extra={"success": False})

    logger.info("Password reset completed for user_id=%s", user.id)
    return Redirect(f"{LOGIN_PATH}?reset=success")


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


def dashboard(
    store: CredentialStore,
    codec: SessionCodec,
    cookie_header: str | None,
    path: str = DASHBOARD_PATH,
) -> Outcome:
    """Return the signed-in user and their license keys, newest first.

    Anonymous requests are sent to login with redirectTo set to path. A
    session whose user no longer exists is cleared. If only the key listing
    fails, the user is still returned with an empty list and an error message.
    """
    session = current_session(codec, cookie_header)
    login_redirect = f"{LOGIN_PATH}?{urlencode({'redirectTo': _safe_redirect(path)})}"
    if session is None:
        return Redirect(login_redirect)

    try:
        with _store_errors("dashboard user lookup"):
            user = store.get_by_id(session.user_id)
    except AuthFlowError as exc:
        return Json({"error": exc.message}, status_code=exc.status_code)
    if user is None:
        return Redirect(login_redirect, set_cookies=[codec.destroy()])

    payload: dict[str, Any] = {
        "user": {"id": user.id, "username": user.username, "email": user.email},
        "licenseKeys": [],
    }
    try:
        with _store_errors("dashboard license listing"):
            keys = store.list_license_keys(user.id)
    except AuthFlowError:
        payload["error"] = "Failed to load license keys."
        return Json(payload)

    payload["licenseKeys"] = [
        {"id": k.id, "licenseKey": k.license_key, "isActive": k.is_active, "createdAt": k.created_at} for k in keys
    ]
    return Json(payload)


# ---------------------------------------------------------------------------
# Machine endpoint
# ---------------------------------------------------------------------------


def validate_license(store: CredentialStore, api_key: str | None, body: bytes) -> Json:
    """Validate a license key on behalf of an API client.

    The API key is checked before the body is even parsed, so a missing or
    invalid key is 401 whatever the body contains.
    """
    if not api_key:
        return Json({"valid": False, "error": "Missing API Key"}, status_code=401)

    try:
        with _store_errors("license validation", "Internal server error during validation"):
            if store.get_active_api_key(api_key) is None:
                raise AuthenticationError("Invalid API Key")
            license_key = _parse_license_request(body)
            ownership = store.get_license_ownership(license_key)
        if ownership is None:
            raise NotFoundError("License key not found")
        if not ownership.is_active:
            raise AuthorizationError("License key is inactive")
    except AuthFlowError as exc:
        return Json({"valid": False, "error": exc.message}, status_code=exc.status_code)

    return Json({"valid": True, "username": ownership.username, "email": ownership.email})
