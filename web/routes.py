"""
web/routes.py -- Browser-facing routes for the LicensePortal UI.

GET form pages are server-rendered with Jinja2. Form submissions call a flow
in auth/flows.py and render the returned Outcome: a redirect on success, or a
JSON body of field errors (status 400/401/500) the page script displays.

The dashboard and the reset-token check answer with HTML when the request
Accept header asks for text/html (a browser), and with their JSON body
otherwise.

Handlers are plain `def` so bcrypt work runs in Starlette's threadpool rather
than on the event loop.

Routes:
  GET  /                          -- redirect to /dashboard or /login
  GET  /register                  -- registration form
  POST /register                  -- create account, sign in
  GET  /login                     -- login form (?redirectTo=, ?reset=success)
  POST /login                     -- password login
  GET  /logout                    -- redirect to / (no state change)
  POST /logout                    -- clear session cookie, redirect /login
  GET  /forgot-password           -- reset request form
  POST /forgot-password           -- issue reset token
  GET  /reset-password/{token}    -- reset form, or token validity as JSON
  POST /reset-password/{token}    -- set new password
  GET  /dashboard                 -- signed-in user and license keys (HTML or JSON)
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, Response
from fastapi.templating import Jinja2Templates

from auth import flows
from auth.dependencies import get_codec, get_store, to_response
from auth.outcomes import Json
from auth.session import SessionCodec
from auth.store import CredentialStore
from core.config import Settings, get_settings

logger = logging.getLogger("licenseportal.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

# Whitelist mapping for ?reset= query values on /login. The raw query param is
# never passed to templates, only the message from this dict.
_NOTICES: dict[str, str] = {
    "success": "Your password has been reset. Please log in with your new password.",
}


def _cookie_header(request: Request) -> Optional[str]:
    return request.headers.get("cookie")


def _wants_html(request: Request) -> bool:
    """Browsers ask for text/html; API callers and scripts get the JSON body."""
    return "text/html" in request.headers.get("accept", "")


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------


@router.get("/")
def index(request: Request, codec: SessionCodec = Depends(get_codec)) -> Response:
    return to_response(flows.index(codec, _cookie_header(request)))


# ---------------------------------------------------------------------------
# Register
# ---------------------------------------------------------------------------


@router.get("/register", response_class=HTMLResponse)
def register_form(request: Request, codec: SessionCodec = Depends(get_codec)) -> Response:
    if redirect := flows.redirect_if_signed_in(codec, _cookie_header(request)):
        return to_response(redirect)
    return templates.TemplateResponse(request, "register.html", {})


@router.post("/register")
def register_post(
    store: CredentialStore = Depends(get_store),
    codec: SessionCodec = Depends(get_codec),
    email: Optional[str] = Form(None),
    username: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    confirm_password: Optional[str] = Form(None, alias="confirmPassword"),
) -> Response:
    outcome = flows.register(store, codec, email, username, password, confirm_password)
    return to_response(outcome)


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request, codec: SessionCodec = Depends(get_codec)) -> Response:
    if redirect := flows.redirect_if_signed_in(codec, _cookie_header(request)):
        return to_response(redirect)
    notice = _NOTICES.get(request.query_params.get("reset", ""))
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "notice": notice,
            "redirect_to": request.query_params.get("redirectTo", flows.DASHBOARD_PATH),
        },
    )


@router.post("/login")
def login_post(
    store: CredentialStore = Depends(get_store),
    codec: SessionCodec = Depends(get_codec),
    username_or_email: Optional[str] = Form(None, alias="usernameOrEmail"),
    password: Optional[str] = Form(None),
    redirect_to: Optional[str] = Form(None, alias="redirectTo"),
) -> Response:
    outcome = flows.login(store, codec, username_or_email, password, redirect_to)
    return to_response(outcome)


@router.api_route("/logout", methods=["GET", "POST"])
def logout(request: Request, codec: SessionCodec = Depends(get_codec)) -> Response:
    return to_response(flows.logout(codec, request.method))


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.get("/forgot-password", response_class=HTMLResponse)
def forgot_password_form(request: Request, codec: SessionCodec = Depends(get_codec)) -> Response:
    if redirect := flows.redirect_if_signed_in(codec, _cookie_header(request)):
        return to_response(redirect)
    return templates.TemplateResponse(request, "forgot_password.html", {})


@router.post("/forgot-password")
def forgot_password_post(
    request: Request,
    store: CredentialStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
    email: Optional[str] = Form(None),
) -> Response:
    outcome = flows.forgot_password(
        store,
        email,
        base_url=str(request.base_url),
        expose_link=bool(settings.expose_reset_link),
        ttl_seconds=settings.reset_token_ttl_seconds,
    )
    return to_response(outcome)


@router.get("/reset-password/{token}")
def reset_password_check(request: Request, token: str, store: CredentialStore = Depends(get_store)) -> Response:
    outcome = flows.check_reset_token(store, token)
    if not _wants_html(request):
        return to_response(outcome)
    return templates.TemplateResponse(
        request,
        "reset_password.html",
        {
            "token": token,
            "token_is_valid": outcome.payload["tokenIsValid"],
            "error": outcome.payload["error"],
        },
        status_code=outcome.status_code,
    )


@router.post("/reset-password/{token}")
def reset_password_post(
    token: str,
    store: CredentialStore = Depends(get_store),
    password: Optional[str] = Form(None),
    confirm_password: Optional[str] = Form(None, alias="confirmPassword"),
) -> Response:
    outcome = flows.reset_password(store, token, password, confirm_password)
    return to_response(outcome)


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


@router.get("/dashboard")
def dashboard(
    request: Request,
    store: CredentialStore = Depends(get_store),
    codec: SessionCodec = Depends(get_codec),
) -> Response:
    outcome = flows.dashboard(store, codec, _cookie_header(request), request.url.path)
    if not isinstance(outcome, Json) or "user" not in outcome.payload or not _wants_html(request):
        return to_response(outcome)
    return templates.TemplateResponse(
        request,
        "dashboard.html",
        {
            "user": outcome.payload["user"],
            "license_keys": outcome.payload["licenseKeys"],
            "error": outcome.payload.get("error"),
        },
        headers={"Cache-Control": "no-store"},
    )
