"""
auth/dependencies.py -- FastAPI glue between requests and the auth flows.

get_store() / get_codec() read the process-wide collaborators that the
lifespan placed on app.state. Route handlers pass them explicitly into the
flows in auth/flows.py; flows never look at app.state themselves.

to_response() is the single place an Outcome becomes an HTTP response:
  Redirect -> RedirectResponse (302)
  Rendered -> JSONResponse({"errors": ..., **extra}, status)
  Json     -> JSONResponse(payload, status)
SessionCookie instructions from the SessionCodec are applied with
Response.set_cookie() / delete_cookie() (HttpOnly, SameSite=Lax, Path=/), and
no_store outcomes get Cache-Control: no-store so credentials-bearing
responses are never cached by a proxy.

Layer rule: no imports from api/, web/ or core/.
  This module may import from fastapi because it is part of the FastAPI
  dependency injection system.
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from auth.outcomes import Json, Outcome, Redirect, Rendered
from auth.session import SessionCodec, SessionCookie
from auth.store import CredentialStore


def get_store(request: Request) -> CredentialStore:
    """FastAPI dependency: the CredentialStore opened by the lifespan."""
    return request.app.state.credential_store


def get_codec(request: Request) -> SessionCodec:
    """FastAPI dependency: the SessionCodec built from Settings at startup."""
    return request.app.state.session_codec


def _apply_cookie(response: Response, cookie: SessionCookie) -> None:
    if cookie.delete:
        response.delete_cookie(cookie.name, path="/", secure=cookie.secure, httponly=True, samesite="lax")
        return
    response.set_cookie(
        cookie.name,
        value=cookie.value,
        max_age=cookie.max_age,
        path="/",
        secure=cookie.secure,
        httponly=True,
        samesite="lax",
    )


def to_response(outcome: Outcome) -> Response:
    """Translate a flow Outcome into a Starlette response."""
    response: Response
    if isinstance(outcome, Redirect):
        response = RedirectResponse(outcome.location, status_code=outcome.status_code)
    elif isinstance(outcome, Rendered):
        response = JSONResponse(status_code=outcome.status_code, content=outcome.payload())
    elif isinstance(outcome, Json):
        response = JSONResponse(status_code=outcome.status_code, content=outcome.payload)
    else:
        raise TypeError(f"Unsupported outcome type: {type(outcome).__name__}")

    for cookie in outcome.set_cookies:
        _apply_cookie(response, cookie)
    if outcome.no_store:
        response.headers["Cache-Control"] = "no-store"
    return response
