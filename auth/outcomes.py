"""
auth/outcomes.py -- Tagged results returned by every flow in auth/flows.py.

Flows never raise to signal a redirect or an error page. They return one of:

  Redirect(location)            -- 302 to location
  Rendered(errors, status)      -- form errors for the page that was posted
  Json(payload, status)         -- a JSON body (machine endpoint, page data)

Each carries set_cookies: SessionCookie instructions from the SessionCodec
that the boundary applies with Response.set_cookie() or delete_cookie(), and
no_store for responses that must not be cached. The HTTP layer (web/routes.py, api/routes/license.py) is the only code
that turns an Outcome into a Response.

Layer rule: no imports from api/, web/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from auth.session import SessionCookie


@dataclass
class Redirect:
    location: str
    status_code: int = 302
    set_cookies: list[SessionCookie] = field(default_factory=list)
    no_store: bool = False


@dataclass
class Rendered:
    """Form errors keyed by field name ("form" for form-level messages).

    extra holds any additional keys the page expects next to "errors"
    (forgot-password sends "message" and "resetLink").
    """

    errors: dict[str, str]
    status_code: int = 400
    extra: dict[str, Any] = field(default_factory=dict)
    set_cookies: list[SessionCookie] = field(default_factory=list)
    no_store: bool = False

    def payload(self) -> dict[str, Any]:
        return {"errors": dict(self.errors), **self.extra}


@dataclass
class Json:
    payload: dict[str, Any]
    status_code: int = 200
    set_cookies: list[SessionCookie] = field(default_factory=list)
    no_store: bool = False


Outcome = Union[Redirect, Rendered, Json]
