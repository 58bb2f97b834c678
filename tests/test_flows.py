"""Unit tests for auth/flows.py -- the request -> Outcome policies.

These call the flows directly with an in-memory CredentialStore and a real
SessionCodec, so they check decisions (status, errors, cookies, redirects)
without HTTP in the way. tests/test_web_routes.py covers the same flows
through the ASGI stack.

Covers:
- register: field validation, generic conflict for email and username,
  uniqueness race (pre-check passes, UNIQUE constraint fires)
- login: session identity, identical 401 for unknown user and wrong password,
  open-redirect protection
- logout: POST clears the cookie, GET changes nothing
- forgot/reset: anti-enumeration, 1-hour expiry, re-validation at submit,
  single use, reset-link exposure switch
- dashboard: anonymous redirect, empty list, listing failure fallback
- validate_license: the full 200/400/401/403/404/500 matrix
- store failures surface as generic 500s without internal text
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from auth import flows
from auth.models import ApiKey, LicenseKey, User
from auth.outcomes import Json, Redirect, Rendered
from auth.session import SessionCodec, SessionCookie
from auth.store import CredentialStore
from auth.tokens import verify_password

_DB_DOWN = OperationalError("SELECT ...", {}, Exception("database is locked at /var/lib/secret.db"))


def _pair(cookie: SessionCookie) -> str:
    return f"{cookie.name}={cookie.value}"


def _session_from(codec: SessionCodec, outcome) -> object:
    assert outcome.set_cookies, "expected a session cookie"
    return codec.read(_pair(outcome.set_cookies[0]))


def _register(store, codec, username="alice", email="alice@x.com", password="secret1", confirm=None):
    return flows.register(store, codec, email, username, password, password if confirm is None else confirm)


# ---------------------------------------------------------------------------
# Register
# ---------------------------------------------------------------------------


class TestRegister:
    def test_success_signs_in_and_redirects(self, store: CredentialStore, codec: SessionCodec) -> None:
        outcome = _register(store, codec)
        assert isinstance(outcome, Redirect)
        assert outcome.location == "/dashboard"
        assert outcome.no_store is True
        session = _session_from(codec, outcome)
        user = store.get_by_username_or_email("alice")
        assert session.user_id == user.id and session.username == "alice"
        assert verify_password("secret1", user.password_hash)

    @pytest.mark.parametrize(
        "email,username,password,confirm,field",
        [
            ("not-an-email", "alice", "secret1", "secret1", "email"),
            (None, "alice", "secret1", "secret1", "email"),
            ("alice@x.com", "al", "secret1", "secret1", "username"),
            ("alice@x.com", "alice", "short", "short", "password"),
            ("alice@x.com", "alice", "      ", "      ", "password"),
            ("alice@x.com", "alice", "secret1", "secret2", "confirmPassword"),
        ],
    )
    def test_field_validation(self, store, codec, email, username, password, confirm, field) -> None:
        outcome = flows.register(store, codec, email, username, password, confirm)
        assert isinstance(outcome, Rendered)
        assert outcome.status_code == 400
        assert field in outcome.errors
        assert store.get_by_username_or_email("alice") is None

    @pytest.mark.parametrize("password", ["a" * 73, "a" * 80, "é" * 37])
    def test_password_over_bcrypt_limit_is_field_error(self, store, codec, password) -> None:
        outcome = flows.register(store, codec, "bob@x.com", "bob", password, password)
        assert isinstance(outcome, Rendered)
        assert outcome.status_code == 400
        assert outcome.errors == {"password": "Password must be at most 72 bytes long"}
        assert store.get_by_username_or_email("bob") is None

    def test_password_at_bcrypt_limit_is_accepted(self, store, codec) -> None:
        outcome = flows.register(store, codec, "bob@x.com", "bob", "a" * 72, "a" * 72)
        assert isinstance(outcome, Redirect)
        assert isinstance(flows.login(store, codec, "bob", "a" * 72), Redirect)

    def test_reports_every_invalid_field_at_once(self, store, codec) -> None:
        outcome = flows.register(store, codec, "bad", "a", "x", "y")
        assert set(outcome.errors) == {"email", "username", "password", "confirmPassword"}

    def test_validation_happens_before_store_access(self, codec) -> None:
        store = MagicMock()
        flows.register(store, codec, "bad", "alice", "secret1", "secret1")
        store.email_or_username_taken.assert_not_called()
        store.create_user.assert_not_called()

    def test_duplicate_username_and_email_give_same_generic_error(self, store, codec) -> None:
        _register(store, codec)
        same_username = _register(store, codec, email="other@x.com")
        same_email = _register(store, codec, username="alice2")
        for outcome in (same_username, same_email):
            assert isinstance(outcome, Rendered)
            assert outcome.status_code == 400
            assert outcome.errors == {"form": "An account with this email or username already exists."}
            assert outcome.set_cookies == []

    def test_registering_same_username_twice_leaves_one_row(self, store, codec) -> None:
        _register(store, codec)
        first = _register(store, codec, email="two@x.com")
        second = _register(store, codec, email="three@x.com")
        assert first.errors == second.errors
        assert store.get_by_email("two@x.com") is None and store.get_by_email("three@x.com") is None

    def test_uniqueness_race_maps_to_same_conflict(self, codec) -> None:
        """Pre-check passes, then the UNIQUE constraint fires on insert."""
        store = MagicMock()
        store.email_or_username_taken.return_value = False
        unique_failure = Exception("UNIQUE constraint failed: users.username")
        store.create_user.side_effect = IntegrityError("INSERT ...", {}, unique_failure)
        outcome = _register(store, codec)
        assert outcome.status_code == 400
        assert outcome.errors == {"form": "An account with this email or username already exists."}

    def test_store_failure_is_generic_500(self, codec) -> None:
        store = MagicMock()
        store.email_or_username_taken.side_effect = _DB_DOWN
        outcome = _register(store, codec)
        assert outcome.status_code == 500
        assert outcome.errors == {"form": "An unexpected error occurred. Please try again."}
        assert "secret.db" not in json.dumps(outcome.payload())


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_by_username_and_email(self, store, codec, make_user) -> None:
        user = make_user()
        for identifier in ("alice", "alice@x.com"):
            outcome = flows.login(store, codec, identifier, "secret1")
            assert isinstance(outcome, Redirect)
            assert outcome.location == "/dashboard"
            session = _session_from(codec, outcome)
            assert (session.user_id, session.username) == (user.id, user.username)

    def test_wrong_password_and_unknown_user_are_identical(self, store, codec, make_user) -> None:
        make_user()
        wrong_password = flows.login(store, codec, "alice", "nope-nope")
        unknown_user = flows.login(store, codec, "mallory", "secret1")
        for outcome in (wrong_password, unknown_user):
            assert isinstance(outcome, Rendered)
            assert outcome.status_code == 401
            assert outcome.set_cookies == []
        assert wrong_password.payload() == unknown_user.payload()
        assert wrong_password.errors == {"form": "Invalid username/email or password."}

    def test_overlong_password_is_plain_401(self, store, codec, make_user) -> None:
        make_user()
        outcome = flows.login(store, codec, "alice", "a" * 80)
        assert outcome.status_code == 401
        assert outcome.errors == {"form": "Invalid username/email or password."}

    def test_missing_fields(self, store, codec) -> None:
        outcome = flows.login(store, codec, "", None)
        assert outcome.status_code == 400
        assert set(outcome.errors) == {"usernameOrEmail", "password"}

    def test_redirect_to_is_honoured_for_local_paths(self, store, codec, make_user) -> None:
        make_user()
        outcome = flows.login(store, codec, "alice", "secret1", "/dashboard?tab=keys")
        assert outcome.location == "/dashboard?tab=keys"

    @pytest.mark.parametrize(
        "target",
        [
            "https://evil.example/",
            "//evil.example",
            "/\\evil.example",
            "/\t/evil.example",
            "/\n/evil.example",
            "/\r\n/evil.example",
            "/\x7f/evil.example",
            "javascript:alert(1)",
            42,
        ],
    )
    def test_redirect_to_rejects_off_site_targets(self, store, codec, make_user, target) -> None:
        make_user()
        assert flows.login(store, codec, "alice", "secret1", target).location == "/dashboard"

    def test_store_failure_is_generic_500(self, codec) -> None:
        store = MagicMock()
        store.get_by_username_or_email.side_effect = _DB_DOWN
        outcome = flows.login(store, codec, "alice", "secret1")
        assert outcome.status_code == 500
        assert outcome.errors == {"form": "An unexpected error occurred. Please try again."}


class TestLogout:
    def test_post_destroys_session(self, codec) -> None:
        outcome = flows.logout(codec, "POST")
        assert outcome.location == "/login"
        assert len(outcome.set_cookies) == 1
        assert outcome.set_cookies[0].delete is True

    def test_get_only_redirects(self, codec) -> None:
        outcome = flows.logout(codec, "GET")
        assert outcome.location == "/"
        assert outcome.set_cookies == []


class TestPageRedirects:
    def test_index(self, codec) -> None:
        cookie = _pair(codec.commit(codec.create(1, "alice")))
        assert flows.index(codec, cookie).location == "/dashboard"
        assert flows.index(codec, None).location == "/login"

    def test_signed_in_users_skip_form_pages(self, codec) -> None:
        cookie = _pair(codec.commit(codec.create(1, "alice")))
        assert flows.redirect_if_signed_in(codec, cookie).location == "/dashboard"
        assert flows.redirect_if_signed_in(codec, None) is None


# ---------------------------------------------------------------------------
# Forgot / reset password
# ---------------------------------------------------------------------------


_NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _issue_link(store: CredentialStore, email: str = "alice@x.com") -> str:
    outcome = flows.forgot_password(store, email, "http://testserver/", expose_link=True, now=_NOW)
    assert outcome.status_code == 200
    return outcome.extra["resetLink"]


def _token_from(link: str) -> str:
    return link.rsplit("/", 1)[1]


class TestForgotPassword:
    def test_known_and_unknown_email_get_same_message(self, store, make_user) -> None:
        make_user()
        known = flows.forgot_password(store, "alice@x.com", "http://testserver", expose_link=False)
        unknown = flows.forgot_password(store, "ghost@x.com", "http://testserver", expose_link=False)
        assert known.status_code == unknown.status_code == 200
        assert known.payload() == unknown.payload()
        assert known.payload()["resetLink"] is None

    def test_issues_token_with_one_hour_expiry(self, store, make_user) -> None:
        user = make_user()
        link = _issue_link(store)
        assert link.startswith("http://testserver/reset-password/")
        stored = store.get_by_id(user.id)
        assert stored.reset_password_token is not None
        assert stored.reset_password_token != _token_from(link)
        assert datetime.fromisoformat(stored.reset_password_expires) == _NOW + timedelta(hours=1)

    def test_unknown_email_creates_no_link(self, store) -> None:
        outcome = flows.forgot_password(store, "ghost@x.com", "http://testserver", expose_link=True)
        assert outcome.extra["resetLink"] is None

    def test_invalid_email_shape(self, store) -> None:
        outcome = flows.forgot_password(store, "nope", "http://testserver", expose_link=True)
        assert outcome.status_code == 400
        assert outcome.payload() == {
            "errors": {"email": "Please enter a valid email address."},
            "message": None,
            "resetLink": None,
        }

    def test_store_failure_is_generic_500(self) -> None:
        store = MagicMock()
        store.get_by_email.side_effect = _DB_DOWN
        outcome = flows.forgot_password(store, "alice@x.com", "http://testserver", expose_link=True)
        assert outcome.status_code == 500
        assert outcome.payload()["resetLink"] is None


class TestResetPassword:
    def test_check_valid_token(self, store, make_user) -> None:
        make_user()
        token = _token_from(_issue_link(store))
        outcome = flows.check_reset_token(store, token, now=_NOW + timedelta(minutes=30))
        assert outcome.payload == {"error": None, "tokenIsValid": True, "token": token}

    def test_check_unknown_and_expired_tokens(self, store, make_user) -> None:
        make_user()
        token = _token_from(_issue_link(store))
        for candidate, now in ((token, _NOW + timedelta(hours=1, seconds=1)), ("f" * 64, _NOW)):
            outcome = flows.check_reset_token(store, candidate, now=now)
            assert outcome.status_code == 200
            assert outcome.payload == {"error": "Invalid or expired password reset token.", "tokenIsValid": False}

    def test_reset_then_token_is_spent(self, store, codec, make_user) -> None:
        make_user()
        token = _token_from(_issue_link(store))

        outcome = flows.reset_password(store, token, "secret2", "secret2", now=_NOW + timedelta(minutes=5))
        assert isinstance(outcome, Redirect)
        assert outcome.location == "/login?reset=success"

        again = flows.reset_password(store, token, "secret3", "secret3", now=_NOW + timedelta(minutes=6))
        assert isinstance(again, Rendered) and again.status_code == 400
        assert again.errors == {"form": "Invalid or expired password reset token."}
        assert isinstance(flows.login(store, codec, "alice", "secret2"), Redirect)

    def test_expired_token_rejected_at_submit(self, store, codec, make_user) -> None:
        """Token was valid when the form loaded but expired before submit."""
        make_user()
        token = _token_from(_issue_link(store))
        assert flows.check_reset_token(store, token, now=_NOW + timedelta(minutes=59)).payload["tokenIsValid"]

        outcome = flows.reset_password(store, token, "secret2", "secret2", now=_NOW + timedelta(minutes=61))
        assert outcome.status_code == 400
        assert outcome.errors == {"form": "Invalid or expired password reset token."}
        assert isinstance(flows.login(store, codec, "alice", "secret1"), Redirect)

    def test_password_over_bcrypt_limit_keeps_token(self, store, make_user) -> None:
        make_user()
        token = _token_from(_issue_link(store))
        outcome = flows.reset_password(store, token, "a" * 80, "a" * 80, now=_NOW)
        assert outcome.status_code == 400
        assert outcome.errors == {"password": "Password must be at most 72 bytes long"}
        assert flows.check_reset_token(store, token, now=_NOW).payload["tokenIsValid"] is True

    def test_password_rules_apply(self, store, make_user) -> None:
        make_user()
        token = _token_from(_issue_link(store))
        outcome = flows.reset_password(store, token, "short", "other", now=_NOW)
        assert outcome.status_code == 400
        assert set(outcome.errors) == {"password", "confirmPassword"}
        assert outcome.payload()["success"] is False

    def test_missing_token(self, store) -> None:
        outcome = flows.reset_password(store, "", "secret2", "secret2")
        assert outcome.errors == {"form": "Reset token is missing."}

    def test_concurrent_consumer_wins(self, store, make_user) -> None:
        """The lookup succeeds but another submit spends the token before the UPDATE."""
        make_user()
        token = _token_from(_issue_link(store))
        with patch.object(store, "consume_reset_token", return_value=False):
            outcome = flows.reset_password(store, token, "secret2", "secret2", now=_NOW)
        assert outcome.errors == {"form": "Invalid or expired password reset token."}

    def test_check_store_failure_is_500(self) -> None:
        store = MagicMock()
        store.get_by_reset_token.side_effect = _DB_DOWN
        outcome = flows.check_reset_token(store, "abc")
        assert outcome.status_code == 500
        assert outcome.payload["tokenIsValid"] is False


class TestAliceScenario:
    def test_register_dashboard_reset_login(self, store, codec) -> None:
        registered = _register(store, codec, "alice", "alice@x.com", "secret1")
        cookie = _pair(registered.set_cookies[0])

        board = flows.dashboard(store, codec, cookie)
        assert isinstance(board, Json)
        assert board.payload["licenseKeys"] == []
        assert board.payload["user"]["username"] == "alice"

        token = _token_from(_issue_link(store, "alice@x.com"))
        expires = datetime.fromisoformat(store.get_by_username_or_email("alice").reset_password_expires)
        assert expires - _NOW == timedelta(hours=1)

        assert isinstance(flows.reset_password(store, token, "secret2", "secret2", now=_NOW), Redirect)
        assert flows.login(store, codec, "alice", "secret1").status_code == 401
        assert isinstance(flows.login(store, codec, "alice", "secret2"), Redirect)


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


class TestDashboard:
    def test_anonymous_redirects_to_login_with_return_path(self, store, codec) -> None:
        outcome = flows.dashboard(store, codec, None, "/dashboard")
        assert isinstance(outcome, Redirect)
        assert outcome.location == "/login?redirectTo=%2Fdashboard"

    def test_lists_own_keys_newest_first(self, store, codec, make_user) -> None:
        user = make_user()
        store.create_license_key(LicenseKey(user_id=user.id, license_key="K-OLD"))
        store.create_license_key(LicenseKey(user_id=user.id, license_key="K-NEW", is_active=False))
        cookie = _pair(codec.commit(codec.create(user.id, user.username)))

        outcome = flows.dashboard(store, codec, cookie)
        assert outcome.payload["user"] == {"id": user.id, "username": "alice", "email": "alice@x.com"}
        rows = outcome.payload["licenseKeys"]
        assert [r["licenseKey"] for r in rows] == ["K-NEW", "K-OLD"]
        assert rows[0]["isActive"] is False
        assert set(rows[0]) == {"id", "licenseKey", "isActive", "createdAt"}

    def test_session_for_deleted_user_is_cleared(self, store, codec) -> None:
        cookie = _pair(codec.commit(codec.create(999, "ghost")))
        outcome = flows.dashboard(store, codec, cookie)
        assert isinstance(outcome, Redirect)
        assert outcome.location.startswith("/login")
        assert outcome.set_cookies[0].delete is True

    def test_listing_failure_still_returns_user(self, codec) -> None:
        store = MagicMock()
        store.get_by_id.return_value = User(id=1, email="alice@x.com", username="alice")
        store.list_license_keys.side_effect = _DB_DOWN
        cookie = _pair(codec.commit(codec.create(1, "alice")))
        outcome = flows.dashboard(store, codec, cookie)
        assert outcome.status_code == 200
        assert outcome.payload["licenseKeys"] == []
        assert outcome.payload["error"] == "Failed to load license keys."


# ---------------------------------------------------------------------------
# License validation
# ---------------------------------------------------------------------------


@pytest.fixture
def licensed(store: CredentialStore, make_user):
    """Store with one active API key, one active and one inactive license for alice."""
    user = make_user()
    store.create_api_key(ApiKey(api_key="lp_good", description="client"))
    revoked = store.create_api_key(ApiKey(api_key="lp_revoked"))
    store.set_api_key_active(revoked, False)
    store.create_license_key(LicenseKey(user_id=user.id, license_key="LIVE-1"))
    store.create_license_key(LicenseKey(user_id=user.id, license_key="DEAD-1", is_active=False))
    return store


def _body(license_key) -> bytes:
    return json.dumps({"licenseKey": license_key}).encode()


class TestValidateLicense:
    def test_active_license(self, licensed) -> None:
        outcome = flows.validate_license(licensed, "lp_good", _body("LIVE-1"))
        assert outcome.status_code == 200
        assert outcome.payload == {"valid": True, "username": "alice", "email": "alice@x.com"}

    def test_inactive_license(self, licensed) -> None:
        outcome = flows.validate_license(licensed, "lp_good", _body("DEAD-1"))
        assert outcome.status_code == 403
        assert outcome.payload == {"valid": False, "error": "License key is inactive"}

    def test_unknown_license(self, licensed) -> None:
        outcome = flows.validate_license(licensed, "lp_good", _body("NOPE-1"))
        assert outcome.status_code == 404
        assert outcome.payload == {"valid": False, "error": "License key not found"}

    @pytest.mark.parametrize(
        "api_key,error",
        [
            (None, "Missing API Key"),
            ("", "Missing API Key"),
            ("lp_wrong", "Invalid API Key"),
            ("lp_revoked", "Invalid API Key"),
        ],
    )
    @pytest.mark.parametrize("body", [_body("LIVE-1"), _body("DEAD-1"), b"{not json"])
    def test_bad_api_key_is_401_whatever_the_body(self, licensed, api_key, error, body) -> None:
        outcome = flows.validate_license(licensed, api_key, body)
        assert outcome.status_code == 401
        assert outcome.payload == {"valid": False, "error": error}

    def test_invalid_json(self, licensed) -> None:
        outcome = flows.validate_license(licensed, "lp_good", b"{not json")
        assert outcome.status_code == 400
        assert outcome.payload == {"valid": False, "error": "Invalid JSON body"}

    @pytest.mark.parametrize("body", [b"{}", b"[]", _body(""), _body(123), _body(None)])
    def test_missing_or_invalid_license_key(self, licensed, body) -> None:
        outcome = flows.validate_license(licensed, "lp_good", body)
        assert outcome.status_code == 400
        assert outcome.payload == {"valid": False, "error": "Missing or invalid licenseKey in request body"}

    def test_store_failure_is_generic_500(self) -> None:
        store = MagicMock()
        store.get_active_api_key.side_effect = _DB_DOWN
        outcome = flows.validate_license(store, "lp_good", _body("LIVE-1"))
        assert outcome.status_code == 500
        assert outcome.payload == {"valid": False, "error": "Internal server error during validation"}
