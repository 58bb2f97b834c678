"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store and the flows do the work.

Layer rule: no imports from api/, web/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """A registered portal account.

    password_hash is a bcrypt hash and must never be serialized to a client or
    written to a log. reset_password_token holds the SHA-256 lookup hash of the
    outstanding reset token, never the plaintext; it is None when no reset is
    pending. reset_password_expires is an ISO 8601 UTC timestamp.
    """

    email: str
    username: str
    id: int | None = None
    password_hash: str | None = None
    reset_password_token: str | None = None
    reset_password_expires: str | None = None
    created_at: str | None = None


@dataclass
class LicenseKey:
    """A license credential owned by exactly one user.

    Keys are provisioned out of band (admin CLI). The web flows only read them;
    is_active is toggled by an operator.
    """

    user_id: int
    license_key: str
    id: int | None = None
    is_active: bool = True
    created_at: str | None = None


@dataclass
class LicenseOwnership:
    """A license key joined to the username and email of its owner."""

    license_id: int
    is_active: bool
    username: str
    email: str


@dataclass
class ApiKey:
    """A long-lived credential for the machine-to-machine validation endpoint.

    Not tied to a user. An inactive key authenticates nothing.
    """

    api_key: str
    description: str | None = None
    id: int | None = None
    is_active: bool = True
    created_at: str | None = None
