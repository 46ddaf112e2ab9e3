"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """A credential record from the users table.

    banned / enabled_apis / tags are not stored here: they live in the
    reconciled configuration (core.models.ConfigUser).
    """

    username: str
    role: str = "user"  # "owner", "admin", "user"
    hashed_password: str | None = None
    created_at: str | None = None


@dataclass
class SessionToken:
    """Decoded contents of the `auth` cookie.

    Database mode: username, role, signature and timestamp are all present and
    the signature covers all three.

    Single-tenant mode: only role (and the deployment password, when one is
    configured) -- there is no per-user identity to sign.
    """

    role: str = "user"
    username: str | None = None
    signature: str | None = None
    timestamp: int | None = None  # epoch milliseconds
    password: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in ("owner", "admin")
