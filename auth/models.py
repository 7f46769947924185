"""
auth/models.py -- Domain dataclasses for tokens, sessions and password checks.

Pattern: Data class (pure data container, near-zero logic). Services in
auth/tokens.py, auth/sessions.py and auth/passwords.py do the work; these
classes only own the shape of what crosses their boundaries.

Result types (TokenVerification, RememberMeResult) carry either a payload or a
reason code, never both. Callers branch on .ok rather than catching
exceptions for expected failures.

Layer rule: no imports from phone/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass
from datetime import datetime

from core.errors import PasswordRule, SessionError, TokenError

# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Principal:
    """Who a token speaks for. This is what issue() takes and verify() gives back."""

    user_id: str
    role: str
    session_id: str


@dataclass(frozen=True)
class AccessTokenClaims:
    user_id: str
    role: str
    session_id: str
    issued_at: datetime
    expires_at: datetime
    issuer: str
    audience: str

    @property
    def principal(self) -> Principal:
        return Principal(user_id=self.user_id, role=self.role, session_id=self.session_id)


@dataclass(frozen=True)
class TokenVerification:
    claims: AccessTokenClaims | None = None
    error: TokenError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.claims is not None


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PersonalInfo:
    """Details a password must not contain. Every field is optional."""

    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class PasswordValidationResult:
    """Outcome of a strength check.

    violations is ordered: length, character classes, patterns, personal info.
    feedback holds one human-readable message per violation, same order.
    feedback_bn and strength_bn are the Bengali renderings of the same.
    """

    violations: tuple[PasswordRule, ...] = ()
    feedback: tuple[str, ...] = ()
    strength: str = "very_weak"
    feedback_bn: tuple[str, ...] = ()
    strength_bn: str = ""

    @property
    def is_valid(self) -> bool:
        return not self.violations


# ---------------------------------------------------------------------------
# Remember-me sessions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeviceContext:
    """What the presenting client looks like.

    ip_address and user_agent are required for fingerprinting; the Accept-*
    headers are folded in when present.
    """

    ip_address: str | None = None
    user_agent: str | None = None
    accept_language: str = ""
    accept_encoding: str = ""

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.ip_address:
            missing.append("ip_address")
        if not self.user_agent:
            missing.append("user_agent")
        return missing

    def fingerprint(self) -> str:
        """SHA-256 over the identifying headers, truncated to 32 hex chars."""
        material = f"{self.user_agent or ''}|{self.accept_language}|{self.accept_encoding}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]


@dataclass
class RememberMeRecord:
    """The stored form of a remember-me token. The raw secret is never here.

    lineage_id is shared by every generation produced by rotating one login's
    token, so logs can follow a credential across rotations.
    """

    user_id: str
    token_hash: str
    lineage_id: str
    fingerprint: str
    ip_address: str
    created_at: datetime
    expires_at: datetime
    generation: int = 1
    last_used_at: datetime | None = None
    user_agent: str = ""

    def to_json(self) -> str:
        data = asdict(self)
        for key in ("created_at", "expires_at", "last_used_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return json.dumps(data, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> RememberMeRecord:
        """Decode a stored record. Raises ValueError/KeyError/TypeError on bad data."""
        data = json.loads(raw)
        for key in ("created_at", "expires_at"):
            data[key] = datetime.fromisoformat(data[key])
        if data.get("last_used_at"):
            data["last_used_at"] = datetime.fromisoformat(data["last_used_at"])
        return cls(**data)


@dataclass(frozen=True)
class RememberMeResult:
    """Outcome of SessionStore.create() / redeem().

    token is the raw secret -- handed out exactly once, never retrievable
    again. record describes the stored state after the operation.
    """

    token: str | None = None
    record: RememberMeRecord | None = None
    error: SessionError | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def expires_at(self) -> datetime | None:
        return self.record.expires_at if self.record else None


@dataclass(frozen=True)
class ActiveRememberMe:
    """Listing view of a stored token (device management screens)."""

    token_hash_prefix: str
    lineage_id: str
    generation: int
    ip_address: str
    user_agent: str
    created_at: datetime
    expires_at: datetime
    last_used_at: datetime | None = None


@dataclass(frozen=True)
class RevokeResult:
    """Outcome of revoke()/revoke_all(). count is how many records were deleted."""

    count: int = 0
    error: SessionError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class SessionListing:
    items: tuple[ActiveRememberMe, ...] = ()
    error: SessionError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
