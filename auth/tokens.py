"""
auth/tokens.py -- Signed access tokens and the random-secret primitive.

Security design decisions:
  JWT: python-jose with HS256. A token is header.payload.signature, each part
       base64url-encoded. The payload carries userId, role, sessionId, iss,
       aud, iat and exp. Verification is a pure function of the token, the
       clock and the configured secret/issuer/audience -- no server-side
       state, so an access token cannot be revoked before exp. Short TTLs are
       the mitigation; remember-me tokens (auth/sessions.py) are the
       revocable long-lived credential.

  Verification order is fixed and callers may rely on it:
       1. structure (3 segments, JSON header/payload, alg HS256, int exp/iat)
                                                        -> MALFORMED
       2. now > exp                                     -> EXPIRED
       3. signature (hmac.compare_digest inside jose)   -> INVALID_SIGNATURE
       4. iss / aud                                     -> WRONG_AUDIENCE
       5. userId / role / sessionId present             -> MALFORMED
       Expiry is read from the unverified payload before the signature is
       checked, so an expired token reports EXPIRED even if tampered with.
       Nothing from the payload is trusted until step 3 passes.

  Remember-me secrets: secrets.token_urlsafe(32) gives 256 bits of entropy.
       Stored as HMAC-SHA256(JWT secret, raw) so lookup is O(1) and a leaked
       Redis dump cannot be replayed without also knowing the signing secret.
       bcrypt's intentional slowness is unnecessary for high-entropy secrets.

Layer rule: no imports from phone/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import JWSError, JWTError, jws, jwt

from auth.models import AccessTokenClaims, Principal, TokenVerification
from core.config import Settings
from core.errors import TokenError

logger = logging.getLogger("smartshop.auth.tokens")

_ALGORITHM = "HS256"
_BEARER = "bearer"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class TokenService:
    """Issue and verify HS256 bearer tokens.

    Usage:
        tokens = TokenService(settings)
        token = tokens.issue(Principal(user_id="u1", role="customer", session_id=sid))
        result = tokens.verify(token)
        if result.ok:
            user_id = result.claims.user_id
    """

    def __init__(self, settings: Settings, clock: Callable[[], datetime] | None = None) -> None:
        self._secret = settings.jwt_secret
        self._issuer = settings.jwt_issuer
        self._audience = settings.jwt_audience
        self._default_ttl = settings.access_token_ttl_seconds
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Issue / verify
    # ------------------------------------------------------------------

    def issue(self, principal: Principal, ttl: int | timedelta | None = None) -> str:
        """Encode a signed token for principal, valid for ttl (default from settings).

        Raises ValueError for a ttl under one second -- that is a caller bug,
        not an expected runtime condition.
        """
        if ttl is None:
            seconds = self._default_ttl
        elif isinstance(ttl, timedelta):
            seconds = int(ttl.total_seconds())
        else:
            seconds = int(ttl)
        if seconds < 1:
            raise ValueError("token ttl must be at least 1 second")

        issued_at = int(self._clock().timestamp())
        payload = {
            "userId": principal.user_id,
            "role": principal.role,
            "sessionId": principal.session_id,
            "iss": self._issuer,
            "aud": self._audience,
            "iat": issued_at,
            "exp": issued_at + seconds,
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def verify(self, token: str) -> TokenVerification:
        """Check token and return its claims, or the first failing reason."""
        if not isinstance(token, str) or token.count(".") != 2:
            return TokenVerification(error=TokenError.MALFORMED)
        try:
            header = jwt.get_unverified_header(token)
            payload = jwt.get_unverified_claims(token)
        except JWTError:
            return TokenVerification(error=TokenError.MALFORMED)

        if header.get("alg") != _ALGORITHM:
            return TokenVerification(error=TokenError.MALFORMED)
        exp, iat = payload.get("exp"), payload.get("iat")
        if not _is_int(exp) or not _is_int(iat):
            return TokenVerification(error=TokenError.MALFORMED)

        if self._clock().timestamp() > exp:
            return TokenVerification(error=TokenError.EXPIRED)

        try:
            jws.verify(token, self._secret, algorithms=[_ALGORITHM])
        except JWSError:
            logger.info("Rejected access token with invalid signature")
            return TokenVerification(error=TokenError.INVALID_SIGNATURE)

        if payload.get("iss") != self._issuer or payload.get("aud") != self._audience:
            return TokenVerification(error=TokenError.WRONG_AUDIENCE)

        user_id, role, session_id = payload.get("userId"), payload.get("role"), payload.get("sessionId")
        if not all(isinstance(v, str) and v for v in (user_id, role, session_id)):
            return TokenVerification(error=TokenError.MALFORMED)

        claims = AccessTokenClaims(
            user_id=user_id,
            role=role,
            session_id=session_id,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            issuer=self._issuer,
            audience=self._audience,
        )
        return TokenVerification(claims=claims)

    # ------------------------------------------------------------------
    # Header parsing
    # ------------------------------------------------------------------

    @staticmethod
    def extract_from_header(header_value: str | None) -> str | None:
        """Return the token from "Bearer <token>", or None.

        The scheme is matched case-insensitively. A missing or malformed header
        is not an error here: the caller decides whether a credential was
        required.
        """
        if not header_value:
            return None
        parts = header_value.strip().split()
        if len(parts) != 2 or parts[0].lower() != _BEARER:
            return None
        return parts[1]

    # ------------------------------------------------------------------
    # Random secrets (used by SessionStore)
    # ------------------------------------------------------------------

    @staticmethod
    def new_session_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def generate_secret() -> str:
        """Return a new URL-safe random secret with 256 bits of entropy."""
        return secrets.token_urlsafe(32)

    def hash_secret(self, raw_secret: str) -> str:
        """Return HMAC-SHA256(JWT secret, raw_secret) as a hex string."""
        return hmac.new(
            self._secret.encode(),
            raw_secret.encode(),
            hashlib.sha256,
        ).hexdigest()
