"""
core/errors.py -- Error taxonomy shared by every identity core component.

Expected failures (a weak password, an expired token, a consumed remember-me
token, Redis being down) are *returned* as reason codes inside typed results.
Each reason code belongs to exactly one ErrorKind so the coordinator can decide
what to do without string matching:

  VALIDATION         re-prompt the user; never retried automatically
  AUTH               force re-authentication; never retried silently
  STORE_UNAVAILABLE  transient; safe to retry with backoff. Must never be
                     conflated with AUTH or users get logged out during an outage
  CONFIG             fatal at startup

Only conditions the caller cannot handle locally are raised as exceptions:
ConfigError at startup and CorruptRecordError when a stored record cannot be
decoded.

Layer rule: no imports from anywhere else in the project.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTH = "auth"
    STORE_UNAVAILABLE = "store_unavailable"
    CONFIG = "config"


# ---------------------------------------------------------------------------
# Reason codes
# ---------------------------------------------------------------------------


class PhoneReason(str, Enum):
    NOT_A_NUMBER = "not_a_number"
    UNRECOGNIZED_AREA_CODE = "unrecognized_area_code"
    WRONG_LENGTH_FOR_AREA_CODE = "wrong_length_for_area_code"
    DISALLOWED_FOR_USE_CASE = "disallowed_for_use_case"

    @property
    def kind(self) -> ErrorKind:
        return ErrorKind.VALIDATION


class PasswordRule(str, Enum):
    TOO_SHORT = "too_short"
    TOO_LONG = "too_long"
    MISSING_LOWERCASE = "missing_lowercase"
    MISSING_UPPERCASE = "missing_uppercase"
    MISSING_DIGIT = "missing_digit"
    MISSING_SYMBOL = "missing_symbol"
    SEQUENTIAL_CHARACTERS = "sequential_characters"
    REPEATED_CHARACTERS = "repeated_characters"
    FORBIDDEN_TERM = "forbidden_term"
    PERSONAL_INFO = "personal_info"

    @property
    def kind(self) -> ErrorKind:
        return ErrorKind.VALIDATION


class TokenError(str, Enum):
    MALFORMED = "malformed"
    EXPIRED = "expired"
    INVALID_SIGNATURE = "invalid_signature"
    WRONG_AUDIENCE = "wrong_audience"

    @property
    def kind(self) -> ErrorKind:
        return ErrorKind.AUTH


class SessionError(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    DEVICE_MISMATCH = "device_mismatch"
    INVALID_CONTEXT = "invalid_context"
    STORE_UNAVAILABLE = "store_unavailable"

    @property
    def kind(self) -> ErrorKind:
        if self is SessionError.STORE_UNAVAILABLE:
            return ErrorKind.STORE_UNAVAILABLE
        if self is SessionError.INVALID_CONTEXT:
            return ErrorKind.VALIDATION
        return ErrorKind.AUTH


# ---------------------------------------------------------------------------
# Exceptions (unexpected conditions only)
# ---------------------------------------------------------------------------


class IdentityCoreError(Exception):
    """Base class for errors the identity core raises instead of returning."""


class ConfigError(IdentityCoreError):
    """Configuration snapshot is missing or invalid. The service must not start."""

    kind = ErrorKind.CONFIG


class CorruptRecordError(IdentityCoreError):
    """A stored remember-me record could not be decoded.

    Raised, never mapped to NOT_FOUND. The offending key is kept on .key.
    """

    def __init__(self, key: str, detail: str) -> None:
        self.key = key
        super().__init__(f"corrupt record at {key}: {detail}")
