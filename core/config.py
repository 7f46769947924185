"""
core/config.py -- Resolved configuration snapshot for the identity core.

All environment variable reads for the identity core happen here. No component
calls os.getenv() -- the composer builds one Settings object at startup and
passes it to every constructor (PhoneNumberValidator, PasswordPolicyEngine,
TokenService, SessionStore).

Design patterns used:
  BaseSettings (pydantic-settings): Reads values from SMARTSHOP_* environment
      variables and an optional .env file. Nested models (password policy,
      numbering plan) are supplied as JSON in SMARTSHOP_PASSWORD_POLICY /
      SMARTSHOP_NUMBERING_PLAN, or left at their defaults.

  Frozen model: the snapshot is immutable after construction, so a component
      holding a reference can never observe it change mid-request.

  @model_validator(mode="after"): cross-field validation. A weak or missing
      JWT secret is a startup failure (ConfigError), never a silent fallback.

Layer rule: core/ is the kernel. This module may not import from auth/ or
phone/.
"""

from __future__ import annotations

import logging
import secrets
from enum import Enum
from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigError

logger = logging.getLogger("smartshop.config")

_MIN_SECRET_LENGTH = 32


# ---------------------------------------------------------------------------
# Nested policy models
# ---------------------------------------------------------------------------


class PasswordPolicy(BaseModel):
    """Thresholds and switches for PasswordPolicyEngine.

    Defaults mirror the platform's registration rules: 8-128 characters and
    at most 72 UTF-8 bytes (bcrypt's input limit), all four character
    classes, no "abc"/"111" runs, no personal information.
    """

    model_config = ConfigDict(frozen=True)

    min_length: int = Field(default=8, ge=1)
    max_length: int = Field(default=128, ge=1)
    require_lowercase: bool = True
    require_uppercase: bool = True
    require_digit: bool = True
    require_symbol: bool = True
    forbid_sequential: bool = True
    forbid_repeated: bool = True
    forbid_personal_info: bool = True
    # Names shorter than this are not matched. 1 matches any non-empty name.
    min_personal_info_length: int = Field(default=1, ge=1)
    # Lowercase substrings a password may not contain (regional dictionary words).
    forbidden_terms: tuple[str, ...] = ("bangladesh", "dhaka", "taka", "bdt")
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    @model_validator(mode="after")
    def _check_bounds(self) -> PasswordPolicy:
        if self.max_length < self.min_length:
            raise ValueError("password max_length must be >= min_length")
        return self


class AreaInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    area: str
    region: str = ""


class PhoneNumberingPlan(BaseModel):
    """National numbering plan consumed by PhoneNumberValidator.

    area_codes keys are the dialed national form (trunk zero included), which
    is why a landline's national number is 10 digits like a mobile's:
    "02" + 8 subscriber digits, "031" + 7 subscriber digits.

    operators maps the digit that follows the mobile trunk digit to the
    operator name ("7" -> Grameenphone for 017...).
    """

    model_config = ConfigDict(frozen=True)

    country_code: str = "880"
    national_length: int = 10
    mobile_trunk_digit: str = "1"
    operators: dict[str, str] = Field(
        default_factory=lambda: {
            "3": "Teletalk",
            "4": "Banglalink",
            "5": "Teletalk",
            "6": "Airtel",
            "7": "Grameenphone",
            "8": "Robi",
            "9": "Banglalink",
        }
    )
    area_codes: dict[str, AreaInfo] = Field(
        default_factory=lambda: {
            "02": AreaInfo(area="Dhaka", region="Central"),
            "031": AreaInfo(area="Chittagong", region="Southeast"),
            "041": AreaInfo(area="Khulna", region="Southwest"),
            "051": AreaInfo(area="Rajshahi", region="Northwest"),
            "061": AreaInfo(area="Sylhet", region="Northeast"),
            "071": AreaInfo(area="Barisal", region="South"),
            "081": AreaInfo(area="Rangpur", region="North"),
            "091": AreaInfo(area="Mymensingh", region="North-central"),
        }
    )

    @field_validator("area_codes")
    @classmethod
    def _check_area_codes(cls, value: dict[str, AreaInfo]) -> dict[str, AreaInfo]:
        for code in value:
            if not code.isdigit() or len(code) not in (2, 3):
                raise ValueError(f"area code {code!r} must be 2 or 3 digits")
        return value

    @field_validator("operators")
    @classmethod
    def _check_operators(cls, value: dict[str, str]) -> dict[str, str]:
        for digit in value:
            if len(digit) != 1 or not digit.isdigit():
                raise ValueError(f"operator key {digit!r} must be a single digit")
        return value


class DeviceIpPolicy(str, Enum):
    """How strictly a remember-me redemption must match the original IP."""

    strict = "strict"  # identical address
    subnet = "subnet"  # same IPv4 /16 or IPv6 /48
    ignore = "ignore"  # fingerprint only


# ---------------------------------------------------------------------------
# Settings snapshot
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Configuration snapshot loaded once from environment variables and .env.

    All fields have defaults so Settings(debug=True) can be instantiated in
    tests without a real environment. Field names map to SMARTSHOP_* env vars
    (jwt_secret -> SMARTSHOP_JWT_SECRET).
    """

    model_config = SettingsConfigDict(
        env_prefix="SMARTSHOP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the "not configured" sentinel. The validator below either
    # generates a dev secret or raises, so components never see "".
    jwt_secret: str = ""

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_issuer: str = "smart-ecommerce-api"
    jwt_audience: str = "smart-ecommerce-clients"
    access_token_ttl_seconds: int = 900
    remember_me_ttl_seconds: int = 30 * 24 * 60 * 60

    # ------------------------------------------------------------------
    # Session store
    # ------------------------------------------------------------------

    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 2.0
    redis_connect_timeout: float = 2.0
    remember_me_key_prefix: str = "remember_me"
    device_ip_policy: DeviceIpPolicy = DeviceIpPolicy.subnet

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    password_policy: PasswordPolicy = Field(default_factory=PasswordPolicy)
    numbering_plan: PhoneNumberingPlan = Field(default_factory=PhoneNumberingPlan)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="before")
    @classmethod
    def _fill_debug_secret(cls, data):
        """Generate a throwaway secret in debug mode when none is configured.

        Runs before field validation because the model is frozen. Production
        mode (debug unset or false) keeps the empty secret so the after-validator
        refuses to start.
        """
        if isinstance(data, dict) and not data.get("jwt_secret"):
            debug = str(data.get("debug", "")).lower() in ("1", "true", "yes", "on")
            if debug:
                data = {**data, "jwt_secret": secrets.token_hex(32)}
                logger.warning("Using auto-generated JWT secret. Tokens will not survive a restart.")
        return data

    @model_validator(mode="after")
    def _check_secrets_and_ttls(self) -> Settings:
        if not self.jwt_secret:
            raise ValueError(
                "SMARTSHOP_JWT_SECRET is required in production mode. "
                "To run in development mode, set SMARTSHOP_DEBUG=true."
            )
        if len(self.jwt_secret) < _MIN_SECRET_LENGTH:
            raise ValueError(f"SMARTSHOP_JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters.")
        if self.access_token_ttl_seconds < 1:
            raise ValueError("access_token_ttl_seconds must be at least 1")
        if self.remember_me_ttl_seconds <= self.access_token_ttl_seconds:
            raise ValueError("remember_me_ttl_seconds must exceed access_token_ttl_seconds")
        if self.redis_socket_timeout <= 0 or self.redis_connect_timeout <= 0:
            raise ValueError("redis timeouts must be positive")
        return self


def load_settings(**overrides) -> Settings:
    """Build a Settings snapshot, turning validation failures into ConfigError.

    Keyword overrides take precedence over environment variables, which is how
    tests and embedding applications supply explicit values.
    """
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        logger.error("Invalid identity core configuration: %s", exc)
        raise ConfigError(str(exc)) from exc


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings singleton.

    Only the composition root should call this. Components receive the
    snapshot through their constructor instead of reaching for it here.
    In tests: call get_settings.cache_clear() after changing the environment.
    """
    return load_settings()


def configure_logging(level: int = logging.INFO) -> None:
    """Apply the standard log format used by every smartshop entry point."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
