"""
phone/validator.py -- Normalize, classify and vet national phone numbers.

Normalization accepts every way users type a number into the registration
form and reduces it to "+880" + ten national digits:

  +880 1712-345678     international
  00880 1712345678     international dialing prefix
  8801712345678        digits-only international
  01712345678          trunk "0" + ten digits (mobile local form)
  0212345678           landline local form (the "0" belongs to the area code)

Bengali numerals (০১৭১২...) are accepted and folded to ASCII digits.

Classification:
  MOBILE    first national digit is the mobile trunk digit ("1") and the next
            digit has an operator in the plan.
  LANDLINE  the national number starts with an area code from the plan. The
            2-digit reading is tried first, then the 3-digit one. A reading is
            only accepted when the subscriber part has the right length
            (10 - len(code)) and does not start with "0", so a 2-digit code
            that is also the prefix of a 3-digit code cannot swallow it.
  INVALID   anything else.

The validator is a pure function of its input and the numbering plan handed
to the constructor. It holds no mutable state and is safe to share.

Layer rule: no imports from auth/.
"""

from __future__ import annotations

import logging
import re

from core.config import PhoneNumberingPlan
from core.errors import PhoneReason
from phone.models import MOBILE_ONLY_USE_CASES, PhoneNumber, PhoneType, PhoneValidationOutcome, UseCase

logger = logging.getLogger("smartshop.phone")

# Whitespace and punctuation people type between digit groups. "+" is kept so
# the international form can be told apart from the local one.
_SEPARATORS = re.compile(r"[\s\-‐-―.,/\\()\[\]]")
# Bengali numerals are folded to ASCII; any other non-ASCII digit is rejected.
_BENGALI_DIGITS = str.maketrans("০১২৩৪৫৬৭৮৯", "0123456789")
_CLEANED = re.compile(r"\+?[0-9]+")
_DIGITS = re.compile(r"[0-9]+")


class PhoneNumberValidator:
    """Stateless phone number checks over a static numbering plan.

    Usage:
        validator = PhoneNumberValidator(settings.numbering_plan)
        outcome = validator.validate_for_use_case("01712-345678", UseCase.REGISTRATION)
        if outcome.ok:
            store_phone(outcome.phone.normalized)   # "+8801712345678"
    """

    def __init__(self, plan: PhoneNumberingPlan) -> None:
        self._plan = plan
        self._country_code = plan.country_code
        self._length = plan.national_length
        # Grouped by code length; looked up shortest first.
        self._areas_by_length: dict[int, dict[str, str]] = {}
        for code, info in plan.area_codes.items():
            self._areas_by_length.setdefault(len(code), {})[code] = info.area
        self._code_lengths = sorted(self._areas_by_length)

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize(self, raw: str) -> str | None:
        """Return "+<cc>" + ten national digits, or None if raw is not a number."""
        national = self._national_digits(raw)
        if national is None:
            return None
        return f"+{self._country_code}{national}"

    def _national_digits(self, raw: str) -> str | None:
        if not isinstance(raw, str):
            return None
        cleaned = _SEPARATORS.sub("", raw.strip()).translate(_BENGALI_DIGITS)
        if not _CLEANED.fullmatch(cleaned):
            return None

        cc = self._country_code
        if cleaned.startswith("+"):
            digits = cleaned[1:]
            if not digits.startswith(cc):
                return None
            national = digits[len(cc) :]
        elif cleaned.startswith("00" + cc):
            national = cleaned[2 + len(cc) :]
        elif cleaned.startswith(cc) and len(cleaned) == len(cc) + self._length:
            national = cleaned[len(cc) :]
        elif len(cleaned) == self._length + 1 and cleaned[0] == "0" and cleaned[1] != "0":
            # Trunk prefix in front of a full national number (01712345678).
            national = cleaned[1:]
        else:
            national = cleaned

        if len(national) != self._length:
            return None
        return national

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(self, normalized: str) -> PhoneType:
        """Classify an already-normalized number ("+8801712345678")."""
        prefix = f"+{self._country_code}"
        if not isinstance(normalized, str) or not normalized.startswith(prefix):
            return PhoneType.INVALID
        national = normalized[len(prefix) :]
        if len(national) != self._length or not _DIGITS.fullmatch(national):
            return PhoneType.INVALID
        return self._decompose(normalized, national, raw=normalized)[0].phone_type

    def parse(self, raw: str) -> PhoneNumber:
        """Normalize and classify raw input in one step."""
        return self._parse(raw)[0]

    def _parse(self, raw: str) -> tuple[PhoneNumber, PhoneReason | None]:
        national = self._national_digits(raw)
        if national is None:
            return PhoneNumber(raw=raw, normalized=None, national=None, phone_type=PhoneType.INVALID), (
                PhoneReason.NOT_A_NUMBER
            )
        return self._decompose(f"+{self._country_code}{national}", national, raw=raw)

    def _decompose(self, normalized: str, national: str, raw: str) -> tuple[PhoneNumber, PhoneReason | None]:
        operator = self._plan.operators.get(national[1])
        if national[0] == self._plan.mobile_trunk_digit and operator is not None:
            phone = PhoneNumber(
                raw=raw,
                normalized=normalized,
                national=national,
                phone_type=PhoneType.MOBILE,
                operator=operator,
            )
            return phone, None

        matched_code = False
        for length in self._code_lengths:
            code = national[:length]
            area = self._areas_by_length[length].get(code)
            if area is None:
                continue
            matched_code = True
            subscriber = national[length:]
            if len(subscriber) == self._length - length and subscriber[0] != "0":
                phone = PhoneNumber(
                    raw=raw,
                    normalized=normalized,
                    national=national,
                    phone_type=PhoneType.LANDLINE,
                    area_code=code,
                    subscriber=subscriber,
                    area=area,
                )
                return phone, None

        reason = PhoneReason.WRONG_LENGTH_FOR_AREA_CODE if matched_code else PhoneReason.UNRECOGNIZED_AREA_CODE
        invalid = PhoneNumber(raw=raw, normalized=normalized, national=national, phone_type=PhoneType.INVALID)
        return invalid, reason

    # ------------------------------------------------------------------
    # Use-case policy
    # ------------------------------------------------------------------

    def validate_for_use_case(self, raw: str, use_case: UseCase | str) -> PhoneValidationOutcome:
        """Parse raw and apply the acceptance rules of use_case.

        Registration, OTP and SMS need a number that can receive a text
        message, so landlines are rejected with DISALLOWED_FOR_USE_CASE.
        Raises ValueError for an unknown use case name (a caller bug).
        """
        use_case = UseCase(use_case)
        phone, reason = self._parse(raw)
        if reason is None and use_case in MOBILE_ONLY_USE_CASES and phone.phone_type is not PhoneType.MOBILE:
            reason = PhoneReason.DISALLOWED_FOR_USE_CASE
        if reason is not None:
            logger.debug("Phone rejected for %s: %s", use_case.value, reason.value)
        return PhoneValidationOutcome(use_case=use_case, phone=phone, reason=reason)

    # ------------------------------------------------------------------
    # Display helpers
    # ------------------------------------------------------------------

    def format_for_display(self, raw: str) -> str:
        """Group digits for display: "+880 171 234 5678", "+880 031 123 4567".

        Invalid input is returned unchanged so the caller can echo it back.
        """
        phone = self.parse(raw)
        if not phone.is_valid:
            return raw
        cc = f"+{self._country_code}"
        if phone.phone_type is PhoneType.MOBILE:
            n = phone.national
            return f"{cc} {n[:3]} {n[3:6]} {n[6:]}"
        sub = phone.subscriber
        return f"{cc} {phone.area_code} {sub[:-4]} {sub[-4:]}"

    def supported_operators(self) -> dict[str, str]:
        """Map dialed mobile prefix ("017") to operator name."""
        trunk = self._plan.mobile_trunk_digit
        return {f"0{trunk}{digit}": name for digit, name in sorted(self._plan.operators.items())}

    def supported_areas(self) -> dict[str, str]:
        """Map landline area code to area name."""
        return {code: info.area for code, info in sorted(self._plan.area_codes.items())}
