"""
phone/models.py -- Value objects produced by PhoneNumberValidator.

Pattern: frozen dataclasses. A PhoneNumber is built fresh on every validation
call and never persisted by the identity core, so immutability costs nothing
and lets results be shared across threads.

Layer rule: no imports from auth/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from core.errors import PhoneReason


class PhoneType(str, Enum):
    MOBILE = "mobile"
    LANDLINE = "landline"
    INVALID = "invalid"


class UseCase(str, Enum):
    """Why the caller is asking. Drives which phone types are acceptable."""

    REGISTRATION = "registration"  # verification code must be deliverable
    LOGIN = "login"
    OTP = "otp"
    SMS = "sms"
    VERIFICATION = "verification"


# Use cases whose follow-up step sends a text message. Landlines cannot
# receive one, so only MOBILE is acceptable.
MOBILE_ONLY_USE_CASES = frozenset({UseCase.REGISTRATION, UseCase.OTP, UseCase.SMS})

# reason -> (English, Bengali) message shown next to the phone field
REASON_MESSAGES: dict[PhoneReason, tuple[str, str]] = {
    PhoneReason.NOT_A_NUMBER: (
        "Invalid Bangladesh phone number format",
        "অবৈধ বাংলাদেশ ফোন নম্বর ফরম্যাট",
    ),
    PhoneReason.UNRECOGNIZED_AREA_CODE: (
        "Unrecognized mobile operator or area code",
        "অসমর্থিত মোবাইল অপারেটর বা এলাকা কোড",
    ),
    PhoneReason.WRONG_LENGTH_FOR_AREA_CODE: (
        "Invalid landline number format",
        "অবৈধ ল্যান্ডলাইন নম্বর ফরম্যাট",
    ),
    PhoneReason.DISALLOWED_FOR_USE_CASE: (
        "Only mobile numbers can receive SMS/OTP",
        "শুধুমাত্র মোবাইল নম্বর SMS/OTP পেতে পারে",
    ),
}


@dataclass(frozen=True)
class PhoneNumber:
    """A classified phone number.

    normalized is "+<country code>" followed by exactly ten national digits and
    national holds those ten digits. Both are None when the input did not
    normalize at all; a normalizable but unclassifiable number keeps them.
    area_code/subscriber/area are only set for LANDLINE, operator only for
    MOBILE.
    """

    raw: str
    normalized: str | None
    national: str | None
    phone_type: PhoneType
    area_code: str | None = None
    subscriber: str | None = None
    operator: str | None = None
    area: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.phone_type is not PhoneType.INVALID


@dataclass(frozen=True)
class PhoneValidationOutcome:
    """Result of validate_for_use_case(). reason is None exactly when ok."""

    use_case: UseCase
    phone: PhoneNumber
    reason: PhoneReason | None = None

    @property
    def ok(self) -> bool:
        return self.reason is None

    @property
    def phone_type(self) -> PhoneType:
        return self.phone.phone_type

    @property
    def can_receive_sms(self) -> bool:
        return self.phone.phone_type is PhoneType.MOBILE

    @property
    def message(self) -> str | None:
        return REASON_MESSAGES[self.reason][0] if self.reason is not None else None

    @property
    def message_bn(self) -> str | None:
        return REASON_MESSAGES[self.reason][1] if self.reason is not None else None
