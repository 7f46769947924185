"""
auth/passwords.py -- Password strength policy and password hashing.

PasswordPolicyEngine.validate_strength() check order:
  1. Length bounds, in characters and in UTF-8 bytes. A length violation
     returns immediately -- class checks on a 3-character password only add
     noise.
  2. Character classes. Every missing required class is reported together so
     the form can show all failing rules at once.
  3. Patterns: sequential runs ("abc", "987"), repeated runs ("aaa"),
     forbidden dictionary terms.
  4. Personal information: first name, last name, email local part, or any
     4-digit run of the phone number, matched case-insensitively. Reported
     even when everything else passes.

Every message is rendered in English and Bengali; the registration form picks
one by the user's locale.

Hashing: bcrypt directly (no passlib wrapper). bcrypt only accepts 72 bytes of
input (bcrypt 5 raises, older releases truncate), so validate_strength()
reports TOO_LONG for anything larger. That limit is reached well before
max_length for Bengali text, where most characters take 3 bytes.

Layer rule: no imports from phone/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import re
import secrets
import string

import bcrypt

from auth.models import PasswordValidationResult, PersonalInfo
from core.config import PasswordPolicy
from core.errors import PasswordRule

logger = logging.getLogger("smartshop.auth.passwords")

BCRYPT_MAX_BYTES = 72
_STRENGTH_LABELS = ("very_weak", "weak", "fair", "good", "strong")
_STRENGTH_LABELS_BN = {
    "very_weak": "অত্যন্ত দুর্বল",
    "weak": "দুর্বল",
    "fair": "মোটামুটি",
    "good": "ভালো",
    "strong": "শক্তিশালী",
}
_SYMBOLS = "!@#$%^&*()_+-=[]{};:,.<>?"
_PHONE_RUN = 4

# rule -> (English, Bengali) message templates
_MESSAGES: dict[PasswordRule, tuple[str, str]] = {
    PasswordRule.TOO_SHORT: (
        "Password must be at least {min_length} characters long",
        "পাসওয়ার্ড অবশ্যই কমপক্ষে {min_length} অক্ষরের হতে হবে",
    ),
    PasswordRule.TOO_LONG: (
        "Password must not exceed {max_length} characters",
        "পাসওয়ার্ড {max_length} অক্ষরের বেশি হতে পারে না",
    ),
    PasswordRule.MISSING_LOWERCASE: (
        "Password must contain at least one lowercase letter",
        "পাসওয়ার্ডে অবশ্যই একটি ছোট হাতের অক্ষর থাকতে হবে",
    ),
    PasswordRule.MISSING_UPPERCASE: (
        "Password must contain at least one uppercase letter",
        "পাসওয়ার্ডে অবশ্যই একটি বড় হাতের অক্ষর থাকতে হবে",
    ),
    PasswordRule.MISSING_DIGIT: (
        "Password must contain at least one number",
        "পাসওয়ার্ডে অবশ্যই একটি সংখ্যা থাকতে হবে",
    ),
    PasswordRule.MISSING_SYMBOL: (
        "Password must contain at least one special character",
        "পাসওয়ার্ডে অবশ্যই একটি বিশেষ অক্ষর থাকতে হবে",
    ),
    PasswordRule.SEQUENTIAL_CHARACTERS: (
        'Password cannot contain sequential characters (e.g. "123", "abc")',
        "পাসওয়ার্ডে ক্রমিক অক্ষর থাকতে পারে না",
    ),
    PasswordRule.REPEATED_CHARACTERS: (
        'Password cannot contain repeated characters (e.g. "aaa", "111")',
        "পাসওয়ার্ডে পুনরাবৃত্তি অক্ষর থাকতে পারে না",
    ),
    PasswordRule.FORBIDDEN_TERM: (
        'Password cannot contain common terms like "{term}"',
        'পাসওয়ার্ডে সাধারণ বাংলাদেশী শব্দ থাকতে পারে না ("{term}")',
    ),
    PasswordRule.PERSONAL_INFO: (
        "Password cannot contain your {leaks}",
        "পাসওয়ার্ডে আপনার {leaks} থাকতে পারে না",
    ),
}
_TOO_MANY_BYTES = (
    f"Password must not exceed {BCRYPT_MAX_BYTES} bytes (most non-Latin characters take 2-4 bytes)",
    f"পাসওয়ার্ড {BCRYPT_MAX_BYTES} বাইটের বেশি হতে পারে না",
)
_LEAK_LABELS = {
    "first name": "প্রথম নাম",
    "last name": "শেষ নাম",
    "email username": "ইমেল ব্যবহারকারী নাম",
    "phone number": "ফোন নম্বরের অংশ",
}


def _is_symbol(ch: str) -> bool:
    return not ch.isalnum() and not ch.isspace()


def _has_sequential(password: str, run: int = 3) -> bool:
    lowered = password.lower()
    for i in range(len(lowered) - run + 1):
        codes = [ord(c) for c in lowered[i : i + run]]
        steps = {b - a for a, b in zip(codes, codes[1:])}
        if steps == {1} or steps == {-1}:
            return True
    return False


def _has_repeated(password: str, run: int = 3) -> bool:
    return re.search(r"(.)\1{%d}" % (run - 1), password) is not None




class PasswordPolicyEngine:
    """Accept or reject candidate passwords against a PasswordPolicy.

    Usage:
        engine = PasswordPolicyEngine(settings.password_policy)
        result = engine.validate_strength(pw, PersonalInfo(email="rahim@example.com"))
        if not result.is_valid:
            return {"errors": list(result.feedback_bn if lang == "bn" else result.feedback)}
    """

    def __init__(self, policy: PasswordPolicy) -> None:
        self.policy = policy

    def validate_strength(self, password: str, personal_info: PersonalInfo | None = None) -> PasswordValidationResult:
        p = self.policy
        violations: list[PasswordRule] = []
        feedback: list[str] = []
        feedback_bn: list[str] = []

        def fail(rule: PasswordRule, messages: tuple[str, str] | None = None, **params) -> None:
            english, bengali = messages or _MESSAGES[rule]
            violations.append(rule)
            feedback.append(english.format(**params))
            feedback_bn.append(bengali.format(**params))

        def result() -> PasswordValidationResult:
            return self._result(password, violations, feedback, feedback_bn)

        if len(password) < p.min_length:
            fail(PasswordRule.TOO_SHORT, min_length=p.min_length)
            return result()
        if len(password) > p.max_length:
            fail(PasswordRule.TOO_LONG, max_length=p.max_length)
            return result()
        if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
            fail(PasswordRule.TOO_LONG, _TOO_MANY_BYTES)
            return result()

        if p.require_lowercase and not any(c.islower() for c in password):
            fail(PasswordRule.MISSING_LOWERCASE)
        if p.require_uppercase and not any(c.isupper() for c in password):
            fail(PasswordRule.MISSING_UPPERCASE)
        if p.require_digit and not any(c.isdigit() for c in password):
            fail(PasswordRule.MISSING_DIGIT)
        if p.require_symbol and not any(_is_symbol(c) for c in password):
            fail(PasswordRule.MISSING_SYMBOL)

        if p.forbid_sequential and _has_sequential(password):
            fail(PasswordRule.SEQUENTIAL_CHARACTERS)
        if p.forbid_repeated and _has_repeated(password):
            fail(PasswordRule.REPEATED_CHARACTERS)
        lowered = password.lower()
        for term in p.forbidden_terms:
            if term and term.lower() in lowered:
                fail(PasswordRule.FORBIDDEN_TERM, term=term)
                break

        if p.forbid_personal_info and personal_info is not None:
            leaks = self._personal_info_leaks(lowered, personal_info)
            if leaks:
                english, bengali = _MESSAGES[PasswordRule.PERSONAL_INFO]
                fail(
                    PasswordRule.PERSONAL_INFO,
                    (
                        english.format(leaks=", ".join(leaks)),
                        bengali.format(leaks=", ".join(_LEAK_LABELS[label] for label in leaks)),
                    ),
                )

        return result()

    def _personal_info_leaks(self, lowered: str, info: PersonalInfo) -> list[str]:
        leaks = []
        min_name = self.policy.min_personal_info_length
        for label, value in (("first name", info.first_name), ("last name", info.last_name)):
            name = (value or "").strip().lower()
            if name and len(name) >= min_name and name in lowered:
                leaks.append(label)
        if info.email:
            local = info.email.split("@", 1)[0].strip().lower()
            if local and local in lowered:
                leaks.append("email username")
        if info.phone:
            digits = re.sub(r"\D", "", info.phone)
            runs = {digits[i : i + _PHONE_RUN] for i in range(len(digits) - _PHONE_RUN + 1)}
            if any(run in lowered for run in runs):
                leaks.append("phone number")
        return leaks

    def _result(
        self,
        password: str,
        violations: list[PasswordRule],
        feedback: list[str],
        feedback_bn: list[str],
    ) -> PasswordValidationResult:
        score = sum(
            (
                any(c.islower() for c in password),
                any(c.isupper() for c in password),
                any(c.isdigit() for c in password),
                any(_is_symbol(c) for c in password),
            )
        )
        if len(password) >= 12:
            score += 1
        score = min(score, 4)
        if violations:
            score = min(score, 1)
        strength = _STRENGTH_LABELS[score]
        return PasswordValidationResult(
            violations=tuple(violations),
            feedback=tuple(feedback),
            strength=strength,
            feedback_bn=tuple(feedback_bn),
            strength_bn=_STRENGTH_LABELS_BN[strength],
        )

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def hash_password(self, plain: str) -> str:
        """Return a bcrypt hash of plain using the policy's cost factor.

        Raises ValueError above 72 UTF-8 bytes. validate_strength() rejects
        such passwords first, so reaching this is a caller bug.
        """
        encoded = plain.encode("utf-8")
        if len(encoded) > BCRYPT_MAX_BYTES:
            raise ValueError(f"password exceeds bcrypt's {BCRYPT_MAX_BYTES}-byte limit")
        salt = bcrypt.gensalt(rounds=self.policy.bcrypt_rounds)
        return bcrypt.hashpw(encoded, salt).decode("utf-8")

    @staticmethod
    def verify_password(plain: str, hashed: str) -> bool:
        """Return True if plain matches the bcrypt hash. A malformed hash is a mismatch."""
        encoded = plain.encode("utf-8")
        if len(encoded) > BCRYPT_MAX_BYTES:
            # hash_password never accepted it, so it cannot match.
            return False
        try:
            return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
        except ValueError:
            logger.warning("Stored password hash is not a valid bcrypt hash")
            return False

    # ------------------------------------------------------------------
    # Temporary passwords
    # ------------------------------------------------------------------

    def generate_password(self, length: int = 16) -> str:
        """Return a random password that passes validate_strength().

        Used for admin-initiated resets. Retries until the random draw
        avoids sequential and repeated runs, which takes a handful of
        attempts at most for sane lengths.
        """
        length = max(length, self.policy.min_length, 4)
        if length > min(self.policy.max_length, BCRYPT_MAX_BYTES):
            raise ValueError("requested length exceeds the policy or bcrypt limit")
        pools = (string.ascii_lowercase, string.ascii_uppercase, string.digits, _SYMBOLS)
        alphabet = "".join(pools)
        rng = secrets.SystemRandom()
        while True:
            chars = [secrets.choice(pool) for pool in pools]
            chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]
            rng.shuffle(chars)
            candidate = "".join(chars)
            if self.validate_strength(candidate).is_valid:
                return candidate
