"""
Password complexity policy and temporary password generation.

Policy: 12-24 characters, at least one uppercase letter, one lowercase
letter, one digit and one special character, no leading or trailing
whitespace. Applied whenever a password is created, reset or changed.
"""
import re
import secrets

MIN_LENGTH = 12
MAX_LENGTH = 24
TEMPORARY_PASSWORD_LENGTH = 16
GENERATION_ATTEMPTS = 5

SPECIAL_CHARACTERS = "!@#$%^&*()_+-={}[]:;\"'`~<>,.?/\\|"

_UPPER_RE = re.compile(r"[A-Z]")
_LOWER_RE = re.compile(r"[a-z]")
_DIGIT_RE = re.compile(r"[0-9]")
_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")

# Avoid characters that are easy to misread in an email
_TEMP_ALPHABET_UPPER = "ABCDEFGHJKLMNPQRSTUVWXYZ"
_TEMP_ALPHABET_LOWER = "abcdefghijkmnpqrstuvwxyz"
_TEMP_ALPHABET_DIGITS = "23456789"
_TEMP_ALPHABET_SPECIAL = "!@#$%^&*-_=+?"


class PasswordPolicyError(RuntimeError):
    """Raised when no compliant temporary password could be produced."""


def validate_password_complexity(password: str) -> tuple[bool, list[str]]:
    """
    Check a password against the complexity policy.

    Returns:
        (ok, errors) where errors lists every failed rule in a form suitable
        for showing next to the password field.
    """
    errors: list[str] = []
    if len(password) < MIN_LENGTH or len(password) > MAX_LENGTH:
        errors.append(f"Password must be between {MIN_LENGTH} and {MAX_LENGTH} characters long")
    if password.strip() != password:
        errors.append("Password cannot start or end with whitespace")
    if not _UPPER_RE.search(password):
        errors.append("Password must include at least one uppercase letter")
    if not _LOWER_RE.search(password):
        errors.append("Password must include at least one lowercase letter")
    if not _DIGIT_RE.search(password):
        errors.append("Password must include at least one digit")
    if not _SPECIAL_RE.search(password):
        errors.append("Password must include at least one special character")
    return (not errors, errors)


def generate_temporary_password(length: int = TEMPORARY_PASSWORD_LENGTH) -> str:
    """Random password containing at least one character of every required class."""
    required = [
        secrets.choice(_TEMP_ALPHABET_UPPER),
        secrets.choice(_TEMP_ALPHABET_LOWER),
        secrets.choice(_TEMP_ALPHABET_DIGITS),
        secrets.choice(_TEMP_ALPHABET_SPECIAL),
    ]
    pool = _TEMP_ALPHABET_UPPER + _TEMP_ALPHABET_LOWER + _TEMP_ALPHABET_DIGITS + _TEMP_ALPHABET_SPECIAL
    rest = [secrets.choice(pool) for _ in range(length - len(required))]
    chars = required + rest
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def generate_compliant_password(generator=generate_temporary_password, attempts: int = GENERATION_ATTEMPTS) -> str:
    """
    Generate a temporary password that passes the complexity policy.

    Tries ``attempts`` times and raises PasswordPolicyError instead of
    handing out a password that fails the policy.
    """
    for _ in range(attempts):
        candidate = generator()
        ok, _errors = validate_password_complexity(candidate)
        if ok:
            return candidate
    raise PasswordPolicyError(f"No compliant password after {attempts} attempts")
