import pytest

from provider_admin.features.users.auth import hash_password, verify_password
from provider_admin.features.users.passwords import (
    MAX_LENGTH,
    MIN_LENGTH,
    TEMPORARY_PASSWORD_LENGTH,
    PasswordPolicyError,
    generate_compliant_password,
    generate_temporary_password,
    validate_password_complexity,
)


def test_compliant_password_passes():
    ok, errors = validate_password_complexity("Abcdefgh1234!")
    assert ok
    assert errors == []


@pytest.mark.parametrize(
    "password, fragment",
    [
        ("Ab1!", "between"),
        ("Ab1!" + "x" * (MAX_LENGTH), "between"),
        ("abcdefgh1234!", "uppercase"),
        ("ABCDEFGH1234!", "lowercase"),
        ("Abcdefghijkl!", "digit"),
        ("Abcdefgh12345", "special"),
        (" Abcdefgh1234!", "whitespace"),
        ("Abcdefgh1234! ", "whitespace"),
    ],
)
def test_each_rule_reports_its_own_error(password, fragment):
    ok, errors = validate_password_complexity(password)
    assert not ok
    assert any(fragment in e for e in errors)


def test_length_bounds_are_inclusive():
    assert validate_password_complexity("Aa1!" + "x" * (MIN_LENGTH - 4))[0]
    assert validate_password_complexity("Aa1!" + "x" * (MAX_LENGTH - 4))[0]


def test_generated_passwords_always_comply():
    for _ in range(200):
        candidate = generate_temporary_password()
        assert len(candidate) == TEMPORARY_PASSWORD_LENGTH
        assert validate_password_complexity(candidate)[0], candidate


def test_compliant_generation_retries_then_gives_up():
    attempts = []

    def weak():
        attempts.append(1)
        return "weak"

    with pytest.raises(PasswordPolicyError):
        generate_compliant_password(weak, attempts=3)
    assert len(attempts) == 3


def test_compliant_generation_skips_bad_candidates():
    candidates = iter(["weak", "Abcdefgh1234!"])
    assert generate_compliant_password(lambda: next(candidates)) == "Abcdefgh1234!"


def test_bcrypt_round_trip():
    stored = hash_password("Abcdefgh1234!")
    assert verify_password("Abcdefgh1234!", stored)
    assert not verify_password("Abcdefgh1234?", stored)
    assert not verify_password("anything", "not-a-bcrypt-hash")
