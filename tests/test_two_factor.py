"""Tests for TOTP helpers, staged enrollment and backup codes."""

import re
import threading

import pytest

from authcore.service.two_factor import (
    BACKUP_CODE_LENGTH,
    TwoFactorAuth,
    generate_backup_codes,
    generate_secret,
    generate_totp,
    provisioning_uri,
    verify_totp,
)
from authcore.storage.common import SecretCipher
from authcore.storage.models import TwoFactorState

# RFC 6238 appendix B seed "12345678901234567890" in base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


@pytest.fixture
def principal(store, clock):
    return store.create_principal("totp@example.com", now=clock.now())


@pytest.fixture
def two_factor(store, clock):
    return TwoFactorAuth(store, issuer="AuthCore", backup_code_count=10, clock=clock)


def _enable(two_factor, principal, clock):
    enrollment = two_factor.begin_enrollment(principal.id, principal.email)
    code = generate_totp(enrollment.secret, clock.now().timestamp())
    assert two_factor.confirm_enrollment(principal.id, enrollment.secret, code) is True
    return enrollment


class TestTotp:
    @pytest.mark.parametrize(
        "timestamp,expected",
        [
            (59, "287082"),
            (1111111109, "081804"),
            (1234567890, "005924"),
            (2000000000, "279037"),
        ],
    )
    def test_rfc6238_vectors(self, timestamp, expected):
        assert generate_totp(RFC_SECRET, timestamp) == expected

    def test_accepts_adjacent_steps(self):
        now = 1_700_000_000
        for offset in (-30, 0, 30):
            code = generate_totp(RFC_SECRET, now + offset)
            assert verify_totp(RFC_SECRET, code, now) is True

    def test_rejects_steps_outside_window(self):
        now = 1_700_000_010
        assert verify_totp(RFC_SECRET, generate_totp(RFC_SECRET, now + 90), now) is False
        assert verify_totp(RFC_SECRET, generate_totp(RFC_SECRET, now - 90), now) is False

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", "12 34 5"])
    def test_rejects_malformed_codes(self, code):
        assert verify_totp(RFC_SECRET, code, 59) is False

    # Arabic-Indic and fullwidth digits
    @pytest.mark.parametrize(
        "code", ["\u0661\u0662\u0663\u0664\u0665\u0666", "\uff12\uff18\uff17\uff10\uff18\uff12"]
    )
    def test_rejects_non_ascii_digits(self, code):
        assert verify_totp(RFC_SECRET, code, 59) is False

    def test_invalid_secret_yields_no_code(self):
        assert generate_totp("!!not-base32!!", 59) == ""
        assert verify_totp("!!not-base32!!", "000000", 59) is False

    def test_generated_secret_is_base32(self):
        secret = generate_secret()
        assert re.fullmatch(r"[A-Z2-7]+", secret)
        assert len(secret) == 32


class TestBackupCodeGeneration:
    def test_codes_are_distinct_and_well_formed(self):
        codes = generate_backup_codes(10)
        assert len(codes) == len(set(codes)) == 10
        for code in codes:
            assert len(code) == BACKUP_CODE_LENGTH
            assert re.fullmatch(r"[0-9A-Z]+", code)


class TestProvisioningUri:
    def test_uri_shape(self):
        uri = provisioning_uri("ABCDEF", "alice@example.com", "AuthCore")
        assert uri.startswith("otpauth://totp/AuthCore:alice@example.com?")
        assert "secret=ABCDEF" in uri
        assert "issuer=AuthCore" in uri

    def test_label_and_issuer_are_escaped(self):
        uri = provisioning_uri("ABCDEF", "bob smith", "Acme Corp")
        assert "Acme%20Corp:bob%20smith" in uri
        assert "issuer=Acme%20Corp" in uri

    def test_colons_inside_parts_are_escaped(self):
        uri = provisioning_uri("ABCDEF", "ops:team", "Acme:Corp")
        assert uri.startswith("otpauth://totp/Acme%3ACorp:ops%3Ateam?")


class TestEnrollment:
    def test_not_enabled_until_confirmed(self, two_factor, principal, clock):
        enrollment = two_factor.begin_enrollment(principal.id, principal.email)

        assert two_factor.is_enabled(principal.id) is False
        code = generate_totp(enrollment.secret, clock.now().timestamp())
        assert two_factor.verify(principal.id, code) is False
        assert two_factor.verify(principal.id, enrollment.backup_codes[0], True) is False

    def test_enrollment_payload(self, two_factor, principal):
        enrollment = two_factor.begin_enrollment(principal.id, principal.email)
        assert len(enrollment.backup_codes) == 10
        assert enrollment.secret in enrollment.provisioning_uri
        assert "totp@example.com" in enrollment.provisioning_uri

    def test_confirm_with_valid_code_enables(self, two_factor, principal, store, clock):
        _enable(two_factor, principal, clock)

        assert two_factor.is_enabled(principal.id) is True
        assert store.get_two_factor(principal.id).state == TwoFactorState.ENABLED

    def test_confirm_with_wrong_code(self, two_factor, principal, clock):
        enrollment = two_factor.begin_enrollment(principal.id)
        good = generate_totp(enrollment.secret, clock.now().timestamp())
        bad = "000000" if good != "000000" else "111111"

        assert two_factor.confirm_enrollment(principal.id, enrollment.secret, bad) is False
        assert two_factor.is_enabled(principal.id) is False

    def test_confirm_with_other_secret(self, two_factor, principal, clock):
        two_factor.begin_enrollment(principal.id)
        other = generate_secret()
        code = generate_totp(other, clock.now().timestamp())

        assert two_factor.confirm_enrollment(principal.id, other, code) is False

    def test_confirm_without_enrollment(self, two_factor, principal):
        assert two_factor.confirm_enrollment(principal.id, generate_secret(), "123456") is False

    def test_confirm_with_non_ascii_input(self, two_factor, principal, clock):
        enrollment = two_factor.begin_enrollment(principal.id)
        code = generate_totp(enrollment.secret, clock.now().timestamp())

        assert two_factor.confirm_enrollment(principal.id, "\u00e9" * 32, code) is False
        assert two_factor.confirm_enrollment(
            principal.id, enrollment.secret, "\u0661\u0662\u0663\u0664\u0665\u0666"
        ) is False
        assert two_factor.is_enabled(principal.id) is False

    def test_reenrollment_keeps_active_secret_until_confirmed(
        self, two_factor, principal, clock
    ):
        first = _enable(two_factor, principal, clock)
        two_factor.begin_enrollment(principal.id)

        code = generate_totp(first.secret, clock.now().timestamp())
        assert two_factor.verify(principal.id, code) is True
        assert two_factor.verify(principal.id, first.backup_codes[0], True) is True


class TestVerify:
    def test_totp_verifies(self, two_factor, principal, clock):
        enrollment = _enable(two_factor, principal, clock)
        clock.advance(30)
        code = generate_totp(enrollment.secret, clock.now().timestamp())
        assert two_factor.verify(principal.id, code) is True

    def test_backup_code_is_single_use(self, two_factor, principal, clock):
        enrollment = _enable(two_factor, principal, clock)
        code = enrollment.backup_codes[3]

        assert two_factor.verify(principal.id, code, is_backup_code=True) is True
        assert two_factor.verify(principal.id, code, is_backup_code=True) is False
        # The remaining codes are untouched
        assert two_factor.verify(principal.id, enrollment.backup_codes[4], True) is True

    def test_backup_code_input_is_normalized(self, two_factor, principal, clock):
        enrollment = _enable(two_factor, principal, clock)
        code = enrollment.backup_codes[0]
        messy = f" {code[:4].lower()}-{code[4:].lower()} "
        assert two_factor.verify(principal.id, messy, is_backup_code=True) is True

    def test_backup_code_is_not_a_totp(self, two_factor, principal, clock):
        enrollment = _enable(two_factor, principal, clock)
        assert two_factor.verify(principal.id, enrollment.backup_codes[0]) is False

    def test_totp_is_not_a_backup_code(self, two_factor, principal, clock):
        enrollment = _enable(two_factor, principal, clock)
        code = generate_totp(enrollment.secret, clock.now().timestamp())
        assert two_factor.verify(principal.id, code, is_backup_code=True) is False

    def test_empty_code_rejected(self, two_factor, principal, clock):
        _enable(two_factor, principal, clock)
        assert two_factor.verify(principal.id, "") is False

    def test_non_ascii_digits_rejected(self, two_factor, principal, clock):
        _enable(two_factor, principal, clock)
        assert two_factor.verify(principal.id, "\u0661\u0662\u0663\u0664\u0665\u0666") is False

    def test_undecryptable_secret_stays_enabled(self, two_factor, principal, store, clock):
        enrollment = _enable(two_factor, principal, clock)
        store._cipher = SecretCipher("rotated-key")

        code = generate_totp(enrollment.secret, clock.now().timestamp())
        assert store.get_two_factor(principal.id).secret is None
        assert two_factor.is_enabled(principal.id) is True
        assert two_factor.verify(principal.id, code) is False
        assert two_factor.verify(principal.id, enrollment.backup_codes[0], True) is True

    def test_unknown_principal(self, two_factor):
        assert two_factor.verify("nobody", "123456") is False
        assert two_factor.is_enabled("nobody") is False

    def test_concurrent_backup_code_use_succeeds_once(self, two_factor, principal, clock):
        enrollment = _enable(two_factor, principal, clock)
        code = enrollment.backup_codes[0]
        barrier = threading.Barrier(10)
        results = []

        def attempt() -> None:
            barrier.wait()
            results.append(two_factor.verify(principal.id, code, is_backup_code=True))

        threads = [threading.Thread(target=attempt) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1


class TestDisable:
    def test_disable_rejects_all_codes(self, two_factor, principal, store, clock):
        enrollment = _enable(two_factor, principal, clock)

        two_factor.disable(principal.id)

        code = generate_totp(enrollment.secret, clock.now().timestamp())
        assert two_factor.is_enabled(principal.id) is False
        assert two_factor.verify(principal.id, code) is False
        assert two_factor.verify(principal.id, enrollment.backup_codes[0], True) is False
        assert store.get_two_factor(principal.id).state == TwoFactorState.DISABLED

    def test_disable_is_idempotent(self, two_factor, principal, store, clock):
        _enable(two_factor, principal, clock)
        two_factor.disable(principal.id)
        first = store.get_two_factor(principal.id)
        clock.advance(60)

        two_factor.disable(principal.id)

        assert store.get_two_factor(principal.id) == first

    def test_disable_without_profile(self, two_factor, principal, store):
        two_factor.disable(principal.id)
        assert store.get_two_factor(principal.id) is None
