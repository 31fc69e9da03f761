"""Tests for the operator script that seeds principals."""

from authcore.service.runtime import get_runtime
from authcore.storage.models import PrincipalStatus
from scripts.create_principal import create_principal, validate_password

PASSWORD = "Secure-Passw0rd!"


class TestValidatePassword:
    def test_accepts_three_classes(self):
        assert validate_password("lowercase-and-1") is True

    def test_rejects_short(self):
        assert validate_password("Sh0rt!") is False

    def test_rejects_two_classes(self):
        assert validate_password("onlylowercaseletters1") is False


class TestCreatePrincipal:
    def test_creates_principal_with_password(self):
        runtime = get_runtime()

        result = create_principal("ops@example.com", PASSWORD, PrincipalStatus.ACTIVE)

        assert result["status"] == "created"
        principal = runtime.store.get_principal_by_email("ops@example.com")
        assert principal.id == result["principal_id"]
        assert runtime.passwords.verify(principal.id, PASSWORD) is True

    def test_updates_existing_principal(self):
        runtime = get_runtime()
        first = create_principal("ops@example.com", PASSWORD, PrincipalStatus.ACTIVE)

        result = create_principal(
            "ops@example.com", "Another-Passw0rd!", PrincipalStatus.INACTIVE
        )

        assert result == {
            "principal_id": first["principal_id"],
            "email": "ops@example.com",
            "status": "updated",
        }
        principal = runtime.store.get_principal(first["principal_id"])
        assert principal.status == PrincipalStatus.INACTIVE
        assert runtime.passwords.verify(principal.id, "Another-Passw0rd!") is True
        assert runtime.passwords.verify(principal.id, PASSWORD) is False

    def test_dry_run_changes_nothing(self):
        result = create_principal(
            "ops@example.com", PASSWORD, PrincipalStatus.ACTIVE, dry_run=True
        )

        assert result["status"] == "dry_run"
        assert result["principal_id"] is None
        assert get_runtime().store.get_principal_by_email("ops@example.com") is None
