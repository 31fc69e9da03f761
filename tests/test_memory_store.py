"""Tests for the in-process store and its on-disk snapshot."""

import json
import threading
from datetime import timedelta

import pytest

from authcore.storage.common import hash_backup_code
from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import PrincipalStatus, Session, TwoFactorProfile


@pytest.fixture
def persistent(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), secret_key="disk-key")


class TestPrincipals:
    def test_email_is_normalized(self, store, clock):
        principal = store.create_principal("  Mixed.Case@Example.COM ", now=clock.now())
        assert principal.email == "mixed.case@example.com"
        assert store.get_principal_by_email("MIXED.case@example.com") == principal

    def test_duplicate_email_rejected(self, store, clock):
        store.create_principal("dup@example.com", now=clock.now())
        with pytest.raises(ConstraintViolation):
            store.create_principal("DUP@example.com", now=clock.now())

    def test_set_status(self, store, clock):
        principal = store.create_principal("s@example.com", now=clock.now())
        updated = store.set_principal_status(principal.id, PrincipalStatus.BANNED)
        assert updated.status == PrincipalStatus.BANNED
        assert store.set_principal_status("missing", PrincipalStatus.BANNED) is None

    def test_password_requires_principal(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash", "argon2id")


class TestAtomicCounters:
    def test_concurrent_increments(self, store, clock):
        store.create_principal("race@example.com", now=clock.now())
        lock_until = clock.now() + timedelta(minutes=30)
        barrier = threading.Barrier(50)

        def fail() -> None:
            barrier.wait()
            store.increment_failed_attempts(
                "race@example.com", threshold=5, lock_until=lock_until, now=clock.now()
            )

        threads = [threading.Thread(target=fail) for _ in range(50)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        state = store.get_principal_by_email("race@example.com").lockout
        assert state.failed_attempts == 50
        assert state.locked_until == lock_until

    def test_increment_unknown_identifier(self, store, clock):
        assert store.increment_failed_attempts(
            "ghost@example.com", threshold=5, lock_until=clock.now(), now=clock.now()
        ) is None
        assert store.reset_failed_attempts("ghost@example.com") is False


class TestSessions:
    def test_list_active_requires_now(self, store, clock):
        principal = store.create_principal("l@example.com", now=clock.now())
        with pytest.raises(ValueError):
            store.list_sessions(principal.id, active_only=True)

    def test_deactivate_is_idempotent(self, store, clock):
        principal = store.create_principal("d@example.com", now=clock.now())
        session = store.save_session(
            Session.new(principal.id, now=clock.now(), ttl=timedelta(hours=1))
        )
        assert store.deactivate_session(session.id) is True
        assert store.deactivate_session(session.id) is True
        assert store.get_session(session.id).active is False


class TestBackupCodes:
    def _enabled_profile(self, store, clock, codes):
        principal = store.create_principal("b@example.com", now=clock.now())
        profile = TwoFactorProfile(
            principal_id=principal.id,
            secret="JBSWY3DPEHPK3PXP",
            backup_codes=frozenset(hash_backup_code(c) for c in codes),
            enabled=True,
            updated_at=clock.now(),
        )
        store.save_two_factor(profile)
        return principal

    def test_consume_once(self, store, clock):
        principal = self._enabled_profile(store, clock, ["AAAA1111", "BBBB2222"])
        digest = hash_backup_code("AAAA1111")

        assert store.consume_backup_code(principal.id, digest) is True
        assert store.consume_backup_code(principal.id, digest) is False
        remaining = store.get_two_factor(principal.id).backup_codes
        assert remaining == frozenset({hash_backup_code("BBBB2222")})

    def test_concurrent_consume_succeeds_once(self, store, clock):
        principal = self._enabled_profile(store, clock, ["AAAA1111"])
        digest = hash_backup_code("AAAA1111")
        barrier = threading.Barrier(20)
        results = []

        def consume() -> None:
            barrier.wait()
            results.append(store.consume_backup_code(principal.id, digest))

        threads = [threading.Thread(target=consume) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1

    def test_disabled_profile_consumes_nothing(self, store, clock):
        principal = store.create_principal("x@example.com", now=clock.now())
        store.save_two_factor(
            TwoFactorProfile(
                principal_id=principal.id,
                backup_codes=frozenset({hash_backup_code("AAAA1111")}),
                enabled=False,
            )
        )
        assert store.consume_backup_code(principal.id, hash_backup_code("AAAA1111")) is False


class TestPersistence:
    def test_state_survives_restart(self, persistent, tmp_path, clock):
        principal = persistent.create_principal("p@example.com", now=clock.now())
        persistent.save_password(principal.id, "argon-hash", "argon2id")
        session = persistent.save_session(
            Session.new(principal.id, now=clock.now(), ttl=timedelta(hours=24), user_agent="curl")
        )
        persistent.increment_failed_attempts(
            "p@example.com", threshold=5, lock_until=clock.now(), now=clock.now()
        )
        persistent.save_two_factor(
            TwoFactorProfile(principal_id=principal.id, secret="JBSWY3DPEHPK3PXP", enabled=True)
        )

        reloaded = MemoryStore(fs_root=str(tmp_path), secret_key="disk-key")

        assert reloaded.get_principal(principal.id).email == "p@example.com"
        assert reloaded.get_principal(principal.id).lockout.failed_attempts == 1
        assert reloaded.get_password_record(principal.id).password_hash == "argon-hash"
        assert reloaded.get_session(session.id) == session
        assert reloaded.get_two_factor(principal.id).secret == "JBSWY3DPEHPK3PXP"

    def test_totp_secret_encrypted_on_disk(self, persistent, tmp_path, clock):
        principal = persistent.create_principal("enc@example.com", now=clock.now())
        persistent.save_two_factor(
            TwoFactorProfile(
                principal_id=principal.id,
                pending_secret="JBSWY3DPEHPK3PXP",
                updated_at=clock.now(),
            )
        )

        raw = (tmp_path / "state" / "auth_store.json").read_text()
        assert "JBSWY3DPEHPK3PXP" not in raw
        stored = json.loads(raw)["two_factor"][0]
        assert stored["pending_secret"]
        assert persistent.get_two_factor(principal.id).pending_secret == "JBSWY3DPEHPK3PXP"

    def test_wrong_key_cannot_read_secret(self, persistent, tmp_path, clock):
        principal = persistent.create_principal("k@example.com", now=clock.now())
        persistent.save_two_factor(
            TwoFactorProfile(principal_id=principal.id, secret="JBSWY3DPEHPK3PXP", enabled=True)
        )

        other = MemoryStore(fs_root=str(tmp_path), secret_key="another-key")

        assert other.get_two_factor(principal.id).secret is None

    def test_non_persistent_store_writes_nothing(self, tmp_path, clock):
        store = MemoryStore(fs_root=str(tmp_path), secret_key="k", persist=False)
        store.create_principal("n@example.com", now=clock.now())
        assert not (tmp_path / "state").exists()
