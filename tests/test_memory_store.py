import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from quickauth.service.lockout import LockoutPolicy
from quickauth.storage.errors import ConstraintViolation
from quickauth.storage.memory import MemoryStore
from quickauth.storage.models import (
    Account,
    Address,
    CustomerProfile,
    PendingSecret,
    Role,
    SecretKind,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _account(email="alice@x.com", phone=None, **kwargs) -> Account:
    return Account(
        id=str(uuid.uuid4()),
        email=email,
        first_name="Alice",
        last_name="Smith",
        role=Role.CUSTOMER,
        phone=phone,
        profile=CustomerProfile(),
        password_hash="$argon2id$stub",
        **kwargs,
    )


class TestUniqueness:
    def test_duplicate_email_any_case(self, store):
        store.insert_account(_account("alice@x.com"))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.insert_account(_account("ALICE@X.COM"))
        assert excinfo.value.detail == {"field": "email"}

    def test_duplicate_phone(self, store):
        store.insert_account(_account("a@x.com", phone="+919876543210"))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.insert_account(_account("b@x.com", phone="+919876543210"))
        assert excinfo.value.detail == {"field": "phone"}

    def test_concurrent_inserts_yield_one_account(self, store):
        outcomes = []

        def attempt():
            try:
                store.insert_account(_account("race@x.com"))
                outcomes.append("ok")
            except ConstraintViolation:
                outcomes.append("conflict")

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert outcomes.count("ok") == 1
        assert outcomes.count("conflict") == 7


class TestReads:
    def test_password_hash_hidden_unless_requested(self, store):
        created = store.insert_account(_account())
        assert created.password_hash is None
        assert store.get_account(created.id).password_hash is None
        assert store.get_account(created.id, with_password=True).password_hash == "$argon2id$stub"

    def test_reads_are_copies(self, store):
        created = store.insert_account(_account())
        loaded = store.get_account(created.id)
        loaded.first_name = "Mallory"
        assert store.get_account(created.id).first_name == "Alice"

    def test_inactive_accounts_hidden_from_email_lookup(self, store):
        created = store.insert_account(_account(is_active=False))
        assert store.find_account_by_email("alice@x.com") is None
        found = store.find_account_by_email("Alice@X.com", include_inactive=True)
        assert found.id == created.id


class TestUpdates:
    def test_update_keeps_hash_when_not_given(self, store):
        created = store.insert_account(_account())
        created.first_name = "Alicia"
        store.update_account(created)
        loaded = store.get_account(created.id, with_password=True)
        assert loaded.first_name == "Alicia"
        assert loaded.password_hash == "$argon2id$stub"

    def test_update_does_not_clobber_lockout_or_secrets(self, store):
        created = store.insert_account(_account())
        store.record_login_failure(created.id, LockoutPolicy(), NOW)
        store.set_secret(
            created.id, SecretKind.PHONE_OTP, PendingSecret("d", NOW + timedelta(minutes=5))
        )
        created.last_name = "Jones"
        store.update_account(created)
        loaded = store.get_account(created.id)
        assert loaded.lockout.attempts == 1
        assert SecretKind.PHONE_OTP in loaded.pending_secrets

    def test_update_missing_account(self, store):
        with pytest.raises(KeyError):
            store.update_account(_account())


class TestLockoutCounters:
    def test_failures_accumulate_and_reset(self, store):
        created = store.insert_account(_account())
        policy = LockoutPolicy()
        for _ in range(5):
            state = store.record_login_failure(created.id, policy, NOW)
        assert state.attempts == 5
        assert state.locked_until == NOW + timedelta(hours=2)
        store.reset_lockout(created.id)
        loaded = store.get_account(created.id)
        assert loaded.lockout.attempts == 0
        assert loaded.lockout.locked_until is None

    def test_concurrent_failures_are_counted_once_each(self, store):
        created = store.insert_account(_account())
        policy = LockoutPolicy()
        barrier = threading.Barrier(20)
        states = []
        states_lock = threading.Lock()

        def fail():
            barrier.wait()
            state = store.record_login_failure(created.id, policy, NOW)
            with states_lock:
                states.append(state)

        threads = [threading.Thread(target=fail) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(s.attempts for s in states) == list(range(1, 21))
        assert store.get_account(created.id).lockout.attempts == 20
        # Exactly one failure crosses the threshold
        unlocked = [s for s in states if s.locked_until is None]
        assert len(unlocked) == policy.max_attempts - 1
        assert min(s.attempts for s in states if s.locked_until is not None) == policy.max_attempts


class TestSecrets:
    def test_consume_is_single_use(self, store):
        created = store.insert_account(_account())
        store.set_secret(
            created.id, SecretKind.PASSWORD_RESET, PendingSecret("abc", NOW + timedelta(minutes=10))
        )
        consumed = store.consume_secret(SecretKind.PASSWORD_RESET, "abc", NOW)
        assert consumed.id == created.id
        assert SecretKind.PASSWORD_RESET not in consumed.pending_secrets
        assert store.consume_secret(SecretKind.PASSWORD_RESET, "abc", NOW) is None

    def test_consume_rejects_expired_and_other_kinds(self, store):
        created = store.insert_account(_account())
        store.set_secret(
            created.id, SecretKind.PASSWORD_RESET, PendingSecret("abc", NOW + timedelta(minutes=10))
        )
        assert store.consume_secret(SecretKind.EMAIL_VERIFICATION, "abc", NOW) is None
        assert (
            store.consume_secret(
                SecretKind.PASSWORD_RESET, "abc", NOW + timedelta(minutes=10, seconds=1)
            )
            is None
        )

    def test_new_secret_replaces_previous(self, store):
        created = store.insert_account(_account())
        store.set_secret(created.id, SecretKind.PHONE_OTP, PendingSecret("old", NOW))
        store.set_secret(created.id, SecretKind.PHONE_OTP, PendingSecret("new", NOW))
        assert store.get_secret(created.id, SecretKind.PHONE_OTP).digest == "new"

    def test_clear_with_expected_digest(self, store):
        created = store.insert_account(_account())
        store.set_secret(created.id, SecretKind.PHONE_OTP, PendingSecret("new", NOW))
        assert not store.clear_secret(created.id, SecretKind.PHONE_OTP, expected_digest="old")
        assert store.clear_secret(created.id, SecretKind.PHONE_OTP, expected_digest="new")
        assert store.get_secret(created.id, SecretKind.PHONE_OTP) is None


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        path = tmp_path / "state" / "accounts.json"
        first = MemoryStore(str(path))
        account = _account(phone="+919876543210")
        account.profile.addresses.append(
            Address(line1="1 Main St", city="Pune", state="MH", pincode="411001", is_default=True)
        )
        created = first.insert_account(account)
        first.set_secret(
            created.id, SecretKind.EMAIL_VERIFICATION, PendingSecret("d", NOW + timedelta(hours=24))
        )

        second = MemoryStore(str(path))
        loaded = second.get_account(created.id, with_password=True)
        assert loaded.email == "alice@x.com"
        assert loaded.password_hash == "$argon2id$stub"
        assert loaded.profile.addresses[0].pincode == "411001"
        assert loaded.pending_secrets[SecretKind.EMAIL_VERIFICATION].expires_at == NOW + timedelta(hours=24)

    def test_corrupt_state_file_is_ignored(self, tmp_path):
        path = tmp_path / "accounts.json"
        path.write_text("{not json")
        store = MemoryStore(str(path))
        assert store.accounts == {}
