"""Tests for account validation, normalization and profile rules."""

from datetime import date, timedelta

import pytest

from quickauth.service.accounts import (
    AccountRecords,
    NewAccount,
    PasswordPolicy,
    normalize_email,
    normalize_phone,
    repair_default_address,
)
from quickauth.service.errors import NotFoundError, ValidationError
from quickauth.storage.errors import ConstraintViolation
from quickauth.storage.models import (
    Address,
    CustomerProfile,
    DeliveryProfile,
    RestaurantProfile,
    Role,
    SecretKind,
    PendingSecret,
    utcnow,
)

STRONG_PASSWORD = "Secr3t!@#"


@pytest.fixture
def records(store, hasher):
    return AccountRecords(store, hasher, password_policy=PasswordPolicy(), min_age_years=13)


def _new(**overrides) -> NewAccount:
    values = dict(
        email="alice@x.com",
        password=STRONG_PASSWORD,
        first_name="Alice",
        last_name="Smith",
    )
    values.update(overrides)
    return NewAccount(**values)


class TestNormalization:
    def test_email_is_lowercased_and_trimmed(self):
        assert normalize_email("  Alice@X.COM ") == "alice@x.com"

    @pytest.mark.parametrize("bad", ["", "alice", "alice@", "@x.com", "alice@x", None])
    def test_invalid_email(self, bad):
        with pytest.raises(ValidationError) as excinfo:
            normalize_email(bad)
        assert excinfo.value.detail["field"] == "email"

    def test_phone_formatting_is_stripped(self):
        assert normalize_phone("+91 (987) 654-3210") == "+919876543210"
        assert normalize_phone("") is None
        assert normalize_phone(None) is None

    @pytest.mark.parametrize("bad", ["12345", "+0123456789", "phone-number"])
    def test_invalid_phone(self, bad):
        with pytest.raises(ValidationError):
            normalize_phone(bad)


class TestPasswordPolicy:
    def test_strong_password_passes(self):
        PasswordPolicy().check(STRONG_PASSWORD)

    def test_lists_every_problem(self):
        problems = PasswordPolicy().violations("abc")
        assert "must be at least 8 characters" in problems
        assert "must contain an uppercase letter" in problems
        assert "must contain a digit" in problems
        assert "must contain a special character" in problems

    def test_check_reports_field(self):
        with pytest.raises(ValidationError) as excinfo:
            PasswordPolicy().check("password", field="new_password")
        assert excinfo.value.detail["field"] == "new_password"

    def test_requirements_can_be_relaxed(self):
        PasswordPolicy(require_special=False, require_upper=False).check("password1")


class TestCreate:
    def test_create_normalizes_and_hashes(self, records, store, hasher):
        account = records.create(_new(email=" Alice@X.com", phone="98765 43210"))
        assert account.email == "alice@x.com"
        assert account.phone == "9876543210"
        assert account.role == Role.CUSTOMER
        assert isinstance(account.profile, CustomerProfile)
        assert not account.is_email_verified
        stored = store.get_account(account.id, with_password=True)
        assert stored.password_hash != STRONG_PASSWORD
        assert hasher.verify(STRONG_PASSWORD, stored.password_hash)

    @pytest.mark.parametrize(
        "role, profile_cls",
        [
            ("restaurant-owner", RestaurantProfile),
            ("delivery-personnel", DeliveryProfile),
        ],
    )
    def test_profile_follows_role(self, records, role, profile_cls):
        account = records.create(_new(role=role))
        assert isinstance(account.profile, profile_cls)

    def test_unknown_role(self, records):
        with pytest.raises(ValidationError) as excinfo:
            records.create(_new(role="wizard"))
        assert excinfo.value.detail["field"] == "role"

    def test_duplicate_email_raises_constraint_violation(self, records):
        records.create(_new())
        with pytest.raises(ConstraintViolation):
            records.create(_new(email="ALICE@x.com"))

    def test_too_young(self, records):
        born = utcnow().date() - timedelta(days=365 * 10)
        with pytest.raises(ValidationError) as excinfo:
            records.create(_new(date_of_birth=born))
        assert excinfo.value.detail["field"] == "date_of_birth"

    def test_birth_date_in_future(self, records):
        with pytest.raises(ValidationError):
            records.create(_new(date_of_birth=utcnow().date() + timedelta(days=1)))

    def test_bad_names(self, records):
        with pytest.raises(ValidationError) as excinfo:
            records.create(_new(first_name="A"))
        assert excinfo.value.detail["field"] == "first_name"

    def test_weak_password(self, records):
        with pytest.raises(ValidationError) as excinfo:
            records.create(_new(password="weak"))
        assert excinfo.value.detail["field"] == "password"


class TestSave:
    def test_save_without_password_keeps_hash(self, records, store):
        account = records.create(_new())
        before = store.get_account(account.id, with_password=True).password_hash
        account.first_name = "Alicia"
        records.save(account)
        assert store.get_account(account.id, with_password=True).password_hash == before

    def test_save_same_password_does_not_rehash(self, records, store):
        account = records.create(_new())
        before = store.get_account(account.id, with_password=True).password_hash
        records.save(account, new_password=STRONG_PASSWORD)
        assert store.get_account(account.id, with_password=True).password_hash == before

    def test_save_new_password_rehashes(self, records, store, hasher):
        account = records.create(_new())
        records.save(account, new_password="N3w!Password")
        stored = store.get_account(account.id, with_password=True).password_hash
        assert hasher.verify("N3w!Password", stored)

    def test_get_missing(self, records):
        with pytest.raises(NotFoundError):
            records.get("missing")


def _addr(line1, pincode, **kw) -> dict:
    return {"line1": line1, "city": "Pune", "state": "MH", "pincode": pincode, **kw}


class TestDefaultAddress:
    def test_newly_marked_default_beats_existing_one(self):
        existing = Address("2 B St", "Pune", "MH", "411002", is_default=True)
        marked = Address("1 A St", "Pune", "MH", "411001", is_default=True)
        addresses = [marked, existing]
        repair_default_address(addresses, previously_default={existing.id})
        assert [a.is_default for a in addresses] == [True, False]

    def test_several_new_marks_go_to_later_position(self):
        first = Address("1 A St", "Pune", "MH", "411001", is_default=True)
        second = Address("2 B St", "Pune", "MH", "411002", is_default=True)
        plain = Address("3 C St", "Pune", "MH", "411003")
        repair_default_address([first, second, plain])
        assert (first.is_default, second.is_default, plain.is_default) == (False, True, False)

    def test_single_default_untouched(self):
        only = Address("1 A St", "Pune", "MH", "411001", is_default=True)
        repair_default_address([only], previously_default={only.id})
        assert only.is_default

    def test_remarking_older_address_through_profile_update(self, records):
        account = records.create(_new())
        saved = records.update_profile(
            account.id,
            {"profile": {"addresses": [_addr("1 A St", "411001", is_default=True), _addr("2 B St", "411002")]}},
        )
        a, b = saved.profile.addresses
        saved = records.update_profile(
            account.id,
            {"profile": {"addresses": [
                _addr("1 A St", "411001", id=a.id, is_default=False),
                _addr("2 B St", "411002", id=b.id, is_default=True),
            ]}},
        )
        assert [x.is_default for x in saved.profile.addresses] == [False, True]
        # B still flagged from the last save while A is marked again
        saved = records.update_profile(
            account.id,
            {"profile": {"addresses": [
                _addr("1 A St", "411001", id=a.id, is_default=True),
                _addr("2 B St", "411002", id=b.id, is_default=True),
            ]}},
        )
        assert {x.line1: x.is_default for x in saved.profile.addresses} == {
            "1 A St": True,
            "2 B St": False,
        }


class TestAddressOperations:
    def test_first_address_becomes_default(self, records):
        account = records.create(_new())
        _, address = records.add_address(account.id, _addr("1 A St", "411001"))
        assert address.is_default
        saved, second = records.add_address(account.id, _addr("2 B St", "411002"))
        assert not second.is_default
        assert [a.is_default for a in saved.profile.addresses] == [True, False]

    def test_adding_a_default_demotes_the_rest(self, records):
        account = records.create(_new())
        records.add_address(account.id, _addr("1 A St", "411001"))
        saved, added = records.add_address(account.id, _addr("2 B St", "411002", is_default=True))
        assert added.is_default
        assert [a.is_default for a in saved.profile.addresses] == [False, True]

    def test_client_supplied_id_is_ignored_on_add(self, records):
        account = records.create(_new())
        _, address = records.add_address(account.id, _addr("1 A St", "411001", id="chosen"))
        assert address.id != "chosen"

    def test_address_limit(self, records):
        account = records.create(_new())
        for i in range(10):
            records.add_address(account.id, _addr(f"{i} A St", "411001"))
        with pytest.raises(ValidationError):
            records.add_address(account.id, _addr("11 A St", "411001"))

    def test_update_merges_fields_and_keeps_identity(self, records):
        account = records.create(_new())
        _, original = records.add_address(account.id, _addr("1 A St", "411001", landmark="Temple"))
        _, updated = records.update_address(account.id, original.id, {"city": "Mumbai", "label": "work"})
        assert updated.id == original.id
        assert updated.created_at == original.created_at
        assert (updated.city, updated.label, updated.landmark) == ("Mumbai", "work", "Temple")

    def test_update_marking_default_demotes_others(self, records):
        account = records.create(_new())
        records.add_address(account.id, _addr("1 A St", "411001"))
        _, second = records.add_address(account.id, _addr("2 B St", "411002"))
        saved, _ = records.update_address(account.id, second.id, {"is_default": True})
        assert [a.is_default for a in saved.profile.addresses] == [False, True]

    def test_unmarking_the_only_default_keeps_it(self, records):
        account = records.create(_new())
        _, only = records.add_address(account.id, _addr("1 A St", "411001"))
        _, updated = records.update_address(account.id, only.id, {"is_default": False})
        assert updated.is_default

    def test_update_validates_merged_address(self, records):
        account = records.create(_new())
        _, address = records.add_address(account.id, _addr("1 A St", "411001"))
        with pytest.raises(ValidationError) as excinfo:
            records.update_address(account.id, address.id, {"pincode": "000000"})
        assert excinfo.value.detail["field"] == "pincode"

    def test_deleting_default_promotes_first_remaining(self, records):
        account = records.create(_new())
        _, first = records.add_address(account.id, _addr("1 A St", "411001"))
        records.add_address(account.id, _addr("2 B St", "411002"))
        records.add_address(account.id, _addr("3 C St", "411003"))
        saved = records.delete_address(account.id, first.id)
        assert [(a.line1, a.is_default) for a in saved.profile.addresses] == [
            ("2 B St", True),
            ("3 C St", False),
        ]

    def test_deleting_non_default_keeps_default(self, records):
        account = records.create(_new())
        records.add_address(account.id, _addr("1 A St", "411001"))
        _, second = records.add_address(account.id, _addr("2 B St", "411002"))
        saved = records.delete_address(account.id, second.id)
        assert [a.is_default for a in saved.profile.addresses] == [True]

    def test_set_default(self, records):
        account = records.create(_new())
        records.add_address(account.id, _addr("1 A St", "411001"))
        _, second = records.add_address(account.id, _addr("2 B St", "411002"))
        saved, chosen = records.set_default_address(account.id, second.id)
        assert chosen.is_default
        assert sum(a.is_default for a in saved.profile.addresses) == 1

    def test_unknown_address(self, records):
        account = records.create(_new())
        with pytest.raises(NotFoundError):
            records.delete_address(account.id, "missing")
        with pytest.raises(NotFoundError):
            records.set_default_address(account.id, "missing")

    def test_non_customers_have_no_addresses(self, records):
        account = records.create(_new(role="delivery-personnel"))
        with pytest.raises(ValidationError):
            records.add_address(account.id, _addr("1 A St", "411001"))


class TestUpdateProfile:
    def test_customer_addresses_and_preferences(self, records):
        account = records.create(_new())
        updated = records.update_profile(
            account.id,
            {
                "profile": {
                    "addresses": [
                        {"line1": "1 A St", "city": "Pune", "state": "MH", "pincode": "411001", "is_default": True},
                        {"line1": "2 B St", "city": "Pune", "state": "MH", "pincode": "411002", "is_default": True, "label": "work"},
                    ],
                    "preferences": {"theme": "dark", "notifications": {"marketing": True}},
                }
            },
        )
        defaults = [a for a in updated.profile.addresses if a.is_default]
        assert len(defaults) == 1
        assert defaults[0].line1 == "2 B St"
        assert updated.profile.preferences.theme == "dark"
        assert updated.profile.preferences.language == "en"
        assert updated.profile.preferences.notifications.marketing is True
        assert updated.profile.preferences.notifications.email is True

    def test_invalid_pincode(self, records):
        account = records.create(_new())
        with pytest.raises(ValidationError) as excinfo:
            records.update_profile(
                account.id,
                {"profile": {"addresses": [{"line1": "x", "city": "y", "state": "z", "pincode": "012345"}]}},
            )
        assert excinfo.value.detail["field"] == "pincode"

    def test_too_many_addresses(self, records):
        account = records.create(_new())
        address = {"line1": "1 A St", "city": "Pune", "state": "MH", "pincode": "411001"}
        with pytest.raises(ValidationError):
            records.update_profile(account.id, {"profile": {"addresses": [address] * 11}})

    def test_other_roles_fields_rejected(self, records):
        account = records.create(_new())
        with pytest.raises(ValidationError) as excinfo:
            records.update_profile(account.id, {"profile": {"vehicle_type": "bike"}})
        assert excinfo.value.detail["field"] == "profile"

    def test_delivery_profile(self, records):
        account = records.create(_new(role="delivery-personnel"))
        updated = records.update_profile(
            account.id, {"profile": {"vehicle_type": " bike ", "is_available": True}}
        )
        assert updated.profile.vehicle_type == "bike"
        assert updated.profile.is_available is True

    def test_phone_change_resets_verification(self, records, store):
        account = records.create(_new(phone="+919876543210"))
        account.is_phone_verified = True
        records.save(account)
        store.set_secret(
            account.id, SecretKind.PHONE_OTP, PendingSecret("d", utcnow() + timedelta(minutes=5))
        )
        updated = records.update_profile(account.id, {"phone": "+919876500000"})
        assert updated.phone == "+919876500000"
        assert not updated.is_phone_verified
        assert store.get_secret(account.id, SecretKind.PHONE_OTP) is None

    def test_names_and_birth_date(self, records):
        account = records.create(_new())
        updated = records.update_profile(
            account.id,
            {"first_name": "  Alicia  ", "date_of_birth": date(1990, 5, 17)},
        )
        assert updated.first_name == "Alicia"
        assert updated.date_of_birth == date(1990, 5, 17)

    def test_deactivate(self, records, store):
        account = records.create(_new())
        records.deactivate(account.id)
        assert not store.get_account(account.id).is_active
