"""Tests for the standalone DML procedures."""

from __future__ import annotations

from datetime import date
from unittest.mock import patch
from uuid import uuid4

import pytest
from pydantic import ValidationError

from crm_dml import dml
from crm_dml.permissions import AccessPolicy
from crm_dml.records import Account, Contact, Opportunity
from crm_dml.snapshot import StoreSnapshot, changed_ids, is_unchanged, new_ids
from crm_dml.store import InMemoryRecordStore, RecordNotFoundError

TODAY = date(2026, 1, 31)


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def account_id(store: InMemoryRecordStore) -> str:
    account = Account(name="Acme", industry="Manufacturing")
    store.insert(account)
    return account.id


def _store_with(policy: AccessPolicy) -> InMemoryRecordStore:
    return InMemoryRecordStore(access=policy)


# ------------------------------------------------------------------------------
# Single-record inserts
# ------------------------------------------------------------------------------


def test_insert_new_account(store: InMemoryRecordStore) -> None:
    account_id = dml.insert_new_account(store)

    stored = store.get("Account", account_id)
    assert stored.name == dml.DEFAULT_ACCOUNT_NAME
    assert stored.industry == dml.DEFAULT_ACCOUNT_INDUSTRY


def test_create_account(store: InMemoryRecordStore) -> None:
    account_id = dml.create_account(store, "Globex", "Energy")

    stored = store.get("Account", account_id)
    assert (stored.name, stored.industry) == ("Globex", "Energy")


def test_create_account_without_name_fails(store: InMemoryRecordStore) -> None:
    with pytest.raises(ValueError):
        dml.create_account(store, "  ", "Energy")

    assert store.count("Account") == 0


def test_insert_new_contact(store: InMemoryRecordStore, account_id: str) -> None:
    contact_id = dml.insert_new_contact(store, account_id)

    contact = store.get("Contact", contact_id)
    assert (contact.first_name, contact.last_name) == ("John", "Doe")
    assert contact.account_id == account_id


def test_insert_new_contact_for_missing_account_propagates(store: InMemoryRecordStore) -> None:
    with pytest.raises(ValueError):
        dml.insert_new_contact(store, str(uuid4()))


@pytest.mark.parametrize(
    "policy, call",
    [
        (AccessPolicy().deny("Account", "create"), lambda s: dml.insert_new_account(s)),
        (AccessPolicy().deny("Account", "create", "industry"), lambda s: dml.create_account(s, "Initech", "Software")),
        (AccessPolicy().deny("Contact", "create", "account_id"), lambda s: dml.insert_new_contact(s, str(uuid4()))),
        (AccessPolicy().deny("Account", "create", "description"), lambda s: dml.upsert_account(s, "Initech")),
    ],
)
def test_denied_create_returns_none_without_saving(policy: AccessPolicy, call) -> None:
    store = _store_with(policy)

    with patch.object(store, "save", wraps=store.save) as spy:
        result = call(store)

    assert result is None
    spy.assert_not_called()
    assert store.summarize_counts() == {"Account": 0, "Contact": 0, "Opportunity": 0, "Lead": 0, "Case": 0}


@pytest.mark.parametrize(
    "policy, call",
    [
        (AccessPolicy().deny("Opportunity", "create"), lambda s: dml.upsert_opportunities(s, "Globex", ["Pilot"])),
        (AccessPolicy().deny("Account", "create"), lambda s: dml.upsert_opportunities(s, "Globex", ["Pilot"])),
        (AccessPolicy().deny("Case", "create", "origin"), lambda s: dml.create_and_delete_cases(s, str(uuid4()), 2)),
        (AccessPolicy().deny("Case", "delete"), lambda s: dml.create_and_delete_cases(s, str(uuid4()), 2)),
        (AccessPolicy().deny("Lead", "create"), lambda s: dml.insert_and_delete_leads(s, ["Alpha"])),
    ],
)
def test_denied_batch_returns_empty_list_without_saving(policy: AccessPolicy, call) -> None:
    store = _store_with(policy)

    with patch.object(store, "save", wraps=store.save) as save_spy, patch.object(
        store, "delete", wraps=store.delete
    ) as delete_spy:
        result = call(store)

    assert result == []
    save_spy.assert_not_called()
    delete_spy.assert_not_called()
    assert store.summarize_counts() == {"Account": 0, "Contact": 0, "Opportunity": 0, "Lead": 0, "Case": 0}


# ------------------------------------------------------------------------------
# Query, mutate, save
# ------------------------------------------------------------------------------


def test_update_contact_last_name(store: InMemoryRecordStore, account_id: str) -> None:
    contact_id = dml.insert_new_contact(store, account_id)

    updated = dml.update_contact_last_name(store, contact_id, "Smith")

    assert updated.last_name == "Smith"
    assert store.get("Contact", contact_id).last_name == "Smith"
    assert store.get("Contact", contact_id).first_name == "John"


def test_update_opportunity_stage(store: InMemoryRecordStore, account_id: str) -> None:
    opportunity = Opportunity(name="Pilot", stage_name="Prospecting", close_date=TODAY, account_id=account_id)
    store.insert(opportunity)

    dml.update_opportunity_stage(store, opportunity.id, "Closed Won")

    assert store.get("Opportunity", opportunity.id).stage_name == "Closed Won"


def test_update_opportunity_stage_rejects_unknown_stage(store: InMemoryRecordStore, account_id: str) -> None:
    opportunity = Opportunity(name="Pilot", stage_name="Prospecting", close_date=TODAY, account_id=account_id)
    store.insert(opportunity)

    with pytest.raises(ValidationError):
        dml.update_opportunity_stage(store, opportunity.id, "Signed")

    assert store.get("Opportunity", opportunity.id).stage_name == "Prospecting"


def test_update_account_fields(store: InMemoryRecordStore, account_id: str) -> None:
    pre = StoreSnapshot.from_store(store)

    dml.update_account_fields(store, account_id, "Acme Holdings", "Finance")

    post = StoreSnapshot.from_store(store)
    assert changed_ids(pre, post, "Account") == {account_id}
    stored = store.get("Account", account_id)
    assert (stored.name, stored.industry) == ("Acme Holdings", "Finance")


def test_update_missing_record_propagates(store: InMemoryRecordStore) -> None:
    missing_id = str(uuid4())
    with pytest.raises(RecordNotFoundError) as exc:
        dml.update_contact_last_name(store, missing_id, "Smith")

    assert str(exc.value) == f"Contact not found with ID '{missing_id}'."


def test_denied_update_leaves_record_untouched(account_id: str, store: InMemoryRecordStore) -> None:
    store.access = AccessPolicy().deny("Account", "update", "industry")
    pre = StoreSnapshot.from_store(store)

    result = dml.update_account_fields(store, account_id, "Renamed", "Retail")

    assert result is None
    assert is_unchanged(pre, StoreSnapshot.from_store(store))


# ------------------------------------------------------------------------------
# Upserts
# ------------------------------------------------------------------------------


def test_upsert_opportunity_list_forces_defaults(store: InMemoryRecordStore, account_id: str) -> None:
    existing = Opportunity(
        name="Existing", stage_name="Negotiation/Review", close_date=date(2027, 5, 1), amount=1.0, account_id=account_id
    )
    store.insert(existing)
    fresh = Opportunity(name="Fresh", account_id=account_id)

    result = dml.upsert_opportunity_list(store, [existing, fresh], today=TODAY)

    assert result == [existing, fresh]
    expected_close = date(2026, 4, 30)
    for record in store.opportunities.values():
        assert record.stage_name == "Qualification"
        assert record.close_date == expected_close
        assert record.amount == 50_000.0
    assert store.count("Opportunity") == 2


def test_upsert_opportunity_list_denied_for_existing_records(store: InMemoryRecordStore, account_id: str) -> None:
    existing = Opportunity(name="Existing", stage_name="Prospecting", close_date=TODAY, account_id=account_id)
    store.insert(existing)
    store.access = AccessPolicy().deny("Opportunity", "update", "amount")

    result = dml.upsert_opportunity_list(store, [existing], today=TODAY)

    assert result == []
    assert store.get("Opportunity", existing.id).stage_name == "Prospecting"


def test_upsert_opportunities_creates_account_and_missing_opportunities(store: InMemoryRecordStore) -> None:
    result = dml.upsert_opportunities(store, "Umbrella", ["Deal A", "Deal B", "Deal A"], today=TODAY)

    account = dml.find_account_by_name(store, "Umbrella")
    assert account is not None
    assert [record.name for record in result] == ["Deal A", "Deal B"]
    assert all(record.account_id == account.id for record in result)
    assert all(record.stage_name == "Qualification" for record in result)
    assert store.count("Opportunity") == 2


def test_upsert_opportunities_leaves_existing_values(store: InMemoryRecordStore, account_id: str) -> None:
    existing = Opportunity(
        name="Deal A", stage_name="Closed Won", close_date=date(2025, 12, 1), amount=9_999.0, account_id=account_id
    )
    store.insert(existing)
    pre = StoreSnapshot.from_store(store)

    result = dml.upsert_opportunities(store, "Acme", ["Deal A", "Deal B"], today=TODAY)

    post = StoreSnapshot.from_store(store)
    assert store.count("Account") == 1
    assert len(new_ids(pre, post, "Opportunity")) == 1
    assert changed_ids(pre, post, "Opportunity") == set()
    kept = store.get("Opportunity", existing.id)
    assert (kept.stage_name, kept.amount) == ("Closed Won", 9_999.0)
    created = next(record for record in result if record.name == "Deal B")
    assert (created.stage_name, created.amount) == ("Qualification", 50_000.0)


def test_upsert_opportunities_only_matches_the_named_account(store: InMemoryRecordStore, account_id: str) -> None:
    other = Opportunity(name="Shared Name", stage_name="Prospecting", close_date=TODAY, account_id=account_id)
    store.insert(other)

    dml.upsert_opportunities(store, "Different Account", ["Shared Name"], today=TODAY)

    assert store.count("Opportunity") == 2


def test_upsert_opportunities_saves_only_created_records(store: InMemoryRecordStore, account_id: str) -> None:
    existing = Opportunity(name="Pilot", stage_name="Prospecting", close_date=TODAY, account_id=account_id)
    store.insert(existing)
    store.access = AccessPolicy().deny("Opportunity", "update")

    with patch.object(store, "save", wraps=store.save) as spy:
        result = dml.upsert_opportunities(store, "Acme", ["Pilot", "New"], today=TODAY)

    spy.assert_called_once()
    saved_ids = [record.id for record in spy.call_args.args[0]]
    assert existing.id not in saved_ids
    assert [record.name for record in result] == ["Pilot", "New"]
    assert store.get("Opportunity", existing.id).stage_name == "Prospecting"


def test_upsert_opportunities_with_nothing_missing_skips_create_check(
    store: InMemoryRecordStore, account_id: str
) -> None:
    existing = Opportunity(name="Pilot", stage_name="Prospecting", close_date=TODAY, account_id=account_id)
    store.insert(existing)
    store.access = AccessPolicy().deny("Opportunity", "create")

    with patch.object(store, "save", wraps=store.save) as spy:
        result = dml.upsert_opportunities(store, "Acme", ["Pilot"], today=TODAY)

    spy.assert_not_called()
    assert [record.id for record in result] == [existing.id]


def test_upsert_account_creates_then_updates(store: InMemoryRecordStore) -> None:
    created = dml.upsert_account(store, "Wayne Enterprises")
    assert created.description == "New Account"

    updated = dml.upsert_account(store, "Wayne Enterprises")
    assert updated.id == created.id
    assert updated.description == "Updated Account"
    assert store.count("Account") == 1


def test_upsert_account_denied_update(store: InMemoryRecordStore, account_id: str) -> None:
    store.access = AccessPolicy().deny("Account", "update")

    assert dml.upsert_account(store, "Acme") is None
    assert store.get("Account", account_id).description is None


def test_upsert_accounts_with_contacts(store: InMemoryRecordStore) -> None:
    contacts = [
        Contact(first_name="John", last_name="Doe"),
        Contact(first_name="Jane", last_name="Jane"),
        Contact(first_name="Jim", last_name="Doe"),
    ]

    result = dml.upsert_accounts_with_contacts(store, contacts)

    assert result == contacts
    assert sorted(account.name for account in store.accounts.values()) == ["Doe", "Jane"]
    assert contacts[0].account_id == contacts[2].account_id
    assert all(store.get("Contact", contact.id).account_id == contact.account_id for contact in contacts)


def test_upsert_accounts_with_contacts_denied(store: InMemoryRecordStore) -> None:
    store.access = AccessPolicy().deny("Account", "create", "name")

    with patch.object(store, "save", wraps=store.save) as spy:
        result = dml.upsert_accounts_with_contacts(store, [Contact(last_name="Doe")])

    assert result == []
    spy.assert_not_called()


def test_upsert_accounts_with_contacts_needs_update_for_existing_accounts(store: InMemoryRecordStore) -> None:
    store.insert(Account(name="Doe"))
    store.access = AccessPolicy().deny("Account", "update")
    pre = StoreSnapshot.from_store(store)

    with patch.object(store, "save", wraps=store.save) as spy:
        result = dml.upsert_accounts_with_contacts(store, [Contact(last_name="Doe")])

    assert result == []
    spy.assert_not_called()
    assert is_unchanged(pre, StoreSnapshot.from_store(store))


def test_upsert_accounts_with_contacts_skips_create_check_when_all_accounts_exist(
    store: InMemoryRecordStore,
) -> None:
    account = Account(name="Doe")
    store.insert(account)
    store.access = AccessPolicy().deny("Account", "create")
    contact = Contact(last_name="Doe")

    result = dml.upsert_accounts_with_contacts(store, [contact])

    assert result == [contact]
    assert contact.account_id == account.id
    assert store.count("Account") == 1


# ------------------------------------------------------------------------------
# Bulk insert then delete
# ------------------------------------------------------------------------------


def test_insert_and_delete_leads(store: InMemoryRecordStore) -> None:
    with patch.object(store, "insert", wraps=store.insert) as insert_spy:
        ids = dml.insert_and_delete_leads(store, ["Alpha", "Beta", "Gamma"])

    insert_spy.assert_called_once()
    assert len(ids) == 3
    assert store.query("Lead", id=ids) == []
    assert store.count("Lead") == 0


def test_insert_and_delete_leads_denied_delete(store: InMemoryRecordStore) -> None:
    store.access = AccessPolicy().deny("Lead", "delete")

    with patch.object(store, "save", wraps=store.save) as spy:
        assert dml.insert_and_delete_leads(store, ["Alpha"]) == []

    spy.assert_not_called()


def test_create_and_delete_cases(store: InMemoryRecordStore, account_id: str) -> None:
    ids = dml.create_and_delete_cases(store, account_id, 4)

    assert len(set(ids)) == 4
    assert store.query("Case", id=ids) == []
    assert account_id in store.accounts


def test_create_and_delete_zero_cases(store: InMemoryRecordStore, account_id: str) -> None:
    assert dml.create_and_delete_cases(store, account_id, 0) == []


def test_create_and_delete_cases_rejects_negative_count(store: InMemoryRecordStore, account_id: str) -> None:
    with pytest.raises(ValueError):
        dml.create_and_delete_cases(store, account_id, -1)


def test_create_cases_for_missing_account_propagates(store: InMemoryRecordStore) -> None:
    with pytest.raises(ValueError):
        dml.create_and_delete_cases(store, str(uuid4()), 2)

    assert store.count("Case") == 0


def test_default_close_date_handles_month_ends() -> None:
    assert dml.default_close_date(date(2026, 11, 30)) == date(2027, 2, 28)
    assert dml.default_close_date(date(2026, 1, 15)) == date(2026, 4, 15)
