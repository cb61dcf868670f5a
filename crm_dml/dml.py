"""Standalone DML examples against a :class:`~crm_dml.store.RecordStore`.

Each procedure is independent: it builds or queries records, checks the
store's capability predicates for every object and field it is about to
write, and then saves or deletes. When a check fails the procedure logs the
denial and returns ``None`` (single record) or an empty list (batches)
without touching the store. Store failures are not caught.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Callable, Iterable, List, Optional, Sequence, Union

from dateutil.relativedelta import relativedelta

from .linker import link_by_name
from .records import (
    Account,
    Case,
    CaseOrigin,
    CaseStatus,
    Contact,
    Lead,
    Opportunity,
    OpportunityStage,
    SObjectType,
)
from .store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_NAME = "New Account"
DEFAULT_ACCOUNT_INDUSTRY = "Technology"
DEFAULT_CONTACT_FIRST_NAME = "John"
DEFAULT_CONTACT_LAST_NAME = "Doe"
DEFAULT_OPPORTUNITY_STAGE = OpportunityStage.QUALIFICATION.value
DEFAULT_OPPORTUNITY_AMOUNT = 50_000.0
DEFAULT_CLOSE_DATE_OFFSET = relativedelta(months=3)
NEW_ACCOUNT_DESCRIPTION = "New Account"
UPDATED_ACCOUNT_DESCRIPTION = "Updated Account"
DEFAULT_LEAD_COMPANY = "Default Company"
DEFAULT_CASE_ORIGIN = CaseOrigin.PHONE.value
DEFAULT_CASE_STATUS = CaseStatus.NEW.value

_OPPORTUNITY_DEFAULT_FIELDS = ("stage_name", "close_date", "amount")

Predicate = Callable[[SObjectType, Optional[str]], bool]


def default_close_date(today: Optional[date] = None) -> date:
    return (today or date.today()) + DEFAULT_CLOSE_DATE_OFFSET


def _fields_allowed(check: Predicate, sobject_type: SObjectType, fields: Iterable[str]) -> bool:
    """Return True only if ``check`` passes for every field."""
    for field in fields:
        if not check(sobject_type, field):
            logger.info("Permission denied on %s.%s; skipping DML.", sobject_type.value, field)
            return False
    return True


def _can_delete(store: RecordStore, sobject_type: SObjectType) -> bool:
    if store.can_delete(sobject_type):
        return True
    logger.info("Delete permission denied on %s; skipping DML.", sobject_type.value)
    return False


def _apply_opportunity_defaults(opportunity: Opportunity, close_date: date) -> None:
    opportunity.stage_name = DEFAULT_OPPORTUNITY_STAGE
    opportunity.close_date = close_date
    opportunity.amount = DEFAULT_OPPORTUNITY_AMOUNT


def _unique(values: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


# ------------------------------------------------------------------
# Single-record inserts
# ------------------------------------------------------------------


def insert_new_account(store: RecordStore) -> Optional[str]:
    """Insert an Account with fixed values and return its id."""
    if not _fields_allowed(store.can_create, SObjectType.ACCOUNT, ("name", "industry")):
        return None
    account = Account(name=DEFAULT_ACCOUNT_NAME, industry=DEFAULT_ACCOUNT_INDUSTRY)
    store.insert(account)
    return account.id


def create_account(store: RecordStore, name: str, industry: Optional[str]) -> Optional[str]:
    """Insert an Account with the given name and industry and return its id."""
    if not _fields_allowed(store.can_create, SObjectType.ACCOUNT, ("name", "industry")):
        return None
    account = Account(name=name, industry=industry)
    store.insert(account)
    return account.id


def insert_new_contact(store: RecordStore, account_id: str) -> Optional[str]:
    """Insert a Contact under ``account_id`` and return its id."""
    if not _fields_allowed(
        store.can_create, SObjectType.CONTACT, ("first_name", "last_name", "account_id")
    ):
        return None
    contact = Contact(
        first_name=DEFAULT_CONTACT_FIRST_NAME,
        last_name=DEFAULT_CONTACT_LAST_NAME,
        account_id=account_id,
    )
    store.insert(contact)
    return contact.id


def find_account_by_name(store: RecordStore, name: str) -> Optional[Account]:
    """Return the first Account whose name equals ``name`` exactly."""
    matches = store.query(SObjectType.ACCOUNT, name=name)
    return matches[0] if matches else None


# ------------------------------------------------------------------
# Query, mutate, save
# ------------------------------------------------------------------


def update_contact_last_name(store: RecordStore, contact_id: str, new_last_name: str) -> Optional[Contact]:
    if not _fields_allowed(store.can_update, SObjectType.CONTACT, ("last_name",)):
        return None
    contact = store.get(SObjectType.CONTACT, contact_id)
    contact.last_name = new_last_name
    store.update(contact)
    return contact


def update_opportunity_stage(
    store: RecordStore,
    opportunity_id: str,
    new_stage: Union[str, OpportunityStage],
) -> Optional[Opportunity]:
    if not _fields_allowed(store.can_update, SObjectType.OPPORTUNITY, ("stage_name",)):
        return None
    opportunity = store.get(SObjectType.OPPORTUNITY, opportunity_id)
    opportunity.stage_name = new_stage
    store.update(opportunity)
    return opportunity


def update_account_fields(
    store: RecordStore,
    account_id: str,
    new_name: str,
    new_industry: Optional[str],
) -> Optional[Account]:
    if not _fields_allowed(store.can_update, SObjectType.ACCOUNT, ("name", "industry")):
        return None
    account = store.get(SObjectType.ACCOUNT, account_id)
    account.name = new_name
    account.industry = new_industry
    store.update(account)
    return account


# ------------------------------------------------------------------
# Upserts
# ------------------------------------------------------------------


def upsert_opportunity_list(
    store: RecordStore,
    opportunities: Sequence[Opportunity],
    *,
    today: Optional[date] = None,
) -> List[Opportunity]:
    """Force the default stage, close date and amount onto every record, then upsert.

    Defaults overwrite whatever the records held, whether they are new or
    already stored.
    """
    records = list(opportunities)
    if not records:
        return []
    if any(record.is_new for record in records):
        if not _fields_allowed(store.can_create, SObjectType.OPPORTUNITY, _OPPORTUNITY_DEFAULT_FIELDS):
            return []
    if any(not record.is_new for record in records):
        if not _fields_allowed(store.can_update, SObjectType.OPPORTUNITY, _OPPORTUNITY_DEFAULT_FIELDS):
            return []

    close_date = default_close_date(today)
    for record in records:
        _apply_opportunity_defaults(record, close_date)
    store.upsert(records)
    return records


def upsert_opportunities(
    store: RecordStore,
    account_name: str,
    opportunity_names: Sequence[str],
    *,
    today: Optional[date] = None,
) -> List[Opportunity]:
    """Make sure the named Account has one Opportunity per requested name.

    The Account is looked up by exact name and created when absent.
    Opportunities of that Account whose names are already present are
    returned as stored and not written; only the missing ones are created,
    with the defaults applied.
    """
    account = find_account_by_name(store, account_name)
    names = _unique(opportunity_names)
    existing: List[Opportunity] = []
    if account is not None and names:
        existing = store.query(SObjectType.OPPORTUNITY, account_id=account.id, name=names)
    present = {opportunity.name for opportunity in existing}
    missing = [name for name in names if name not in present]

    if account is None and not _fields_allowed(store.can_create, SObjectType.ACCOUNT, ("name",)):
        return []
    if missing and not _fields_allowed(
        store.can_create,
        SObjectType.OPPORTUNITY,
        ("name", "account_id") + _OPPORTUNITY_DEFAULT_FIELDS,
    ):
        return []

    if account is None:
        account = Account(name=account_name)
        store.insert(account)

    close_date = default_close_date(today)
    created: List[Opportunity] = []
    for name in missing:
        opportunity = Opportunity(name=name, account_id=account.id)
        _apply_opportunity_defaults(opportunity, close_date)
        created.append(opportunity)

    if created:
        store.upsert(created)
    return existing + created


def upsert_account(store: RecordStore, account_name: str) -> Optional[Account]:
    """Mark an existing Account as updated, or create it if the name is unknown."""
    account = find_account_by_name(store, account_name)
    if account is not None:
        if not _fields_allowed(store.can_update, SObjectType.ACCOUNT, ("description",)):
            return None
        account.description = UPDATED_ACCOUNT_DESCRIPTION
    else:
        if not _fields_allowed(store.can_create, SObjectType.ACCOUNT, ("name", "description")):
            return None
        account = Account(name=account_name, description=NEW_ACCOUNT_DESCRIPTION)
    store.upsert(account)
    return account


def upsert_accounts_with_contacts(store: RecordStore, contacts: Sequence[Contact]) -> List[Contact]:
    """Create one Account per distinct contact last name and link the contacts to it.

    The linker re-saves Accounts that already carry a requested name, so those
    need update permission as well as the create permission for missing names.
    """
    records = list(contacts)
    if not records:
        return []
    names = _unique(record.last_name for record in records if record.last_name is not None)
    existing = store.query(SObjectType.ACCOUNT, name=names) if names else []
    present = {account.name for account in existing}
    if any(name not in present for name in names):
        if not _fields_allowed(store.can_create, SObjectType.ACCOUNT, ("name",)):
            return []
    if existing and not _fields_allowed(store.can_update, SObjectType.ACCOUNT, ("name",)):
        return []
    if any(record.is_new for record in records):
        if not _fields_allowed(store.can_create, SObjectType.CONTACT, ("last_name", "account_id")):
            return []
    if any(not record.is_new for record in records):
        if not _fields_allowed(store.can_update, SObjectType.CONTACT, ("account_id",)):
            return []

    link_by_name(
        store,
        records,
        name_field="last_name",
        target_type=SObjectType.ACCOUNT,
        reference_field="account_id",
    )
    return records


# ------------------------------------------------------------------
# Bulk insert then delete
# ------------------------------------------------------------------


def insert_and_delete_leads(store: RecordStore, lead_names: Sequence[str]) -> List[str]:
    """Insert one Lead per name, delete them all again and return their ids."""
    if not _fields_allowed(store.can_create, SObjectType.LEAD, ("last_name", "company")):
        return []
    if not _can_delete(store, SObjectType.LEAD):
        return []
    leads = [Lead(last_name=name, company=DEFAULT_LEAD_COMPANY) for name in lead_names]
    if not leads:
        return []
    store.insert(leads)
    return store.delete(leads)


def create_and_delete_cases(store: RecordStore, account_id: str, num_of_cases: int) -> List[str]:
    """Insert ``num_of_cases`` Cases for an Account, delete them and return their ids."""
    if num_of_cases < 0:
        raise ValueError("Number of cases must not be negative.")
    if not _fields_allowed(store.can_create, SObjectType.CASE, ("account_id", "origin", "status")):
        return []
    if not _can_delete(store, SObjectType.CASE):
        return []
    cases = [
        Case(account_id=account_id, origin=DEFAULT_CASE_ORIGIN, status=DEFAULT_CASE_STATUS)
        for _ in range(num_of_cases)
    ]
    if not cases:
        return []
    store.insert(cases)
    return store.delete(cases)


__all__ = [
    "create_account",
    "create_and_delete_cases",
    "default_close_date",
    "find_account_by_name",
    "insert_and_delete_leads",
    "insert_new_account",
    "insert_new_contact",
    "update_account_fields",
    "update_contact_last_name",
    "update_opportunity_stage",
    "upsert_account",
    "upsert_accounts_with_contacts",
    "upsert_opportunities",
    "upsert_opportunity_list",
]
