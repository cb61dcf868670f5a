"""CLI that runs every DML example once and prints what happened.

Usage:
    python -m crm_dml.run_examples --backend memory
    python -m crm_dml.run_examples --backend memory --policy policy.json --log-level INFO
    python -m crm_dml.run_examples --backend postgres --commit
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from pprint import pprint
from typing import Any, Dict, List, Optional, Sequence

from . import dml
from .config import BACKEND_POSTGRES, SUPPORTED_BACKENDS, StoreConfig, build_store
from .postgres_store import PostgresRecordStore
from .records import Contact, Opportunity
from .snapshot import StoreSnapshot
from .store import RecordStore


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the CRM DML examples against a record store.")
    parser.add_argument(
        "--backend",
        choices=SUPPORTED_BACKENDS,
        default=None,
        help="Record store to use (default: CRM_DML_BACKEND or 'memory').",
    )
    parser.add_argument(
        "--policy",
        type=Path,
        default=None,
        help="JSON access policy file (default: CRM_DML_ACCESS_POLICY or allow everything).",
    )
    parser.add_argument(
        "--commit",
        action="store_true",
        help="Keep the records written to Postgres instead of rolling the session back.",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING).")
    return parser.parse_args(list(argv))


def run_examples(store: RecordStore) -> List[Dict[str, Any]]:
    """Run each procedure in turn, feeding ids from earlier steps into later ones."""
    steps: List[Dict[str, Any]] = []

    def record(step: str, result: Any) -> Any:
        steps.append({"step": step, "result": result})
        return result

    record("insert_new_account", dml.insert_new_account(store))
    account_id = record("create_account", dml.create_account(store, "Acme", "Manufacturing"))
    if account_id is None:
        return steps

    contact_id = record("insert_new_contact", dml.insert_new_contact(store, account_id))
    if contact_id is not None:
        updated = dml.update_contact_last_name(store, contact_id, "Smith")
        record("update_contact_last_name", updated.last_name if updated else None)

    updated_account = dml.update_account_fields(store, account_id, "Acme Holdings", "Finance")
    record("update_account_fields", updated_account.name if updated_account else None)

    opportunities = dml.upsert_opportunity_list(store, [Opportunity(name="Acme Renewal", account_id=account_id)])
    record("upsert_opportunity_list", [opp.id for opp in opportunities])
    if opportunities:
        staged = dml.update_opportunity_stage(store, opportunities[0].id, "Negotiation/Review")
        record("update_opportunity_stage", staged.stage_name if staged else None)

    upserted = dml.upsert_opportunities(store, "Globex", ["Globex Pilot", "Globex Expansion", "Globex Pilot"])
    record("upsert_opportunities", [opp.name for opp in upserted])

    account = dml.upsert_account(store, "Globex")
    record("upsert_account", account.description if account else None)

    contacts = [Contact(first_name="John", last_name="Doe"), Contact(first_name="Jane", last_name="Jane")]
    contacts.append(Contact(first_name="Jim", last_name="Doe"))
    linked = dml.upsert_accounts_with_contacts(store, contacts)
    record("upsert_accounts_with_contacts", {contact.first_name: contact.account_id for contact in linked})

    record("insert_and_delete_leads", dml.insert_and_delete_leads(store, ["Lead One", "Lead Two"]))
    record("create_and_delete_cases", dml.create_and_delete_cases(store, account_id, 3))
    return steps


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")

    config = StoreConfig.from_env(backend=args.backend, access_policy_path=args.policy)
    store = build_store(config)
    is_postgres = config.backend == BACKEND_POSTGRES and isinstance(store, PostgresRecordStore)
    if is_postgres:
        store.begin_session()
    try:
        for step in run_examples(store):
            pprint(step)
        print("Record counts:", StoreSnapshot.from_store(store).counts())
        if is_postgres and args.commit:
            store.commit_session()
    finally:
        if is_postgres:
            store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
