"""Point-in-time copies of a record store and helpers to compare them.

Snapshots let callers check the effect of a DML procedure from the outside:
capture before, run, capture after, and diff the per-type id sets.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Set, Union

from .records import CRMRecord, SObjectType, resolve_sobject_type
from .store import RecordStore


def _copy_table(table: Mapping[str, CRMRecord]) -> Dict[str, CRMRecord]:
    """Return a deep copy of the provided record table."""
    return {record_id: record.model_copy(deep=True) for record_id, record in table.items()}


@dataclass(frozen=True)
class StoreSnapshot:
    """Immutable copy of every record table in a store."""

    tables: Dict[SObjectType, Dict[str, CRMRecord]]

    @classmethod
    def from_store(cls, store: RecordStore) -> "StoreSnapshot":
        """Capture a snapshot from any store exposing ``list_records``."""
        return cls(tables={member: _copy_table(store.list_records(member)) for member in SObjectType})

    def records(self, sobject_type: Union[str, SObjectType]) -> Dict[str, CRMRecord]:
        return self.tables[resolve_sobject_type(sobject_type)]

    def ids(self, sobject_type: Union[str, SObjectType]) -> Set[str]:
        return set(self.records(sobject_type))

    def counts(self) -> Dict[str, int]:
        return {member.value: len(table) for member, table in self.tables.items()}


def new_ids(pre: StoreSnapshot, post: StoreSnapshot, sobject_type: Union[str, SObjectType]) -> Set[str]:
    """Ids present after but not before."""
    return post.ids(sobject_type) - pre.ids(sobject_type)


def removed_ids(pre: StoreSnapshot, post: StoreSnapshot, sobject_type: Union[str, SObjectType]) -> Set[str]:
    """Ids present before but not after."""
    return pre.ids(sobject_type) - post.ids(sobject_type)


def changed_ids(pre: StoreSnapshot, post: StoreSnapshot, sobject_type: Union[str, SObjectType]) -> Set[str]:
    """Ids present in both snapshots whose field values differ."""
    before = pre.records(sobject_type)
    after = post.records(sobject_type)
    return {
        record_id
        for record_id in before.keys() & after.keys()
        if before[record_id].model_dump() != after[record_id].model_dump()
    }


def is_unchanged(pre: StoreSnapshot, post: StoreSnapshot) -> bool:
    """True when no table gained, lost or changed a record."""
    for member in SObjectType:
        if new_ids(pre, post, member) or removed_ids(pre, post, member) or changed_ids(pre, post, member):
            return False
    return True


__all__ = ["StoreSnapshot", "changed_ids", "is_unchanged", "new_ids", "removed_ids"]
