"""Record store interface and the in-memory implementation.

The DML procedures only ever talk to a :class:`RecordStore`: a filtered
``query``, a batch ``save`` in insert/update/upsert mode, a batch ``delete``
and three capability predicates. Saves and deletes are all-or-nothing per
call: every record in the batch is validated before anything is written.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Set,
    Tuple,
    Union,
)

from .permissions import AccessPolicy
from .records import (
    Account,
    CRMRecord,
    Case,
    Contact,
    Lead,
    Opportunity,
    SObjectType,
    _create_id,
    field_names,
    resolve_sobject_type,
    sobject_type_of,
)

logger = logging.getLogger(__name__)

RecordsArg = Union[CRMRecord, Iterable[CRMRecord]]
DeleteArg = Union[CRMRecord, str, Iterable[Union[CRMRecord, str]]]
ExistsCheck = Callable[[SObjectType, str], bool]

_MEMBERSHIP_TYPES = (list, tuple, set, frozenset)

# Record types removed along with a deleted Account.
CASCADE_ON_ACCOUNT_DELETE: Tuple[SObjectType, ...] = (
    SObjectType.CONTACT,
    SObjectType.OPPORTUNITY,
    SObjectType.CASE,
)


class SaveMode(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"


class RecordNotFoundError(ValueError):
    """Raised when an identifier does not resolve to a stored record."""

    def __init__(self, sobject_type: Optional[Union[str, SObjectType]], record_id: str) -> None:
        label = resolve_sobject_type(sobject_type).value if sobject_type else "Record"
        super().__init__(f"{label} not found with ID '{record_id}'.")
        self.sobject_type = sobject_type
        self.record_id = record_id


class RecordStore(Protocol):
    """Collaborator interface every DML procedure is written against."""

    access: AccessPolicy

    def query(self, sobject_type: Union[str, SObjectType], **criteria: Any) -> List[CRMRecord]:
        """Return copies of the records matching every criterion."""

    def get(self, sobject_type: Union[str, SObjectType], record_id: str) -> CRMRecord:
        """Return a copy of one record or raise :class:`RecordNotFoundError`."""

    def save(self, records: RecordsArg, mode: SaveMode = SaveMode.UPSERT) -> List[CRMRecord]:
        """Persist a batch, assigning ids to new records on the caller's objects."""

    def insert(self, records: RecordsArg) -> List[CRMRecord]:
        ...

    def update(self, records: RecordsArg) -> List[CRMRecord]:
        ...

    def upsert(self, records: RecordsArg) -> List[CRMRecord]:
        ...

    def delete(self, records: DeleteArg, sobject_type: Optional[Union[str, SObjectType]] = None) -> List[str]:
        """Remove records by id and return the removed ids."""

    def can_create(self, sobject_type: Union[str, SObjectType], field: Optional[str] = None) -> bool:
        ...

    def can_update(self, sobject_type: Union[str, SObjectType], field: Optional[str] = None) -> bool:
        ...

    def can_delete(self, sobject_type: Union[str, SObjectType]) -> bool:
        ...

    def list_records(self, sobject_type: Union[str, SObjectType]) -> Dict[str, CRMRecord]:
        ...

    def count(self, sobject_type: Union[str, SObjectType]) -> int:
        ...


# ------------------------------------------------------------------
# Helpers shared by store implementations
# ------------------------------------------------------------------


def _coerce_records(records: RecordsArg) -> List[CRMRecord]:
    if isinstance(records, CRMRecord):
        return [records]
    coerced = list(records)
    for record in coerced:
        sobject_type_of(record)
    return coerced


def _normalize_criteria(sobject_type: SObjectType, criteria: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate criteria field names and unwrap enum values.

    Collection values become membership tests; everything else is compared by
    exact equality.
    """
    allowed = set(field_names(sobject_type)) | {"id"}
    normalized: Dict[str, Any] = {}
    for field, value in criteria.items():
        if field not in allowed:
            raise ValueError(f"{sobject_type.value} has no field named '{field}'.")
        if isinstance(value, _MEMBERSHIP_TYPES):
            normalized[field] = [_plain(item) for item in value]
        else:
            normalized[field] = _plain(value)
    return normalized


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _matches_criteria(record: CRMRecord, criteria: Mapping[str, Any]) -> bool:
    for field, expected in criteria.items():
        actual = getattr(record, field)
        if isinstance(expected, list):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def _plan_save(
    records: Sequence[CRMRecord],
    mode: SaveMode,
    exists: ExistsCheck,
) -> Tuple[List[CRMRecord], List[CRMRecord]]:
    """Validate a batch and split it into inserts and updates.

    Raises before anything is written so a failing batch leaves the store
    untouched.
    """
    mode = SaveMode(mode)
    inserts: List[CRMRecord] = []
    updates: List[CRMRecord] = []
    seen_objects: Set[int] = set()
    seen_ids: Set[str] = set()

    for record in records:
        sobject_type = sobject_type_of(record)
        label = sobject_type.value
        if id(record) in seen_objects:
            raise ValueError(f"{label} appears more than once in the same save batch.")
        seen_objects.add(id(record))

        if record.id is None:
            if mode is SaveMode.UPDATE:
                raise ValueError(f"Cannot update {label} without an ID.")
            inserts.append(record)
        else:
            if mode is SaveMode.INSERT:
                raise ValueError(f"Cannot insert {label} that already has ID '{record.id}'.")
            if record.id in seen_ids:
                raise ValueError(f"Duplicate ID '{record.id}' in the same save batch.")
            seen_ids.add(record.id)
            if not exists(sobject_type, record.id):
                raise RecordNotFoundError(sobject_type, record.id)
            updates.append(record)

        missing = record.missing_required_fields()
        if missing:
            raise ValueError(f"{label} is missing required fields {missing}.")
        for field, target_type in record.references.items():
            target_id = getattr(record, field)
            if target_id is not None and not exists(target_type, target_id):
                raise ValueError(f"{target_type.value} not found with ID '{target_id}' (referenced by {label}.{field}).")

    return inserts, updates


def _split_delete_targets(
    records: DeleteArg,
    sobject_type: Optional[Union[str, SObjectType]],
) -> List[Tuple[Optional[SObjectType], str]]:
    if isinstance(records, (CRMRecord, str)):
        records = [records]
    explicit_type = resolve_sobject_type(sobject_type) if sobject_type else None
    targets: List[Tuple[Optional[SObjectType], str]] = []
    for item in records:
        if isinstance(item, CRMRecord):
            if item.id is None:
                raise ValueError(f"Cannot delete {item.sobject_type.value} without an ID.")
            targets.append((item.sobject_type, item.id))
        elif isinstance(item, str):
            targets.append((explicit_type, item))
        else:
            raise ValueError(f"Cannot delete {type(item).__name__}; expected a record or an ID string.")
    return targets


class StoreOperationsMixin:
    """Shortcuts and capability predicates built on ``save``/``list_records``."""

    access: AccessPolicy

    def insert(self, records: RecordsArg) -> List[CRMRecord]:
        return self.save(records, SaveMode.INSERT)

    def update(self, records: RecordsArg) -> List[CRMRecord]:
        return self.save(records, SaveMode.UPDATE)

    def upsert(self, records: RecordsArg) -> List[CRMRecord]:
        return self.save(records, SaveMode.UPSERT)

    def can_create(self, sobject_type: Union[str, SObjectType], field: Optional[str] = None) -> bool:
        return self.access.can_create(sobject_type, field)

    def can_update(self, sobject_type: Union[str, SObjectType], field: Optional[str] = None) -> bool:
        return self.access.can_update(sobject_type, field)

    def can_delete(self, sobject_type: Union[str, SObjectType]) -> bool:
        return self.access.can_delete(sobject_type)

    def count(self, sobject_type: Union[str, SObjectType]) -> int:
        return len(self.list_records(sobject_type))

    def summarize_counts(self) -> Dict[str, int]:
        return {member.value: self.count(member) for member in SObjectType}


class InMemoryRecordStore(StoreOperationsMixin):
    """Dict-backed record store that behaves like the hosted platform's DML."""

    def __init__(self, access: Optional[AccessPolicy] = None) -> None:
        self.access = access or AccessPolicy.allow_all()
        self.accounts: Dict[str, Account] = {}
        self.contacts: Dict[str, Contact] = {}
        self.opportunities: Dict[str, Opportunity] = {}
        self.leads: Dict[str, Lead] = {}
        self.cases: Dict[str, Case] = {}

    def _table(self, sobject_type: Union[str, SObjectType]) -> Dict[str, Any]:
        sobject_type = resolve_sobject_type(sobject_type)
        if sobject_type is SObjectType.ACCOUNT:
            return self.accounts
        if sobject_type is SObjectType.CONTACT:
            return self.contacts
        if sobject_type is SObjectType.OPPORTUNITY:
            return self.opportunities
        if sobject_type is SObjectType.LEAD:
            return self.leads
        if sobject_type is SObjectType.CASE:
            return self.cases
        raise ValueError(f"Unsupported object type '{sobject_type}'.")

    def _exists(self, sobject_type: SObjectType, record_id: str) -> bool:
        return record_id in self._table(sobject_type)

    def query(self, sobject_type: Union[str, SObjectType], **criteria: Any) -> List[CRMRecord]:
        sobject_type = resolve_sobject_type(sobject_type)
        normalized = _normalize_criteria(sobject_type, criteria)
        return [
            record.model_copy(deep=True)
            for record in self._table(sobject_type).values()
            if _matches_criteria(record, normalized)
        ]

    def get(self, sobject_type: Union[str, SObjectType], record_id: str) -> CRMRecord:
        table = self._table(sobject_type)
        if record_id not in table:
            raise RecordNotFoundError(sobject_type, record_id)
        return table[record_id].model_copy(deep=True)

    def save(self, records: RecordsArg, mode: SaveMode = SaveMode.UPSERT) -> List[CRMRecord]:
        batch = _coerce_records(records)
        inserts, updates = _plan_save(batch, mode, self._exists)

        for record in inserts:
            record.id = _create_id()
        for record in batch:
            self._table(record.sobject_type)[record.id] = record.model_copy(deep=True)

        logger.debug("Saved %d records (%d inserted, %d updated).", len(batch), len(inserts), len(updates))
        return batch

    def delete(self, records: DeleteArg, sobject_type: Optional[Union[str, SObjectType]] = None) -> List[str]:
        resolved: List[Tuple[SObjectType, str]] = []
        for target_type, record_id in _split_delete_targets(records, sobject_type):
            if target_type is None:
                target_type = self._find_type(record_id)
            if not self._exists(target_type, record_id):
                raise RecordNotFoundError(target_type, record_id)
            resolved.append((target_type, record_id))

        deleted_accounts = {record_id for target_type, record_id in resolved if target_type is SObjectType.ACCOUNT}
        for target_type, record_id in resolved:
            self._table(target_type).pop(record_id, None)
        if deleted_accounts:
            for child_type in CASCADE_ON_ACCOUNT_DELETE:
                table = self._table(child_type)
                orphaned = [child_id for child_id, child in table.items() if child.account_id in deleted_accounts]
                for child_id in orphaned:
                    del table[child_id]

        logger.debug("Deleted %d records.", len(resolved))
        return [record_id for _, record_id in resolved]

    def _find_type(self, record_id: str) -> SObjectType:
        for sobject_type in SObjectType:
            if record_id in self._table(sobject_type):
                return sobject_type
        raise RecordNotFoundError(None, record_id)

    def list_records(self, sobject_type: Union[str, SObjectType]) -> Dict[str, CRMRecord]:
        return {record_id: record.model_copy(deep=True) for record_id, record in self._table(sobject_type).items()}


__all__ = [
    "CASCADE_ON_ACCOUNT_DELETE",
    "InMemoryRecordStore",
    "RecordNotFoundError",
    "RecordStore",
    "SaveMode",
    "StoreOperationsMixin",
]
