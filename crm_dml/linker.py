"""Find-or-create target records by name and link other records to them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Union

from .records import CRMRecord, SObjectType, field_names, record_class, resolve_sobject_type
from .store import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class LinkResult:
    """Outcome of a :func:`link_by_name` run."""

    targets: List[CRMRecord] = field(default_factory=list)
    created_targets: List[CRMRecord] = field(default_factory=list)
    linked: List[CRMRecord] = field(default_factory=list)
    unmatched: List[CRMRecord] = field(default_factory=list)
    target_name_field: str = "name"

    @property
    def targets_by_name(self) -> Dict[str, CRMRecord]:
        lookup: Dict[str, CRMRecord] = {}
        for target in self.targets:
            name = getattr(target, self.target_name_field, None)
            if name is not None:
                lookup.setdefault(name, target)
        return lookup


def _gather_names(records: Sequence[CRMRecord], name_field: str) -> List[str]:
    names: List[str] = []
    seen = set()
    for record in records:
        name = getattr(record, name_field)
        if name is None or name in seen:
            continue
        seen.add(name)
        names.append(name)
    return names


def link_by_name(
    store: RecordStore,
    linking_records: Sequence[CRMRecord],
    *,
    name_field: str,
    target_type: Union[str, SObjectType],
    reference_field: str,
    target_name_field: str = "name",
) -> LinkResult:
    """Ensure one target exists per distinct name and point each record at it.

    Names are matched by exact, case-sensitive equality. Targets are upserted
    as one batch, then the linking records as a second batch; a failure in
    either save propagates and the first batch is not undone.
    """
    target_type = resolve_sobject_type(target_type)
    if target_name_field not in field_names(target_type):
        raise ValueError(f"{target_type.value} has no field named '{target_name_field}'.")
    records = list(linking_records)
    result = LinkResult(target_name_field=target_name_field)

    names = _gather_names(records, name_field)
    if names:
        working_set = store.query(target_type, **{target_name_field: names})
    else:
        working_set = []

    by_name: Dict[str, CRMRecord] = {}
    for target in working_set:
        by_name.setdefault(getattr(target, target_name_field), target)

    target_cls = record_class(target_type)
    for name in names:
        if name in by_name:
            continue
        created = target_cls(**{target_name_field: name})
        by_name[name] = created
        working_set.append(created)
        result.created_targets.append(created)

    if working_set:
        store.upsert(working_set)
    result.targets = working_set

    for record in records:
        target = by_name.get(getattr(record, name_field))
        if target is None or target.id is None:
            result.unmatched.append(record)
            continue
        setattr(record, reference_field, target.id)
        result.linked.append(record)

    if records:
        store.upsert(records)

    logger.debug(
        "Linked %d of %d records to %s (%d created).",
        len(result.linked),
        len(records),
        target_type.value,
        len(result.created_targets),
    )
    return result


__all__ = ["LinkResult", "link_by_name"]
