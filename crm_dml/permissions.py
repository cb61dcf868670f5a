"""Object- and field-level access policy answering CRUD capability checks.

Permissions are plain strings of the form ``<Object>.<action>`` for object
access and ``<Object>.<action>:<field>`` for field access, e.g.
``Account.create`` or ``Contact.update:account_id``. A trailing ``*`` acts as
a wildcard (``Account.*``, ``Account.update:*``) and ``*`` alone matches
everything.

A policy either allows by default and lists denials, or denies by default and
lists grants. Field checks require the object-level permission as well, so
denying ``Lead.create`` also denies creating any Lead field.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Set, Union

from .records import SObjectType, field_names, resolve_sobject_type


class AccessAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def permission_key(
    sobject_type: Union[str, SObjectType],
    action: Union[str, AccessAction],
    field: Optional[str] = None,
) -> str:
    """Build the permission string for an object (and optionally field) action."""
    object_name = resolve_sobject_type(sobject_type).value
    action_name = AccessAction(action).value
    key = f"{object_name}.{action_name}"
    if field is not None:
        key = f"{key}:{field}"
    return key


def _matches(rule: str, required: str) -> bool:
    if rule in {"*", required}:
        return True
    if rule.endswith("*"):
        return required.startswith(rule[:-1])
    return False


class AccessPolicy:
    """Answers whether the running user may create, update or delete records."""

    def __init__(self, rules: Optional[Iterable[str]] = None, *, default_allow: bool = True) -> None:
        self._default_allow = default_allow
        self._rules: Set[str] = set(rules or ())

    @classmethod
    def allow_all(cls) -> "AccessPolicy":
        return cls(default_allow=True)

    @classmethod
    def deny_all(cls) -> "AccessPolicy":
        return cls(default_allow=False)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "AccessPolicy":
        """Build a policy from ``{"default_allow": bool, "deny": [...]}`` or ``{"default_allow": false, "grant": [...]}``."""
        default_allow = bool(payload.get("default_allow", True))
        key = "deny" if default_allow else "grant"
        raw_rules = payload.get(key) or []
        if isinstance(raw_rules, str) or not isinstance(raw_rules, Iterable):
            raise ValueError(f"Access policy '{key}' must be a list of permission strings.")
        rules = []
        for rule in raw_rules:
            if not isinstance(rule, str) or rule.strip() == "":
                raise ValueError("Access policy rules must be non-empty strings.")
            rules.append(rule.strip())
        return cls(rules, default_allow=default_allow)

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> "AccessPolicy":
        with Path(path).open("r", encoding="utf-8") as fh:
            payload = json.load(fh)
        if not isinstance(payload, Mapping):
            raise ValueError(f"Access policy file '{path}' must contain a JSON object.")
        return cls.from_mapping(payload)

    @property
    def default_allow(self) -> bool:
        return self._default_allow

    @property
    def rules(self) -> Set[str]:
        return set(self._rules)

    def deny(
        self,
        sobject_type: Union[str, SObjectType],
        action: Union[str, AccessAction],
        *fields: str,
    ) -> "AccessPolicy":
        """Withhold an object permission, or only the named field permissions."""
        self._apply(sobject_type, action, fields, grant=False)
        return self

    def grant(
        self,
        sobject_type: Union[str, SObjectType],
        action: Union[str, AccessAction],
        *fields: str,
    ) -> "AccessPolicy":
        """Give back an object permission, or only the named field permissions."""
        self._apply(sobject_type, action, fields, grant=True)
        return self

    def _apply(
        self,
        sobject_type: Union[str, SObjectType],
        action: Union[str, AccessAction],
        fields: Iterable[str],
        *,
        grant: bool,
    ) -> None:
        keys = [permission_key(sobject_type, action, field) for field in fields]
        if not keys or (grant and not self._default_allow):
            # Field grants are useless without the object grant.
            keys.append(permission_key(sobject_type, action))
        # In allow-by-default mode the rule set holds denials, otherwise grants.
        add = grant != self._default_allow
        for key in keys:
            if add:
                self._rules.add(key)
            else:
                self._rules.discard(key)

    def is_allowed(
        self,
        sobject_type: Union[str, SObjectType],
        action: Union[str, AccessAction],
        field: Optional[str] = None,
    ) -> bool:
        if not self._check(permission_key(sobject_type, action)):
            return False
        if field is None:
            return True
        if field not in field_names(sobject_type):
            raise ValueError(f"{resolve_sobject_type(sobject_type).value} has no field named '{field}'.")
        return self._check(permission_key(sobject_type, action, field))

    def _check(self, required: str) -> bool:
        hit = any(_matches(rule, required) for rule in self._rules)
        if self._default_allow:
            return not hit
        return hit

    def can_create(self, sobject_type: Union[str, SObjectType], field: Optional[str] = None) -> bool:
        return self.is_allowed(sobject_type, AccessAction.CREATE, field)

    def can_update(self, sobject_type: Union[str, SObjectType], field: Optional[str] = None) -> bool:
        return self.is_allowed(sobject_type, AccessAction.UPDATE, field)

    def can_delete(self, sobject_type: Union[str, SObjectType]) -> bool:
        return self.is_allowed(sobject_type, AccessAction.DELETE)


__all__ = ["AccessAction", "AccessPolicy", "permission_key"]
