"""Record models for the CRM objects the DML examples operate on.

Each record type is a Pydantic model so that field values are validated on
construction and on assignment. Identifiers are left empty until a store
assigns one on insert, mirroring how a hosted CRM populates ``Id`` after DML.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _create_id() -> str:
    """Generate a UUID4 string for record identifiers."""
    return str(uuid4())


def _validate_uuid(field_name: str, value: Optional[str]) -> Optional[str]:
    """Validate that the supplied value is a UUID string, preserving None."""
    if value is None:
        return value
    try:
        UUID(str(value))
    except ValueError as exc:
        raise ValueError(f"{field_name} must be a valid UUID string.") from exc
    return str(value)


class SObjectType(str, Enum):
    ACCOUNT = "Account"
    CONTACT = "Contact"
    OPPORTUNITY = "Opportunity"
    LEAD = "Lead"
    CASE = "Case"


class OpportunityStage(str, Enum):
    PROSPECTING = "Prospecting"
    QUALIFICATION = "Qualification"
    NEEDS_ANALYSIS = "Needs Analysis"
    VALUE_PROPOSITION = "Value Proposition"
    PROPOSAL = "Proposal/Price Quote"
    NEGOTIATION = "Negotiation/Review"
    CLOSED_WON = "Closed Won"
    CLOSED_LOST = "Closed Lost"


class CaseOrigin(str, Enum):
    PHONE = "Phone"
    EMAIL = "Email"
    WEB = "Web"


class CaseStatus(str, Enum):
    NEW = "New"
    WORKING = "Working"
    ESCALATED = "Escalated"
    CLOSED = "Closed"


def _normalize_close_date(value: Any) -> date:
    """Convert close_date inputs to date while surfacing parse errors."""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, datetime):
        if value.time() != datetime.min.time():
            raise ValueError("Close date must not include a time component.")
        return value.date()
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError as exc:
            raise ValueError("Close date must be a valid ISO-8601 date (YYYY-MM-DD).") from exc
    raise ValueError("Close date must be provided as a date or ISO-8601 string.")


class CRMRecord(BaseModel):
    """Shared configuration for all CRM records."""

    model_config = ConfigDict(
        populate_by_name=True,
        validate_assignment=True,
        use_enum_values=True,
        extra="forbid",
    )

    sobject_type: ClassVar[SObjectType]
    # Fields the platform refuses to save without a value.
    required_fields: ClassVar[Tuple[str, ...]] = ()
    # Reference fields and the record type they point at.
    references: ClassVar[Dict[str, SObjectType]] = {}

    id: Optional[str] = None

    @field_validator("*", mode="before", check_fields=False)
    @classmethod
    def strip_strings(cls, value: Any) -> Any:
        """Normalize string inputs by trimming whitespace."""
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("id", mode="before")
    @classmethod
    def validate_id(cls, value: Optional[str]) -> Optional[str]:
        return _validate_uuid("id", value)

    @property
    def is_new(self) -> bool:
        return self.id is None

    def missing_required_fields(self) -> List[str]:
        """Return the required fields that are unset or blank."""
        missing = []
        for field_name in self.required_fields:
            value = getattr(self, field_name)
            if value is None or (isinstance(value, str) and value.strip() == ""):
                missing.append(field_name)
        return missing


class Account(CRMRecord):
    sobject_type: ClassVar[SObjectType] = SObjectType.ACCOUNT
    required_fields: ClassVar[Tuple[str, ...]] = ("name",)

    name: Optional[str] = None
    industry: Optional[str] = None
    description: Optional[str] = None


class Contact(CRMRecord):
    sobject_type: ClassVar[SObjectType] = SObjectType.CONTACT
    required_fields: ClassVar[Tuple[str, ...]] = ("last_name",)
    references: ClassVar[Dict[str, SObjectType]] = {"account_id": SObjectType.ACCOUNT}

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    account_id: Optional[str] = None

    @field_validator("account_id", mode="before")
    @classmethod
    def validate_account_id(cls, value: Optional[str]) -> Optional[str]:
        return _validate_uuid("account_id", value)


class Opportunity(CRMRecord):
    sobject_type: ClassVar[SObjectType] = SObjectType.OPPORTUNITY
    required_fields: ClassVar[Tuple[str, ...]] = ("name", "stage_name", "close_date")
    references: ClassVar[Dict[str, SObjectType]] = {"account_id": SObjectType.ACCOUNT}

    name: Optional[str] = None
    stage_name: Optional[OpportunityStage] = None
    close_date: Optional[date] = None
    amount: Optional[float] = Field(default=None, ge=0)
    account_id: Optional[str] = None

    @field_validator("close_date", mode="before")
    @classmethod
    def validate_close_date(cls, value: Any) -> Optional[date]:
        if value is None:
            return value
        return _normalize_close_date(value)

    @field_validator("account_id", mode="before")
    @classmethod
    def validate_account_id(cls, value: Optional[str]) -> Optional[str]:
        return _validate_uuid("account_id", value)


class Lead(CRMRecord):
    sobject_type: ClassVar[SObjectType] = SObjectType.LEAD
    required_fields: ClassVar[Tuple[str, ...]] = ("last_name", "company")

    last_name: Optional[str] = None
    company: Optional[str] = None


class Case(CRMRecord):
    sobject_type: ClassVar[SObjectType] = SObjectType.CASE
    required_fields: ClassVar[Tuple[str, ...]] = ("status",)
    references: ClassVar[Dict[str, SObjectType]] = {"account_id": SObjectType.ACCOUNT}

    origin: Optional[CaseOrigin] = None
    status: Optional[CaseStatus] = None
    account_id: Optional[str] = None

    @field_validator("account_id", mode="before")
    @classmethod
    def validate_account_id(cls, value: Optional[str]) -> Optional[str]:
        return _validate_uuid("account_id", value)


RECORD_CLASSES: Dict[SObjectType, Type[CRMRecord]] = {
    SObjectType.ACCOUNT: Account,
    SObjectType.CONTACT: Contact,
    SObjectType.OPPORTUNITY: Opportunity,
    SObjectType.LEAD: Lead,
    SObjectType.CASE: Case,
}


def resolve_sobject_type(value: Union[str, SObjectType]) -> SObjectType:
    """Return the SObjectType for an enum member or its exact string name."""
    if isinstance(value, SObjectType):
        return value
    try:
        return SObjectType(value)
    except ValueError as exc:
        formatted = ", ".join(member.value for member in SObjectType)
        raise ValueError(f"Unknown object type '{value}' (expected one of: {formatted}).") from exc


def record_class(sobject_type: Union[str, SObjectType]) -> Type[CRMRecord]:
    return RECORD_CLASSES[resolve_sobject_type(sobject_type)]


def sobject_type_of(record: CRMRecord) -> SObjectType:
    if not isinstance(record, CRMRecord):
        raise ValueError(f"Expected a CRM record but received {type(record).__name__}.")
    return record.sobject_type


def field_names(sobject_type: Union[str, SObjectType]) -> List[str]:
    """Return the writable field names for a record type (everything except ``id``)."""
    return [name for name in record_class(sobject_type).model_fields if name != "id"]


__all__ = [
    "Account",
    "CRMRecord",
    "Case",
    "CaseOrigin",
    "CaseStatus",
    "Contact",
    "Lead",
    "Opportunity",
    "OpportunityStage",
    "RECORD_CLASSES",
    "SObjectType",
    "field_names",
    "record_class",
    "resolve_sobject_type",
    "sobject_type_of",
]
