"""DML examples for Account, Contact, Opportunity, Lead and Case records."""

from .linker import LinkResult, link_by_name  # noqa: F401
from .permissions import AccessPolicy  # noqa: F401
from .records import Account, Case, Contact, Lead, Opportunity, SObjectType  # noqa: F401
from .store import InMemoryRecordStore, RecordNotFoundError, RecordStore, SaveMode  # noqa: F401
