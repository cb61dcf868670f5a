"""Postgres-backed record store."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import psycopg
from psycopg import Connection
from psycopg.rows import dict_row

from .permissions import AccessPolicy
from .records import CRMRecord, SObjectType, _create_id, field_names, record_class, resolve_sobject_type
from .store import (
    DeleteArg,
    RecordNotFoundError,
    RecordsArg,
    SaveMode,
    StoreOperationsMixin,
    _coerce_records,
    _normalize_criteria,
    _plan_save,
    _split_delete_targets,
)

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 10

TABLE_NAMES: Dict[SObjectType, str] = {
    SObjectType.ACCOUNT: "accounts",
    SObjectType.CONTACT: "contacts",
    SObjectType.OPPORTUNITY: "opportunities",
    SObjectType.LEAD: "leads",
    SObjectType.CASE: "cases",
}

SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS accounts (
    seq BIGSERIAL,
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    industry TEXT,
    description TEXT
);
CREATE TABLE IF NOT EXISTS contacts (
    seq BIGSERIAL,
    id TEXT PRIMARY KEY,
    first_name TEXT,
    last_name TEXT NOT NULL,
    account_id TEXT REFERENCES accounts (id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS opportunities (
    seq BIGSERIAL,
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    stage_name TEXT NOT NULL,
    close_date DATE NOT NULL,
    amount DOUBLE PRECISION,
    account_id TEXT REFERENCES accounts (id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS leads (
    seq BIGSERIAL,
    id TEXT PRIMARY KEY,
    last_name TEXT NOT NULL,
    company TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS cases (
    seq BIGSERIAL,
    id TEXT PRIMARY KEY,
    origin TEXT,
    status TEXT NOT NULL,
    account_id TEXT REFERENCES accounts (id) ON DELETE CASCADE
);
"""


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the Postgres record store."""

    host: str
    port: int
    user: str
    password: str
    dbname: str
    sslmode: Optional[str] = None
    connect_timeout: int = _DEFAULT_TIMEOUT

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Construct configuration from standard environment variables."""
        return cls(
            host=os.getenv("DB_HOST", os.getenv("POSTGRES_HOST", "localhost")),
            port=int(os.getenv("DB_PORT", os.getenv("POSTGRES_PORT", "5432"))),
            user=os.getenv("DB_USER", os.getenv("POSTGRES_USER", "crm_app")),
            password=os.getenv("DB_PASSWORD", os.getenv("POSTGRES_PASSWORD", "crm_password")),
            dbname=os.getenv("DB_NAME", os.getenv("POSTGRES_DB", "crm_dml")),
            sslmode=os.getenv("DB_SSLMODE"),
            connect_timeout=int(os.getenv("DB_CONNECT_TIMEOUT", str(_DEFAULT_TIMEOUT))),
        )


def _columns(sobject_type: SObjectType) -> str:
    return ", ".join(["id", *field_names(sobject_type)])


class PostgresRecordStore(StoreOperationsMixin):
    """Record store persisting the five CRM tables in Postgres.

    The connection runs in autocommit mode; every save and delete opens its
    own transaction so a failing batch leaves no rows behind. Inside a session
    started with :meth:`begin_session` those transactions become savepoints
    and the whole session can be rolled back.
    """

    def __init__(self, config: Optional[DatabaseConfig] = None, access: Optional[AccessPolicy] = None) -> None:
        self._config = config or DatabaseConfig.from_env()
        self.access = access or AccessPolicy.allow_all()
        self._conn: Connection = psycopg.connect(
            host=self._config.host,
            port=self._config.port,
            user=self._config.user,
            password=self._config.password,
            dbname=self._config.dbname,
            sslmode=self._config.sslmode,
            connect_timeout=self._config.connect_timeout,
            row_factory=dict_row,
            autocommit=True,
        )
        self._session_active = False

    # ------------------------------------------------------------------
    # Schema and session lifecycle
    # ------------------------------------------------------------------

    def ensure_schema(self) -> None:
        """Create the record tables if they do not exist yet."""
        with self._conn.transaction():
            self._conn.execute(SCHEMA_DDL)

    def begin_session(self, *, reset: bool = False) -> None:
        """Start a transactional session (optionally emptying every table)."""
        if self._session_active:
            self.rollback_session()
        self._conn.execute("BEGIN;")
        self._session_active = True
        if reset:
            self._truncate_tables()

    def rollback_session(self) -> None:
        if self._session_active:
            self._conn.execute("ROLLBACK;")
        self._session_active = False

    def commit_session(self) -> None:
        if self._session_active:
            self._conn.execute("COMMIT;")
        self._session_active = False

    def close(self) -> None:
        """Close the underlying database connection."""
        self.rollback_session()
        self._conn.close()

    def _truncate_tables(self) -> None:
        self._conn.execute("TRUNCATE TABLE cases, opportunities, contacts, leads, accounts RESTART IDENTITY;")

    # ------------------------------------------------------------------
    # Low-level helpers
    # ------------------------------------------------------------------

    def _fetchone(self, query: str, params: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        with self._conn.cursor() as cur:
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, params: Optional[Mapping[str, Any]] = None) -> Sequence[Dict[str, Any]]:
        with self._conn.cursor() as cur:
            cur.execute(query, params or {})
            return cur.fetchall()

    def _execute(self, query: str, params: Mapping[str, Any]) -> int:
        with self._conn.cursor() as cur:
            cur.execute(query, params)
            return cur.rowcount

    def _exists(self, sobject_type: SObjectType, record_id: str) -> bool:
        table = TABLE_NAMES[sobject_type]
        return self._fetchone(f"SELECT 1 FROM {table} WHERE id = %(id)s;", {"id": record_id}) is not None

    def _build_where_clause(self, criteria: Mapping[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Exact match for scalars, ``= ANY`` for membership lists."""
        conditions = []
        params: Dict[str, Any] = {}
        for idx, (field, value) in enumerate(criteria.items()):
            param_name = f"crit_{idx}"
            if isinstance(value, list):
                conditions.append(f"{field} = ANY(%({param_name})s)")
            else:
                conditions.append(f"{field} = %({param_name})s")
            params[param_name] = value
        where_clause = "WHERE " + " AND ".join(conditions) if conditions else ""
        return where_clause, params

    def _to_record(self, sobject_type: SObjectType, row: Mapping[str, Any]) -> CRMRecord:
        return record_class(sobject_type)(**row)

    # ------------------------------------------------------------------
    # RecordStore operations
    # ------------------------------------------------------------------

    def query(self, sobject_type: Union[str, SObjectType], **criteria: Any) -> List[CRMRecord]:
        sobject_type = resolve_sobject_type(sobject_type)
        normalized = _normalize_criteria(sobject_type, criteria)
        where_clause, params = self._build_where_clause(normalized)
        rows = self._fetchall(
            f"SELECT {_columns(sobject_type)} FROM {TABLE_NAMES[sobject_type]} {where_clause} ORDER BY seq;",
            params,
        )
        return [self._to_record(sobject_type, row) for row in rows]

    def get(self, sobject_type: Union[str, SObjectType], record_id: str) -> CRMRecord:
        sobject_type = resolve_sobject_type(sobject_type)
        row = self._fetchone(
            f"SELECT {_columns(sobject_type)} FROM {TABLE_NAMES[sobject_type]} WHERE id = %(id)s;",
            {"id": record_id},
        )
        if not row:
            raise RecordNotFoundError(sobject_type, record_id)
        return self._to_record(sobject_type, row)

    def save(self, records: RecordsArg, mode: SaveMode = SaveMode.UPSERT) -> List[CRMRecord]:
        batch = _coerce_records(records)
        assigned: Dict[int, str] = {}
        with self._conn.transaction():
            inserts, updates = _plan_save(batch, mode, self._exists)
            for record in inserts:
                record_id = _create_id()
                assigned[id(record)] = record_id
                self._insert_row(record, record_id)
            for record in updates:
                self._update_row(record)
        # Ids only reach the caller's objects once the batch has committed.
        for record in inserts:
            record.id = assigned[id(record)]
        logger.debug("Saved %d records (%d inserted, %d updated).", len(batch), len(inserts), len(updates))
        return batch

    def _insert_row(self, record: CRMRecord, record_id: str) -> None:
        sobject_type = record.sobject_type
        fields = field_names(sobject_type)
        payload = record.model_dump(include=set(fields))
        payload["id"] = record_id
        placeholders = ", ".join(f"%({name})s" for name in ["id", *fields])
        self._execute(
            f"INSERT INTO {TABLE_NAMES[sobject_type]} ({_columns(sobject_type)}) VALUES ({placeholders});",
            payload,
        )

    def _update_row(self, record: CRMRecord) -> None:
        sobject_type = record.sobject_type
        fields = field_names(sobject_type)
        payload = record.model_dump(include=set(fields) | {"id"})
        set_clause = ", ".join(f"{name} = %({name})s" for name in fields)
        updated = self._execute(
            f"UPDATE {TABLE_NAMES[sobject_type]} SET {set_clause} WHERE id = %(id)s;",
            payload,
        )
        if updated != 1:
            raise RuntimeError(f"{sobject_type.value} '{record.id}' disappeared during update.")

    def delete(self, records: DeleteArg, sobject_type: Optional[Union[str, SObjectType]] = None) -> List[str]:
        targets = _split_delete_targets(records, sobject_type)
        deleted: List[str] = []
        with self._conn.transaction():
            resolved: List[Tuple[SObjectType, str]] = []
            for target_type, record_id in targets:
                if target_type is None:
                    target_type = self._find_type(record_id)
                if not self._exists(target_type, record_id):
                    raise RecordNotFoundError(target_type, record_id)
                resolved.append((target_type, record_id))
            for target_type, record_id in resolved:
                self._execute(f"DELETE FROM {TABLE_NAMES[target_type]} WHERE id = %(id)s;", {"id": record_id})
                deleted.append(record_id)
        logger.debug("Deleted %d records.", len(deleted))
        return deleted

    def _find_type(self, record_id: str) -> SObjectType:
        for sobject_type in SObjectType:
            if self._exists(sobject_type, record_id):
                return sobject_type
        raise RecordNotFoundError(None, record_id)

    def list_records(self, sobject_type: Union[str, SObjectType]) -> Dict[str, CRMRecord]:
        return {record.id: record for record in self.query(sobject_type)}


__all__ = ["DatabaseConfig", "PostgresRecordStore", "SCHEMA_DDL", "TABLE_NAMES"]
