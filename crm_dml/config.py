"""Environment-driven configuration and the record store factory."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .permissions import AccessPolicy
from .postgres_store import DatabaseConfig, PostgresRecordStore
from .store import InMemoryRecordStore, RecordStore

logger = logging.getLogger(__name__)

BACKEND_MEMORY = "memory"
BACKEND_POSTGRES = "postgres"
SUPPORTED_BACKENDS = (BACKEND_MEMORY, BACKEND_POSTGRES)


@dataclass
class StoreConfig:
    """Which store the DML examples run against and with which access policy."""

    backend: str = BACKEND_MEMORY
    access_policy_path: Optional[Path] = None
    ensure_schema: bool = True
    database: Optional[DatabaseConfig] = field(default=None)

    def __post_init__(self) -> None:
        self.backend = self.backend.strip().lower()
        if self.backend not in SUPPORTED_BACKENDS:
            raise ValueError(f"Unknown store backend '{self.backend}'. Available: {list(SUPPORTED_BACKENDS)}")

    @classmethod
    def from_env(
        cls,
        *,
        dotenv_path: Optional[Path] = None,
        backend: Optional[str] = None,
        access_policy_path: Optional[Path] = None,
    ) -> "StoreConfig":
        """Read ``CRM_DML_*`` variables (after loading a ``.env`` file if present).

        ``backend`` and ``access_policy_path`` take precedence over the environment.
        """
        load_dotenv(dotenv_path=dotenv_path)
        backend = backend or os.getenv("CRM_DML_BACKEND", BACKEND_MEMORY)
        raw_policy = os.getenv("CRM_DML_ACCESS_POLICY")
        ensure_schema = os.getenv("CRM_DML_ENSURE_SCHEMA", "true").strip().lower() not in {"0", "false", "no"}
        config = cls(
            backend=backend,
            access_policy_path=access_policy_path or (Path(raw_policy) if raw_policy else None),
            ensure_schema=ensure_schema,
        )
        if config.backend == BACKEND_POSTGRES:
            config.database = DatabaseConfig.from_env()
        return config

    def load_access_policy(self) -> AccessPolicy:
        if self.access_policy_path is None:
            return AccessPolicy.allow_all()
        logger.info("Loading access policy from %s", self.access_policy_path)
        return AccessPolicy.from_json_file(self.access_policy_path)


def build_store(config: Optional[StoreConfig] = None) -> RecordStore:
    """Instantiate the record store described by ``config`` (defaults from the environment)."""
    config = config or StoreConfig.from_env()
    access = config.load_access_policy()
    if config.backend == BACKEND_POSTGRES:
        store = PostgresRecordStore(config.database or DatabaseConfig.from_env(), access=access)
        if config.ensure_schema:
            store.ensure_schema()
        return store
    return InMemoryRecordStore(access=access)


__all__ = ["BACKEND_MEMORY", "BACKEND_POSTGRES", "StoreConfig", "build_store"]
