"""
Backend Configuration

Selects the object store and ledger implementations from the environment.

Environment Variables:
    MATCHPROOF_STORAGE_DRIVER: Which object store to use
        - "memory" (default)
        - "local" (a directory, see MATCHPROOF_STORAGE_PATH)
        - "http" (an object API, see MATCHPROOF_STORAGE_URL)
    MATCHPROOF_STORAGE_PATH: Directory for the local store (default ./data/objects)
    MATCHPROOF_STORAGE_URL: Base URL for the http store
    MATCHPROOF_STORAGE_TOKEN: Bearer token for the http store
    MATCHPROOF_STORAGE_TIMEOUT: Request timeout in seconds (default 30)

    MATCHPROOF_LEDGER_DRIVER: Which ledger to use
        - "memory" (default)
        - "local" (append-only JSON-lines file, see MATCHPROOF_LEDGER_PATH)
    MATCHPROOF_LEDGER_PATH: Ledger file (default ./data/ledger.jsonl)
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .ledger import InMemoryLedger, LedgerClient, LocalLedger
from .storage import HttpObjectStore, InMemoryObjectStore, LocalObjectStore, ObjectStore

DEFAULT_STORAGE_PATH = "./data/objects"
DEFAULT_LEDGER_PATH = "./data/ledger.jsonl"


class StorageDriver(str, Enum):
    """Supported object store drivers."""
    MEMORY = "memory"
    LOCAL = "local"
    HTTP = "http"


class LedgerDriver(str, Enum):
    """Supported ledger drivers."""
    MEMORY = "memory"
    LOCAL = "local"


def _parse_driver(enum_cls, env_name: str, raw: str):
    try:
        return enum_cls(raw.lower())
    except ValueError:
        valid = ", ".join(d.value for d in enum_cls)
        raise ValueError(f"Unknown {env_name}: {raw}. Valid values: {valid}") from None


@dataclass
class StorageConfig:
    """Object store configuration."""
    driver: StorageDriver = StorageDriver.MEMORY
    path: str = DEFAULT_STORAGE_PATH
    url: Optional[str] = None
    token: Optional[str] = None
    timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "StorageConfig":
        """Load configuration from environment variables."""
        return cls(
            driver=_parse_driver(
                StorageDriver, "MATCHPROOF_STORAGE_DRIVER",
                os.getenv("MATCHPROOF_STORAGE_DRIVER", "memory"),
            ),
            path=os.getenv("MATCHPROOF_STORAGE_PATH", DEFAULT_STORAGE_PATH),
            url=os.getenv("MATCHPROOF_STORAGE_URL") or None,
            token=os.getenv("MATCHPROOF_STORAGE_TOKEN") or None,
            timeout=float(os.getenv("MATCHPROOF_STORAGE_TIMEOUT", "30")),
        )


@dataclass
class LedgerConfig:
    """Ledger configuration."""
    driver: LedgerDriver = LedgerDriver.MEMORY
    path: str = DEFAULT_LEDGER_PATH

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Load configuration from environment variables."""
        return cls(
            driver=_parse_driver(
                LedgerDriver, "MATCHPROOF_LEDGER_DRIVER",
                os.getenv("MATCHPROOF_LEDGER_DRIVER", "memory"),
            ),
            path=os.getenv("MATCHPROOF_LEDGER_PATH", DEFAULT_LEDGER_PATH),
        )


def create_object_store(config: Optional[StorageConfig] = None) -> ObjectStore:
    """
    Create the configured ObjectStore.

    Raises:
        ValueError: http driver without a URL
    """
    config = config or StorageConfig.from_env()

    if config.driver == StorageDriver.MEMORY:
        return InMemoryObjectStore()
    if config.driver == StorageDriver.LOCAL:
        return LocalObjectStore(config.path)
    if config.driver == StorageDriver.HTTP:
        if not config.url:
            raise ValueError("MATCHPROOF_STORAGE_URL is required for the http storage driver")
        return HttpObjectStore(config.url, api_token=config.token, timeout=config.timeout)

    raise ValueError(f"Unsupported storage driver: {config.driver}")


def create_ledger_client(config: Optional[LedgerConfig] = None) -> LedgerClient:
    """Create the configured LedgerClient."""
    config = config or LedgerConfig.from_env()

    if config.driver == LedgerDriver.MEMORY:
        return InMemoryLedger()
    if config.driver == LedgerDriver.LOCAL:
        return LocalLedger(config.path)

    raise ValueError(f"Unsupported ledger driver: {config.driver}")
