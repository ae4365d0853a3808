"""
Builds the process-wide job store from the `database` section of settings.

    database:
      store_backend: sql | file | memory     # memory if omitted
      url: "sqlite:///./dispatch.db"         # sql backend only
      store_file_dir: "./data"               # file backend only

Backends are imported lazily so a memory-only deployment never loads the
SQL drivers.
"""
from __future__ import annotations

import structlog
from typing import Any, Callable, Optional

from database.store_base import BaseJobStore

logger = structlog.get_logger()

_instance: Optional[BaseJobStore] = None


def _sql(config: dict, **defaults: Any) -> BaseJobStore:
    from database.store import SqlJobStore
    return SqlJobStore(db_url=config.get("url"), **defaults)


def _file(config: dict, **defaults: Any) -> BaseJobStore:
    from database.store_file import FileJobStore
    return FileJobStore(data_dir=config.get("store_file_dir", "./data"), **defaults)


def _memory(config: dict, **defaults: Any) -> BaseJobStore:
    from database.store_memory import InMemoryJobStore
    return InMemoryJobStore(**defaults)


BACKENDS: dict[str, Callable[..., BaseJobStore]] = {
    "sql": _sql,
    "file": _file,
    "memory": _memory,
}


def create_store(config: dict = None) -> BaseJobStore:
    """Create the singleton store; later calls return the existing one."""
    global _instance
    if _instance is not None:
        return _instance

    config = config or {}
    backend = config.get("store_backend", "memory")
    builder = BACKENDS.get(backend)
    if builder is None:
        logger.warning("unknown_store_backend", backend=backend, using="memory")
        backend, builder = "memory", _memory

    _instance = builder(
        config,
        default_priority=config.get("default_priority", 5),
        default_max_attempts=config.get("default_max_attempts", 3),
    )
    logger.info("store_created", backend=backend)
    return _instance


def get_store() -> BaseJobStore:
    if _instance is None:
        return create_store()
    return _instance


def reset_store() -> None:
    """Forget the singleton so the next create_store() builds a fresh one."""
    global _instance
    _instance = None
