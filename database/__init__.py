"""
Database layer — Multi-backend job persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON file on disk, for small deployments)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  job = await store.get("0b9e...")
"""
from database.models import Base, JobRow
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseJobStore
from database.store import SqlJobStore
from database.store_memory import InMemoryJobStore
from database.store_file import FileJobStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "JobRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseJobStore",
    # Store backends
    "SqlJobStore", "InMemoryJobStore", "FileJobStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
