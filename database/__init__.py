"""
Database layer — Multi-backend message persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON file on disk, for small deployments)

Quick start:
  from database import Database, create_store
  db = Database("sqlite:///./dispatch.db")
  await db.init()
  store = create_store(settings.database, database=db)
  message = await store.get("3f2a...")
"""
from database.models import Base, MessageRow, QueueEntryRow, TenantQuotaRow
from database.session import Database
from database.store_base import BaseMessageStore
from database.store import SqlMessageStore
from database.store_memory import InMemoryMessageStore
from database.store_file import FileMessageStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "MessageRow", "QueueEntryRow", "TenantQuotaRow",
    # Connection handle
    "Database",
    # Store interface
    "BaseMessageStore",
    # Store backends
    "SqlMessageStore", "InMemoryMessageStore", "FileMessageStore",
    # Factory
    "create_store",
]
