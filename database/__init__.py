"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import Database, create_stores
  db = Database("sqlite:///./assistant.db")
  await db.init()
  stores = create_stores("sql", database=db)
"""
from database.models import (
    Base, ReminderRow, SessionRow, CustomerRow, BookingRow, QuoteRow, TicketRow,
)
from database.session import Database
from database.store_base import (
    BaseReminderStore, BaseSessionBackend, BaseBookingStore, BaseRecordStore,
    SlotUnavailableError,
)
from database.store import (
    SqlReminderStore, SqlSessionBackend, SqlBookingStore, SqlRecordStore,
)
from database.store_memory import (
    InMemoryReminderStore, InMemorySessionBackend, InMemoryBookingStore, InMemoryRecordStore,
)
from database.store_factory import Stores, create_stores

__all__ = [
    # ORM models
    "Base", "ReminderRow", "SessionRow", "CustomerRow", "BookingRow", "QuoteRow", "TicketRow",
    # Session management
    "Database",
    # Store interfaces
    "BaseReminderStore", "BaseSessionBackend", "BaseBookingStore", "BaseRecordStore",
    "SlotUnavailableError",
    # Store backends
    "SqlReminderStore", "SqlSessionBackend", "SqlBookingStore", "SqlRecordStore",
    "InMemoryReminderStore", "InMemorySessionBackend", "InMemoryBookingStore",
    "InMemoryRecordStore",
    # Factory
    "Stores", "create_stores",
]
