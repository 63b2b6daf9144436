"""
Persistence Layer for the Settlement Rail

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database
from .repository import (
    FactRepository,
    PersistentFactJournal,
    SettingsRepository,
    UsageRecordRepository,
)

__all__ = [
    "Database",
    "UsageRecordRepository",
    "FactRepository",
    "PersistentFactJournal",
    "SettingsRepository",
]
