"""Persistent store implementations."""

from botflow_billing.store.base import (
    DEFAULT_UNIQUE_RULES,
    Filters,
    Record,
    RecordStore,
    Tables,
    UniqueRule,
)
from botflow_billing.store.memory import InMemoryRecordStore
from botflow_billing.store.sql import SQLRecordStore, create_engine_from_settings, init_models

__all__ = [
    "DEFAULT_UNIQUE_RULES",
    "Filters",
    "InMemoryRecordStore",
    "Record",
    "RecordStore",
    "SQLRecordStore",
    "Tables",
    "UniqueRule",
    "create_engine_from_settings",
    "init_models",
]
