"""In-process record store for tests and local development."""

import asyncio
import copy
from collections import defaultdict
from collections.abc import Mapping, Sequence
from typing import Any

from botflow_billing.exceptions import DuplicateRecordError
from botflow_billing.store.base import DEFAULT_UNIQUE_RULES, Filters, Record, UniqueRule


def _matches(record: Record, filters: Filters | None) -> bool:
    if not filters:
        return True
    return all(record.get(column) == value for column, value in filters.items())


def _sort_key(column: str) -> Any:
    def key(record: Record) -> tuple[bool, Any]:
        value = record.get(column)
        return (value is None, value)

    return key


class InMemoryRecordStore:
    """Dict-backed implementation of RecordStore.

    Records are deep-copied on the way in and out so callers can never
    mutate stored state through a returned reference.
    """

    def __init__(self, unique_rules: Mapping[str, list[UniqueRule]] | None = None) -> None:
        self._tables: defaultdict[str, list[Record]] = defaultdict(list)
        self._rules = dict(DEFAULT_UNIQUE_RULES if unique_rules is None else unique_rules)
        self._lock = asyncio.Lock()

    def _check_unique(self, table: str, candidate: Record, existing: list[Record]) -> None:
        for rule in self._rules.get(table, []):
            if not rule.applies(candidate):
                continue
            key = rule.key(candidate)
            for row in existing:
                if row is candidate or not rule.applies(row):
                    continue
                if rule.key(row) == key:
                    raise DuplicateRecordError(table, dict(zip(rule.columns, key, strict=True)))

    async def insert(self, table: str, record: Record) -> Record:
        return (await self.insert_batch(table, [record]))[0]

    async def insert_batch(self, table: str, records: Sequence[Record]) -> list[Record]:
        async with self._lock:
            rows = self._tables[table]
            staged: list[Record] = []
            for record in records:
                row = copy.deepcopy(dict(record))
                self._check_unique(table, row, rows + staged)
                staged.append(row)
            rows.extend(staged)
            return copy.deepcopy(staged)

    async def query(
        self,
        table: str,
        filters: Filters | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Record]:
        async with self._lock:
            rows = [row for row in self._tables.get(table, []) if _matches(row, filters)]
        if order_by:
            rows.sort(key=_sort_key(order_by), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def update(self, table: str, filters: Filters, patch: Mapping[str, Any]) -> int:
        async with self._lock:
            rows = self._tables.get(table, [])
            targets = [row for row in rows if _matches(row, filters)]
            patched = [{**row, **copy.deepcopy(dict(patch))} for row in targets]
            untouched = [row for row in rows if not _matches(row, filters)]
            for row in patched:
                self._check_unique(table, row, untouched + patched)
            for row, new in zip(targets, patched, strict=True):
                row.update(new)
            return len(targets)

    async def delete(self, table: str, filters: Filters) -> int:
        async with self._lock:
            rows = self._tables.get(table, [])
            kept = [row for row in rows if not _matches(row, filters)]
            removed = len(rows) - len(kept)
            self._tables[table] = kept
            return removed

    def count(self, table: str) -> int:
        """Number of rows in a table."""
        return len(self._tables.get(table, []))
