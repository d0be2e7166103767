"""Keyed tables of immutable rows and the diffs between them."""

from collections import defaultdict
from collections.abc import Callable, Hashable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from .models import Row

K = TypeVar("K", bound=Hashable)
R = TypeVar("R", bound=Row)


@dataclass
class TableDiff(Generic[K, R]):
    """Difference between a stored table and an incoming one.

    ``touched`` holds rows that are equal by value but carry a different
    ``updated_at``; applying them refreshes the timestamp only.
    """

    added: list[R] = field(default_factory=list)
    changed: list[R] = field(default_factory=list)
    touched: list[R] = field(default_factory=list)
    removed: list[K] = field(default_factory=list)

    @property
    def churn(self) -> int:
        """Number of inserted, updated and deleted rows."""
        return len(self.added) + len(self.changed) + len(self.removed)

    @property
    def upserts(self) -> list[R]:
        return [*self.added, *self.changed, *self.touched]


class Table(Generic[K, R]):
    """Mapping from row key to row.

    Committed tables are never mutated; a transaction works on a
    :meth:`copy`, which shares the (immutable) rows. Secondary indexes built
    by :meth:`group` are cached until the next write.
    """

    def __init__(self, rows: Iterable[R] = ()):
        self._rows: dict[K, R] = {row.key: row for row in rows}
        self._groups: dict[str, dict[Hashable, list[R]]] = {}

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[R]:
        return iter(self._rows.values())

    def __contains__(self, key: object) -> bool:
        return key in self._rows

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Table):
            return NotImplemented
        return self._rows == other._rows

    def __repr__(self) -> str:
        return f"Table({len(self._rows)} rows)"

    def get(self, key: K) -> R | None:
        return self._rows.get(key)

    def keys(self) -> set[K]:
        return set(self._rows)

    def rows(self) -> list[R]:
        return list(self._rows.values())

    def group(self, field_name: str) -> dict[Hashable, list[R]]:
        """Rows grouped by the value of ``field_name``.

        Built on first use and reused until the table is written again.
        Concurrent readers of a committed table may both build it; the
        result is identical, and the last assignment wins.
        """
        groups = self._groups.get(field_name)
        if groups is None:
            groups = defaultdict(list)
            for row in self._rows.values():
                groups[getattr(row, field_name)].append(row)
            groups = dict(groups)
            self._groups[field_name] = groups
        return groups

    def rows_for(self, field_name: str, value: Hashable) -> list[R]:
        return list(self.group(field_name).get(value, ()))

    def copy(self) -> "Table[K, R]":
        table: Table[K, R] = Table()
        table._rows = dict(self._rows)
        return table

    def diff(self, incoming: "Table[K, R]") -> TableDiff[K, R]:
        """Compute the changes needed to turn this table into ``incoming``."""
        result: TableDiff[K, R] = TableDiff()
        for key, row in incoming._rows.items():
            current = self._rows.get(key)
            if current is None:
                result.added.append(row)
            elif not current.same_values(row):
                result.changed.append(row)
            elif current != row:
                result.touched.append(row)
        result.removed = [key for key in self._rows if key not in incoming._rows]
        return result

    def upsert(self, row: R) -> None:
        self._groups.clear()
        self._rows[row.key] = row

    def remove(self, key: K) -> R | None:
        """Remove a row by key; missing keys are ignored."""
        self._groups.clear()
        return self._rows.pop(key, None)

    def remove_keys(self, keys: Iterable[K]) -> None:
        """Remove rows by key; missing keys are ignored."""
        self._groups.clear()
        for key in keys:
            self._rows.pop(key, None)

    def remove_where(self, predicate: Callable[[R], bool]) -> list[R]:
        """Remove and return every matching row in one pass over the table."""
        self._groups.clear()
        doomed = [row for row in self._rows.values() if predicate(row)]
        for row in doomed:
            del self._rows[row.key]
        return doomed

    def apply(self, diff: TableDiff[K, R]) -> None:
        self.remove_keys(diff.removed)
        for row in diff.upserts:
            self._rows[row.key] = row
