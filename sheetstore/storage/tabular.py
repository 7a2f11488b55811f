"""
Tabular store contract and an in-memory implementation.

A workbook holds named tables. A table is a grid of cells addressed by
1-based (row, column); row 1 holds the header. The contract is deliberately
small: rectangular reads and writes, append, exact-match find and the grid
extent. Nothing here depends on formatting, formulas or other rich features.
"""

import threading
from abc import ABC, abstractmethod
from typing import Any

Cell = Any
Grid = list[list[Cell]]


def cell_text(value: Cell) -> str:
    """Text form of a cell as used for exact matching."""
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class Table(ABC):
    """A named grid of cells."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Table name, unique within its workbook."""

    @abstractmethod
    def row_count(self) -> int:
        """Last row holding data (0 for an empty table)."""

    @abstractmethod
    def col_count(self) -> int:
        """Last column holding data (0 for an empty table)."""

    @abstractmethod
    def get_range(self, row: int, col: int, height: int, width: int) -> Grid:
        """
        Read a rectangle of cells.

        Args:
            row: First row (1-based)
            col: First column (1-based)
            height: Number of rows
            width: Number of columns

        Returns:
            ``height`` lists of ``width`` cells; cells never written read as ""
        """

    @abstractmethod
    def set_range(self, row: int, col: int, values: Grid) -> None:
        """
        Overwrite a rectangle of cells in one operation.

        Args:
            row: First row (1-based)
            col: First column (1-based)
            values: Rows of cells; every row must have the same width
        """

    @abstractmethod
    def append_row(self, values: list[Cell]) -> int:
        """
        Append a row after the last data row.

        Returns:
            Row number the values were written to
        """

    def find_exact(self, row: int, col: int, height: int, width: int, value: Cell) -> int | None:
        """
        Find the first row in a rectangle holding a cell exactly equal to ``value``.

        Whole-cell match on the text form, never a substring match. Stores
        without a native finder raise NotImplementedError and callers fall
        back to scanning.

        Returns:
            Row number of the first match, or None
        """
        raise NotImplementedError(f"{type(self).__name__} has no native exact-match finder")


class Workbook(ABC):
    """A collection of named tables."""

    @abstractmethod
    def get_table(self, name: str) -> Table | None:
        """Return the table or None when it does not exist."""

    @abstractmethod
    def create_table(self, name: str) -> Table:
        """Create an empty table (returns the existing one if present)."""

    @abstractmethod
    def table_names(self) -> list[str]:
        """Names of all tables."""

    def get_or_create_table(self, name: str) -> Table:
        table = self.get_table(name)
        return table if table is not None else self.create_table(name)


def _check_address(row: int, col: int, height: int = 1, width: int = 1) -> None:
    if row < 1 or col < 1:
        raise ValueError(f"Cell address must be 1-based, got row={row} col={col}")
    if height < 0 or width < 0:
        raise ValueError(f"Range size must be non-negative, got height={height} width={width}")


class InMemoryTable(Table):
    """
    Thread-safe in-memory table.

    Args:
        name: Table name
        native_find: When False, ``find_exact`` raises NotImplementedError like
            stores without a finder do
    """

    def __init__(self, name: str, native_find: bool = True):
        self._name = name
        self._rows: list[list[Cell]] = []
        self._lock = threading.RLock()
        self.native_find = native_find

    @property
    def name(self) -> str:
        return self._name

    def row_count(self) -> int:
        with self._lock:
            count = len(self._rows)
            while count > 0 and not any(cell_text(c) for c in self._rows[count - 1]):
                count -= 1
            return count

    def col_count(self) -> int:
        with self._lock:
            width = 0
            for row in self._rows:
                for idx in range(len(row), 0, -1):
                    if cell_text(row[idx - 1]):
                        width = max(width, idx)
                        break
            return width

    def get_range(self, row: int, col: int, height: int, width: int) -> Grid:
        _check_address(row, col, height, width)
        with self._lock:
            out: Grid = []
            for r in range(row - 1, row - 1 + height):
                source = self._rows[r] if r < len(self._rows) else []
                cells = source[col - 1:col - 1 + width]
                out.append(list(cells) + [""] * (width - len(cells)))
            return out

    def set_range(self, row: int, col: int, values: Grid) -> None:
        if not values:
            return
        width = len(values[0])
        if any(len(v) != width for v in values):
            raise ValueError("All rows written in one range must have the same width")
        _check_address(row, col, len(values), width)
        with self._lock:
            for offset, row_values in enumerate(values):
                r = row - 1 + offset
                while len(self._rows) <= r:
                    self._rows.append([])
                target = self._rows[r]
                end = col - 1 + width
                if len(target) < end:
                    target.extend([""] * (end - len(target)))
                target[col - 1:end] = list(row_values)

    def append_row(self, values: list[Cell]) -> int:
        with self._lock:
            row_number = self.row_count() + 1
            self.set_range(row_number, 1, [list(values)])
            return row_number

    def find_exact(self, row: int, col: int, height: int, width: int, value: Cell) -> int | None:
        if not self.native_find:
            return super().find_exact(row, col, height, width, value)
        needle = cell_text(value)
        if not needle:
            return None
        for offset, cells in enumerate(self.get_range(row, col, height, width)):
            if any(cell_text(c) == needle for c in cells):
                return row + offset
        return None


class InMemoryWorkbook(Workbook):
    """Workbook of InMemoryTable instances."""

    def __init__(self, native_find: bool = True):
        self._tables: dict[str, InMemoryTable] = {}
        self._lock = threading.RLock()
        self.native_find = native_find

    def get_table(self, name: str) -> Table | None:
        with self._lock:
            return self._tables.get(name)

    def create_table(self, name: str) -> Table:
        with self._lock:
            if name not in self._tables:
                self._tables[name] = InMemoryTable(name, native_find=self.native_find)
            return self._tables[name]

    def table_names(self) -> list[str]:
        with self._lock:
            return list(self._tables)
