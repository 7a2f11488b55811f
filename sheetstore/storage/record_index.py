"""
Row-aligned secondary index over a destination table.

Index row N describes the record stored at row N of the destination table, so
once a record id has been resolved to a row number, every index update is a
single positional write. Each active reject rule gets a ``DEDUP:<ruleId>``
column holding the rule signature of the record at that row, which turns the
duplicate check into an exact-match find instead of a table scan.

Header layout::

    Record ID | Row | Data Version | Updated At (ISO) | Created At (ISO) | DEDUP:<rule> ...
"""

import json
import re
from typing import Iterable

from sheetstore.config import StoreSettings
from sheetstore.core.models import DedupRule, IndexRow, MaintenanceIssue
from sheetstore.observability.logger import get_logger
from sheetstore.observability.metrics import record_maintenance_failure

from .cache import digest_key
from .collaborators import PropertyStore
from .record_schema import parse_version
from .tabular import Table, Workbook, cell_text

logger = get_logger(__name__)

BASE_HEADERS = ["Record ID", "Row", "Data Version", "Updated At (ISO)", "Created At (ISO)"]
RECORD_ID_COL = 1
ROW_COL = 2
DATA_VERSION_COL = 3
UPDATED_AT_COL = 4
CREATED_AT_COL = 5

DEDUP_HEADER_PREFIX = "DEDUP:"
PENDING_PROPERTY_PREFIX = "SS_INDEX_PENDING:"

_UNSAFE_NAME_CHARS = re.compile(r"[:\\/?*\[\]]")


def normalize_rule_id(raw: str) -> str:
    return re.sub(r"\s+", "_", (raw or "").strip())


def index_table_name(destination: str, prefix: str = "__SS_INDEX__") -> str:
    """
    Stable index table name for a destination table.

    The readable part is truncated to 40 characters; a digest of the full
    name keeps truncated names distinct.
    """
    base = re.sub(r"\s+", " ", _UNSAFE_NAME_CHARS.sub(" ", destination or "")).strip() or "Responses"
    head = base[:40].strip()
    return f"{prefix}{head}__{digest_key(destination or base)[:10]}"


class IndexHandle:
    """
    An ensured index table and its column layout.

    Attributes:
        table: The index table
        destination: Name of the destination table it indexes
        dedup_columns: Rule id -> 1-based column
        width: Header width
        pending_rules: Rule ids whose columns were added after rows existed;
            their signatures are missing until the index is rebuilt
    """

    def __init__(
        self,
        table: Table,
        destination: str,
        dedup_columns: dict[str, int],
        width: int,
        pending_rules: set[str] | None = None,
    ):
        self.table = table
        self.destination = destination
        self.dedup_columns = dedup_columns
        self.width = width
        self.pending_rules = pending_rules or set()

    @property
    def name(self) -> str:
        return self.table.name

    def is_pending(self, rule_id: str) -> bool:
        return normalize_rule_id(rule_id) in self.pending_rules


class RecordIndex:
    """
    Maintains index tables inside a workbook.

    Args:
        workbook: Workbook holding destination and index tables
        properties: Property store used to remember pending DEDUP columns
        settings: Store settings (index prefix, linear scan threshold)
    """

    def __init__(
        self,
        workbook: Workbook,
        properties: PropertyStore | None = None,
        settings: StoreSettings | None = None,
    ):
        self.workbook = workbook
        self.properties = properties
        self.settings = settings or StoreSettings()

    # ---------------------------------------------------------------------
    # Schema
    # ---------------------------------------------------------------------

    def _pending_key(self, index_name: str) -> str:
        return f"{PENDING_PROPERTY_PREFIX}{index_name}"

    def _read_pending(self, index_name: str) -> set[str]:
        if self.properties is None:
            return set()
        raw = self.properties.get(self._pending_key(index_name))
        if not raw:
            return set()
        try:
            return {str(r) for r in json.loads(raw)}
        except (json.JSONDecodeError, TypeError):
            logger.warning("Ignoring malformed pending rule list", extra={"index_table": index_name})
            return set()

    def _write_pending(self, index_name: str, pending: set[str]) -> None:
        if self.properties is None:
            return
        self.properties.set(self._pending_key(index_name), json.dumps(sorted(pending)))

    def mark_pending(self, handle: IndexHandle, rule_ids: Iterable[str]) -> None:
        """Flag DEDUP columns whose signatures are known to be incomplete."""
        added = {normalize_rule_id(r) for r in rule_ids} - handle.pending_rules
        if not added:
            return
        handle.pending_rules = handle.pending_rules | added
        self._write_pending(handle.name, handle.pending_rules)
        logger.warning(
            "Dedup columns marked pending; rebuild required",
            extra={"index_table": handle.name, "rules": sorted(added)},
        )

    def clear_pending(self, handle: IndexHandle) -> None:
        """Forget pending DEDUP columns (after a full rebuild)."""
        handle.pending_rules = set()
        self._write_pending(handle.name, set())

    def ensure(
        self,
        destination: str,
        dedup_rules: Iterable[DedupRule] | None = None,
        main_row_count: int | None = None,
    ) -> IndexHandle:
        """
        Create the index table if needed and make sure every indexed rule has
        a DEDUP column.

        Columns are only ever appended: existing DEDUP columns keep their
        position even when their rule is gone. Columns added to an index that
        already holds rows, or whose destination already holds rows, are marked
        pending until the next rebuild, since their cells are empty for
        existing records. A fresh index on a populated destination therefore
        starts with every rule pending.

        Args:
            destination: Destination table name
            dedup_rules: Active rules of the form
            main_row_count: Row count of the destination table, when known

        Returns:
            IndexHandle
        """
        name = index_table_name(destination, self.settings.index_prefix)
        table = self.workbook.get_table(name)
        if table is None:
            table = self.workbook.create_table(name)
            logger.info("Index table created", extra={"index_table": name, "destination": destination})

        width = table.col_count()
        current = [cell_text(h).strip() for h in table.get_range(1, 1, 1, width)[0]] if width else []
        while current and not current[-1]:
            current.pop()

        headers = list(BASE_HEADERS)
        headers.extend(current[len(BASE_HEADERS):])

        existing_rules = {
            h[len(DEDUP_HEADER_PREFIX):] for h in headers if h.startswith(DEDUP_HEADER_PREFIX)
        }
        added: list[str] = []
        for rule in dedup_rules or []:
            if not rule.is_indexed:
                continue
            rule_id = normalize_rule_id(rule.id)
            if rule_id and rule_id not in existing_rules:
                headers.append(f"{DEDUP_HEADER_PREFIX}{rule_id}")
                existing_rules.add(rule_id)
                added.append(rule_id)

        if headers != current:
            table.set_range(1, 1, [headers])

        pending = self._read_pending(name)
        if added and (table.row_count() > 1 or (main_row_count or 0) > 1):
            pending.update(added)
            self._write_pending(name, pending)
            logger.warning(
                "Dedup columns added to a populated table; rebuild required",
                extra={"index_table": name, "rules": added},
            )

        dedup_columns = {
            h[len(DEDUP_HEADER_PREFIX):]: idx + 1
            for idx, h in enumerate(headers)
            if h.startswith(DEDUP_HEADER_PREFIX)
        }
        return IndexHandle(table, destination, dedup_columns, len(headers), pending)

    # ---------------------------------------------------------------------
    # Lookups
    # ---------------------------------------------------------------------

    def _find_in_column(self, table: Table, col: int, value: str) -> int | None:
        needle = (value or "").strip()
        if not needle:
            return None
        data_rows = table.row_count() - 1
        if data_rows <= 0:
            return None
        if data_rows >= self.settings.linear_scan_threshold:
            try:
                return table.find_exact(2, col, data_rows, 1, needle)
            except NotImplementedError:
                logger.debug("Native find unavailable, scanning", extra={"index_table": table.name})
        for offset, row in enumerate(table.get_range(2, col, data_rows, 1)):
            if cell_text(row[0]) == needle:
                return 2 + offset
        return None

    def find_row(self, handle: IndexHandle, record_id: str) -> int | None:
        """
        Row number of a record id (whole-cell match, never substring).
        """
        return self._find_in_column(handle.table, RECORD_ID_COL, record_id)

    def find_row_by_signature(self, handle: IndexHandle, rule_id: str, signature: str) -> int | None:
        """
        Row number of the first record whose signature for a rule matches.
        """
        col = handle.dedup_columns.get(normalize_rule_id(rule_id))
        if not col or not signature:
            return None
        return self._find_in_column(handle.table, col, signature)

    def resolve_row(
        self,
        handle: IndexHandle | None,
        main_table: Table,
        id_column: int | None,
        record_id: str,
    ) -> int | None:
        """
        Locate a record in the main table.

        The index hit is only trusted when the main row at that position
        holds the same id; otherwise the main id column is searched directly.

        Args:
            handle: Index handle, or None when the index is unavailable
            main_table: Destination table
            id_column: Record ID column of the destination table
            record_id: Id to locate

        Returns:
            Main table row number, or None
        """
        if not id_column or not (record_id or "").strip():
            return None
        record_id = record_id.strip()
        if handle is not None:
            try:
                row = self.find_row(handle, record_id)
            except Exception as e:
                logger.warning(
                    "Index lookup failed, scanning main table",
                    extra={"index_table": handle.name, "record_id": record_id, "error": str(e)},
                )
                row = None
            if row is not None and row <= main_table.row_count():
                main_id = cell_text(main_table.get_range(row, id_column, 1, 1)[0][0]).strip()
                if main_id == record_id:
                    return row
                logger.info(
                    "Index entry stale, scanning main table",
                    extra={"index_table": handle.name, "record_id": record_id, "row_number": row},
                )
        return self._find_in_column(main_table, id_column, record_id)

    def read_row(self, handle: IndexHandle, row_number: int) -> IndexRow | None:
        """Read the index row at a position, None when it is empty."""
        if row_number < 2 or row_number > handle.table.row_count():
            return None
        cells = handle.table.get_range(row_number, 1, 1, handle.width)[0]
        record_id = cell_text(cells[RECORD_ID_COL - 1]).strip()
        if not record_id:
            return None
        return IndexRow(
            record_id=record_id,
            row_number=row_number,
            data_version=parse_version(cells[DATA_VERSION_COL - 1]),
            updated_at_iso=cell_text(cells[UPDATED_AT_COL - 1]),
            created_at_iso=cell_text(cells[CREATED_AT_COL - 1]),
            dedup_signatures={
                rule_id: cell_text(cells[col - 1])
                for rule_id, col in handle.dedup_columns.items()
            },
        )

    def read_data_version(self, handle: IndexHandle, row_number: int) -> int | None:
        if row_number < 2:
            return None
        cell = handle.table.get_range(row_number, DATA_VERSION_COL, 1, 1)[0][0]
        return parse_version(cell)

    def is_built_for(self, handle: IndexHandle, main_table: Table, id_column: int | None) -> bool:
        """
        Sentinel check: the index row at the main table's last row must name
        the record stored there.

        An empty main table counts as built. A last row without id (written
        around this layer) does not.
        """
        last_row = main_table.row_count()
        if last_row < 2:
            return True
        if not id_column:
            return False
        main_id = cell_text(main_table.get_range(last_row, id_column, 1, 1)[0][0]).strip()
        if not main_id:
            return False
        index_id = cell_text(handle.table.get_range(last_row, RECORD_ID_COL, 1, 1)[0][0]).strip()
        return index_id == main_id

    # ---------------------------------------------------------------------
    # Writes
    # ---------------------------------------------------------------------

    def _row_values(self, handle: IndexHandle, row: IndexRow) -> list:
        values: list = [""] * handle.width
        values[RECORD_ID_COL - 1] = row.record_id
        values[ROW_COL - 1] = row.row_number
        values[DATA_VERSION_COL - 1] = "" if row.data_version is None else row.data_version
        values[UPDATED_AT_COL - 1] = row.updated_at_iso or ""
        values[CREATED_AT_COL - 1] = row.created_at_iso or ""
        for rule_id, signature in row.dedup_signatures.items():
            col = handle.dedup_columns.get(normalize_rule_id(rule_id))
            if col:
                values[col - 1] = signature or ""
        return values

    def _mark_gap(self, handle: IndexHandle, row_number: int) -> None:
        # Rows between the index end and row_number are left without entries
        if handle.dedup_columns and row_number > handle.table.row_count() + 1:
            self.mark_pending(handle, handle.dedup_columns)

    def write_row(self, handle: IndexHandle, row: IndexRow) -> MaintenanceIssue | None:
        """
        Overwrite the full index row at ``row.row_number`` in one write.

        The destination row is authoritative, so failures are reported
        instead of raised.

        Returns:
            None on success, a MaintenanceIssue describing the failure otherwise
        """
        try:
            self._mark_gap(handle, row.row_number)
            handle.table.set_range(row.row_number, 1, [self._row_values(handle, row)])
            return None
        except Exception as e:
            logger.error(
                "Index row write failed",
                extra={"index_table": handle.name, "row_number": row.row_number,
                       "record_id": row.record_id, "error": str(e)},
            )
            record_maintenance_failure("index", "write_row")
            return MaintenanceIssue(
                component="index",
                operation="write_row",
                message=f"Index row {row.row_number} not written: {e}",
            )

    def write_rows(self, handle: IndexHandle, rows: list[IndexRow]) -> int:
        """
        Write many index rows, one bulk write per contiguous run.

        Errors propagate; this is the reconciliation path.

        Returns:
            Number of rows written
        """
        ordered = sorted(rows, key=lambda r: r.row_number)
        run: list[IndexRow] = []
        for row in ordered:
            if run and row.row_number != run[-1].row_number + 1:
                self._write_run(handle, run)
                run = []
            run.append(row)
        if run:
            self._write_run(handle, run)
        return len(ordered)

    def _write_run(self, handle: IndexHandle, run: list[IndexRow]) -> None:
        self.write_block(handle, run[0].row_number, run)

    def write_block(self, handle: IndexHandle, start_row: int, rows: list[IndexRow | None]) -> None:
        """
        Overwrite consecutive index rows starting at ``start_row`` in one write.

        ``None`` entries blank their row (no record at that position).
        """
        if not rows:
            return
        self._mark_gap(handle, start_row)
        blank = [""] * handle.width
        values = [self._row_values(handle, r) if r is not None else list(blank) for r in rows]
        handle.table.set_range(start_row, 1, values)

    def read_ids(self, handle: IndexHandle, start_row: int, num_rows: int) -> list[str]:
        """Record ids held by consecutive index rows."""
        if num_rows <= 0:
            return []
        cells = handle.table.get_range(start_row, RECORD_ID_COL, num_rows, 1)
        return [cell_text(row[0]).strip() for row in cells]
