"""
Read path: paginated listings, single-record lookups and batch reads.

Pages are cached under a key derived from the table etag, so a write (which
bumps the etag) makes every cached page unreachable. On a miss only the
columns a page needs are read, one range per contiguous run of columns.
"""

import uuid
from typing import Any

from pydantic import ValidationError

from sheetstore.config import StoreSettings
from sheetstore.core.models import BatchResult, DedupRule, FormConfig, IndexRow, ListPage, ListRequest, Record
from sheetstore.core.pagination import decode_page_token, encode_page_token
from sheetstore.core.rules import DedupEvaluator
from sheetstore.observability.logger import get_logger
from sheetstore.observability.metrics import increment_counter, record_maintenance_failure, rows_read_total
from sheetstore.utils.validation import validate_row_number

from .cache import LIST_NAMESPACE, CacheStore
from .record_index import IndexHandle, RecordIndex
from .record_schema import (
    Destination,
    as_iso,
    decode_value,
    ensure_destination,
    is_blank_row,
    parse_version,
    record_to_row,
    row_to_record,
    volatile_column_numbers,
)
from .submissions import utc_now_iso
from .tabular import Workbook, cell_text

logger = get_logger(__name__)


def column_runs(columns: list[int]) -> list[tuple[int, int]]:
    """
    Group column numbers into contiguous runs.

    Returns:
        (first column, width) pairs in ascending order
    """
    runs: list[tuple[int, int]] = []
    for col in sorted(set(c for c in columns if c)):
        if runs and runs[-1][0] + runs[-1][1] == col:
            runs[-1] = (runs[-1][0], runs[-1][1] + 1)
        else:
            runs.append((col, 1))
    return runs


class ListingReader:
    """
    Reads records from destination tables.

    Args:
        workbook: Workbook holding destination and index tables
        cache_store: Cache and etag manager
        record_index: Index maintainer
        evaluator: Dedup evaluator (signatures for rows given an id on read)
        settings: Store settings (page size and scan limits)
        clock: Returns the current time as an ISO string
    """

    def __init__(
        self,
        workbook: Workbook,
        cache_store: CacheStore,
        record_index: RecordIndex,
        evaluator: DedupEvaluator | None = None,
        settings: StoreSettings | None = None,
        clock=utc_now_iso,
    ):
        self.workbook = workbook
        self.cache_store = cache_store
        self.record_index = record_index
        self.evaluator = evaluator or DedupEvaluator()
        self.settings = settings or StoreSettings()
        self.clock = clock

    def _destination(self, form: FormConfig) -> tuple[Destination, str]:
        destination = ensure_destination(self.workbook, form)
        etag = self.cache_store.get_or_init_etag(
            destination.table, volatile_column_numbers(destination, form)
        )
        return destination, etag

    def _index(self, destination: Destination, rules: list[DedupRule] | None = None) -> IndexHandle | None:
        try:
            return self.record_index.ensure(destination.name, rules or [], destination.table.row_count())
        except Exception as e:
            logger.warning("Index unavailable, falling back to scans",
                           extra={"destination": destination.name, "error": str(e)})
            record_maintenance_failure("index", "ensure")
            return None

    # ---------------------------------------------------------------------
    # Pages
    # ---------------------------------------------------------------------

    def fetch_page(
        self,
        form: FormConfig,
        projection: list[str] | None = None,
        page_size: int = 10,
        page_token: str | None = None,
        hydrate: bool = False,
    ) -> ListPage:
        """
        Read one page of records.

        Args:
            form: Form configuration
            projection: Field ids to include in items (all fields when empty)
            page_size: Requested size, clamped to [1, max_page_size]
            page_token: Token of a previous page; absent or invalid means the start
            hydrate: Also return full records keyed by id

        Returns:
            ListPage
        """
        destination, etag = self._destination(form)
        table, columns = destination.table, destination.columns

        total = min(max(0, table.row_count() - 1), self.settings.max_scan_rows)
        size = max(1, min(page_size or self.settings.max_page_size, self.settings.max_page_size))
        offset = decode_page_token(page_token)
        if offset >= total:
            return ListPage(items=[], total_count=total, etag=etag)

        field_ids = [f for f in (projection or []) if f] or [q.id for q in form.questions]
        cache_key = self.cache_store.make_list_cache_key(
            form.form_key, etag, field_ids, size, page_token, hydrate
        )
        cached = self.cache_store.get(cache_key, namespace=LIST_NAMESPACE)
        if cached is not None:
            try:
                return ListPage.model_validate(cached)
            except ValidationError:
                logger.debug("Discarding malformed cached page", extra={"cache_key": cache_key})

        count = min(size, total - offset)
        first_row = 2 + offset
        if hydrate:
            rows = table.get_range(first_row, 1, count, columns.width)
            increment_counter(rows_read_total, count, table=table.name, mode="hydrated")
        else:
            wanted = [
                columns.record_id, columns.created_at, columns.updated_at,
                columns.status, columns.pdf_url, columns.data_version,
            ]
            wanted.extend(columns.fields.get(f) for f in field_ids)
            rows = [[""] * columns.width for _ in range(count)]
            for start, width in column_runs(wanted):
                block = table.get_range(first_row, start, count, width)
                for r, cells in enumerate(block):
                    rows[r][start - 1:start - 1 + width] = cells
            increment_counter(rows_read_total, count, table=table.name, mode="projected")

        items: list[dict[str, Any]] = []
        records: dict[str, Record] = {}
        for r, row in enumerate(rows):
            items.append(self._item(form, destination, row, first_row + r, field_ids))
            if hydrate:
                record = row_to_record(form, columns, row, first_row + r)
                if record is not None:
                    records[record.id] = record
                    self.cache_store.cache_record(form.form_key, etag, record)

        next_offset = offset + count
        page = ListPage(
            items=items,
            next_page_token=encode_page_token(next_offset) if next_offset < total else None,
            total_count=total,
            etag=etag,
            records=records,
        )
        self.cache_store.put(cache_key, page.model_dump(mode="json"))
        return page

    def fetch_list(self, form: FormConfig, request: ListRequest) -> ListPage:
        return self.fetch_page(form, request.projection, request.page_size, request.page_token, request.hydrate)

    def _item(
        self,
        form: FormConfig,
        destination: Destination,
        row: list[Any],
        row_number: int,
        field_ids: list[str],
    ) -> dict[str, Any]:
        columns = destination.columns

        def cell(col: int | None) -> Any:
            return row[col - 1] if col else ""

        item: dict[str, Any] = {
            "id": cell_text(cell(columns.record_id)).strip(),
            "created_at": as_iso(cell(columns.created_at)),
            "updated_at": as_iso(cell(columns.updated_at)),
            "status": cell_text(cell(columns.status)).strip() or None,
            "pdf_url": cell_text(cell(columns.pdf_url)).strip() or None,
            "data_version": parse_version(cell(columns.data_version)),
            "row_number": row_number,
        }
        for field_id in field_ids:
            col = columns.fields.get(field_id)
            question = form.field(field_id)
            if not col or question is None:
                continue
            item[field_id] = decode_value(question, cell(col))
        return item

    # ---------------------------------------------------------------------
    # Single records
    # ---------------------------------------------------------------------

    def fetch_by_id(self, form: FormConfig, record_id: str) -> Record | None:
        """
        Read one record by id (record cache, then index, then scan).
        """
        record_id = (record_id or "").strip()
        if not record_id:
            return None
        destination, etag = self._destination(form)
        cached = self.cache_store.get_cached_record(form.form_key, etag, record_id)
        if cached is not None:
            return cached

        table, columns = destination.table, destination.columns
        handle = self._index(destination)
        row_number = self.record_index.resolve_row(handle, table, columns.record_id, record_id)
        if row_number is None:
            return None
        cells = table.get_range(row_number, 1, 1, columns.width)[0]
        record = row_to_record(form, columns, cells, row_number, record_id)
        if record is not None:
            self.cache_store.cache_record(form.form_key, etag, record)
        return record

    def fetch_by_row_number(
        self,
        form: FormConfig,
        row_number: int,
        dedup_rules: list[DedupRule] | None = None,
    ) -> Record | None:
        """
        Read the record at a physical row.

        Rows written around this layer may lack an id. Such a row gets a
        generated id, version 1 and its timestamps, is written back along with
        its index row, and the etag is bumped so cached pages showing the row
        without id are dropped. A blank row (cleared by hand) is not a record.

        Args:
            form: Form configuration
            row_number: Physical row (>= 2)
            dedup_rules: Rules of the form, used to index the signatures of a
                row that receives an id. When omitted and the row needs an id,
                every DEDUP column of the index is marked pending, so dedup
                saves fail with INDEX_NOT_BUILT until the next rebuild. Pass
                the rules whenever they are at hand.

        Returns:
            The record, or None when the row is beyond the table or blank
        """
        validate_row_number(row_number)
        destination, etag = self._destination(form)
        table, columns = destination.table, destination.columns
        if row_number > table.row_count():
            return None

        cells = table.get_range(row_number, 1, 1, columns.width)[0]
        record_id = cell_text(cells[columns.record_id - 1]).strip() if columns.record_id else ""
        if record_id:
            cached = self.cache_store.get_cached_record(form.form_key, etag, record_id)
            if cached is not None and cached.row_number == row_number:
                return cached
            record = row_to_record(form, columns, cells, row_number)
            self.cache_store.cache_record(form.form_key, etag, record)
            return record

        if is_blank_row(cells):
            return None
        return self._assign_legacy_id(form, destination, cells, row_number, dedup_rules)

    def _assign_legacy_id(
        self,
        form: FormConfig,
        destination: Destination,
        cells: list[Any],
        row_number: int,
        dedup_rules: list[DedupRule] | None,
    ) -> Record:
        table, columns = destination.table, destination.columns
        generated = str(uuid.uuid4())
        draft = row_to_record(form, columns, cells, row_number, fallback_id=generated)
        now = self.clock()
        created_at = draft.created_at or now
        record = draft.model_copy(
            update={
                "created_at": created_at,
                "updated_at": draft.updated_at or created_at,
                "data_version": draft.data_version or 1,
            }
        )
        row_values = record_to_row(form, columns, record, cells)
        table.set_range(row_number, 1, [row_values])
        logger.info(
            "Generated id for legacy row",
            extra={"destination": table.name, "row_number": row_number, "record_id": generated},
        )

        stored = row_to_record(form, columns, row_values, row_number)
        rules = [r for r in (dedup_rules or []) if r.enabled]
        handle = self._index(destination, rules)
        if handle is not None:
            if dedup_rules is None and handle.dedup_columns:
                self.record_index.mark_pending(handle, handle.dedup_columns)
            self.record_index.write_row(
                handle,
                IndexRow(
                    record_id=record.id,
                    row_number=row_number,
                    data_version=record.data_version,
                    updated_at_iso=record.updated_at or "",
                    created_at_iso=record.created_at or "",
                    dedup_signatures=self.evaluator.signatures_for(rules, stored.values),
                ),
            )

        try:
            etag = self.cache_store.bump(table, "legacyId", volatile_column_numbers(destination, form))
            self.cache_store.cache_record(form.form_key, etag, stored)
        except Exception as e:
            logger.error("Cache maintenance failed", extra={"destination": table.name, "error": str(e)})
            record_maintenance_failure("cache", "bump")
        return stored

    # ---------------------------------------------------------------------
    # Batch
    # ---------------------------------------------------------------------

    def fetch_batch(
        self,
        form: FormConfig,
        projection: list[str] | None = None,
        page_size: int = 10,
        page_token: str | None = None,
        hydrate: bool = False,
        record_ids: list[str] | None = None,
    ) -> BatchResult:
        """
        A page plus specific records in one call.

        Returns:
            BatchResult whose ``records`` holds only requested ids that are not
            already on the page
        """
        page = self.fetch_page(form, projection, page_size, page_token, hydrate)
        on_page = {item.get("id") for item in page.items if item.get("id")}
        records: dict[str, Record] = {}
        for raw_id in record_ids or []:
            record_id = (raw_id or "").strip()
            if not record_id or record_id in on_page or record_id in records:
                continue
            record = self.fetch_by_id(form, record_id)
            if record is not None:
                records[record_id] = record
        return BatchResult(page=page, records=records)
