"""
Index reconciliation after direct edits to a destination table.

Rows edited or appended without going through SubmissionStore may lack ids,
carry stale versions, or sit at positions the index describes differently.
``reconcile_rows`` repairs a row range; ``rebuild_index`` rewrites the whole
index from the destination table. Both follow the write path's order:
destination rows, then index rows, then the etag bump.
"""

import time
import uuid
from typing import Any

from sheetstore.config import StoreSettings
from sheetstore.core.errors import IndexAlignmentError
from sheetstore.core.models import DedupRule, FormConfig, IndexRow
from sheetstore.core.rules import DedupEvaluator
from sheetstore.observability.logger import get_logger, log_operation
from sheetstore.observability.metrics import increment_counter, reconciled_rows_total
from sheetstore.utils.validation import validate_row_range

from .cache import CacheStore
from .collaborators import AdvisoryLock, best_effort_lock
from .record_index import IndexHandle, RecordIndex
from .record_schema import (
    Destination,
    ensure_destination,
    is_blank_row,
    record_to_row,
    row_to_record,
    volatile_column_numbers,
)
from .submissions import authoritative, utc_now_iso
from .tabular import Workbook, cell_text

logger = get_logger(__name__)


class IndexReconciler:
    """
    Re-derives ids, versions and index rows from destination table contents.

    Args:
        workbook: Workbook holding destination and index tables
        cache_store: Cache and etag manager
        record_index: Index maintainer
        lock: Advisory lock shared with the write path (optional)
        evaluator: Dedup evaluator
        settings: Store settings (index chunk size, lock timeout)
        clock: Returns the current time as an ISO string
    """

    def __init__(
        self,
        workbook: Workbook,
        cache_store: CacheStore,
        record_index: RecordIndex,
        lock: AdvisoryLock | None = None,
        evaluator: DedupEvaluator | None = None,
        settings: StoreSettings | None = None,
        clock=utc_now_iso,
    ):
        self.workbook = workbook
        self.cache_store = cache_store
        self.record_index = record_index
        self.lock = lock
        self.evaluator = evaluator or DedupEvaluator()
        self.settings = settings or StoreSettings()
        self.clock = clock

    def _index_row(self, record, rules: list[DedupRule]) -> IndexRow:
        return IndexRow(
            record_id=record.id,
            row_number=record.row_number,
            data_version=record.data_version,
            updated_at_iso=record.updated_at or "",
            created_at_iso=record.created_at or "",
            dedup_signatures=self.evaluator.signatures_for(rules, record.values),
        )

    def assert_aligned(
        self,
        destination: Destination,
        handle: IndexHandle,
        start_row: int,
        main_ids: list[str],
    ) -> None:
        """
        Check that index rows name the records stored at the same positions.

        Raises:
            IndexAlignmentError: On the first mismatching row
        """
        index_ids = self.record_index.read_ids(handle, start_row, len(main_ids))
        for offset, (expected, actual) in enumerate(zip(main_ids, index_ids)):
            if expected != actual:
                raise IndexAlignmentError(destination.name, start_row + offset, expected, actual)

    def reconcile_rows(
        self,
        form: FormConfig,
        dedup_rules: list[DedupRule] | None,
        start_row: int,
        num_rows: int,
    ) -> dict[str, Any]:
        """
        Repair a range of directly edited rows.

        Rows without id get one; every non-blank row gets its version bumped,
        keeps its created_at and gets a fresh updated_at. Destination rows are
        written back in one write, then the aligned index rows, then the etag
        is bumped.

        Args:
            form: Form configuration
            dedup_rules: Rules of the form (signatures for the index rows)
            start_row: First edited row (>= 2)
            num_rows: Number of edited rows

        Returns:
            Summary with rows_reconciled, ids_assigned and cleared_rows

        Raises:
            IndexAlignmentError: The index does not match the destination after the write
            TransientStoreError: The destination table could not be read or written
        """
        validate_row_range(start_row, num_rows)
        rules = [r for r in (dedup_rules or []) if r.enabled]
        started = time.monotonic()

        with best_effort_lock(self.lock, self.settings.lock_timeout_seconds):
            with authoritative("reconcile_read"):
                destination = ensure_destination(self.workbook, form)
                table, columns = destination.table, destination.columns
                last_row = min(start_row + num_rows - 1, table.row_count())
                count = last_row - start_row + 1
                if count <= 0:
                    return {"table": table.name, "rows_reconciled": 0, "ids_assigned": 0, "cleared_rows": 0}
                block = table.get_range(start_row, 1, count, columns.width)

            handle = self.record_index.ensure(destination.name, rules, table.row_count())
            now = self.clock()
            written: list[list[Any]] = []
            index_rows: list[IndexRow | None] = []
            main_ids: list[str] = []
            ids_assigned = 0
            cleared = 0
            for offset, cells in enumerate(block):
                row_number = start_row + offset
                if is_blank_row(cells):
                    written.append(list(cells))
                    index_rows.append(None)
                    main_ids.append("")
                    cleared += 1
                    continue
                draft = row_to_record(form, columns, cells, row_number, fallback_id=str(uuid.uuid4()))
                if columns.record_id and not cell_text(cells[columns.record_id - 1]).strip():
                    ids_assigned += 1
                record = draft.model_copy(
                    update={
                        "data_version": draft.data_version + 1,
                        "created_at": draft.created_at or now,
                        "updated_at": now,
                    }
                )
                row_values = record_to_row(form, columns, record, cells)
                written.append(row_values)
                stored = row_to_record(form, columns, row_values, row_number)
                index_rows.append(self._index_row(stored, rules))
                main_ids.append(stored.id)

            with authoritative("reconcile_write"):
                table.set_range(start_row, 1, written)
            self.record_index.write_block(handle, start_row, index_rows)
            self.assert_aligned(destination, handle, start_row, main_ids)
            self.cache_store.bump(table, "reconcile", volatile_column_numbers(destination, form))

        increment_counter(reconciled_rows_total, count, table=table.name, mode="reconcile")
        result = {
            "table": table.name,
            "start_row": start_row,
            "rows_reconciled": count - cleared,
            "ids_assigned": ids_assigned,
            "cleared_rows": cleared,
            "duration_seconds": round(time.monotonic() - started, 3),
        }
        logger.info("Rows reconciled", extra=result)
        return result

    def rebuild_index(self, form: FormConfig, dedup_rules: list[DedupRule] | None) -> dict[str, Any]:
        """
        Rewrite the whole index from the destination table.

        The destination table is only read. Rows without id are left unindexed
        (run ``reconcile_rows`` over them to assign ids) and keep every DEDUP
        column pending, since their values are missing from dedup checks.
        Otherwise pending DEDUP columns are cleared once every chunk is written.

        Returns:
            Summary with rows_indexed, rows_without_id, duplicate_ids and chunks
        """
        rules = [r for r in (dedup_rules or []) if r.enabled]
        chunk_size = self.settings.index_chunk_size
        summary: dict[str, Any] = {"rows_indexed": 0, "rows_without_id": 0, "duplicate_ids": 0, "chunks": 0}

        with log_operation("Rebuilding record index", logger=logger, form_key=form.form_key):
            with best_effort_lock(self.lock, self.settings.lock_timeout_seconds):
                with authoritative("rebuild_read"):
                    destination = ensure_destination(self.workbook, form)
                    table, columns = destination.table, destination.columns
                    last_row = table.row_count()

                handle = self.record_index.ensure(destination.name, rules, table.row_count())
                seen: set[str] = set()
                for start in range(2, last_row + 1, chunk_size):
                    count = min(chunk_size, last_row - start + 1)
                    with authoritative("rebuild_read"):
                        block = table.get_range(start, 1, count, columns.width)
                    index_rows: list[IndexRow | None] = []
                    main_ids: list[str] = []
                    for offset, cells in enumerate(block):
                        record = row_to_record(form, columns, cells, start + offset)
                        if record is None:
                            if not is_blank_row(cells):
                                summary["rows_without_id"] += 1
                            index_rows.append(None)
                            main_ids.append("")
                            continue
                        if record.id in seen:
                            summary["duplicate_ids"] += 1
                            logger.warning(
                                "Duplicate record id in destination table",
                                extra={"destination": table.name, "record_id": record.id,
                                       "row_number": start + offset},
                            )
                        seen.add(record.id)
                        index_rows.append(self._index_row(record, rules))
                        main_ids.append(record.id)
                        summary["rows_indexed"] += 1
                    self.record_index.write_block(handle, start, index_rows)
                    self.assert_aligned(destination, handle, start, main_ids)
                    summary["chunks"] += 1

                stale_rows = handle.table.row_count() - max(last_row, 1)
                if stale_rows > 0:
                    self.record_index.write_block(handle, max(last_row, 1) + 1, [None] * stale_rows)
                summary["stale_rows_cleared"] = max(stale_rows, 0)

                if summary["rows_without_id"]:
                    self.record_index.mark_pending(handle, handle.dedup_columns)
                else:
                    self.record_index.clear_pending(handle)
                self.cache_store.bump(table, "rebuildIndex", volatile_column_numbers(destination, form))

        increment_counter(reconciled_rows_total, summary["rows_indexed"], table=table.name, mode="rebuild")
        summary["table"] = table.name
        summary["index_table"] = handle.name
        if summary["rows_without_id"]:
            logger.warning(
                "Rows without id were not indexed; reconcile them to assign ids",
                extra={"destination": table.name, "rows_without_id": summary["rows_without_id"]},
            )
        return summary
