"""
Write path: save, status and document-link updates.

Every write follows the same sequence::

    lock (best effort) -> resolve row -> guards -> main row write
        -> index row write (best effort) -> etag bump + record cache warm-up

The main table is authoritative. Failures writing it raise
TransientStoreError; failures maintaining the index or the cache are returned
as MaintenanceIssue warnings. Rejections (stale version, duplicate, closed
record, unbuilt index) never touch the main table and come back as
unsuccessful SaveResult values.
"""

import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator

from sheetstore.config import StoreSettings
from sheetstore.core.errors import (
    ClosedRecordConflict,
    DuplicateRecordConflict,
    IndexNotBuilt,
    InvalidRecordId,
    RecordNotFound,
    SaveRejected,
    SheetStoreError,
    StaleWriteConflict,
    TransientStoreError,
)
from sheetstore.core.models import (
    DedupRule,
    FormConfig,
    IndexRow,
    MaintenanceIssue,
    Record,
    RecordMeta,
    SaveRequest,
    SaveResult,
)
from sheetstore.core.rules import DedupEvaluator
from sheetstore.observability.logger import get_logger
from sheetstore.observability.metrics import (
    increment_counter,
    record_maintenance_failure,
    save_duration_seconds,
    saves_total,
    track_duration,
)
from sheetstore.utils.validation import ValidationError, validate_record_id

from .cache import CacheStore, digest_key
from .collaborators import AdvisoryLock, PropertyStore, best_effort_lock
from .record_index import IndexHandle, RecordIndex
from .record_schema import (
    Destination,
    ensure_destination,
    parse_version,
    record_to_row,
    row_to_record,
    volatile_column_numbers,
)
from .tabular import Workbook, cell_text

logger = get_logger(__name__)

AUTO_INCREMENT_PROPERTY_PREFIX = "SS_AUTO_INC:"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


@contextmanager
def authoritative(operation: str) -> Iterator[None]:
    """Re-raise tabular store failures on the main table as TransientStoreError."""
    try:
        yield
    except SheetStoreError:
        raise
    except Exception as e:
        logger.error("Tabular store failure", extra={"operation": operation, "error": str(e)})
        raise TransientStoreError(operation, e) from e


class SubmissionStore:
    """
    Persists form submissions into destination tables.

    Args:
        workbook: Workbook holding destination and index tables
        cache_store: Cache and etag manager
        record_index: Index maintainer
        lock: Advisory lock guarding writes (optional)
        properties: Property store for auto-increment counters (optional)
        evaluator: Dedup evaluator
        settings: Store settings
        clock: Returns the current time as an ISO string (injectable for tests)
    """

    def __init__(
        self,
        workbook: Workbook,
        cache_store: CacheStore,
        record_index: RecordIndex,
        lock: AdvisoryLock | None = None,
        properties: PropertyStore | None = None,
        evaluator: DedupEvaluator | None = None,
        settings: StoreSettings | None = None,
        clock: Callable[[], str] = utc_now_iso,
    ):
        self.workbook = workbook
        self.cache_store = cache_store
        self.record_index = record_index
        self.lock = lock
        self.properties = properties
        self.evaluator = evaluator or DedupEvaluator()
        self.settings = settings or StoreSettings()
        self.clock = clock
        self._auto_increment_state: dict[str, int] = {}

    # ---------------------------------------------------------------------
    # Shared steps
    # ---------------------------------------------------------------------

    def _ensure_index(
        self, destination: Destination, rules: list[DedupRule], issues: list[MaintenanceIssue]
    ) -> IndexHandle | None:
        try:
            return self.record_index.ensure(destination.name, rules, destination.table.row_count())
        except Exception as e:
            logger.error(
                "Index unavailable",
                extra={"destination": destination.name, "error": str(e)},
            )
            record_maintenance_failure("index", "ensure")
            issues.append(MaintenanceIssue(component="index", operation="ensure", message=str(e)))
            return None

    def _finish_write(
        self,
        form: FormConfig,
        destination: Destination,
        handle: IndexHandle | None,
        record: Record,
        signatures: dict[str, str],
        issues: list[MaintenanceIssue],
        reason: str,
    ) -> None:
        """Index row write, etag bump and record cache warm-up."""
        if handle is not None:
            issue = self.record_index.write_row(
                handle,
                IndexRow(
                    record_id=record.id,
                    row_number=record.row_number,
                    data_version=record.data_version,
                    updated_at_iso=record.updated_at or "",
                    created_at_iso=record.created_at or "",
                    dedup_signatures=signatures,
                ),
            )
            if issue is not None:
                issues.append(issue)

        try:
            etag = self.cache_store.bump(
                destination.table, reason, volatile_column_numbers(destination, form)
            )
            self.cache_store.cache_record(form.form_key, etag, record)
        except Exception as e:
            logger.error(
                "Cache maintenance failed",
                extra={"destination": destination.name, "record_id": record.id, "error": str(e)},
            )
            record_maintenance_failure("cache", "bump")
            issues.append(MaintenanceIssue(component="cache", operation="bump", message=str(e)))

    def _next_auto_increment(self, form: FormConfig, field_id: str) -> str:
        config = form.field(field_id).auto_increment
        base = (config.property_key or "").strip() or f"{form.form_key}::{field_id}"
        key = f"{AUTO_INCREMENT_PROPERTY_PREFIX}{digest_key(base)}"
        current = self._auto_increment_state.get(key, 0)
        if self.properties is not None:
            stored = self.properties.get(key)
            if stored and stored.strip().isdigit():
                current = int(stored)
        value = current + 1
        self._auto_increment_state[key] = value
        if self.properties is not None:
            self.properties.set(key, str(value))
        return f"{config.prefix}{str(value).zfill(config.pad_length)}"

    def _check_duplicates(
        self,
        form: FormConfig,
        destination: Destination,
        handle: IndexHandle | None,
        rules: list[DedupRule],
        signatures: dict[str, str],
        record_id: str | None,
        language: str,
    ) -> None:
        applicable = [r for r in rules if r.is_indexed and signatures.get(r.id)]
        if not applicable:
            return

        table = destination.table
        with authoritative("dedup_check"):
            if table.row_count() < 2:
                # Nothing stored yet, so nothing to collide with.
                return
            if handle is None:
                raise IndexNotBuilt(table.name, record_id, "index table unavailable")
            pending = sorted(r.id for r in applicable if handle.is_pending(r.id))
            if pending:
                raise IndexNotBuilt(
                    table.name, record_id, f"dedup columns not yet populated: {', '.join(pending)}"
                )
            if not self.record_index.is_built_for(handle, table, destination.columns.record_id):
                raise IndexNotBuilt(table.name, record_id, "index does not cover the last row")

            for rule in applicable:
                hit = self.record_index.find_row_by_signature(handle, rule.id, signatures[rule.id])
                if hit is None:
                    continue
                row = self.record_index.read_row(handle, hit)
                other_id = row.record_id if row is not None else ""
                if other_id and other_id != record_id:
                    raise DuplicateRecordConflict(
                        rule.resolve_message(language),
                        record_id=record_id,
                        rule_id=rule.id,
                        existing_record_id=other_id,
                        existing_row_number=hit,
                    )

    # ---------------------------------------------------------------------
    # Save
    # ---------------------------------------------------------------------

    def save(
        self,
        request: SaveRequest,
        form: FormConfig,
        dedup_rules: list[DedupRule] | None = None,
    ) -> SaveResult:
        """
        Create or update a record.

        Args:
            request: The save request
            form: Form configuration (destination table and fields)
            dedup_rules: Validated dedup rules of the form

        Returns:
            SaveResult; rejections come back with ``success=False`` and an
            ``error_code``

        Raises:
            TransientStoreError: The main table could not be read or written
        """
        rules = [r for r in (dedup_rules or []) if r.enabled]
        outcome = "error"
        try:
            with track_duration(save_duration_seconds, form_key=form.form_key):
                with best_effort_lock(self.lock, self.settings.lock_timeout_seconds):
                    try:
                        result = self._save(request, form, rules)
                    except SaveRejected as e:
                        logger.info(
                            "Save rejected",
                            extra={"form_key": form.form_key, "record_id": e.record_id,
                                   "error_code": e.code, "reason": e.message},
                        )
                        result = SaveResult(
                            success=False,
                            message=e.message,
                            error_code=e.code,
                            meta=RecordMeta(id=e.record_id),
                        )
            outcome = result.error_code or ("updated" if (result.meta.data_version or 0) > 1 else "created")
            return result
        finally:
            increment_counter(saves_total, form_key=form.form_key, outcome=outcome)

    def _save(self, request: SaveRequest, form: FormConfig, rules: list[DedupRule]) -> SaveResult:
        record_id = None
        if request.record_id:
            try:
                record_id = validate_record_id(request.record_id)
            except ValidationError as e:
                raise InvalidRecordId(str(e), record_id=request.record_id) from e
        issues: list[MaintenanceIssue] = []

        with authoritative("ensure_destination"):
            destination = ensure_destination(self.workbook, form)
        table, columns = destination.table, destination.columns
        handle = self._ensure_index(destination, rules, issues)

        existing_row: int | None = None
        existing_cells: list[Any] | None = None
        existing: Record | None = None
        if record_id:
            with authoritative("resolve_row"):
                existing_row = self.record_index.resolve_row(handle, table, columns.record_id, record_id)
                if existing_row is not None:
                    existing_cells = table.get_range(existing_row, 1, 1, columns.width)[0]
                    existing = row_to_record(form, columns, existing_cells, existing_row, record_id)

        if existing is not None:
            if (
                request.save_mode == "draft"
                and not request.status_override
                and form.is_terminal_status(existing.status)
            ):
                raise ClosedRecordConflict(record_id, existing.status)

        stored_version = 0
        if existing is not None:
            version = parse_version(existing_cells[columns.data_version - 1]) if columns.data_version else None
            if version is None and handle is not None:
                try:
                    version = self.record_index.read_data_version(handle, existing_row)
                except Exception as e:
                    logger.warning("Index version read failed", extra={"record_id": record_id, "error": str(e)})
            stored_version = version or 0
            observed = request.client_observed_version
            if observed is not None and stored_version > observed:
                raise StaleWriteConflict(record_id, observed, stored_version)

        values = dict(existing.values) if existing is not None else {}
        for question in form.questions:
            if question.id in request.values:
                values[question.id] = request.values[question.id]
        for question in form.questions:
            if question.auto_increment is None or question.field_type != "TEXT":
                continue
            if cell_text(values.get(question.id)).strip():
                continue
            values[question.id] = self._next_auto_increment(form, question.id)

        now = self.clock()
        record = Record(
            id=record_id or str(uuid.uuid4()),
            form_key=form.form_key,
            language=request.language,
            values=values,
            status=request.status_override or (existing.status if existing else None),
            created_at=(existing.created_at if existing and existing.created_at else now),
            updated_at=now,
            data_version=stored_version + 1,
            pdf_url=existing.pdf_url if existing else None,
        )
        timestamp = None
        if columns.timestamp:
            timestamp = existing_cells[columns.timestamp - 1] if existing_cells else now
            timestamp = timestamp or now
        row_values = record_to_row(form, columns, record, existing_cells, timestamp)
        # Sign the values as stored, matching what rebuilds read back
        signed = row_to_record(form, columns, row_values, existing_row, record.id)
        signatures = self.evaluator.signatures_for(rules, signed.values)
        self._check_duplicates(form, destination, handle, rules, signatures, record_id, request.language)

        with authoritative("write_row"):
            if existing_row is not None:
                table.set_range(existing_row, 1, [row_values])
                row_number = existing_row
            else:
                row_number = table.append_row(row_values)

        stored = row_to_record(form, columns, row_values, row_number, record.id)
        self._finish_write(form, destination, handle, stored, signatures, issues, "save")

        logger.info(
            "Record saved",
            extra={"form_key": form.form_key, "record_id": stored.id, "row_number": row_number,
                   "data_version": stored.data_version, "is_new": existing_row is None,
                   "warnings": len(issues)},
        )
        return SaveResult(
            success=True,
            message="Saved",
            meta=RecordMeta(
                id=stored.id,
                created_at=stored.created_at,
                updated_at=stored.updated_at,
                data_version=stored.data_version,
                row_number=row_number,
            ),
            warnings=issues,
        )

    # ---------------------------------------------------------------------
    # Metadata updates
    # ---------------------------------------------------------------------

    def update_status(
        self,
        form: FormConfig,
        record_id: str,
        status: str,
        dedup_rules: list[DedupRule] | None = None,
    ) -> SaveResult:
        """
        Set the workflow status of a record.

        Raises:
            RecordNotFound: No record with that id
            ValidationError: The id is empty or cannot be stored in a cell
            TransientStoreError: The main table could not be read or written
        """
        return self._update_metadata(form, record_id, {"status": status}, dedup_rules, "status")

    def set_pdf_url(
        self,
        form: FormConfig,
        record_id: str,
        url: str,
        dedup_rules: list[DedupRule] | None = None,
    ) -> SaveResult:
        """
        Store the link to a generated document.

        Raises:
            RecordNotFound: No record with that id
            ValidationError: The id is empty or cannot be stored in a cell
            TransientStoreError: The main table could not be read or written
        """
        return self._update_metadata(form, record_id, {"pdf_url": url}, dedup_rules, "pdf_url")

    def _update_metadata(
        self,
        form: FormConfig,
        record_id: str,
        changes: dict[str, Any],
        dedup_rules: list[DedupRule] | None,
        reason: str,
    ) -> SaveResult:
        record_id = validate_record_id(record_id)
        rules = [r for r in (dedup_rules or []) if r.enabled]
        issues: list[MaintenanceIssue] = []
        started = time.monotonic()

        with best_effort_lock(self.lock, self.settings.lock_timeout_seconds):
            with authoritative("ensure_destination"):
                destination = ensure_destination(self.workbook, form)
            table, columns = destination.table, destination.columns
            handle = self._ensure_index(destination, rules, issues)

            with authoritative("resolve_row"):
                row_number = self.record_index.resolve_row(handle, table, columns.record_id, record_id)
                if row_number is None:
                    raise RecordNotFound(record_id, table.name)
                cells = table.get_range(row_number, 1, 1, columns.width)[0]
            current = row_to_record(form, columns, cells, row_number, record_id)

            updated = current.model_copy(
                update={
                    **changes,
                    "updated_at": self.clock(),
                    "data_version": current.data_version + 1,
                    "created_at": current.created_at or self.clock(),
                }
            )
            row_values = record_to_row(form, columns, updated, cells)
            with authoritative("write_row"):
                table.set_range(row_number, 1, [row_values])

            stored = row_to_record(form, columns, row_values, row_number, record_id)
            signatures = self.evaluator.signatures_for(rules, stored.values)
            if dedup_rules is None and handle is not None:
                # Keep the signatures already indexed for this row.
                try:
                    previous = self.record_index.read_row(handle, row_number)
                except Exception as e:
                    logger.error("Index row read failed", extra={"record_id": record_id, "error": str(e)})
                    record_maintenance_failure("index", "read_row")
                    issues.append(MaintenanceIssue(component="index", operation="read_row", message=str(e)))
                    handle = None
                else:
                    if previous is not None and previous.record_id == record_id:
                        signatures = previous.dedup_signatures
            self._finish_write(form, destination, handle, stored, signatures, issues, reason)

        logger.info(
            "Record metadata updated",
            extra={"form_key": form.form_key, "record_id": record_id, "fields": sorted(changes),
                   "data_version": stored.data_version,
                   "duration_seconds": round(time.monotonic() - started, 3)},
        )
        return SaveResult(
            success=True,
            message="Updated",
            meta=RecordMeta(
                id=stored.id,
                created_at=stored.created_at,
                updated_at=stored.updated_at,
                data_version=stored.data_version,
                row_number=row_number,
            ),
            warnings=issues,
        )
