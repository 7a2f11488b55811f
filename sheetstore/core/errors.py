"""
Exception taxonomy for the storage layer.

Rejections (``SaveRejected`` subclasses) describe a save that was refused
without mutating the main table; they are turned into unsuccessful
``SaveResult`` values at the write boundary. ``TransientStoreError`` marks an
I/O failure on the authoritative write path and always propagates.
"""


class SheetStoreError(Exception):
    """Base class for every sheetstore error."""


class SaveRejected(SheetStoreError):
    """A save was refused. Nothing was written to the main table."""

    code = "REJECTED"

    def __init__(self, message: str, record_id: str | None = None):
        self.message = message
        self.record_id = record_id
        super().__init__(f"[{self.code}] {message}")


class StaleWriteConflict(SaveRejected):
    """The caller's observed data version is older than the stored one."""

    code = "STALE_WRITE"

    def __init__(self, record_id: str, observed_version: int, stored_version: int):
        self.observed_version = observed_version
        self.stored_version = stored_version
        super().__init__(
            f"Record {record_id} was modified by someone else "
            f"(you have version {observed_version}, stored version is {stored_version}). "
            "Refresh the record and try again.",
            record_id=record_id,
        )


class DuplicateRecordConflict(SaveRejected):
    """A reject-scoped dedup rule matched a different record."""

    code = "DUPLICATE"

    def __init__(
        self,
        message: str,
        record_id: str | None,
        rule_id: str,
        existing_record_id: str | None = None,
        existing_row_number: int | None = None,
    ):
        self.rule_id = rule_id
        self.existing_record_id = existing_record_id
        self.existing_row_number = existing_row_number
        super().__init__(message, record_id=record_id)


class IndexNotBuilt(SaveRejected):
    """The record index cannot be trusted for dedup checks on this table."""

    code = "INDEX_NOT_BUILT"

    def __init__(self, table_name: str, record_id: str | None = None, detail: str = ""):
        self.table_name = table_name
        message = (
            f"The record index for '{table_name}' is missing or out of date, so duplicate "
            "checks cannot be guaranteed. Ask an administrator to rebuild the index "
            f"of '{table_name}' (sheetstore-admin rebuild-index --config <form config>)."
        )
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, record_id=record_id)


class ClosedRecordConflict(SaveRejected):
    """A background write targeted a record in a terminal status."""

    code = "RECORD_CLOSED"

    def __init__(self, record_id: str, status: str):
        self.status = status
        super().__init__(
            f"Record {record_id} is {status}; background saves are not applied to closed records.",
            record_id=record_id,
        )


class InvalidRecordId(SaveRejected):
    """The caller sent a record id that cannot be stored in a cell."""

    code = "INVALID_RECORD_ID"


class TransientStoreError(SheetStoreError):
    """I/O failure against the tabular store on the authoritative write path."""

    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Tabular store failure during {operation}{detail}")


class RecordNotFound(SheetStoreError):
    """No record with the given id exists in the destination table."""

    def __init__(self, record_id: str, table_name: str):
        self.record_id = record_id
        self.table_name = table_name
        super().__init__(f"Record {record_id} not found in '{table_name}'")


class IndexAlignmentError(SheetStoreError):
    """Index row R does not describe main-table row R."""

    def __init__(self, table_name: str, row_number: int, expected_id: str, actual_id: str):
        self.table_name = table_name
        self.row_number = row_number
        self.expected_id = expected_id
        self.actual_id = actual_id
        super().__init__(
            f"Index for '{table_name}' is misaligned at row {row_number}: "
            f"expected record id '{expected_id}', found '{actual_id}'"
        )


class RuleConfigError(ValueError, SheetStoreError):
    """A dedup rule or form configuration is malformed."""
