"""
Input validation utilities for the storage layer.

Reusable checks for record ids, row addresses and limits coming from callers
and the admin CLI.
"""

import re


class ValidationError(ValueError):
    """Raised when input validation fails."""
    pass


MAX_ROW_NUMBER = 10_000_000

_CONTROL_CHARS_RE = re.compile(r'[\x00-\x1f\x7f]')
_SQL_IDENTIFIER_RE = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')


def validate_record_id(record_id: str, field_name: str = "record_id") -> str:
    """
    Validate a record ID.

    Record IDs must be non-empty strings that fit in one cell: at most 255
    characters and no control characters. Ids typed into the destination
    table by hand (e.g. "Order 12") are valid.

    Args:
        record_id: The record ID to validate
        field_name: Name of the field (for error messages)

    Returns:
        The validated record ID (stripped of whitespace)

    Raises:
        ValidationError: If validation fails

    Examples:
        >>> validate_record_id("  4c1f0a52-8a57-4d0a  ")
        '4c1f0a52-8a57-4d0a'
    """
    if not record_id or not isinstance(record_id, str):
        raise ValidationError(f"{field_name} must be a non-empty string")

    record_id = record_id.strip()

    if not record_id:
        raise ValidationError(f"{field_name} cannot be empty or whitespace-only")

    if _CONTROL_CHARS_RE.search(record_id):
        raise ValidationError(f"{field_name} contains control characters")

    if len(record_id) > 255:
        raise ValidationError(f"{field_name} exceeds maximum length of 255 characters")

    return record_id


def validate_row_number(row_number: int, field_name: str = "row_number") -> int:
    """
    Validate a data row number (row 1 is the header, data starts at row 2).

    Raises:
        ValidationError: If the row is not an integer >= 2
    """
    if isinstance(row_number, bool) or not isinstance(row_number, int):
        raise ValidationError(f"{field_name} must be an integer")
    if row_number < 2:
        raise ValidationError(f"{field_name} must be >= 2 (row 1 is the header), got {row_number}")
    if row_number > MAX_ROW_NUMBER:
        raise ValidationError(f"{field_name} exceeds maximum of {MAX_ROW_NUMBER}")
    return row_number


def validate_row_range(start_row: int, num_rows: int) -> tuple[int, int]:
    """
    Validate a contiguous data row range.

    Returns:
        (start_row, num_rows)

    Raises:
        ValidationError: If the range is empty or starts in the header
    """
    validate_row_number(start_row, "start_row")
    if isinstance(num_rows, bool) or not isinstance(num_rows, int) or num_rows < 1:
        raise ValidationError(f"num_rows must be a positive integer, got {num_rows}")
    validate_row_number(start_row + num_rows - 1, "end_row")
    return start_row, num_rows


def validate_limit(limit: int, max_limit: int = 10000) -> int:
    """
    Validate a query limit.

    Raises:
        ValidationError: If limit is not positive or exceeds max_limit
    """
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ValidationError("limit must be a positive integer")
    if limit > max_limit:
        raise ValidationError(f"limit exceeds maximum of {max_limit}")
    return limit


def sanitize_sql_identifier(identifier: str) -> str:
    """
    Validate a SQL identifier (schema/table name) before it is interpolated.

    Raises:
        ValidationError: If the identifier has invalid characters or is too long
    """
    if not identifier or not isinstance(identifier, str):
        raise ValidationError("SQL identifier must be a non-empty string")
    if not _SQL_IDENTIFIER_RE.match(identifier):
        raise ValidationError(f"SQL identifier '{identifier}' contains invalid characters")
    if len(identifier) > 63:
        raise ValidationError("SQL identifier exceeds PostgreSQL's 63 character limit")
    return identifier
