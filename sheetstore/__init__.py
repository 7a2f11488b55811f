"""
sheetstore: form submission storage on top of a row-oriented tabular store.

Provides indexed lookup by id, duplicate-submission rejection and optimistic
concurrency for records kept in plain spreadsheet-like tables.
"""

__version__ = "0.1.0"
