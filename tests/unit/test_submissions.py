"""
Unit tests for the write path (SubmissionStore).
"""

import json
import logging
from datetime import datetime

import pytest
from hypothesis import given, settings as hypothesis_settings
from hypothesis import strategies as st

from sheetstore.config import StoreSettings
from sheetstore.core.errors import RecordNotFound, TransientStoreError
from sheetstore.core.models import DedupRule, SaveRequest
from sheetstore.core.rules import RuleConfigBuilder
from sheetstore.observability.logger import CustomJsonFormatter
from sheetstore.storage.record_index import index_table_name
from sheetstore.storage.record_schema import ensure_destination
from sheetstore.storage.services import StoreServices
from sheetstore.utils.validation import ValidationError


def _main_rows(services, form):
    destination = ensure_destination(services.workbook, form)
    table = destination.table
    return destination, table.get_range(1, 1, table.row_count(), destination.columns.width)


def _append_raw(services, form, record_id="", **values):
    """Append a row directly to the destination table, bypassing the store."""
    destination = ensure_destination(services.workbook, form)
    columns = destination.columns
    row = [""] * columns.width
    row[columns.record_id - 1] = record_id
    for field_id, value in values.items():
        row[columns.fields[field_id] - 1] = value
    return destination.table.append_row(row)


@pytest.fixture
def store_log(caplog):
    """Capture records of the package logger, which does not propagate to root."""
    logger = logging.getLogger("sheetstore")
    logger.addHandler(caplog.handler)
    caplog.set_level(logging.INFO, logger="sheetstore")
    yield caplog
    logger.removeHandler(caplog.handler)


class TestCreateAndUpdate:
    """Tests for creating and updating records"""

    def test_create_assigns_id_and_version_one(self, save_order, services, meal_form):
        """A new record gets an id, version 1 and the first data row"""
        result = save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01", DISH="Soup")

        assert result.success is True
        assert result.error_code is None
        assert result.meta.id
        assert result.meta.data_version == 1
        assert result.meta.row_number == 2
        assert result.meta.created_at == result.meta.updated_at

        record = services.listing.fetch_by_id(meal_form, result.meta.id)
        assert record.values["CUSTOMER"] == "Ann"
        assert record.values["DISH"] == "Soup"

    def test_update_in_place_keeps_created_at(self, save_order, services, meal_form):
        """An update rewrites the same row and bumps the version"""
        created = save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01", DISH="Soup")
        updated = save_order(_record_id=created.meta.id, _version=1, DISH="Salad")

        assert updated.success is True
        assert updated.meta.row_number == created.meta.row_number
        assert updated.meta.data_version == 2
        assert updated.meta.created_at == created.meta.created_at

        record = services.listing.fetch_by_id(meal_form, created.meta.id)
        assert record.values["DISH"] == "Salad"
        # Values not sent in the update are kept
        assert record.values["CUSTOMER"] == "Ann"

    def test_versions_increase_by_one_per_write(self, save_order):
        """Every successful write increments the version"""
        created = save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        versions = [created.meta.data_version]
        for dish in ("Soup", "Salad", "Stew"):
            result = save_order(_record_id=created.meta.id, DISH=dish)
            versions.append(result.meta.data_version)

        assert versions == [1, 2, 3, 4]

    @hypothesis_settings(max_examples=25, deadline=None)
    @given(st.lists(st.booleans(), min_size=1, max_size=8))
    def test_versions_stay_gapless_when_writes_are_rejected(self, stale_flags):
        """Accepted writes add exactly one; stale ones leave the version alone"""
        services = StoreServices.in_memory(StoreSettings(lock_timeout_seconds=0))
        form, rules = RuleConfigBuilder("notes").add_field("BODY").build()

        def save(record_id=None, observed=None, body=""):
            request = SaveRequest(
                record_id=record_id, form_key="notes", values={"BODY": body}, client_observed_version=observed
            )
            return services.submissions.save(request, form, rules)

        record_id = save(body="first").meta.id
        expected = 1
        for n, stale in enumerate(stale_flags):
            result = save(record_id, expected - 1 if stale else expected, f"edit {n}")
            if stale:
                assert result.error_code == "STALE_WRITE"
            else:
                expected += 1
                assert result.meta.data_version == expected

        assert services.listing.fetch_by_id(form, record_id).data_version == expected

    def test_save_with_unknown_id_creates_record_with_that_id(self, save_order):
        """A caller supplied id that does not exist yet is used for the new row"""
        result = save_order(_record_id="order-42", CUSTOMER="Ann")

        assert result.success is True
        assert result.meta.id == "order-42"
        assert result.meta.data_version == 1

    def test_checkbox_values_round_trip(self, save_order, services, meal_form):
        """Checkbox answers are stored joined and read back as a list"""
        result = save_order(CUSTOMER="Ann", ALLERGENS=["gluten", "celery"])
        destination, rows = _main_rows(services, meal_form)

        assert rows[1][destination.columns.fields["ALLERGENS"] - 1] == "gluten, celery"
        record = services.listing.fetch_by_id(meal_form, result.meta.id)
        assert record.values["ALLERGENS"] == ["gluten", "celery"]


    def test_save_is_logged_as_json(self, save_order, store_log):
        """The save log line carries its fields through the JSON formatter"""
        created = save_order(CUSTOMER="Ann")
        save_order(_record_id=created.meta.id, DISH="Soup")

        saved = [r for r in store_log.records if r.getMessage() == "Record saved"]
        payloads = [json.loads(CustomJsonFormatter().format(r)) for r in saved]

        assert [p["is_new"] for p in payloads] == [True, False]
        assert payloads[0]["record_id"] == created.meta.id
        assert payloads[1]["data_version"] == 2


class TestStaleWrites:
    """Tests for the optimistic version check"""

    def test_stale_write_is_rejected_without_writing(self, save_order, services, meal_form):
        """A writer holding an older version is turned away and the row stays as is"""
        created = save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01", DISH="Soup")
        first = save_order(_record_id=created.meta.id, _version=1, DISH="Salad")
        assert first.success is True

        stale = save_order(_record_id=created.meta.id, _version=1, DISH="Stew")

        assert stale.success is False
        assert stale.error_code == "STALE_WRITE"
        assert stale.meta.id == created.meta.id
        record = services.listing.fetch_by_id(meal_form, created.meta.id)
        assert record.values["DISH"] == "Salad"
        assert record.data_version == 2

    def test_current_version_is_accepted(self, save_order):
        created = save_order(CUSTOMER="Ann")
        result = save_order(_record_id=created.meta.id, _version=1, DISH="Soup")

        assert result.success is True

    def test_newer_observed_version_is_accepted(self, save_order):
        """Only a stored version newer than the observed one is a conflict"""
        created = save_order(CUSTOMER="Ann")
        result = save_order(_record_id=created.meta.id, _version=7, DISH="Soup")

        assert result.success is True
        assert result.meta.data_version == 2

    def test_no_observed_version_skips_the_check(self, save_order):
        created = save_order(CUSTOMER="Ann")
        save_order(_record_id=created.meta.id, DISH="Soup")
        result = save_order(_record_id=created.meta.id, DISH="Stew")

        assert result.success is True
        assert result.meta.data_version == 3


class TestDuplicates:
    """Tests for indexed dedup rules"""

    def test_duplicate_is_rejected_with_rule_message(self, save_order, services, meal_form):
        """Two records with the same customer and day conflict, ignoring case"""
        first = save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        second = save_order(CUSTOMER="  ann ", ORDER_DATE="2026-10-01")

        assert first.success is True
        assert second.success is False
        assert second.error_code == "DUPLICATE"
        assert second.message == "An order for this day already exists."
        _, rows = _main_rows(services, meal_form)
        assert len(rows) == 2

    def test_rule_message_follows_language(self, services, meal_form, meal_rules, save_order):
        save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        request = SaveRequest(
            form_key=meal_form.form_key,
            language="fr",
            values={"CUSTOMER": "Ann", "ORDER_DATE": "2026-10-01"},
        )
        result = services.submissions.save(request, meal_form, meal_rules)

        assert result.error_code == "DUPLICATE"
        assert result.message == "Une commande existe déjà."

    def test_record_does_not_conflict_with_itself(self, save_order):
        created = save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        result = save_order(_record_id=created.meta.id, CUSTOMER="ANN", DISH="Soup")

        assert result.success is True

    def test_partial_keys_never_conflict(self, save_order):
        """A rule only applies once every key field is filled"""
        save_order(CUSTOMER="Ann")
        result = save_order(CUSTOMER="Ann")

        assert result.success is True

    def test_different_day_is_accepted(self, save_order):
        save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        result = save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-02")

        assert result.success is True

    def test_update_that_collides_is_rejected(self, save_order, services, meal_form):
        save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        other = save_order(CUSTOMER="Bob", ORDER_DATE="2026-10-01")
        result = save_order(_record_id=other.meta.id, CUSTOMER="Ann")

        assert result.error_code == "DUPLICATE"
        record = services.listing.fetch_by_id(meal_form, other.meta.id)
        assert record.values["CUSTOMER"] == "Bob"
        assert record.data_version == 1

    def test_allow_rules_do_not_block(self, save_order, meal_rules):
        allow = [rule.model_copy(update={"on_conflict": "allow"}) for rule in meal_rules]
        save_order(_rules=allow, CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        result = save_order(_rules=allow, CUSTOMER="Ann", ORDER_DATE="2026-10-01")

        assert result.success is True


    def test_datetime_keys_match_the_stored_day(self, save_order, services, meal_form, meal_rules):
        """Signatures follow the stored cell, also after a rule-aware status update"""
        created = save_order(CUSTOMER="Ann", ORDER_DATE=datetime(2026, 10, 1, 9, 0))
        services.submissions.update_status(meal_form, created.meta.id, "In progress", meal_rules)

        again = save_order(CUSTOMER="Ann", ORDER_DATE=datetime(2026, 10, 1, 9, 0))
        same_day = save_order(CUSTOMER="ann", ORDER_DATE="2026-10-01")

        assert again.error_code == "DUPLICATE"
        assert same_day.error_code == "DUPLICATE"
        record = services.listing.fetch_by_id(meal_form, created.meta.id)
        assert record.values["ORDER_DATE"] == "2026-10-01"

    def test_list_keys_match_the_stored_text(self, save_order, services, meal_form):
        rules = [DedupRule(id="one_menu", keys=["CUSTOMER", "DISH"])]
        created = save_order(_rules=rules, CUSTOMER="Ann", DISH=["Soup", "Bread"])
        services.submissions.update_status(meal_form, created.meta.id, "In progress", rules)

        result = save_order(_rules=rules, CUSTOMER="Ann", DISH=["Soup", "Bread"])

        assert result.error_code == "DUPLICATE"


class TestIndexNotBuilt:
    """Tests for failing closed when the index cannot be trusted"""

    def test_row_written_around_the_store_blocks_dedup_saves(self, save_order, services, meal_form):
        """A last row without id means the index does not cover the table"""
        save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        destination = ensure_destination(services.workbook, meal_form)
        row = [""] * destination.columns.width
        row[destination.columns.fields["CUSTOMER"] - 1] = "Bob"
        destination.table.append_row(row)

        result = save_order(CUSTOMER="Cleo", ORDER_DATE="2026-10-03")

        assert result.success is False
        assert result.error_code == "INDEX_NOT_BUILT"
        assert "rebuild" in result.message
        assert destination.table.row_count() == 3

    def test_saves_without_applicable_rules_still_succeed(self, save_order, services, meal_form):
        save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        destination = ensure_destination(services.workbook, meal_form)
        destination.table.append_row(["EN"] + [""] * (destination.columns.width - 1))

        result = save_order(CUSTOMER="Cleo")

        assert result.success is True

    def test_rule_added_to_populated_index_is_pending(self, save_order, services, meal_form, meal_rules):
        """A DEDUP column added after rows exist blocks dedup saves until rebuilt"""
        save_order(_rules=[], CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        save_order(_rules=[], CUSTOMER="Bob", ORDER_DATE="2026-10-01")

        blocked = save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        assert blocked.error_code == "INDEX_NOT_BUILT"
        assert "one_order_per_day" in blocked.message

        services.reconciler.rebuild_index(meal_form, meal_rules)

        duplicate = save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        assert duplicate.error_code == "DUPLICATE"
        fresh = save_order(CUSTOMER="Cleo", ORDER_DATE="2026-10-01")
        assert fresh.success is True


    def test_fresh_index_on_populated_table_blocks_dedup_saves(self, save_order, services, meal_form, meal_rules):
        """Rows stored before the index existed are unknown to it until rebuilt"""
        _append_raw(services, meal_form, "legacy-0", CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        _append_raw(services, meal_form, "legacy-1", CUSTOMER="Bob", ORDER_DATE="2026-10-01")

        partial = save_order(CUSTOMER="Zed")
        duplicate = save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01")

        assert partial.success is True
        assert duplicate.error_code == "INDEX_NOT_BUILT"

        services.reconciler.rebuild_index(meal_form, meal_rules)

        rebuilt = save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        assert rebuilt.error_code == "DUPLICATE"

    def test_append_past_unindexed_rows_keeps_dedup_blocked(self, save_order, services, meal_form):
        """Covering the last row must not hide earlier rows the index never saw"""
        save_order(CUSTOMER="Cleo", ORDER_DATE="2026-10-01")
        _append_raw(services, meal_form, "legacy-0", CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        _append_raw(services, meal_form, "legacy-1", CUSTOMER="Bob", ORDER_DATE="2026-10-01")

        partial = save_order(CUSTOMER="Zed")
        duplicate = save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01")

        assert partial.success is True
        assert duplicate.success is False
        assert duplicate.error_code == "INDEX_NOT_BUILT"
        _, rows = _main_rows(services, meal_form)
        assert len(rows) == 5


class TestClosedRecords:
    """Tests for the terminal status guard"""

    def test_draft_save_on_closed_record_is_rejected(self, save_order, services, meal_form):
        created = save_order(CUSTOMER="Ann")
        services.submissions.update_status(meal_form, created.meta.id, "Closed")

        result = save_order(_record_id=created.meta.id, _mode="draft", DISH="Soup")

        assert result.success is False
        assert result.error_code == "RECORD_CLOSED"

    def test_terminal_status_match_ignores_case(self, save_order, services, meal_form):
        created = save_order(CUSTOMER="Ann")
        services.submissions.update_status(meal_form, created.meta.id, "cancelled")

        result = save_order(_record_id=created.meta.id, _mode="draft", DISH="Soup")

        assert result.error_code == "RECORD_CLOSED"

    def test_draft_with_status_override_is_accepted(self, save_order, services, meal_form):
        created = save_order(CUSTOMER="Ann")
        services.submissions.update_status(meal_form, created.meta.id, "Closed")

        result = save_order(_record_id=created.meta.id, _mode="draft", _status="Reopened", DISH="Soup")

        assert result.success is True
        assert services.listing.fetch_by_id(meal_form, created.meta.id).status == "Reopened"

    def test_final_save_on_closed_record_is_accepted(self, save_order, services, meal_form):
        created = save_order(CUSTOMER="Ann")
        services.submissions.update_status(meal_form, created.meta.id, "Closed")

        result = save_order(_record_id=created.meta.id, DISH="Soup")

        assert result.success is True


class TestAutoIncrement:
    """Tests for auto-generated field values"""

    def test_empty_field_gets_next_value(self, save_order, services, meal_form):
        first = save_order(CUSTOMER="Ann")
        second = save_order(CUSTOMER="Bob")

        assert services.listing.fetch_by_id(meal_form, first.meta.id).values["ORDER_NO"] == "MO-00001"
        assert services.listing.fetch_by_id(meal_form, second.meta.id).values["ORDER_NO"] == "MO-00002"

    def test_value_is_kept_on_update(self, save_order, services, meal_form):
        created = save_order(CUSTOMER="Ann")
        save_order(_record_id=created.meta.id, DISH="Soup")

        assert services.listing.fetch_by_id(meal_form, created.meta.id).values["ORDER_NO"] == "MO-00001"

    def test_provided_value_is_not_replaced(self, save_order, services, meal_form):
        created = save_order(CUSTOMER="Ann", ORDER_NO="manual-7")

        assert services.listing.fetch_by_id(meal_form, created.meta.id).values["ORDER_NO"] == "manual-7"

    def test_counter_is_persisted_in_properties(self, save_order, services):
        save_order(CUSTOMER="Ann")
        save_order(CUSTOMER="Bob")

        counters = [k for k in services.properties.keys() if k.startswith("SS_AUTO_INC:")]
        assert len(counters) == 1
        assert services.properties.get(counters[0]) == "2"


class TestMetadataUpdates:
    """Tests for update_status and set_pdf_url"""

    def test_update_status_bumps_version(self, save_order, services, meal_form):
        created = save_order(CUSTOMER="Ann")
        result = services.submissions.update_status(meal_form, created.meta.id, "In progress")

        assert result.success is True
        assert result.meta.data_version == 2
        record = services.listing.fetch_by_id(meal_form, created.meta.id)
        assert record.status == "In progress"
        assert record.values["CUSTOMER"] == "Ann"

    def test_set_pdf_url(self, save_order, services, meal_form):
        created = save_order(CUSTOMER="Ann")
        services.submissions.set_pdf_url(meal_form, created.meta.id, "https://files.example.org/ann.pdf")

        record = services.listing.fetch_by_id(meal_form, created.meta.id)
        assert record.pdf_url == "https://files.example.org/ann.pdf"
        assert record.data_version == 2

    def test_unknown_record_raises(self, save_order, services, meal_form):
        save_order(CUSTOMER="Ann")

        with pytest.raises(RecordNotFound):
            services.submissions.update_status(meal_form, "no-such-id", "Closed")

    def test_status_update_keeps_dedup_signatures(self, save_order, services, meal_form):
        """Without rules the indexed signatures of the row are left alone"""
        created = save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        services.submissions.update_status(meal_form, created.meta.id, "In progress")

        result = save_order(CUSTOMER="Ann", ORDER_DATE="2026-10-01")
        assert result.error_code == "DUPLICATE"

    def test_stale_write_after_status_update(self, save_order, services, meal_form):
        created = save_order(CUSTOMER="Ann")
        services.submissions.update_status(meal_form, created.meta.id, "In progress")

        result = save_order(_record_id=created.meta.id, _version=1, DISH="Soup")

        assert result.error_code == "STALE_WRITE"


    def test_ids_typed_by_hand_can_be_updated(self, save_order, services, meal_form):
        _append_raw(services, meal_form, "Order 12", CUSTOMER="Ann")

        status = services.submissions.update_status(meal_form, "Order 12", "In progress")
        saved = save_order(_record_id="Order 12", DISH="Soup")

        assert status.success is True
        assert saved.success is True
        assert saved.meta.row_number == 2
        record = services.listing.fetch_by_id(meal_form, "Order 12")
        assert record.status == "In progress"
        assert record.values["DISH"] == "Soup"

    def test_unstorable_id_is_rejected(self, save_order, services, meal_form):
        result = save_order(_record_id="x" * 256, CUSTOMER="Ann")

        assert result.success is False
        assert result.error_code == "INVALID_RECORD_ID"
        _, rows = _main_rows(services, meal_form)
        assert len(rows) == 1
        with pytest.raises(ValidationError):
            services.submissions.update_status(meal_form, "line\nbreak", "Closed")


class TestFailureHandling:
    """Tests for authoritative failures and best-effort maintenance"""

    def test_main_table_failure_raises_transient_error(self, services, meal_form, save_order, monkeypatch):
        destination = ensure_destination(services.workbook, meal_form)

        def broken_append(values):
            raise OSError("quota exceeded")

        monkeypatch.setattr(destination.table, "append_row", broken_append)

        with pytest.raises(TransientStoreError) as exc_info:
            save_order(CUSTOMER="Ann")

        assert exc_info.value.operation == "write_row"

    def test_index_failure_is_reported_not_raised(self, services, meal_form, meal_rules, save_order, monkeypatch):
        handle = services.record_index.ensure(meal_form.table_name, meal_rules)

        def broken_set_range(row, col, values):
            raise OSError("index table locked")

        monkeypatch.setattr(handle.table, "set_range", broken_set_range)

        result = save_order(CUSTOMER="Ann")

        assert result.success is True
        assert [w.component for w in result.warnings] == ["index"]
        assert result.warnings[0].operation == "write_row"

    def test_cache_failure_is_reported_not_raised(self, services, save_order, monkeypatch):
        def broken_set(key, value):
            raise OSError("property store offline")

        monkeypatch.setattr(services.properties, "set", broken_set)

        result = save_order(_record_id="order-1", CUSTOMER="Ann", ORDER_NO="MO-1")

        assert result.success is True
        assert "cache" in [w.component for w in result.warnings]

    def test_lock_timeout_does_not_block_the_save(self, services, save_order):
        """Saves proceed without the lock when it is held elsewhere"""
        assert services.lock.try_acquire(0)
        try:
            result = save_order(CUSTOMER="Ann")
        finally:
            services.lock.release()

        assert result.success is True

    def test_index_table_is_named_after_destination(self, services, meal_form, save_order):
        save_order(CUSTOMER="Ann")

        assert index_table_name(meal_form.table_name) in services.workbook.table_names()
