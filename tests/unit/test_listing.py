"""
Unit tests for the read path (ListingReader).
"""

import pytest

from sheetstore.core.models import ListRequest
from sheetstore.core.pagination import decode_page_token
from sheetstore.storage.listing import column_runs
from sheetstore.storage.record_schema import ensure_destination
from sheetstore.utils.validation import ValidationError


@pytest.fixture
def five_orders(save_order):
    """Five saved orders, returned in row order"""
    return [
        save_order(CUSTOMER=name, ORDER_DATE="2026-10-01", DISH=f"Dish {i}").meta.id
        for i, name in enumerate(["Ann", "Bob", "Cleo", "Dan", "Eve"])
    ]


class TestColumnRuns:
    """Tests for grouping columns into contiguous reads"""

    def test_contiguous_columns_are_merged(self):
        assert column_runs([3, 1, 2, 7, 8, 5]) == [(1, 3), (5, 1), (7, 2)]

    def test_missing_columns_are_ignored(self):
        assert column_runs([None, 4, 4, 0]) == [(4, 1)]


class TestFetchPage:
    """Tests for paginated listings"""

    def test_pages_of_two_cover_five_rows(self, services, meal_form, five_orders):
        """Page sizes 2/2/1 with tokens chaining the pages"""
        first = services.listing.fetch_page(meal_form, ["CUSTOMER"], page_size=2)
        second = services.listing.fetch_page(meal_form, ["CUSTOMER"], 2, first.next_page_token)
        third = services.listing.fetch_page(meal_form, ["CUSTOMER"], 2, second.next_page_token)

        assert [len(p.items) for p in (first, second, third)] == [2, 2, 1]
        assert first.total_count == 5
        assert decode_page_token(first.next_page_token) == 2
        assert decode_page_token(second.next_page_token) == 4
        assert third.next_page_token is None

        ids = [item["id"] for page in (first, second, third) for item in page.items]
        assert ids == five_orders
        assert [item["CUSTOMER"] for item in first.items] == ["Ann", "Bob"]

    def test_page_past_the_end_is_empty(self, services, meal_form, five_orders):
        page = services.listing.fetch_page(meal_form, page_size=2, page_token="10")

        assert page.items == []
        assert page.next_page_token is None
        assert page.total_count == 5

    def test_invalid_token_starts_from_the_beginning(self, services, meal_form, five_orders):
        page = services.listing.fetch_page(meal_form, page_size=2, page_token="not a token!")

        assert [item["id"] for item in page.items] == five_orders[:2]

    def test_page_size_is_clamped(self, services, meal_form, five_orders, settings):
        settings.max_page_size = 3
        page = services.listing.fetch_page(meal_form, page_size=50)

        assert len(page.items) == 3

    def test_scan_window_is_bounded(self, services, meal_form, five_orders, settings):
        settings.max_scan_rows = 4
        page = services.listing.fetch_page(meal_form, page_size=10)

        assert page.total_count == 4
        assert len(page.items) == 4
        assert page.next_page_token is None

    def test_empty_table(self, services, meal_form):
        page = services.listing.fetch_page(meal_form)

        assert page.items == []
        assert page.total_count == 0

    def test_projection_limits_item_fields(self, services, meal_form, five_orders):
        page = services.listing.fetch_page(meal_form, ["DISH"], page_size=1)
        item = page.items[0]

        assert item["DISH"] == "Dish 0"
        assert "CUSTOMER" not in item
        assert item["data_version"] == 1
        assert item["row_number"] == 2
        assert item["id"] == five_orders[0]

    def test_projected_read_only_touches_needed_columns(self, services, meal_form, five_orders, monkeypatch):
        destination = ensure_destination(services.workbook, meal_form)
        reads = []
        original = destination.table.get_range

        def recording_get_range(row, col, height, width):
            reads.append((col, width))
            return original(row, col, height, width)

        monkeypatch.setattr(destination.table, "get_range", recording_get_range)
        services.listing.fetch_page(meal_form, ["DISH"], page_size=2, page_token="2")

        dish_col = destination.columns.fields["DISH"]
        assert any(col <= dish_col < col + width for col, width in reads)
        customer_col = destination.columns.fields["CUSTOMER"]
        assert not any(col <= customer_col < col + width for col, width in reads if width < destination.columns.width)

    def test_hydrated_page_carries_records(self, services, meal_form, five_orders):
        page = services.listing.fetch_page(meal_form, page_size=2, hydrate=True)

        assert set(page.records) == set(five_orders[:2])
        assert page.records[five_orders[0]].values["CUSTOMER"] == "Ann"

    def test_fetch_list_uses_request(self, services, meal_form, five_orders):
        page = services.listing.fetch_list(meal_form, ListRequest(projection=["CUSTOMER"], page_size=4))

        assert len(page.items) == 4
        assert page.next_page_token is not None


class TestPageCache:
    """Tests for etag-keyed page caching"""

    def test_repeated_read_is_served_from_cache(self, services, meal_form, five_orders, monkeypatch):
        services.listing.fetch_page(meal_form, ["CUSTOMER"], page_size=2)
        destination = ensure_destination(services.workbook, meal_form)
        original = destination.table.get_range

        def no_reads(row, col, height, width):
            if row > 1:
                raise AssertionError("cached page should not read data rows")
            return original(row, col, height, width)

        monkeypatch.setattr(destination.table, "get_range", no_reads)
        page = services.listing.fetch_page(meal_form, ["CUSTOMER"], page_size=2)

        assert len(page.items) == 2

    def test_write_invalidates_cached_pages(self, services, meal_form, five_orders, save_order):
        """A save bumps the etag, so the next read sees the new value"""
        before = services.listing.fetch_page(meal_form, ["DISH"], page_size=2)
        save_order(_record_id=five_orders[0], DISH="Risotto")
        after = services.listing.fetch_page(meal_form, ["DISH"], page_size=2)

        assert before.items[0]["DISH"] == "Dish 0"
        assert after.items[0]["DISH"] == "Risotto"
        assert after.etag != before.etag

    def test_status_update_invalidates_cached_pages(self, services, meal_form, five_orders):
        services.listing.fetch_page(meal_form, page_size=2)
        services.submissions.update_status(meal_form, five_orders[1], "Closed")
        page = services.listing.fetch_page(meal_form, page_size=2)

        assert page.items[1]["status"] == "Closed"

    def test_direct_append_changes_the_etag(self, services, meal_form, five_orders):
        """Rows added around the store change the shape and therefore the etag"""
        before = services.listing.fetch_page(meal_form, page_size=10)
        destination = ensure_destination(services.workbook, meal_form)
        row = [""] * destination.columns.width
        row[destination.columns.fields["CUSTOMER"] - 1] = "Fay"
        destination.table.append_row(row)

        after = services.listing.fetch_page(meal_form, page_size=10)

        assert after.etag != before.etag
        assert after.total_count == 6
        assert after.items[-1]["id"] == ""


class TestFetchById:
    """Tests for single-record reads"""

    def test_known_id(self, services, meal_form, five_orders):
        record = services.listing.fetch_by_id(meal_form, five_orders[2])

        assert record.values["CUSTOMER"] == "Cleo"
        assert record.row_number == 4

    def test_unknown_id(self, services, meal_form, five_orders):
        assert services.listing.fetch_by_id(meal_form, "missing") is None

    def test_blank_id(self, services, meal_form):
        assert services.listing.fetch_by_id(meal_form, "  ") is None

    def test_id_is_matched_whole_cell(self, services, meal_form, save_order):
        """An id that is a prefix of another id does not match it"""
        save_order(_record_id="order-10", CUSTOMER="Ann")

        assert services.listing.fetch_by_id(meal_form, "order-1") is None

    def test_stale_index_falls_back_to_scan(self, services, meal_form, meal_rules, five_orders):
        """An index entry pointing at the wrong row is verified and ignored"""
        handle = services.record_index.ensure(meal_form.table_name, meal_rules)
        handle.table.set_range(2, 1, [[five_orders[3]]])
        services.cache_store.invalidate_all("test")

        record = services.listing.fetch_by_id(meal_form, five_orders[3])

        assert record.row_number == 5
        assert record.values["CUSTOMER"] == "Dan"

    def test_linear_scan_without_native_find(self, settings, meal_form, meal_rules):
        from sheetstore.core.models import SaveRequest
        from sheetstore.storage.services import StoreServices

        settings.linear_scan_threshold = 0
        services = StoreServices.in_memory(settings, native_find=False)
        result = services.submissions.save(
            SaveRequest(form_key=meal_form.form_key, values={"CUSTOMER": "Ann"}), meal_form, meal_rules
        )
        services.cache_store.invalidate_all("test")

        assert services.listing.fetch_by_id(meal_form, result.meta.id).values["CUSTOMER"] == "Ann"


class TestFetchByRowNumber:
    """Tests for reads by physical row"""

    def test_row_with_id(self, services, meal_form, five_orders):
        record = services.listing.fetch_by_row_number(meal_form, 3)

        assert record.id == five_orders[1]

    def test_row_beyond_table(self, services, meal_form, five_orders):
        assert services.listing.fetch_by_row_number(meal_form, 50) is None

    def test_header_row_is_rejected(self, services, meal_form):
        with pytest.raises(ValidationError):
            services.listing.fetch_by_row_number(meal_form, 1)

    def test_legacy_row_gets_an_id(self, services, meal_form, meal_rules, five_orders, save_order):
        """A row written without id is given one, version 1 and an index row"""
        destination = ensure_destination(services.workbook, meal_form)
        columns = destination.columns
        row = [""] * columns.width
        row[columns.fields["CUSTOMER"] - 1] = "Fay"
        row[columns.fields["ORDER_DATE"] - 1] = "2026-10-01"
        destination.table.append_row(row)

        record = services.listing.fetch_by_row_number(meal_form, 7, meal_rules)

        assert record.id
        assert record.data_version == 1
        assert record.created_at
        stored = destination.table.get_range(7, 1, 1, columns.width)[0]
        assert stored[columns.record_id - 1] == record.id
        handle = services.record_index.ensure(meal_form.table_name, meal_rules)
        assert services.record_index.find_row(handle, record.id) == 7

        # The index covers the table again, so dedup saves work
        duplicate = save_order(CUSTOMER="fay", ORDER_DATE="2026-10-01")
        assert duplicate.error_code == "DUPLICATE"

    def test_legacy_row_without_rules_marks_dedup_pending(self, services, meal_form, meal_rules, five_orders, save_order):
        destination = ensure_destination(services.workbook, meal_form)
        row = [""] * destination.columns.width
        row[destination.columns.fields["CUSTOMER"] - 1] = "Fay"
        destination.table.append_row(row)

        services.listing.fetch_by_row_number(meal_form, 7)

        result = save_order(CUSTOMER="Gus", ORDER_DATE="2026-10-05")
        assert result.error_code == "INDEX_NOT_BUILT"

    def test_cleared_row_is_not_a_record(self, services, meal_form, meal_rules, five_orders):
        """A row blanked by hand stays blank instead of becoming a new record"""
        destination = ensure_destination(services.workbook, meal_form)
        width = destination.columns.width
        destination.table.set_range(3, 1, [[""] * width])

        assert services.listing.fetch_by_row_number(meal_form, 3, meal_rules) is None
        assert destination.table.get_range(3, 1, 1, width)[0] == [""] * width
        meta = services.cache_store.read_etag_metadata(meal_form.table_name)
        assert meta.reason != "bump:legacyId"

    def test_legacy_id_is_stable(self, services, meal_form, five_orders):
        destination = ensure_destination(services.workbook, meal_form)
        destination.table.append_row(["EN"] + [""] * (destination.columns.width - 1))

        first = services.listing.fetch_by_row_number(meal_form, 7)
        second = services.listing.fetch_by_row_number(meal_form, 7)

        assert first.id == second.id


class TestFetchBatch:
    """Tests for page plus explicit ids"""

    def test_only_ids_missing_from_page_are_fetched(self, services, meal_form, five_orders):
        batch = services.listing.fetch_batch(
            meal_form, ["CUSTOMER"], page_size=2, record_ids=[five_orders[0], five_orders[4], "missing"]
        )

        assert len(batch.page.items) == 2
        assert set(batch.records) == {five_orders[4]}
        assert batch.records[five_orders[4]].values["CUSTOMER"] == "Eve"
