"""
Pytest configuration and fixtures for sheetstore tests

This module provides shared fixtures for unit and integration tests.
"""
from typing import Generator

import pytest
from testcontainers.postgres import PostgresContainer

from sheetstore.config import DatabaseSettings, StoreSettings
from sheetstore.core.models import DedupRule, FormConfig, SaveRequest
from sheetstore.core.rules import RuleConfigBuilder
from sheetstore.storage.services import StoreServices


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require Docker containers"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests that exercise the full storage stack"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds to run"
    )


# =======================
# FORM FIXTURES
# =======================

def build_meal_orders() -> tuple[FormConfig, list[DedupRule]]:
    """Meal order form with one case-insensitive dedup rule."""
    return (
        RuleConfigBuilder("meal_orders", title="Meal Orders")
        .add_field("CUSTOMER", "Customer")
        .add_field("ORDER_DATE", "Order date", field_type="DATE")
        .add_field("DISH", "Dish")
        .add_field("ALLERGENS", "Allergens", field_type="CHECKBOX")
        .add_field("ORDER_NO", "Order number", auto_increment={"prefix": "MO-", "pad_length": 5})
        .add_dedup_rule(
            "one_order_per_day",
            ["CUSTOMER", "ORDER_DATE"],
            message={"en": "An order for this day already exists.", "fr": "Une commande existe déjà."},
            match_mode="case_insensitive",
        )
        .with_terminal_statuses("Closed", "Cancelled")
        .build()
    )


@pytest.fixture
def meal_form() -> FormConfig:
    return build_meal_orders()[0]


@pytest.fixture
def meal_rules() -> list[DedupRule]:
    return build_meal_orders()[1]


@pytest.fixture
def settings() -> StoreSettings:
    """Settings with small limits so paging edge cases are cheap to reach."""
    return StoreSettings(max_page_size=10, max_scan_rows=200, index_chunk_size=3, lock_timeout_seconds=0.5)


@pytest.fixture
def services(settings) -> StoreServices:
    """Storage services over in-memory collaborators."""
    return StoreServices.in_memory(settings)


@pytest.fixture
def save_order(services, meal_form, meal_rules):
    """
    Save helper: ``save_order(CUSTOMER="Ann", ...)`` with optional request
    fields passed as keyword arguments prefixed by an underscore.
    """
    def _save(_record_id=None, _version=None, _mode="final", _status=None, _rules=None, **values):
        request = SaveRequest(
            record_id=_record_id,
            form_key=meal_form.form_key,
            values=values,
            client_observed_version=_version,
            save_mode=_mode,
            status_override=_status,
        )
        rules = meal_rules if _rules is None else _rules
        return services.submissions.save(request, meal_form, rules)

    return _save


# =======================
# DATABASE FIXTURES (Testcontainers)
# =======================

@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Start PostgreSQL container for integration tests

    Yields:
        PostgresContainer instance
    """
    with PostgresContainer(
        image="postgres:16.2-alpine",
        username="sheetstore_test",
        password="test_password",
        dbname="sheetstore_test",
    ) as postgres:
        # Wait for container to be ready
        postgres.get_connection_url()
        yield postgres


@pytest.fixture(scope="session")
def database_settings(postgres_container) -> DatabaseSettings:
    return DatabaseSettings(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        database="sheetstore_test",
        user="sheetstore_test",
        password="test_password",
        min_size=1,
        max_size=4,
    )
