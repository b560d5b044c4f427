import logging

import pytest
from sqlalchemy import text

from fleet_rental.core.db import create_db_engine
from fleet_rental.core.environment import PoolSettings, get_database_url, get_log_level
from fleet_rental.core.logging import setup_logging
from fleet_rental.core.metrics import REGISTRY, get_prometheus_metrics, track_performance
from fleet_rental.core.pool import ConnectionPool
from fleet_rental.schemas import OperationResult


def test_pool_settings_from_env(monkeypatch):
    monkeypatch.setenv("FLEET_POOL_MAX_SIZE", "4")
    monkeypatch.setenv("FLEET_POOL_INITIAL_SIZE", "2")
    monkeypatch.setenv("FLEET_POOL_WAIT_SECONDS", "0.05")
    monkeypatch.setenv("FLEET_POOL_MAX_WAIT_SECONDS", "0.5")
    monkeypatch.setenv("FLEET_POOL_MAX_ATTEMPTS", "7")

    settings = PoolSettings.from_env()

    assert settings.max_size == 4
    assert settings.initial_size == 2
    assert settings.wait_seconds == 0.05
    assert settings.max_wait_seconds == 0.5
    assert settings.max_attempts == 7


def test_pool_settings_defaults(monkeypatch):
    for name in ("FLEET_POOL_MAX_SIZE", "FLEET_POOL_INITIAL_SIZE", "FLEET_POOL_MAX_ATTEMPTS"):
        monkeypatch.delenv(name, raising=False)
    settings = PoolSettings.from_env()
    assert (settings.max_size, settings.initial_size, settings.max_attempts) == (10, 3, 50)


def test_pool_settings_reject_backoff_inversion():
    with pytest.raises(ValueError):
        PoolSettings(wait_seconds=2.0, max_wait_seconds=1.0)


def test_environment_lookups(monkeypatch):
    monkeypatch.setenv("FLEET_DATABASE_URL", "sqlite:///elsewhere.db")
    monkeypatch.setenv("FLEET_LOG_LEVEL", "debug")
    assert get_database_url() == "sqlite:///elsewhere.db"
    assert get_log_level() == "DEBUG"


def test_pool_from_env_uses_database_url(monkeypatch, database_url):
    monkeypatch.setenv("FLEET_POOL_MAX_SIZE", "2")
    monkeypatch.setenv("FLEET_POOL_INITIAL_SIZE", "1")
    pool = ConnectionPool.from_env(database_url, seed_defaults=False)
    try:
        assert pool.max_size == 2
        with pool.connection() as conn:
            assert conn.execute(text("SELECT 1")).scalar() == 1
    finally:
        pool.shutdown()


def test_sqlite_engine_enforces_foreign_keys(database_url):
    engine = create_db_engine(database_url, busy_timeout=1)
    try:
        with engine.connect() as conn:
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
    finally:
        engine.dispose()


def test_setup_logging_installs_json_handler():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        setup_logging("WARNING")
        assert len(root.handlers) == 1
        assert type(root.handlers[0].formatter).__name__ == "JsonFormatter"
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)


def test_track_performance_records_outcomes():
    class Checkout:
        @track_performance(service_name="Checkout")
        def ok(self):
            return OperationResult(success=True, message="ok")

        @track_performance(service_name="Checkout")
        def rejected(self):
            return OperationResult(success=False, message="no")

        @track_performance(service_name="Checkout")
        def broken(self):
            raise RuntimeError("boom")

    checkout = Checkout()
    checkout.ok()
    checkout.rejected()
    with pytest.raises(RuntimeError):
        checkout.broken()

    def count(status, method):
        return REGISTRY.get_sample_value(
            "fleet_rental_operations_total",
            {"status": status, "service": "Checkout", "method": method},
        )

    assert count("success", "ok") == 1.0
    assert count("rejected", "rejected") == 1.0
    assert count("error", "broken") == 1.0
    assert count("error", "ok") is None
    assert b"fleet_rental_operations_total" in get_prometheus_metrics()
