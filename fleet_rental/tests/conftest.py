"""
Pytest configuration and shared fixtures for the fleet_rental test suite.

This module provides:
- A file-backed SQLite database per test (connections are shared across
  worker threads, so ``:memory:`` would give each connection its own database)
- Connection pool and rental engine fixtures
- A controllable clock for billing tests
- Helpers for checking inventory/ledger invariants
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Generator

import pytest
from sqlalchemy import func, select

from fleet_rental.core.db import create_db_engine
from fleet_rental.core.pool import ConnectionPool
from fleet_rental.models import RentalLedgerRecord, VehicleRecord
from fleet_rental.services.inventory_store import InventoryStore
from fleet_rental.services.rental_engine import RentalEngine


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'fleet.db'}"


@pytest.fixture
def db_engine(database_url):
    engine = create_db_engine(database_url, busy_timeout=30)
    yield engine
    engine.dispose()


@pytest.fixture
def pool(db_engine) -> Generator[ConnectionPool, None, None]:
    """Empty-catalog pool sized for thread contention tests."""
    pool = ConnectionPool(
        db_engine,
        max_size=5,
        initial_size=1,
        wait_seconds=0.01,
        max_wait_seconds=0.05,
        max_attempts=400,
        seed_defaults=False,
    )
    pool.initialize()
    yield pool
    pool.shutdown()


@pytest.fixture
def store() -> InventoryStore:
    return InventoryStore()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 3, 1, 9, 0, 0))


@pytest.fixture
def rental_engine(pool, store, clock) -> RentalEngine:
    return RentalEngine(pool, store=store, clock=clock)


@pytest.fixture
def corolla(rental_engine):
    """Toyota Corolla, 3 units at $50.00/day."""
    return rental_engine.add_vehicle("Toyota Corolla", "Car", Decimal("50.00"), 3).vehicle


@pytest.fixture
def bike(rental_engine):
    """Yamaha R15, 1 unit at $30.00/day."""
    return rental_engine.add_vehicle("Yamaha R15", "Bike", Decimal("30.00"), 1).vehicle


# Utility Functions
def open_rental_count(pool: ConnectionPool, vehicle_id: int) -> int:
    with pool.connection() as conn:
        return conn.execute(
            select(func.count(RentalLedgerRecord.id)).where(
                RentalLedgerRecord.vehicle_id == vehicle_id,
                RentalLedgerRecord.return_time.is_(None),
            )
        ).scalar()


def assert_inventory_consistent(pool: ConnectionPool) -> None:
    """0 <= available <= quantity, and rented units match open ledger rows, for every vehicle."""
    with pool.connection() as conn:
        rows = conn.execute(
            select(VehicleRecord.id, VehicleRecord.quantity, VehicleRecord.available_quantity)
        ).all()
    for vehicle_id, quantity, available in rows:
        assert 0 <= available <= quantity
        assert quantity - available == open_rental_count(pool, vehicle_id)


@pytest.fixture
def check_inventory(pool):
    return lambda: assert_inventory_consistent(pool)


@pytest.fixture
def open_rentals(pool):
    return lambda vehicle_id: open_rental_count(pool, vehicle_id)
