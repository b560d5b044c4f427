from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from fleet_rental.core.db import create_db_engine
from fleet_rental.core.metrics import REGISTRY
from fleet_rental.core.pool import ConnectionPool
from fleet_rental.models import VehicleRecord
from fleet_rental.services.exceptions import (
    ActiveRentalsError,
    FleetShrinkError,
    NothingToReturnError,
    PermissionDeniedError,
    StorageError,
    ValidationError,
    VehicleNotFoundError,
    VehicleUnavailableError,
)
from fleet_rental.services.rental_engine import RentalEngine
from fleet_rental.services.session import Role, UserSession


def operation_count(status: str, method: str) -> float:
    value = REGISTRY.get_sample_value(
        "fleet_rental_operations_total",
        {"status": status, "service": "RentalEngine", "method": method},
    )
    return value or 0.0


# Rent

def test_rent_takes_one_unit_and_opens_ledger_row(rental_engine, corolla, clock, check_inventory):
    out = rental_engine.rent(corolla.id, "alice")

    assert out.success is True
    assert out.vehicle.available_quantity == 2
    assert out.entry.username == "alice"
    assert out.entry.vehicle_id == corolla.id
    assert out.entry.rent_time == clock()
    assert out.entry.is_active

    assert rental_engine.get_vehicle(corolla.id).available_quantity == 2
    assert rental_engine.is_rented_by("alice", corolla.id)
    assert not rental_engine.is_rented_by("bob", corolla.id)
    check_inventory()


def test_rent_last_unit_then_unavailable(rental_engine, bike, open_rentals, check_inventory):
    assert rental_engine.rent(bike.id, "alice")

    out = rental_engine.rent(bike.id, "bob")

    assert out.success is False
    assert out.error_type == VehicleUnavailableError.__name__
    assert rental_engine.get_vehicle(bike.id).available_quantity == 0
    assert open_rentals(bike.id) == 1
    check_inventory()


def test_rent_unknown_vehicle_fails(rental_engine):
    out = rental_engine.rent(9999, "alice")

    assert out.success is False
    assert out.error_type == VehicleNotFoundError.__name__


def test_rent_without_user_raises(rental_engine, corolla):
    with pytest.raises(ValidationError):
        rental_engine.rent(corolla.id)
    assert rental_engine.get_vehicle(corolla.id).available_quantity == 3


def test_rejected_rent_is_counted(rental_engine, bike):
    rental_engine.rent(bike.id, "alice")
    before = operation_count("rejected", "rent")

    rental_engine.rent(bike.id, "bob")

    assert operation_count("rejected", "rent") == before + 1


# Return

def test_return_closes_rental_and_bills(rental_engine, corolla, clock, check_inventory):
    rented = rental_engine.rent(corolla.id, "alice")
    clock.advance(hours=25)

    out = rental_engine.return_vehicle(corolla.id)

    assert out.success is True
    assert out.vehicle.available_quantity == 3
    assert out.entry.id == rented.entry.id
    assert out.entry.return_time == clock()
    assert out.entry.duration_days == 2
    assert out.entry.total_cost == Decimal("100.00")
    assert "100.00" in out.message

    history = rental_engine.rental_history("alice")
    assert len(history) == 1
    assert history[0].total_cost == Decimal("100.00")
    assert not history[0].is_active
    check_inventory()


def test_return_with_nothing_rented_fails(rental_engine, corolla, check_inventory):
    out = rental_engine.return_vehicle(corolla.id)

    assert out.success is False
    assert out.error_type == NothingToReturnError.__name__
    vehicle = rental_engine.get_vehicle(corolla.id)
    assert vehicle.available_quantity == vehicle.quantity == 3
    check_inventory()


def test_return_unknown_vehicle_fails(rental_engine):
    out = rental_engine.return_vehicle(4242)
    assert out.error_type == VehicleNotFoundError.__name__


def test_return_is_first_in_first_out(rental_engine, corolla, clock):
    rental_engine.rent(corolla.id, "alice")
    clock.advance(hours=1)
    rental_engine.rent(corolla.id, "bob")
    clock.advance(hours=1)

    first = rental_engine.return_vehicle(corolla.id)
    second = rental_engine.return_vehicle(corolla.id)

    assert first.entry.username == "alice"
    assert second.entry.username == "bob"
    assert rental_engine.active_rentals() == []


def test_return_with_clock_behind_rent_time_bills_minimum(rental_engine, bike, clock):
    rented = rental_engine.rent(bike.id, "alice")
    clock.advance(hours=-3)

    out = rental_engine.return_vehicle(bike.id)

    assert out.entry.return_time == rented.entry.rent_time
    assert out.entry.duration_days == 1
    assert out.entry.total_cost == Decimal("30.00")


def test_return_bills_at_current_rate(rental_engine, corolla, clock):
    rental_engine.rent(corolla.id, "alice")
    assert rental_engine.update_vehicle(corolla.id, "Toyota Corolla", "Sedan", Decimal("45.50"))
    clock.advance(hours=48)

    out = rental_engine.return_vehicle(corolla.id)

    assert out.entry.total_cost == Decimal("91.00")
    assert out.vehicle.type == "Sedan"


# Fleet administration

def test_add_vehicle_starts_fully_available(rental_engine):
    out = rental_engine.add_vehicle("  Honda Civic ", "Car", "60", 2)

    assert out.success is True
    assert out.vehicle.model == "Honda Civic"
    assert out.vehicle.rent_per_day == Decimal("60.00")
    assert out.vehicle.quantity == out.vehicle.available_quantity == 2
    assert out.vehicle.status == "Available"
    assert [v.id for v in rental_engine.list_vehicles()] == [out.vehicle.id]


def test_remove_vehicle_blocked_by_open_rental(rental_engine, bike, clock):
    rental_engine.rent(bike.id, "alice")

    blocked = rental_engine.remove_vehicle(bike.id)
    assert blocked.error_type == ActiveRentalsError.__name__
    assert rental_engine.get_vehicle(bike.id) is not None

    clock.advance(hours=2)
    rental_engine.return_vehicle(bike.id)
    removed = rental_engine.remove_vehicle(bike.id)

    assert removed.success is True
    assert rental_engine.get_vehicle(bike.id) is None

    # closed rentals outlive the vehicle
    history = rental_engine.rental_history("alice")
    assert len(history) == 1
    assert history[0].vehicle_id is None
    assert history[0].total_cost == Decimal("30.00")


def test_remove_unknown_vehicle_fails(rental_engine):
    assert rental_engine.remove_vehicle(31337).error_type == VehicleNotFoundError.__name__


def test_resize_keeps_rented_count(rental_engine, check_inventory):
    vehicle = rental_engine.add_vehicle("Suzuki Swift", "Car", Decimal("55.00"), 5).vehicle
    for user in ("alice", "bob", "carol"):
        assert rental_engine.rent(vehicle.id, user)

    out = rental_engine.resize_fleet(vehicle.id, 4)

    assert out.success is True
    assert out.vehicle.quantity == 4
    assert out.vehicle.available_quantity == 1
    check_inventory()


def test_resize_below_rented_count_fails(rental_engine, corolla, check_inventory):
    rental_engine.rent(corolla.id, "alice")
    rental_engine.rent(corolla.id, "bob")

    out = rental_engine.resize_fleet(corolla.id, 1)

    assert out.error_type == FleetShrinkError.__name__
    vehicle = rental_engine.get_vehicle(corolla.id)
    assert (vehicle.quantity, vehicle.available_quantity) == (3, 1)

    assert rental_engine.resize_fleet(corolla.id, 2).vehicle.available_quantity == 0
    check_inventory()


def test_resize_to_zero_when_idle(rental_engine, bike):
    out = rental_engine.resize_fleet(bike.id, 0)

    assert out.vehicle.quantity == 0
    assert out.vehicle.status == "Rented"
    assert bike.id not in [v.id for v in rental_engine.list_available()]
    assert rental_engine.rent(bike.id, "alice").error_type == VehicleUnavailableError.__name__


def test_resize_unknown_vehicle_fails(rental_engine):
    assert rental_engine.resize_fleet(999, 3).error_type == VehicleNotFoundError.__name__


def test_update_unknown_vehicle_fails(rental_engine):
    out = rental_engine.update_vehicle(999, "Ghost", "Car", Decimal("10"))
    assert out.error_type == VehicleNotFoundError.__name__


# Reads

def test_list_available_skips_fully_rented(rental_engine, corolla, bike):
    rental_engine.rent(bike.id, "alice")

    assert [v.id for v in rental_engine.list_available()] == [corolla.id]
    assert [v.id for v in rental_engine.list_vehicles()] == [corolla.id, bike.id]


def test_rental_time_tracks_open_then_last_rental(rental_engine, corolla, clock):
    assert rental_engine.rental_time(corolla.id) is None

    started = clock()
    rental_engine.rent(corolla.id, "alice")
    assert rental_engine.rental_time(corolla.id) == started

    clock.advance(hours=5)
    rental_engine.return_vehicle(corolla.id)
    assert rental_engine.rental_time(corolla.id) == started


def test_history_is_newest_first_and_labelled(rental_engine, corolla, bike, clock):
    rental_engine.rent(corolla.id, "alice")
    clock.advance(minutes=30)
    rental_engine.rent(bike.id, "alice")
    clock.advance(minutes=30)
    rental_engine.rent(corolla.id, "bob")

    alice = rental_engine.rental_history("alice")
    assert [e.vehicle_model for e in alice] == ["Yamaha R15", "Toyota Corolla"]
    assert [e.vehicle_type for e in alice] == ["Bike", "Car"]
    assert len(rental_engine.rental_history()) == 3

    active = rental_engine.active_rentals()
    assert [e.username for e in active] == ["alice", "alice", "bob"]


def test_statistics(rental_engine, corolla, bike, clock):
    rental_engine.rent(bike.id, "alice")
    rental_engine.rent(corolla.id, "bob")
    clock.advance(hours=25)
    rental_engine.return_vehicle(corolla.id)

    stats = rental_engine.statistics()

    assert stats.total_vehicles == 2
    assert stats.available_vehicles == 1
    assert stats.rented_vehicles == 1
    assert stats.rented_percentage == 50.0
    assert stats.active_rentals == 1
    assert stats.total_revenue == Decimal("100.00")


def test_statistics_on_empty_fleet(rental_engine):
    stats = rental_engine.statistics()
    assert stats.total_vehicles == 0
    assert stats.total_revenue == Decimal("0.00")
    assert stats.rented_percentage == 0.0


# Sessions and sinks

def test_session_supplies_renter_and_gates_admin(pool, store, clock):
    session = UserSession()
    session.login("admin", Role.ADMIN)
    engine = RentalEngine(pool, store=store, session=session, clock=clock)
    vehicle = engine.add_vehicle("Honda Civic", "Car", Decimal("60.00"), 2).vehicle

    session.login("alice", Role.USER)
    out = engine.rent(vehicle.id)
    assert out.entry.username == "alice"

    with pytest.raises(PermissionDeniedError):
        engine.resize_fleet(vehicle.id, 5)
    assert engine.get_vehicle(vehicle.id).quantity == 2


def test_sinks_notified_after_commit(rental_engine, corolla, clock):
    sink = MagicMock()
    rental_engine.subscribe(sink)

    rented = rental_engine.rent(corolla.id, "alice")
    sink.on_rental_completed.assert_called_once_with("alice", rented.vehicle, rented.entry.rent_time)

    clock.advance(hours=30)
    returned = rental_engine.return_vehicle(corolla.id)
    sink.on_return_completed.assert_called_once_with(
        "alice",
        returned.vehicle,
        rented.entry.rent_time,
        clock(),
        2,
        Decimal("100.00"),
    )


def test_failing_sink_does_not_undo_rental(rental_engine, corolla, check_inventory):
    sink = MagicMock()
    sink.on_rental_completed.side_effect = OSError("receipts directory is read-only")
    rental_engine.subscribe(sink)

    out = rental_engine.rent(corolla.id, "alice")

    assert out.success is True
    assert rental_engine.get_vehicle(corolla.id).available_quantity == 2
    check_inventory()


def test_failed_rent_does_not_notify(rental_engine, bike):
    rental_engine.rent(bike.id, "alice")
    sink = MagicMock()
    rental_engine.subscribe(sink)

    rental_engine.rent(bike.id, "bob")

    sink.on_rental_completed.assert_not_called()


# Storage failures

def test_storage_error_rolls_back_rent(rental_engine, store, corolla, open_rentals, check_inventory):
    with patch.object(store, "insert_ledger_entry", side_effect=SQLAlchemyError("disk I/O error")):
        with pytest.raises(StorageError):
            rental_engine.rent(corolla.id, "alice")

    # the availability decrement ran before the failure and was rolled back
    assert rental_engine.get_vehicle(corolla.id).available_quantity == 3
    assert open_rentals(corolla.id) == 0
    assert rental_engine.pool.stats()["in_use"] == 0
    check_inventory()


def test_storage_error_rolls_back_return(rental_engine, store, corolla, clock, open_rentals):
    rental_engine.rent(corolla.id, "alice")
    clock.advance(hours=3)

    with patch.object(store, "adjust_available", side_effect=SQLAlchemyError("database is locked")):
        with pytest.raises(StorageError):
            rental_engine.return_vehicle(corolla.id)

    assert open_rentals(corolla.id) == 1
    assert rental_engine.active_rentals()[0].return_time is None


# Read path

def test_reads_do_not_wait_for_writer(database_url, clock):
    engine = create_db_engine(database_url, busy_timeout=0.5)
    pool = ConnectionPool(engine, max_size=3, initial_size=0, seed_defaults=False)
    try:
        rentals = RentalEngine(pool, clock=clock)
        vehicle = rentals.add_vehicle("Honda Civic", "Car", Decimal("60.00"), 2).vehicle

        with pool.connection() as writer:
            with writer.begin():
                # holds the write lock until the block exits
                writer.execute(
                    update(VehicleRecord)
                    .where(VehicleRecord.id == vehicle.id)
                    .values(available_quantity=0)
                )

                assert [v.available_quantity for v in rentals.list_vehicles()] == [2]
                assert rentals.get_vehicle(vehicle.id).available_quantity == 2
                assert rentals.statistics().total_vehicles == 1
                assert rentals.active_rentals() == []

        assert rentals.get_vehicle(vehicle.id).available_quantity == 0
    finally:
        pool.shutdown()


def test_reads_leave_connection_write_capable(rental_engine, corolla):
    rental_engine.list_vehicles()

    with rental_engine.pool.connection() as conn:
        assert not conn.get_execution_options().get("read_only")
    assert rental_engine.rent(corolla.id, "alice")
