import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

# Core
from fleet_rental.core.metrics import track_performance
from fleet_rental.core.pool import ConnectionPool

# Schemas
from fleet_rental.schemas import OperationResult, RentalLedgerEntry, RentalStatistics, Vehicle

# Services
from fleet_rental.services.billing import billable_days, rental_cost
from fleet_rental.services.inventory_store import InventoryStore
from fleet_rental.services.receipts import ReceiptSink
from fleet_rental.services.session import SessionContext
from fleet_rental.services.validators import BusinessRules

# Exceptions
from fleet_rental.services.exceptions import (
    ActiveRentalsError,
    FleetShrinkError,
    NothingToReturnError,
    PermissionDeniedError,
    RentalConflictError,
    StorageError,
    VehicleNotFoundError,
    VehicleUnavailableError,
)

logger = logging.getLogger(__name__)


class RentalEngine:
    """
    Transactional core for renting, returning and managing fleet inventory.

    Every mutator is one atomic unit on a single pooled connection:
    begin -> lock the vehicle row -> validate -> update ``vehicles`` ->
    write ``rental_ledger`` -> commit. Anything raised after begin rolls the
    transaction back before the method returns.

    Error handling:
    - Input problems raise ``ValidationError`` before a transaction begins
    - Conflicts (no unit free, nothing to return, open rentals, shrinking
      below the rented count) roll back and come back as a failed
      ``OperationResult``
    - SQLAlchemy failures roll back and raise ``StorageError``; pool
      saturation raises ``PoolExhaustedError``

    Concurrency Control:
    - ``InventoryStore.lock_vehicle_for_update`` takes a row lock, so
      operations on the same vehicle run one after another in lock order
    - Operations on different vehicles proceed in parallel

    Receipt sinks are notified only after commit, once the connection is back
    in the pool. Their failures are logged and never affect the result.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        store: Optional[InventoryStore] = None,
        session: Optional[SessionContext] = None,
        sinks: Optional[Iterable[ReceiptSink]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            pool: Connection pool every operation borrows from
            store: Query layer; a fresh ``InventoryStore`` when omitted
            session: Acting user lookup. When given, ``rent`` defaults the
                     username from it and admin operations require an admin
            sinks: Post-commit receipt observers
            clock: Timestamp source for rent/return times (``datetime.now``)
        """
        self.pool = pool
        self.store = store or InventoryStore()
        self.session = session
        self._sinks: List[ReceiptSink] = list(sinks or [])
        self._sinks_lock = threading.Lock()
        self._clock = clock or datetime.now

    def now(self) -> datetime:
        return self._clock()

    # Observers

    def subscribe(self, sink: ReceiptSink) -> None:
        with self._sinks_lock:
            if sink not in self._sinks:
                self._sinks.append(sink)

    def unsubscribe(self, sink: ReceiptSink) -> None:
        with self._sinks_lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    # Rent / return

    @track_performance(service_name="RentalEngine")
    def rent(self, vehicle_id: int, username: Optional[str] = None) -> OperationResult:
        """
        Rents one unit of a vehicle.

        Args:
            vehicle_id: Vehicle to rent from
            username: Renter; defaults to the session's current user

        Returns:
            OperationResult: ``vehicle`` holds the post-rental snapshot and
            ``entry`` the new open ledger row. Fails with
            ``VehicleUnavailableError`` when no unit is free and
            ``VehicleNotFoundError`` for unknown ids.
        """
        if username is None and self.session is not None:
            username = self.session.current_username()
        username = BusinessRules.validate_username(username)

        try:
            with self._transaction() as conn:
                vehicle, entry = self._rent_locked(conn, vehicle_id, username)
        except RentalConflictError as e:
            return self.handle_exception(e)

        logger.info(f"Vehicle {vehicle_id} rented by {username} (rental {entry.id})")
        self._notify("on_rental_completed", username, vehicle, entry.rent_time)

        return OperationResult(
            success=True,
            message=f"Rented {vehicle.model}; {vehicle.available_quantity} of {vehicle.quantity} left.",
            vehicle=vehicle,
            entry=entry,
        )

    @track_performance(service_name="RentalEngine")
    def return_vehicle(self, vehicle_id: int) -> OperationResult:
        """
        Returns one rented unit of a vehicle and bills the rental.

        The caller does not say which rental is being returned, so the oldest
        open ledger row for the vehicle is closed (first in, first out).

        Billing:
            days = ceil(whole hours elapsed / 24), minimum 1
            cost = days * rent_per_day

        Returns:
            OperationResult: ``entry`` is the closed ledger row with
            ``return_time`` and ``total_cost`` set. Fails with
            ``NothingToReturnError`` when no unit is out.
        """
        try:
            with self._transaction() as conn:
                vehicle, entry = self._return_locked(conn, vehicle_id)
        except RentalConflictError as e:
            return self.handle_exception(e)

        days = entry.duration_days
        logger.info(
            f"Vehicle {vehicle_id} returned by {entry.username} "
            f"(rental {entry.id}, {days} day(s), ${entry.total_cost})"
        )
        self._notify(
            "on_return_completed",
            entry.username,
            vehicle,
            entry.rent_time,
            entry.return_time,
            days,
            entry.total_cost,
        )

        return OperationResult(
            success=True,
            message=f"Returned {vehicle.model} after {days} day(s); amount due ${entry.total_cost:.2f}.",
            vehicle=vehicle,
            entry=entry,
        )

    # Fleet administration

    @track_performance(service_name="RentalEngine")
    def add_vehicle(self, model: str, vehicle_type: str, rent_per_day, quantity: int = 1) -> OperationResult:
        rate = BusinessRules.validate_vehicle_details(model, vehicle_type, rent_per_day)
        quantity = BusinessRules.validate_initial_quantity(quantity)
        self._require_admin("add vehicles")

        with self._transaction() as conn:
            vehicle = self.store.insert_vehicle(conn, model.strip(), vehicle_type.strip(), rate, quantity)

        logger.info(f"Vehicle {vehicle.id} added: {vehicle.model} x{vehicle.quantity}")
        return OperationResult(success=True, message=f"Added {vehicle.model}.", vehicle=vehicle)

    @track_performance(service_name="RentalEngine")
    def remove_vehicle(self, vehicle_id: int) -> OperationResult:
        """Deletes a vehicle. Fails closed with ``ActiveRentalsError`` while any rental is open."""
        self._require_admin("remove vehicles")

        try:
            with self._transaction() as conn:
                vehicle = self._lock_or_raise(conn, vehicle_id)
                open_rentals = self.store.count_open_entries(conn, vehicle_id)
                if open_rentals > 0:
                    raise ActiveRentalsError(
                        f"Cannot remove {vehicle.model}: {open_rentals} active rental(s)."
                    )
                if not self.store.delete_vehicle(conn, vehicle_id):
                    raise VehicleNotFoundError(f"Vehicle {vehicle_id} not found.")
        except RentalConflictError as e:
            return self.handle_exception(e)

        logger.info(f"Vehicle {vehicle_id} removed")
        return OperationResult(success=True, message=f"Removed {vehicle.model}.", vehicle=vehicle)

    @track_performance(service_name="RentalEngine")
    def resize_fleet(self, vehicle_id: int, new_quantity: int) -> OperationResult:
        """
        Changes how many units of a vehicle the fleet owns.

        The rented count is preserved: ``available = new_quantity - rented``.
        Shrinking below the number of units currently out fails with
        ``FleetShrinkError``.
        """
        new_quantity = BusinessRules.validate_fleet_size(new_quantity)
        self._require_admin("resize the fleet")

        try:
            with self._transaction() as conn:
                vehicle = self._lock_or_raise(conn, vehicle_id)
                if new_quantity < vehicle.rented:
                    raise FleetShrinkError(
                        f"Cannot set {vehicle.model} to {new_quantity} unit(s): "
                        f"{vehicle.rented} currently rented."
                    )
                if not self.store.resize_vehicle(conn, vehicle_id, new_quantity):
                    raise FleetShrinkError(f"Resize of vehicle {vehicle_id} was rejected.")
                resized = self.store.get_by_id(conn, vehicle_id)
        except RentalConflictError as e:
            return self.handle_exception(e)

        logger.info(
            f"Vehicle {vehicle_id} resized {vehicle.quantity} -> {resized.quantity} "
            f"({resized.available_quantity} available)"
        )
        return OperationResult(
            success=True,
            message=f"{resized.model} now has {resized.quantity} unit(s).",
            vehicle=resized,
        )

    @track_performance(service_name="RentalEngine")
    def update_vehicle(self, vehicle_id: int, model: str, vehicle_type: str, rent_per_day) -> OperationResult:
        """Edits catalog details. Quantities are left alone; open rentals keep billing at the new rate."""
        rate = BusinessRules.validate_vehicle_details(model, vehicle_type, rent_per_day)
        self._require_admin("edit vehicles")

        try:
            with self._transaction() as conn:
                self._lock_or_raise(conn, vehicle_id)
                self.store.update_vehicle_details(conn, vehicle_id, model.strip(), vehicle_type.strip(), rate)
                updated = self.store.get_by_id(conn, vehicle_id)
        except RentalConflictError as e:
            return self.handle_exception(e)

        return OperationResult(success=True, message=f"Updated {updated.model}.", vehicle=updated)

    # Reads

    def list_vehicles(self) -> List[Vehicle]:
        with self._read() as conn:
            return self.store.get_all(conn)

    def list_available(self) -> List[Vehicle]:
        with self._read() as conn:
            return self.store.get_available(conn)

    def get_vehicle(self, vehicle_id: int) -> Optional[Vehicle]:
        with self._read() as conn:
            return self.store.get_by_id(conn, vehicle_id)

    def rental_history(self, username: Optional[str] = None) -> List[RentalLedgerEntry]:
        with self._read() as conn:
            return self.store.rental_history(conn, username)

    def active_rentals(self) -> List[RentalLedgerEntry]:
        with self._read() as conn:
            return self.store.active_rentals(conn)

    def is_rented_by(self, username: str, vehicle_id: int) -> bool:
        with self._read() as conn:
            return self.store.has_open_rental(conn, username, vehicle_id)

    def rental_time(self, vehicle_id: int) -> Optional[datetime]:
        with self._read() as conn:
            return self.store.last_rent_time(conn, vehicle_id)

    def statistics(self) -> RentalStatistics:
        with self._read() as conn:
            return self.store.statistics(conn)

    def handle_exception(self, e: Exception) -> OperationResult:
        """
        Maps a rental conflict to a failed ``OperationResult``.

        Anything that is not a ``RentalConflictError`` is a real failure and
        is re-raised.
        """
        if isinstance(e, RentalConflictError):
            logger.info(f"{e.__class__.__name__}: {e}")
            return OperationResult(
                success=False,
                error_type=e.__class__.__name__,
                message=str(e),
            )

        raise e

    # Internals

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        """One pooled connection, one transaction: commit on success, roll back on any exception."""
        try:
            with self.pool.connection() as conn:
                with conn.begin():
                    yield conn
        except SQLAlchemyError as e:
            logger.error(f"Transaction rolled back after storage error: {e}")
            raise StorageError(str(e)) from e

    @contextmanager
    def _read(self) -> Iterator[Connection]:
        """
        One pooled connection for snapshot reads. No row locks are taken; on
        SQLite the transaction is deferred so readers do not wait on writers.
        """
        try:
            with self.pool.connection() as conn:
                conn.execution_options(read_only=True)
                try:
                    with conn.begin():
                        yield conn
                finally:
                    # pooled connections go back write-capable
                    conn.execution_options(read_only=False)
        except SQLAlchemyError as e:
            logger.error(f"Read failed after storage error: {e}")
            raise StorageError(str(e)) from e

    def _lock_or_raise(self, conn: Connection, vehicle_id: int) -> Vehicle:
        vehicle = self.store.lock_vehicle_for_update(conn, vehicle_id)
        if vehicle is None:
            raise VehicleNotFoundError(f"Vehicle {vehicle_id} not found.")
        return vehicle

    def _rent_locked(self, conn: Connection, vehicle_id: int, username: str) -> Tuple[Vehicle, RentalLedgerEntry]:
        vehicle = self.store.lock_vehicle_for_update(conn, vehicle_id)
        if vehicle is None:
            raise VehicleNotFoundError(f"Vehicle {vehicle_id} is unavailable: not found.")
        if vehicle.available_quantity == 0:
            raise VehicleUnavailableError(
                f"{vehicle.model} is unavailable: all {vehicle.quantity} unit(s) are rented."
            )

        rent_time = self.now()
        self.store.adjust_available(conn, vehicle_id, -1)
        entry = self.store.insert_ledger_entry(conn, vehicle_id, username, rent_time)

        rented = vehicle.model_copy(update={"available_quantity": vehicle.available_quantity - 1})
        return rented, entry

    def _return_locked(self, conn: Connection, vehicle_id: int) -> Tuple[Vehicle, RentalLedgerEntry]:
        vehicle = self._lock_or_raise(conn, vehicle_id)
        if vehicle.available_quantity >= vehicle.quantity:
            raise NothingToReturnError(f"No rented unit of {vehicle.model} to return.")

        entry = self.store.oldest_open_entry(conn, vehicle_id)
        if entry is None:
            raise NothingToReturnError(f"No open rental recorded for {vehicle.model}.")

        return_time = max(self.now(), entry.rent_time)
        days = billable_days(entry.rent_time, return_time)
        cost = rental_cost(days, vehicle.rent_per_day)

        if not self.store.close_ledger_entry(conn, entry.id, return_time, cost):
            raise NothingToReturnError(f"Rental {entry.id} was already closed.")
        self.store.adjust_available(conn, vehicle_id, 1)

        returned = vehicle.model_copy(update={"available_quantity": vehicle.available_quantity + 1})
        closed = entry.model_copy(update={"return_time": return_time, "total_cost": cost})
        return returned, closed

    def _require_admin(self, action: str) -> None:
        if self.session is not None and not self.session.current_role_is_admin():
            raise PermissionDeniedError(f"Only administrators can {action}.")

    def _notify(self, event: str, *args) -> None:
        with self._sinks_lock:
            sinks = list(self._sinks)

        for sink in sinks:
            try:
                getattr(sink, event)(*args)
            except Exception:
                # receipts are best-effort; the transaction has already committed
                logger.exception(f"Receipt sink {sink.__class__.__name__} failed on {event}")
