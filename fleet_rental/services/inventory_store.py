from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection

from fleet_rental.models import RentalLedgerRecord, VehicleRecord
from fleet_rental.schemas import RentalLedgerEntry, RentalStatistics, Vehicle


_VEHICLE_COLUMNS = (
    VehicleRecord.id,
    VehicleRecord.model,
    VehicleRecord.type,
    VehicleRecord.rent_per_day,
    VehicleRecord.quantity,
    VehicleRecord.available_quantity,
)

_LEDGER_COLUMNS = (
    RentalLedgerRecord.id,
    RentalLedgerRecord.vehicle_id,
    RentalLedgerRecord.username,
    RentalLedgerRecord.rent_time,
    RentalLedgerRecord.return_time,
    RentalLedgerRecord.total_cost,
)


class InventoryStore:
    """
    Query layer over the ``vehicles`` and ``rental_ledger`` tables.

    Every method runs on a connection the caller already holds, inside
    whatever transaction the caller opened. The store never acquires
    connections, never commits and enforces no business policy beyond the
    storage-level guards on delete and resize.

    SQLAlchemy errors propagate unchanged; the rental engine maps them to
    ``StorageError`` after rolling back.
    """

    # Catalog reads

    def get_all(self, conn: Connection) -> List[Vehicle]:
        rows = conn.execute(select(*_VEHICLE_COLUMNS).order_by(VehicleRecord.id)).all()
        return [Vehicle.from_row(row) for row in rows]

    def get_available(self, conn: Connection) -> List[Vehicle]:
        rows = conn.execute(
            select(*_VEHICLE_COLUMNS)
            .where(VehicleRecord.available_quantity > 0)
            .order_by(VehicleRecord.id)
        ).all()
        return [Vehicle.from_row(row) for row in rows]

    def get_by_id(self, conn: Connection, vehicle_id: int) -> Optional[Vehicle]:
        row = conn.execute(
            select(*_VEHICLE_COLUMNS).where(VehicleRecord.id == vehicle_id)
        ).first()
        return Vehicle.from_row(row) if row else None

    def lock_vehicle_for_update(self, conn: Connection, vehicle_id: int) -> Optional[Vehicle]:
        """
        Reads a vehicle row with an exclusive row lock held until the enclosing
        transaction ends. Concurrent rent/return/resize calls on the same
        vehicle block here until the holder commits or rolls back.
        """
        row = conn.execute(
            select(*_VEHICLE_COLUMNS)
            .where(VehicleRecord.id == vehicle_id)
            .with_for_update()
        ).first()
        return Vehicle.from_row(row) if row else None

    def count_vehicles(self, conn: Connection) -> int:
        return conn.execute(select(func.count(VehicleRecord.id))).scalar() or 0

    # Catalog writes

    def insert_vehicle(
        self,
        conn: Connection,
        model: str,
        vehicle_type: str,
        rent_per_day: Decimal,
        quantity: int,
    ) -> Vehicle:
        result = conn.execute(
            insert(VehicleRecord).values(
                model=model,
                type=vehicle_type,
                rent_per_day=rent_per_day,
                quantity=quantity,
                available_quantity=quantity,
            )
        )
        return self.get_by_id(conn, result.inserted_primary_key[0])

    def update_vehicle_details(
        self,
        conn: Connection,
        vehicle_id: int,
        model: str,
        vehicle_type: str,
        rent_per_day: Decimal,
    ) -> bool:
        result = conn.execute(
            update(VehicleRecord)
            .where(VehicleRecord.id == vehicle_id)
            .values(model=model, type=vehicle_type, rent_per_day=rent_per_day)
        )
        return result.rowcount > 0

    def delete_vehicle(self, conn: Connection, vehicle_id: int) -> bool:
        """Deletes the vehicle unless it has open rentals. False when blocked or missing."""
        if self.count_open_entries(conn, vehicle_id) > 0:
            return False
        result = conn.execute(delete(VehicleRecord).where(VehicleRecord.id == vehicle_id))
        return result.rowcount > 0

    def resize_vehicle(self, conn: Connection, vehicle_id: int, new_quantity: int) -> bool:
        """
        Sets the total unit count while keeping the rented count intact.
        False when the vehicle is missing or ``new_quantity`` is below the
        number of units currently rented.
        """
        vehicle = self.get_by_id(conn, vehicle_id)
        if vehicle is None or new_quantity < vehicle.rented:
            return False

        conn.execute(
            update(VehicleRecord)
            .where(VehicleRecord.id == vehicle_id)
            .values(
                quantity=new_quantity,
                available_quantity=new_quantity - vehicle.rented,
            )
        )
        return True

    def adjust_available(self, conn: Connection, vehicle_id: int, delta: int) -> None:
        conn.execute(
            update(VehicleRecord)
            .where(VehicleRecord.id == vehicle_id)
            .values(available_quantity=VehicleRecord.available_quantity + delta)
        )

    # Ledger

    def insert_ledger_entry(
        self,
        conn: Connection,
        vehicle_id: int,
        username: str,
        rent_time: datetime,
    ) -> RentalLedgerEntry:
        result = conn.execute(
            insert(RentalLedgerRecord).values(
                vehicle_id=vehicle_id,
                username=username,
                rent_time=rent_time,
                return_time=None,
                total_cost=None,
            )
        )
        return RentalLedgerEntry(
            id=result.inserted_primary_key[0],
            vehicle_id=vehicle_id,
            username=username,
            rent_time=rent_time,
        )

    def oldest_open_entry(self, conn: Connection, vehicle_id: int) -> Optional[RentalLedgerEntry]:
        """The earliest unreturned rental of a vehicle; returns are attributed first-in, first-out."""
        row = conn.execute(
            select(*_LEDGER_COLUMNS)
            .where(
                RentalLedgerRecord.vehicle_id == vehicle_id,
                RentalLedgerRecord.return_time.is_(None),
            )
            .order_by(RentalLedgerRecord.rent_time.asc(), RentalLedgerRecord.id.asc())
            .limit(1)
        ).first()
        return RentalLedgerEntry.from_row(row) if row else None

    def close_ledger_entry(
        self,
        conn: Connection,
        entry_id: int,
        return_time: datetime,
        total_cost: Decimal,
    ) -> bool:
        result = conn.execute(
            update(RentalLedgerRecord)
            .where(
                RentalLedgerRecord.id == entry_id,
                RentalLedgerRecord.return_time.is_(None),
            )
            .values(return_time=return_time, total_cost=total_cost)
        )
        return result.rowcount > 0

    def count_open_entries(self, conn: Connection, vehicle_id: int) -> int:
        return conn.execute(
            select(func.count(RentalLedgerRecord.id)).where(
                RentalLedgerRecord.vehicle_id == vehicle_id,
                RentalLedgerRecord.return_time.is_(None),
            )
        ).scalar() or 0

    def has_open_rental(self, conn: Connection, username: str, vehicle_id: int) -> bool:
        count = conn.execute(
            select(func.count(RentalLedgerRecord.id)).where(
                RentalLedgerRecord.vehicle_id == vehicle_id,
                RentalLedgerRecord.username == username,
                RentalLedgerRecord.return_time.is_(None),
            )
        ).scalar()
        return bool(count)

    def rental_history(self, conn: Connection, username: Optional[str] = None) -> List[RentalLedgerEntry]:
        """Ledger rows newest first, with the vehicle's model and type when it still exists."""
        stmt = self._ledger_with_vehicle().order_by(
            RentalLedgerRecord.rent_time.desc(), RentalLedgerRecord.id.desc()
        )
        if username is not None:
            stmt = stmt.where(RentalLedgerRecord.username == username)
        return [RentalLedgerEntry.from_row(row) for row in conn.execute(stmt).all()]

    def active_rentals(self, conn: Connection) -> List[RentalLedgerEntry]:
        stmt = (
            self._ledger_with_vehicle()
            .where(RentalLedgerRecord.return_time.is_(None))
            .order_by(RentalLedgerRecord.rent_time.asc(), RentalLedgerRecord.id.asc())
        )
        return [RentalLedgerEntry.from_row(row) for row in conn.execute(stmt).all()]

    def last_rent_time(self, conn: Connection, vehicle_id: int) -> Optional[datetime]:
        """Rent time of the oldest open rental, else of the most recently returned one."""
        open_entry = self.oldest_open_entry(conn, vehicle_id)
        if open_entry is not None:
            return open_entry.rent_time

        return conn.execute(
            select(RentalLedgerRecord.rent_time)
            .where(RentalLedgerRecord.vehicle_id == vehicle_id)
            .order_by(RentalLedgerRecord.return_time.desc(), RentalLedgerRecord.id.desc())
            .limit(1)
        ).scalar()

    def statistics(self, conn: Connection) -> RentalStatistics:
        total_vehicles = self.count_vehicles(conn)
        available_vehicles = conn.execute(
            select(func.count(VehicleRecord.id)).where(VehicleRecord.available_quantity > 0)
        ).scalar() or 0
        active_rentals = conn.execute(
            select(func.count(RentalLedgerRecord.id)).where(RentalLedgerRecord.return_time.is_(None))
        ).scalar() or 0
        total_revenue = conn.execute(
            select(func.sum(RentalLedgerRecord.total_cost)).where(RentalLedgerRecord.return_time.is_not(None))
        ).scalar()

        return RentalStatistics(
            total_vehicles=total_vehicles,
            available_vehicles=available_vehicles,
            active_rentals=active_rentals,
            total_revenue=total_revenue,
        )

    def _ledger_with_vehicle(self):
        return select(
            *_LEDGER_COLUMNS,
            VehicleRecord.model.label("vehicle_model"),
            VehicleRecord.type.label("vehicle_type"),
        ).select_from(
            RentalLedgerRecord.__table__.outerjoin(
                VehicleRecord.__table__,
                RentalLedgerRecord.vehicle_id == VehicleRecord.id,
            )
        )
