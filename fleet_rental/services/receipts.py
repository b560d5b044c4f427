import logging
import threading
import uuid
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import List, Optional, Protocol, Union, runtime_checkable

from fleet_rental.core.environment import get_logs_dir, get_receipts_dir
from fleet_rental.schemas import Vehicle
from fleet_rental.services.billing import elapsed_hours

logger = logging.getLogger(__name__)

RULE = "=" * 41
THIN_RULE = "-" * 41
DISPLAY_FORMAT = "%Y-%m-%d %H:%M:%S"


@runtime_checkable
class ReceiptSink(Protocol):
    """
    Post-commit observer for completed rentals and returns.

    The engine calls these after the transaction has committed and the
    connection is back in the pool. Exceptions raised here are logged by the
    engine and never change the outcome of the rental.
    """

    def on_rental_completed(self, username: str, vehicle: Vehicle, rent_time: datetime) -> None:
        ...

    def on_return_completed(
        self,
        username: str,
        vehicle: Vehicle,
        rent_time: datetime,
        return_time: datetime,
        days: int,
        cost: Decimal,
    ) -> None:
        ...


class LoggingReceiptSink:
    """Emits rent/return events as structured log records."""

    def __init__(self, event_logger: Optional[logging.Logger] = None):
        self.logger = event_logger or logger

    def on_rental_completed(self, username, vehicle, rent_time):
        self.logger.info(
            "RENTAL",
            extra={
                "event": "rental",
                "username": username,
                "vehicle_id": vehicle.id,
                "vehicle_model": vehicle.model,
                "rent_time": rent_time.isoformat(),
            },
        )

    def on_return_completed(self, username, vehicle, rent_time, return_time, days, cost):
        self.logger.info(
            "RETURN",
            extra={
                "event": "return",
                "username": username,
                "vehicle_id": vehicle.id,
                "vehicle_model": vehicle.model,
                "rent_time": rent_time.isoformat(),
                "return_time": return_time.isoformat(),
                "days": days,
                "hours": elapsed_hours(rent_time, return_time),
                "amount": str(cost),
            },
        )


class FileReceiptSink:
    """
    Writes a text receipt per rental/return and appends a line to the day's
    rental log (``rental_log_YYYY-MM-DD.log``).
    """

    def __init__(
        self,
        receipts_dir: Union[str, Path, None] = None,
        logs_dir: Union[str, Path, None] = None,
    ):
        self.receipts_dir = Path(receipts_dir or get_receipts_dir())
        self.logs_dir = Path(logs_dir or get_logs_dir())
        self._log_lock = threading.Lock()
        self.receipts_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def on_rental_completed(self, username: str, vehicle: Vehicle, rent_time: datetime) -> None:
        receipt_id = self._receipt_id()
        lines = [
            RULE,
            "          VEHICLE RENTAL RECEIPT         ",
            RULE,
            f"Receipt ID: {receipt_id}",
            f"Date & Time: {rent_time.strftime(DISPLAY_FORMAT)}",
            THIN_RULE,
            f"Customer: {username}",
            THIN_RULE,
            *self._vehicle_lines(vehicle),
            f"  Daily Rate: ${vehicle.rent_per_day:.2f}",
            THIN_RULE,
            "Please return the vehicle in good condition.",
            "Late fees may apply for delayed returns.",
            RULE,
            "Thank you for choosing our service!",
            RULE,
        ]
        path = self._write_receipt(username, "rental", vehicle.id, rent_time, receipt_id, lines)
        self._append_log(
            rent_time,
            f"RENTAL - User: {username}, Vehicle ID: {vehicle.id}, Model: {vehicle.model}",
        )
        logger.info(f"Rental receipt written to {path}")

    def on_return_completed(
        self,
        username: str,
        vehicle: Vehicle,
        rent_time: datetime,
        return_time: datetime,
        days: int,
        cost: Decimal,
    ) -> None:
        receipt_id = self._receipt_id()
        lines = [
            RULE,
            "         VEHICLE RETURN RECEIPT          ",
            RULE,
            f"Receipt ID: {receipt_id}",
            f"Return Date & Time: {return_time.strftime(DISPLAY_FORMAT)}",
            THIN_RULE,
            f"Customer: {username}",
            THIN_RULE,
            *self._vehicle_lines(vehicle),
            THIN_RULE,
            "Rental Information:",
            f"  Rental Date: {rent_time.strftime(DISPLAY_FORMAT)}",
            f"  Return Date: {return_time.strftime(DISPLAY_FORMAT)}",
            f"  Duration: {days} day(s) ({elapsed_hours(rent_time, return_time)} hours)",
            f"  Rate per Day: ${vehicle.rent_per_day:.2f}",
            THIN_RULE,
            f"Total Amount Due: ${cost:.2f}",
            RULE,
            "Thank you for choosing our service!",
            RULE,
        ]
        path = self._write_receipt(username, "return", vehicle.id, return_time, receipt_id, lines)
        self._append_log(
            return_time,
            f"RETURN - User: {username}, Vehicle ID: {vehicle.id}, "
            f"Model: {vehicle.model}, Amount: ${cost:.2f}",
        )
        logger.info(f"Return receipt written to {path}")

    def list_receipts(self, username: str) -> List[Path]:
        return sorted(self.receipts_dir.glob(f"{username}_*.txt"))

    def log_entries_for(self, day: Union[date, str]) -> List[str]:
        path = self._log_path(day)
        if not path.exists():
            return []
        return path.read_text(encoding="utf-8").splitlines()

    def _vehicle_lines(self, vehicle: Vehicle) -> List[str]:
        return [
            "Vehicle Details:",
            f"  ID: {vehicle.id}",
            f"  Model: {vehicle.model}",
            f"  Type: {vehicle.type}",
        ]

    def _receipt_id(self) -> str:
        return uuid.uuid4().hex[:8]

    def _write_receipt(
        self,
        username: str,
        kind: str,
        vehicle_id: int,
        when: datetime,
        receipt_id: str,
        lines: List[str],
    ) -> Path:
        stamp = when.strftime("%Y-%m-%d_%H-%M-%S")
        path = self.receipts_dir / f"{username}_{kind}_{vehicle_id}_{stamp}_{receipt_id}.txt"
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    def _log_path(self, day: Union[date, str]) -> Path:
        label = day if isinstance(day, str) else day.strftime("%Y-%m-%d")
        return self.logs_dir / f"rental_log_{label}.log"

    def _append_log(self, when: datetime, entry: str) -> None:
        line = f"[{when.strftime(DISPLAY_FORMAT)}] {entry}\n"
        with self._log_lock:
            with open(self._log_path(when.date()), "a", encoding="utf-8") as fh:
                fh.write(line)
