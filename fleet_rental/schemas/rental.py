from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fleet_rental.schemas.vehicle import Vehicle
from fleet_rental.services.billing import billable_days


def _to_decimal(v):
    if isinstance(v, float):
        return Decimal(str(v)).quantize(Decimal("0.01"))
    return v


class RentalLedgerEntry(BaseModel):
    """One rent -> return cycle. ``return_time`` is None while the rental is open."""
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., gt=0)
    vehicle_id: Optional[int] = None  # cleared when the vehicle is removed
    username: str = Field(..., min_length=1)
    rent_time: datetime
    return_time: Optional[datetime] = None
    total_cost: Optional[Decimal] = Field(None, ge=0)
    vehicle_model: Optional[str] = None
    vehicle_type: Optional[str] = None

    @field_validator('total_cost', mode='before')
    def cost_to_decimal(cls, v):
        return _to_decimal(v)

    @model_validator(mode='after')
    def return_after_rent(self):
        if self.return_time is not None and self.return_time < self.rent_time:
            raise ValueError('return_time cannot precede rent_time')
        return self

    @classmethod
    def from_row(cls, row: Any) -> "RentalLedgerEntry":
        return cls.model_validate(dict(row._mapping))

    @property
    def is_active(self) -> bool:
        return self.return_time is None

    @property
    def duration_days(self) -> Optional[int]:
        if self.return_time is None:
            return None
        return billable_days(self.rent_time, self.return_time)


class RentalStatistics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_vehicles: int = 0
    available_vehicles: int = 0
    active_rentals: int = 0
    total_revenue: Decimal = Decimal("0.00")

    @field_validator('total_revenue', mode='before')
    def revenue_to_decimal(cls, v):
        if v is None:
            return Decimal("0.00")
        return _to_decimal(v)

    @property
    def rented_vehicles(self) -> int:
        return self.total_vehicles - self.available_vehicles

    @property
    def rented_percentage(self) -> float:
        if self.total_vehicles == 0:
            return 0.0
        return self.rented_vehicles / self.total_vehicles * 100.0


class OperationResult(BaseModel):
    """
    Outcome of a rental engine mutation.

    Conflicts (unavailable vehicle, nothing to return, open rentals blocking a
    removal, a resize below the rented count) come back as
    ``success=False`` with the conflict class name in ``error_type``. The
    result is truthy only on success.
    """
    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    error_type: Optional[str] = None
    vehicle: Optional[Vehicle] = None
    entry: Optional[RentalLedgerEntry] = None

    def __bool__(self) -> bool:
        return self.success
