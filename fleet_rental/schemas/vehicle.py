from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Vehicle(BaseModel):
    """Snapshot of one catalog row; not kept in sync with the store after it is read."""
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., gt=0)
    model: str = Field(..., min_length=1, max_length=100)
    type: str = Field(..., min_length=1, max_length=50)
    rent_per_day: Decimal = Field(..., ge=0)
    quantity: int = Field(..., ge=0)
    available_quantity: int = Field(..., ge=0)

    @field_validator('model', 'type')
    def not_blank(cls, v):
        if not v.strip():
            raise ValueError('must not be blank')
        return v

    @field_validator('rent_per_day', mode='before')
    def rate_to_decimal(cls, v):
        # SQLite hands NUMERIC back as float
        if isinstance(v, float):
            return Decimal(str(v)).quantize(Decimal("0.01"))
        return v

    @model_validator(mode='after')
    def available_within_quantity(self):
        if self.available_quantity > self.quantity:
            raise ValueError('available_quantity cannot exceed quantity')
        return self

    @classmethod
    def new(cls, id: int, model: str, type: str, rent_per_day: Decimal, quantity: int) -> "Vehicle":
        """A vehicle with every unit available."""
        return cls(
            id=id,
            model=model,
            type=type,
            rent_per_day=rent_per_day,
            quantity=quantity,
            available_quantity=quantity,
        )

    @classmethod
    def from_row(cls, row: Any) -> "Vehicle":
        return cls.model_validate(dict(row._mapping))

    @property
    def rented(self) -> int:
        return self.quantity - self.available_quantity

    @property
    def is_available(self) -> bool:
        return self.available_quantity > 0

    @property
    def status(self) -> str:
        if self.available_quantity == 0:
            return "Rented"
        if self.available_quantity == self.quantity:
            return "Available"
        return f"{self.available_quantity}/{self.quantity} Available"

    def __str__(self) -> str:
        return (
            f"ID: {self.id}, Model: {self.model}, Type: {self.type}, "
            f"Rent: ${self.rent_per_day:.2f} per day, Status: {self.status}"
        )
