from decimal import Decimal, InvalidOperation
from typing import Any

from fleet_rental.services.exceptions import (
    InvalidQuantityError,
    InvalidVehicleDataError,
    ValidationError,
)


class BusinessRules:
    MIN_INITIAL_QUANTITY = 1
    MIN_FLEET_SIZE = 0
    MAX_MODEL_LENGTH = 100
    MAX_TYPE_LENGTH = 50
    MAX_USERNAME_LENGTH = 50

    @staticmethod
    def validate_vehicle_details(model: Any, vehicle_type: Any, rent_per_day: Any) -> Decimal:
        """Checks catalog fields and returns the daily rate as a Decimal."""
        if not isinstance(model, str) or not model.strip():
            raise InvalidVehicleDataError("Model cannot be empty")
        if len(model.strip()) > BusinessRules.MAX_MODEL_LENGTH:
            raise InvalidVehicleDataError(f"Model cannot exceed {BusinessRules.MAX_MODEL_LENGTH} characters")
        if not isinstance(vehicle_type, str) or not vehicle_type.strip():
            raise InvalidVehicleDataError("Type cannot be empty")
        if len(vehicle_type.strip()) > BusinessRules.MAX_TYPE_LENGTH:
            raise InvalidVehicleDataError(f"Type cannot exceed {BusinessRules.MAX_TYPE_LENGTH} characters")

        if isinstance(rent_per_day, bool):
            raise InvalidVehicleDataError("Rent per day must be a number")
        try:
            rate = Decimal(str(rent_per_day))
        except (InvalidOperation, ValueError):
            raise InvalidVehicleDataError(f"Rent per day must be a number, got {rent_per_day!r}")
        if not rate.is_finite() or rate <= 0:
            raise InvalidVehicleDataError("Rent per day must be positive")
        return rate

    @staticmethod
    def validate_initial_quantity(quantity: Any) -> int:
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise InvalidQuantityError("Quantity must be a whole number")
        if quantity < BusinessRules.MIN_INITIAL_QUANTITY:
            raise InvalidQuantityError(f"Quantity must be at least {BusinessRules.MIN_INITIAL_QUANTITY}")
        return quantity

    @staticmethod
    def validate_fleet_size(new_quantity: Any) -> int:
        if isinstance(new_quantity, bool) or not isinstance(new_quantity, int):
            raise InvalidQuantityError("Quantity must be a whole number")
        if new_quantity < BusinessRules.MIN_FLEET_SIZE:
            raise InvalidQuantityError("Quantity cannot be negative")
        return new_quantity

    @staticmethod
    def validate_username(username: Any) -> str:
        if not isinstance(username, str) or not username.strip():
            raise ValidationError("A username is required to rent a vehicle")
        if len(username) > BusinessRules.MAX_USERNAME_LENGTH:
            raise ValidationError(f"Username cannot exceed {BusinessRules.MAX_USERNAME_LENGTH} characters")
        return username
