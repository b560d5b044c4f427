from fleet_rental.core.retry import NonRetryableError, RetryableError


class ValidationError(NonRetryableError, ValueError):
    """Raised before any transaction begins when input violates business rules."""

class InvalidVehicleDataError(ValidationError):
    """Raised when model, type or daily rate are missing or malformed."""

class InvalidQuantityError(ValidationError):
    """Raised when a fleet quantity is negative or otherwise unusable."""

class PermissionDeniedError(NonRetryableError):
    """Raised when a non-admin session attempts an inventory change."""


class RentalConflictError(Exception):
    """Base class for conflicts detected inside a transaction; always rolled back."""

class VehicleNotFoundError(RentalConflictError):
    """Raised when the vehicle row does not exist."""

class VehicleUnavailableError(RentalConflictError):
    """Raised when every unit of a vehicle is already rented."""

class NothingToReturnError(RentalConflictError):
    """Raised when a vehicle has no open rental to close."""

class ActiveRentalsError(RentalConflictError):
    """Raised when a vehicle with open rentals is about to be removed."""

class FleetShrinkError(RentalConflictError):
    """Raised when a resize would drop the fleet below the rented count."""


class StorageError(RetryableError):
    """Raised when a storage operation fails; the transaction has been rolled back."""

class PoolExhaustedError(RetryableError):
    """Raised when no pooled connection frees up within the allowed wait."""

class PoolClosedError(NonRetryableError):
    """Raised when acquiring from a pool that has been shut down."""
