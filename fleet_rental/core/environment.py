import os

from pydantic import BaseModel, Field, model_validator


def get_database_url() -> str:
    """Returns SQLAlchemy database URL based on environment"""
    return os.getenv("FLEET_DATABASE_URL", "sqlite:///fleet_rental.db")

def get_sqlite_busy_timeout() -> float:
    """Seconds a SQLite connection waits on a locked database before failing"""
    return float(os.getenv("FLEET_SQLITE_BUSY_TIMEOUT", "30"))

def get_receipts_dir() -> str:
    return os.getenv("FLEET_RECEIPTS_DIR", "receipts")

def get_logs_dir() -> str:
    return os.getenv("FLEET_LOGS_DIR", "logs")

def get_log_level() -> str:
    return os.getenv("FLEET_LOG_LEVEL", "INFO").upper()


class PoolSettings(BaseModel):
    """Connection pool sizing and wait policy."""
    max_size: int = Field(10, ge=1)
    initial_size: int = Field(3, ge=0)
    wait_seconds: float = Field(0.1, gt=0)
    max_wait_seconds: float = Field(1.0, gt=0)
    max_attempts: int = Field(50, ge=1)

    @model_validator(mode="after")
    def initial_within_max(self):
        if self.initial_size > self.max_size:
            raise ValueError("initial_size cannot exceed max_size")
        if self.max_wait_seconds < self.wait_seconds:
            raise ValueError("max_wait_seconds cannot be lower than wait_seconds")
        return self

    @classmethod
    def from_env(cls) -> "PoolSettings":
        return cls(
            max_size=int(os.getenv("FLEET_POOL_MAX_SIZE", "10")),
            initial_size=int(os.getenv("FLEET_POOL_INITIAL_SIZE", "3")),
            wait_seconds=float(os.getenv("FLEET_POOL_WAIT_SECONDS", "0.1")),
            max_wait_seconds=float(os.getenv("FLEET_POOL_MAX_WAIT_SECONDS", "1.0")),
            max_attempts=int(os.getenv("FLEET_POOL_MAX_ATTEMPTS", "50")),
        )
