import logging
from decimal import Decimal

from sqlalchemy import func, insert, select
from sqlalchemy.engine import Connection

from fleet_rental.models import VehicleRecord

logger = logging.getLogger(__name__)

# model, type, rent per day, units
DEFAULT_FLEET = [
    ("Toyota Corolla", "Car", Decimal("50.00"), 3),
    ("Honda Civic", "Car", Decimal("60.00"), 2),
    ("Yamaha R15", "Bike", Decimal("30.00"), 5),
    ("Suzuki Swift", "Car", Decimal("55.00"), 2),
]


def seed_default_fleet(conn: Connection) -> int:
    """Inserts the default fleet when the vehicles table is empty. Returns rows inserted."""
    count = conn.execute(select(func.count(VehicleRecord.id))).scalar()
    if count:
        return 0

    conn.execute(
        insert(VehicleRecord),
        [
            dict(
                model=model,
                type=vehicle_type,
                rent_per_day=rate,
                quantity=units,
                available_quantity=units,
            )
            for model, vehicle_type, rate, units in DEFAULT_FLEET
        ],
    )
    logger.info(f"Seeded {len(DEFAULT_FLEET)} default vehicles")
    return len(DEFAULT_FLEET)


if __name__ == "__main__":
    from fleet_rental.core.db import Base, create_db_engine
    from fleet_rental.core.logging import setup_logging

    setup_logging()
    engine = create_db_engine()
    Base.metadata.create_all(engine)
    with engine.begin() as conn:
        seed_default_fleet(conn)
    engine.dispose()
