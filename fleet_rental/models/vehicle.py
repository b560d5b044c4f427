from sqlalchemy import CheckConstraint, Column, Integer, Numeric, String
from sqlalchemy.orm import relationship

from fleet_rental.core.db import Base


class VehicleRecord(Base):
    __tablename__ = "vehicles"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_vehicles_quantity"),
        CheckConstraint(
            "available_quantity >= 0 AND available_quantity <= quantity",
            name="ck_vehicles_available_quantity",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    model = Column(String(100), nullable=False)
    type = Column(String(50), nullable=False)
    rent_per_day = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    available_quantity = Column(Integer, nullable=False, default=1)

    rentals = relationship("RentalLedgerRecord", back_populates="vehicle", passive_deletes=True)
