from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import relationship

from fleet_rental.core.db import Base


class RentalLedgerRecord(Base):
    __tablename__ = "rental_ledger"
    __table_args__ = (
        Index("ix_rental_ledger_open", "vehicle_id", "return_time", "rent_time"),
    )

    id = Column(Integer, primary_key=True, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True)
    username = Column(String(50), nullable=False, index=True)
    rent_time = Column(DateTime, nullable=False)
    return_time = Column(DateTime, nullable=True)  # NULL while the rental is open
    total_cost = Column(Numeric(10, 2), nullable=True)

    vehicle = relationship("VehicleRecord", back_populates="rentals")
