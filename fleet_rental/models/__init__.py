# Base.metadata.create_all picks the tables up from here
from .vehicle import VehicleRecord
from .rental_ledger import RentalLedgerRecord
