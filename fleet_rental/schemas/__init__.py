from .vehicle import Vehicle
from .rental import OperationResult, RentalLedgerEntry, RentalStatistics
