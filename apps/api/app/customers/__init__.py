from app.customers.models import Customer, CustomerHistoryLog, CustomerProcessingOrg, StatusLog

__all__ = [
    "Customer",
    "CustomerProcessingOrg",
    "StatusLog",
    "CustomerHistoryLog",
]
