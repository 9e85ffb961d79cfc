"""Infrastructure models package exports."""
from .base import Base, metadata
from .order import OrderModel
from .customer import CustomerModel, CriticalEventModel

__all__ = [
    "Base",
    "metadata",
    "OrderModel",
    "CustomerModel",
    "CriticalEventModel",
]
