from .tenancy import Organization
from .auth import User
from .inventory import Product, ReplenishmentRequest
from .devices import Gateway, DeviceStatus
from .sync import SyncQueueItem, TokenCache, CloudConfig

__all__ = [
    'Organization',
    'User',
    'Product', 'ReplenishmentRequest',
    'Gateway', 'DeviceStatus',
    'SyncQueueItem', 'TokenCache', 'CloudConfig',
]
