from .athena import AthenaChangeFetcher, AthenaSubscriptionManager, parse_change_payload
from .base import ChangeFetcher, SubscriptionManager

__all__ = [
    "AthenaChangeFetcher",
    "AthenaSubscriptionManager",
    "ChangeFetcher",
    "SubscriptionManager",
    "parse_change_payload",
]
