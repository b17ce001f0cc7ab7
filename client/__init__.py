from client.entitlement_cache import EntitlementCache, EntitlementSession
from client.entitlement_client import EntitlementClient
from client.flag_store import InMemoryFlagStore, JsonFileFlagStore

__all__ = [
    "EntitlementCache",
    "EntitlementSession",
    "EntitlementClient",
    "InMemoryFlagStore",
    "JsonFileFlagStore",
]
