"""Realtime helpers for presence tracking and cross-node delivery."""

from .connections import ConnectionHub
from .delivery import DeliveryRouter
from .presence import ConnectionDescriptor, PresenceRegistry
from .store import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore, StoreUnavailableError
from .transport import BrokerConfig, RedisRelayTransport, TransportUnavailableError

__all__ = [
    "BrokerConfig",
    "ConnectionDescriptor",
    "ConnectionHub",
    "DeliveryRouter",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "PresenceRegistry",
    "RedisKeyValueStore",
    "RedisRelayTransport",
    "StoreUnavailableError",
    "TransportUnavailableError",
]
