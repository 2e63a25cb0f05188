"""Public API for kv_discovery.

Cluster membership discovery on top of a key-value store namespace. Import
from here when possible.
"""

from kv_discovery.config import ConfigError, DiscoveryConfig, load_config
from kv_discovery.discover import (
    Entries,
    Entry,
    KVDiscovery,
    KVPair,
    KVStore,
    KVStoreFactory,
    Stream,
    WriteOptions,
    kv_store,
    parse_connection_string,
)
from kv_discovery.exceptions import (
    BootstrapError,
    ConnectionInitError,
    DiscoveryException,
    InvalidEntryError,
    RegistrationError,
    StoreError,
    SubscribeError,
    UnsupportedBackendError,
)
from kv_discovery.resilience import BackoffPolicy, RetryStrategy

__version__ = "0.1.0"

__all__ = [
    # client
    "KVDiscovery",
    "parse_connection_string",
    # entries
    "Entries",
    "Entry",
    # stores
    "KVPair",
    "KVStore",
    "KVStoreFactory",
    "Stream",
    "WriteOptions",
    "kv_store",
    # config
    "BackoffPolicy",
    "ConfigError",
    "DiscoveryConfig",
    "RetryStrategy",
    "load_config",
    # errors
    "BootstrapError",
    "ConnectionInitError",
    "DiscoveryException",
    "InvalidEntryError",
    "RegistrationError",
    "StoreError",
    "SubscribeError",
    "UnsupportedBackendError",
    "__version__",
]
