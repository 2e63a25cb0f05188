from .entities import Entries, Entry
from .kv_discovery import KVDiscovery, decode_entries, parse_connection_string
from .store import KVPair, KVStore, KVStoreFactory, StoreOptions, WriteOptions, kv_store
from .stream import STOPPED, Stream, race_stop, sleep_or_stop

__all__ = [
    "STOPPED",
    "Entries",
    "Entry",
    "KVDiscovery",
    "KVPair",
    "KVStore",
    "KVStoreFactory",
    "StoreOptions",
    "Stream",
    "WriteOptions",
    "decode_entries",
    "kv_store",
    "parse_connection_string",
    "race_stop",
    "sleep_or_stop",
]
