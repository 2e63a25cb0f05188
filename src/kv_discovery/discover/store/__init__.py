from .kv_store import KVPair, KVStore, StoreOptions, WriteOptions
from .store_factory import KVStoreFactory, kv_store
from .in_memory import InMemoryKVStore
from .consul import ConsulKVStore
from .etcd import EtcdKVStore

__all__ = [
    "ConsulKVStore",
    "EtcdKVStore",
    "InMemoryKVStore",
    "KVPair",
    "KVStore",
    "KVStoreFactory",
    "StoreOptions",
    "WriteOptions",
    "kv_store",
]
