from enum import StrEnum

DISCOVERY_PATH = "docker/swarm/nodes"

DEFAULT_HEARTBEAT_SECONDS = 60.0
DEFAULT_TTL_SECONDS = 180.0
DEFAULT_CONNECTION_TIMEOUT_SECONDS = 10.0
DEFAULT_ERROR_BUFFER = 8
DEFAULT_SNAPSHOT_BUFFER = 1


class StoreBackends(StrEnum):
    """Store backends shipped with the package
    MEMORY
    CONSUL
    ETCD
    """
    MEMORY = "memory"
    CONSUL = "consul"
    ETCD = "etcd"
