from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar, cast

from kv_discovery.resilience.retry_policy import BackoffPolicy, RetryStrategy
from kv_discovery.utils.constant import (
    DEFAULT_CONNECTION_TIMEOUT_SECONDS,
    DEFAULT_ERROR_BUFFER,
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_TTL_SECONDS,
    DISCOVERY_PATH,
    StoreBackends,
)

T = TypeVar("T")


def _ensure_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise TypeError(f"{field_name} must be a mapping")
    return cast(Mapping[str, Any], value)


def _coerce_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise TypeError(f"{field_name} must be an int")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        return int(value.strip())
    raise TypeError(f"{field_name} must be an int")


def _coerce_float(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise TypeError(f"{field_name} must be a float")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return float(value.strip())
    raise TypeError(f"{field_name} must be a float")


def _coerce_str(value: Any, field_name: str) -> str:
    if isinstance(value, str):
        return value
    return str(value)


def _coerce_enum(value: Any, enum_cls: type[T], field_name: str) -> T:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        normalized = value.strip()
        try:
            return enum_cls(normalized)  # type: ignore[call-arg]
        except ValueError:
            upper = normalized.upper()
            for member in enum_cls:  # type: ignore[attr-defined]
                if getattr(member, "name", "").upper() == upper:
                    return member
    raise ValueError(f"{field_name} must be a valid {enum_cls.__name__}")


FieldSpec = tuple[str, Callable[[Any, str], Any], str]


def _optional(coerce: Callable[[Any, str], Any]) -> Callable[[Any, str], Any]:
    def _wrapped(value: Any, field_name: str) -> Any:
        if value is None:
            return None
        return coerce(value, field_name)

    return _wrapped


def _extract_fields(payload: Mapping[str, Any], specs: Sequence[FieldSpec]) -> dict[str, Any]:
    kwargs: dict[str, Any] = {}
    for name, coerce, label in specs:
        if name in payload:
            kwargs[name] = coerce(payload[name], label)
    return kwargs


def _apply_field_specs(target: Any, specs: Sequence[FieldSpec]) -> None:
    for name, coerce, label in specs:
        setattr(target, name, coerce(getattr(target, name), label))


def _build_backoff_policy(value: Any, field_name: str) -> BackoffPolicy:
    if value is None:
        return BackoffPolicy()
    if isinstance(value, BackoffPolicy):
        return value
    data = _ensure_mapping(value, field_name)
    payload: dict[str, Any] = {}
    if "strategy" in data:
        payload["strategy"] = _coerce_enum(data["strategy"], RetryStrategy, f"{field_name}.strategy")
    for name in ("initial_delay_ms", "max_delay_ms"):
        if name in data:
            payload[name] = _coerce_int(data[name], f"{field_name}.{name}")
    for name in ("backoff_multiplier", "jitter"):
        if name in data:
            payload[name] = _coerce_float(data[name], f"{field_name}.{name}")
    unknown = set(data) - {"strategy", "initial_delay_ms", "max_delay_ms", "backoff_multiplier", "jitter"}
    if unknown:
        raise ValueError(f"{field_name} has unknown keys: {', '.join(sorted(unknown))}")
    policy = BackoffPolicy(**payload)
    if policy.initial_delay_ms < 0 or policy.max_delay_ms < 0:
        raise ValueError(f"{field_name} delays must be >= 0")
    return policy


_DISCOVERY_FIELD_SPECS: tuple[FieldSpec, ...] = (
    ("backend", _coerce_str, "backend"),
    ("uri", _optional(_coerce_str), "uri"),
    ("discovery_path", _coerce_str, "discovery_path"),
    ("heartbeat_seconds", _coerce_float, "heartbeat_seconds"),
    ("ttl_seconds", _coerce_float, "ttl_seconds"),
    ("connection_timeout_seconds", _coerce_float, "connection_timeout_seconds"),
    ("error_buffer", _coerce_int, "error_buffer"),
    ("retry", _build_backoff_policy, "retry"),
)


@dataclass
class DiscoveryConfig:
    """Settings for a discovery client.

    ``heartbeat_seconds`` and ``ttl_seconds`` of 0 select the defaults.
    """

    backend: str = StoreBackends.MEMORY.value
    uri: str | None = None
    discovery_path: str = DISCOVERY_PATH
    heartbeat_seconds: float = 0.0
    ttl_seconds: float = 0.0
    connection_timeout_seconds: float = DEFAULT_CONNECTION_TIMEOUT_SECONDS
    error_buffer: int = DEFAULT_ERROR_BUFFER
    retry: BackoffPolicy = field(default_factory=BackoffPolicy)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> DiscoveryConfig:
        if data is None:
            return cls()
        if isinstance(data, cls):
            return data
        payload = _ensure_mapping(data, "kv_discovery")
        unknown = set(payload) - {name for name, _, _ in _DISCOVERY_FIELD_SPECS}
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**_extract_fields(payload, _DISCOVERY_FIELD_SPECS))

    def __post_init__(self) -> None:
        _apply_field_specs(self, _DISCOVERY_FIELD_SPECS)
        self.discovery_path = self.discovery_path.strip("/")
        if not self.discovery_path:
            raise ValueError("discovery_path must not be empty")
        if self.heartbeat_seconds < 0:
            raise ValueError("heartbeat_seconds must be >= 0")
        if self.ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        if self.connection_timeout_seconds <= 0:
            raise ValueError("connection_timeout_seconds must be > 0")
        if self.error_buffer < 1:
            raise ValueError("error_buffer must be >= 1")

    @property
    def effective_heartbeat(self) -> float:
        return self.heartbeat_seconds or DEFAULT_HEARTBEAT_SECONDS

    @property
    def effective_ttl(self) -> float:
        return self.ttl_seconds or DEFAULT_TTL_SECONDS
