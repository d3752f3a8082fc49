from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from threading import RLock
from time import monotonic
from typing import Mapping

_DEFAULT_OPERATIONS = ("authorize", "callback", "token", "refresh", "register", "key_issue", "key_revoke")
_DEFAULT_RESOLUTIONS = ("api_key", "federated", "dev")

_registry_lock = RLock()
_registry: "MetricsRegistry | None" = None


@dataclass(frozen=True)
class MetricsSnapshot:
    """Immutable snapshot of the current metrics state."""

    operations: Mapping[str, int]
    errors: Mapping[str, int]
    resolutions: Mapping[str, int]
    uptime_seconds: float


class MetricsRegistry:
    """Thread-safe registry storing broker counters for Prometheus export."""

    __slots__ = ("_operations", "_errors", "_resolutions", "_lock", "_started_at")

    def __init__(self) -> None:
        self._operations: Counter[str] = Counter()
        self._errors: Counter[str] = Counter()
        self._resolutions: Counter[str] = Counter()
        self._lock = RLock()
        self._started_at = monotonic()

    def record_operation(self, name: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = name.strip().lower()
        if not key:
            return
        with self._lock:
            self._operations[key] += count

    def record_error(self, code: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = code.strip().upper()
        if not key:
            return
        with self._lock:
            self._errors[key] += count

    def record_resolution(self, via: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = via.strip().lower() or "unknown"
        with self._lock:
            self._resolutions[key] += count

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            operations = _with_defaults(self._operations, _DEFAULT_OPERATIONS)
            errors = {code: int(value) for code, value in self._errors.items()}
            resolutions = _with_defaults(self._resolutions, _DEFAULT_RESOLUTIONS)
            uptime = max(monotonic() - self._started_at, 0.0)
        return MetricsSnapshot(operations=operations, errors=errors, resolutions=resolutions, uptime_seconds=uptime)

    def reset(self) -> None:
        with self._lock:
            self._operations.clear()
            self._errors.clear()
            self._resolutions.clear()
            self._started_at = monotonic()


def _with_defaults(counter: Counter[str], defaults: tuple[str, ...]) -> dict[str, int]:
    values = {name: int(counter.get(name, 0)) for name in defaults}
    for name, value in counter.items():
        values.setdefault(name, int(value))
    return values


def install_registry(registry: MetricsRegistry | None) -> None:
    """Install the active metrics registry (or disable metrics when None)."""

    with _registry_lock:
        global _registry
        _registry = registry


def get_registry_optional() -> MetricsRegistry | None:
    with _registry_lock:
        return _registry


def record_operation(name: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_operation(name, count=count)


def record_error(code: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_error(code, count=count)


def record_resolution(via: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_resolution(via, count=count)


def format_prometheus(snapshot: MetricsSnapshot) -> str:
    """Render metrics using Prometheus exposition format (text, version 0.0.4)."""

    lines: list[str] = []

    lines.append("# HELP paddock_auth_ops_total Broker operations completed by type.")
    lines.append("# TYPE paddock_auth_ops_total counter")
    for name in sorted(snapshot.operations):
        lines.append(f'paddock_auth_ops_total{{op="{name}"}} {snapshot.operations[name]}')

    lines.append("# HELP paddock_auth_errors_total Errors returned, grouped by error code.")
    lines.append("# TYPE paddock_auth_errors_total counter")
    if snapshot.errors:
        for code in sorted(snapshot.errors):
            lines.append(f'paddock_auth_errors_total{{code="{code}"}} {snapshot.errors[code]}')
    else:
        lines.append('paddock_auth_errors_total{code="none"} 0')

    lines.append("# HELP paddock_auth_resolutions_total Bearer tokens resolved, grouped by path.")
    lines.append("# TYPE paddock_auth_resolutions_total counter")
    for via in sorted(snapshot.resolutions):
        lines.append(f'paddock_auth_resolutions_total{{via="{via}"}} {snapshot.resolutions[via]}')

    lines.append("# HELP paddock_auth_uptime_seconds Server uptime in seconds.")
    lines.append("# TYPE paddock_auth_uptime_seconds gauge")
    lines.append(f"paddock_auth_uptime_seconds {snapshot.uptime_seconds:.6f}")

    return "\n".join(lines) + "\n"
