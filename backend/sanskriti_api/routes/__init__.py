# Routes package init
"""
Sanskriti Setu API — Route Table
==================================

What:  The mount contract between this core and the feature routers.
Why:   Feature teams own their handlers; the core only owns where they hang.
How:   A RouteTable is an immutable tuple of (prefix, handler) entries. A
       handler is a FastAPI APIRouter (included under the prefix) or any ASGI
       app (mounted under the prefix).

Mount Inventory:
    /api/auth      auth routes          (external)
    /api/users     user routes          (external)
    /api/cultural  cultural content     (external)
    /api/matches   matching routes      (external)
    /api/chat      chat routes          (external)
    /api/health    health.py            (core)
    /uploads       static uploads       (core, see static.py)

Dispatch order is longest prefix first; entries with equally long
prefixes keep their registration order.
"""

import importlib
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Tuple

from sanskriti_api.exceptions import RouteTableError

FEATURE_PREFIXES: Tuple[str, ...] = (
    "/api/auth",
    "/api/users",
    "/api/cultural",
    "/api/matches",
    "/api/chat",
)

HEALTH_PREFIX = "/api/health"
UPLOADS_PREFIX = "/uploads"
CORE_PREFIXES: Tuple[str, ...] = (HEALTH_PREFIX, UPLOADS_PREFIX)


@dataclass(frozen=True)
class RouteEntry:
    prefix: str
    handler: Any


def _validate_prefix(prefix: str) -> None:
    if not prefix.startswith("/") or prefix == "/":
        raise RouteTableError(f"Mount prefix '{prefix}' must be a non-root absolute path")
    if prefix.endswith("/"):
        raise RouteTableError(f"Mount prefix '{prefix}' must not end with '/'")


class RouteTable:
    """Ordered, immutable list of route mounts built at startup."""

    def __init__(self, entries: Iterable[RouteEntry] = ()) -> None:
        entries = tuple(entries)
        seen = set()
        for entry in entries:
            _validate_prefix(entry.prefix)
            if entry.prefix in seen:
                raise RouteTableError(f"Duplicate mount prefix '{entry.prefix}'")
            seen.add(entry.prefix)
        self._entries: Tuple[RouteEntry, ...] = entries

    @classmethod
    def of(cls, *pairs: Tuple[str, Any]) -> "RouteTable":
        return cls(RouteEntry(prefix, handler) for prefix, handler in pairs)

    @property
    def entries(self) -> Tuple[RouteEntry, ...]:
        return self._entries

    def dispatch_order(self) -> Tuple[RouteEntry, ...]:
        # sorted() is stable, so ties keep registration order
        return tuple(sorted(self._entries, key=lambda e: len(e.prefix), reverse=True))

    def prefixes(self) -> Tuple[str, ...]:
        return tuple(entry.prefix for entry in self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)


def _import_handler(target: str) -> Any:
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise RouteTableError(f"Route handler '{target}' must look like 'package.module:attribute'")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise RouteTableError(f"Module '{module_name}' has no attribute '{attr}'") from e


def load_route_table(feature_routers: Mapping[str, str]) -> RouteTable:
    """
    Resolve {prefix: "module:attr"} into a RouteTable of feature routers.

    Only the fixed feature prefixes may be mounted; core prefixes and
    anything else are rejected. Entries keep the FEATURE_PREFIXES order.
    """
    unknown = set(feature_routers) - set(FEATURE_PREFIXES)
    if unknown:
        raise RouteTableError(
            f"Unknown feature prefixes {sorted(unknown)}; allowed: {list(FEATURE_PREFIXES)}"
        )
    return RouteTable(
        RouteEntry(prefix, _import_handler(feature_routers[prefix]))
        for prefix in FEATURE_PREFIXES
        if prefix in feature_routers
    )
