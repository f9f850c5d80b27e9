from __future__ import annotations

from typing import Iterable, Optional

from .base import CarrierAdapter, build_member
from .caresource import CareSourceAdapter
from .devoted import DevotedAdapter
from .humana import HumanaAdapter
from .medmutual import MedMutualAdapter
from .registry import AdapterRegistry
from .uhc import UhcAdapter


# The closed set of carrier portals we know how to read.
BUILTIN_ADAPTERS: tuple[type[CarrierAdapter], ...] = (
    CareSourceAdapter,
    DevotedAdapter,
    HumanaAdapter,
    MedMutualAdapter,
    UhcAdapter,
)


def default_registry(enabled: Optional[Iterable[str]] = None) -> AdapterRegistry:
    """
    Build the registry of built-in adapters, optionally restricted to the `enabled` carrier ids.
    """
    registry = AdapterRegistry(cls() for cls in BUILTIN_ADAPTERS)
    wanted = [c for c in (enabled or []) if c]
    if wanted:
        return registry.restricted_to(wanted)
    return registry


__all__ = [
    "AdapterRegistry",
    "BUILTIN_ADAPTERS",
    "CarrierAdapter",
    "CareSourceAdapter",
    "DevotedAdapter",
    "HumanaAdapter",
    "MedMutualAdapter",
    "UhcAdapter",
    "build_member",
    "default_registry",
]
