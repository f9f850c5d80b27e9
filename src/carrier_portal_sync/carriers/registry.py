from __future__ import annotations

import logging
from typing import Iterable, Iterator, Optional

from ..errors import NotFoundError
from .base import CarrierAdapter


logger = logging.getLogger(__name__)


class AdapterRegistry:
    """
    Maps carrier ids to adapters. Populated once at startup; lookups fail closed with NotFoundError.
    """

    def __init__(self, adapters: Optional[Iterable[CarrierAdapter]] = None) -> None:
        self._adapters: dict[str, CarrierAdapter] = {}
        for adapter in adapters or ():
            self.register(adapter)

    def register(self, adapter: CarrierAdapter) -> None:
        carrier_id = (adapter.carrier_id() or "").strip()
        if not carrier_id:
            raise ValueError(f"{adapter!r} has no carrier id")
        if carrier_id in self._adapters:
            raise ValueError(f"Carrier {carrier_id!r} is already registered")
        self._adapters[carrier_id] = adapter
        logger.debug("Registered carrier adapter %s (%s)", carrier_id, adapter.display_name())

    def get(self, carrier_id: str) -> CarrierAdapter:
        try:
            return self._adapters[(carrier_id or "").strip()]
        except KeyError:
            raise NotFoundError(carrier_id) from None

    def __contains__(self, carrier_id: object) -> bool:
        return isinstance(carrier_id, str) and carrier_id.strip() in self._adapters

    def __iter__(self) -> Iterator[CarrierAdapter]:
        return iter(sorted(self._adapters.values(), key=lambda a: a.carrier_id()))

    def __len__(self) -> int:
        return len(self._adapters)

    def restricted_to(self, carrier_ids: Iterable[str]) -> "AdapterRegistry":
        """
        Return a registry holding only `carrier_ids`. Unknown ids raise NotFoundError.
        """
        return AdapterRegistry(self.get(cid) for cid in carrier_ids)
