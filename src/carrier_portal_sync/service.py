from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Mapping, Optional, Union

from .carriers import AdapterRegistry, CarrierAdapter, default_registry
from .config import AppConfig, SyncConfig
from .models import NormalizedMember, SyncLogEntry, SyncResult
from .portal.session import Session, SessionController, SessionState
from .portal.surface import PlaywrightSurfaceHost, SurfaceHost
from .reconcile import Reconciler
from .store import BookStore
from .util.debug import dump_raw_payload


logger = logging.getLogger(__name__)


class CarrierSyncService:
    """
    Caller-facing surface of the reconciliation engine: portal login, extraction, reconciliation, history.

    Runs for one carrier are serialized; different carriers may run concurrently on the same event loop.
    """

    def __init__(
        self,
        *,
        store: BookStore,
        registry: AdapterRegistry,
        host: SurfaceHost,
        sync: Optional[SyncConfig] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.host = host
        self.sync_cfg = sync or SyncConfig()
        self.controller = SessionController(registry, host, extraction_timeout_s=self.sync_cfg.extraction_timeout_s)
        self.reconciler = Reconciler(store, mutation_attempts=self.sync_cfg.mutation_attempts)
        self._locks: dict[str, asyncio.Lock] = {}

        # Sync log rows and enrollments reference carriers by id.
        for adapter in registry:
            store.ensure_carrier(adapter.carrier_id(), adapter.display_name())

    @classmethod
    def from_config(cls, cfg: AppConfig, *, host: Optional[SurfaceHost] = None) -> "CarrierSyncService":
        registry = default_registry(cfg.carriers.enabled)
        if host is None:
            host = PlaywrightSurfaceHost(
                headless=cfg.browser.headless,
                slow_mo_ms=cfg.browser.slow_mo_ms,
                channel=cfg.browser.channel,
                storage_state_dir=cfg.browser.storage_state_dir,
            )
        return cls(store=BookStore(cfg.store.db_path), registry=registry, host=host, sync=cfg.sync)

    def carriers(self) -> list[CarrierAdapter]:
        return list(self.registry)

    def _lock(self, carrier_id: str) -> asyncio.Lock:
        lock = self._locks.get(carrier_id)
        if lock is None:
            lock = self._locks[carrier_id] = asyncio.Lock()
        return lock

    # -- portal session ------------------------------------------------------------------------------------------

    async def open_login(self, carrier_id: str) -> Session:
        return await self.controller.open(carrier_id)

    async def trigger_fetch(self, carrier_id: str) -> Session:
        return await self.controller.trigger_extraction(carrier_id)

    async def wait_for_members(self, carrier_id: str, *, timeout: Optional[float] = None) -> list[NormalizedMember]:
        members = await self.controller.wait(carrier_id, timeout=timeout)
        session = self.controller.get(carrier_id)
        if self.sync_cfg.dump_raw_payloads and session is not None and session.raw_payload is not None:
            try:
                dump_raw_payload(debug_dir=self.sync_cfg.debug_dir, carrier_id=carrier_id, payload=session.raw_payload)
            except OSError:
                logger.warning("%s: failed to write raw payload dump", carrier_id, exc_info=True)
        return members

    async def cancel(self, carrier_id: str) -> bool:
        return await self.controller.cancel(carrier_id)

    def session_state(self, carrier_id: str) -> SessionState:
        return self.controller.state(carrier_id)

    async def fetch_and_reconcile(self, carrier_id: str) -> SyncResult:
        """
        Trigger extraction on an open, logged-in portal session, wait for it, reconcile, release the session.
        """
        try:
            await self.trigger_fetch(carrier_id)
            members = await self.wait_for_members(carrier_id)
            return await self.reconcile_members(carrier_id, members)
        finally:
            await self.controller.close(carrier_id)

    # -- reconciliation ------------------------------------------------------------------------------------------

    async def process_extracted_members(self, carrier_id: str, raw_payload: str) -> SyncResult:
        """
        Normalize a raw payload (e.g. one saved earlier) with the carrier's adapter and reconcile it.
        """
        adapter = self.registry.get(carrier_id)
        members = adapter.normalize(raw_payload)
        return await self.reconcile_members(carrier_id, members)

    async def reconcile_members(
        self,
        carrier_id: str,
        members: Iterable[Union[NormalizedMember, Mapping[str, Any]]],
    ) -> SyncResult:
        adapter = self.registry.get(carrier_id)
        async with self._lock(carrier_id):
            logger.info("%s: reconciling against the local book of business", carrier_id)
            return self.reconciler.run(carrier_id, adapter.display_name(), list(members))

    def list_sync_logs(self, carrier_id: Optional[str] = None, *, limit: int = 50) -> list[SyncLogEntry]:
        return self.store.list_sync_logs(carrier_id, limit=limit)

    async def aclose(self) -> None:
        await self.controller.shutdown()
        shutdown = getattr(self.host, "shutdown", None)
        if shutdown is not None:
            await shutdown()
        self.store.close()

    async def __aenter__(self) -> "CarrierSyncService":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()
