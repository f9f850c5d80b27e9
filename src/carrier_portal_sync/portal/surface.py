from __future__ import annotations

import json
import logging
import re
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from ..errors import ExtractionError, OpenError


logger = logging.getLogger(__name__)

# Name of the function exposed to every portal page; injected scripts report their outcome through it.
COMPLETION_CHANNEL = "__carrierSyncComplete"

_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass(frozen=True)
class SurfaceHandle:
    carrier_id: str
    surface_id: str


@dataclass(frozen=True)
class SurfaceOutcome:
    """
    What an injected extraction script reported: a raw payload on success, a message on failure.
    """

    ok: bool
    payload: Optional[str] = None
    message: str = ""

    @classmethod
    def from_channel(cls, data: Any) -> "SurfaceOutcome":
        if not isinstance(data, dict):
            return cls(ok=False, message=f"malformed completion event ({type(data).__name__})")
        if data.get("ok"):
            payload = data.get("payload")
            if payload is not None and not isinstance(payload, str):
                payload = json.dumps(payload)
            return cls(ok=True, payload=payload)
        return cls(ok=False, message=str(data.get("message") or "extraction script reported an error"))


class SurfaceListener(Protocol):
    def on_outcome(self, carrier_id: str, token: str, outcome: SurfaceOutcome) -> None:
        ...

    def on_navigation(self, carrier_id: str, url: str) -> None:
        ...

    def on_closed(self, carrier_id: str) -> None:
        ...


class SurfaceHost(Protocol):
    """
    Hosts the authenticated browsing surfaces the user logs in through.

    Events for a surface stop the moment `close()` is called for it.
    """

    def set_listener(self, listener: SurfaceListener) -> None:
        ...

    async def open_surface(self, carrier_id: str, url: str, setup_payload: Optional[str]) -> SurfaceHandle:
        ...

    async def inject(self, handle: SurfaceHandle, script: str) -> None:
        ...

    async def close(self, handle: SurfaceHandle) -> None:
        ...


@dataclass
class _OpenSurface:
    handle: SurfaceHandle
    context: BrowserContext
    page: Page
    state_path: Optional[Path] = None


class PlaywrightSurfaceHost:
    """
    SurfaceHost backed by a single (headful by default) Chromium, one browser context per open surface.

    Cookies are persisted per carrier in `<storage_state_dir>/<carrier_id>.json` so users are not forced to log in
    on every run.
    """

    def __init__(
        self,
        *,
        headless: bool = False,
        slow_mo_ms: int = 0,
        channel: str = "",
        storage_state_dir: str = "",
    ) -> None:
        self.headless = headless
        self.slow_mo_ms = int(slow_mo_ms or 0)
        self.channel = (channel or "").strip()
        self.storage_state_dir = Path(storage_state_dir) if storage_state_dir else None

        self._listener: Optional[SurfaceListener] = None
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._surfaces: dict[str, _OpenSurface] = {}

    def set_listener(self, listener: SurfaceListener) -> None:
        self._listener = listener

    async def __aenter__(self) -> "PlaywrightSurfaceHost":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.shutdown()

    async def _ensure_browser(self) -> Browser:
        if self._browser is not None and self._browser.is_connected():
            return self._browser

        if self._playwright is None:
            self._playwright = await async_playwright().start()

        chromium = self._playwright.chromium
        if self.channel:
            self._browser = await chromium.launch(headless=self.headless, slow_mo=self.slow_mo_ms, channel=self.channel)
            return self._browser

        # Prefer Playwright's bundled Chromium, but fall back to a system-installed browser if the cache doesn't
        # have Playwright browsers available.
        try:
            self._browser = await chromium.launch(headless=self.headless, slow_mo=self.slow_mo_ms)
        except PlaywrightError as e:
            msg = str(e)
            if "Executable doesn't exist" not in msg:
                raise
            logger.warning("Playwright Chromium executable missing; falling back to system browser channel. (%s)", msg)
            try:
                self._browser = await chromium.launch(headless=self.headless, slow_mo=self.slow_mo_ms, channel="chrome")
            except PlaywrightError:
                self._browser = await chromium.launch(headless=self.headless, slow_mo=self.slow_mo_ms, channel="msedge")
        return self._browser

    async def open_surface(self, carrier_id: str, url: str, setup_payload: Optional[str]) -> SurfaceHandle:
        handle = SurfaceHandle(carrier_id=carrier_id, surface_id=uuid.uuid4().hex)
        state_path = self._state_path(carrier_id)

        try:
            browser = await self._ensure_browser()

            ctx_kwargs: dict = {"color_scheme": "light"}
            if state_path is not None and state_path.exists() and self._validate_or_restore_storage_state(state_path):
                ctx_kwargs["storage_state"] = str(state_path)

            try:
                ctx = await browser.new_context(**ctx_kwargs)
            except PlaywrightError as e:
                if "storage_state" not in ctx_kwargs or state_path is None:
                    raise
                # A storage_state Playwright rejects fails before we ever get a Page; start fresh instead.
                logger.warning("Failed to create browser context with stored session; using a fresh one. (%s)", e)
                self._quarantine_file(state_path, prefix="storage_state")
                ctx_kwargs.pop("storage_state", None)
                ctx = await browser.new_context(**ctx_kwargs)

            await ctx.expose_binding(
                COMPLETION_CHANNEL,
                lambda source, data: self._on_channel(handle.surface_id, data),
            )
            if setup_payload:
                await ctx.add_init_script(setup_payload)

            page = await ctx.new_page()
        except PlaywrightError as e:
            raise OpenError(carrier_id, f"Could not open a browser for {carrier_id}: {e}") from e

        surface = _OpenSurface(handle=handle, context=ctx, page=page, state_path=state_path)
        self._surfaces[handle.surface_id] = surface

        page.on("framenavigated", lambda frame: self._on_frame_navigated(handle.surface_id, frame))
        page.on("close", lambda _page: self._on_page_closed(handle.surface_id))

        try:
            await page.goto(url, wait_until="domcontentloaded")
        except PlaywrightError as e:
            await self.close(handle)
            raise OpenError(carrier_id, f"Could not load {url}: {e}") from e

        logger.info("%s: portal opened (surface=%s)", carrier_id, handle.surface_id[:8])
        return handle

    async def inject(self, handle: SurfaceHandle, script: str) -> None:
        surface = self._surfaces.get(handle.surface_id)
        if surface is None or surface.page.is_closed():
            raise ExtractionError(handle.carrier_id, "portal", "the portal window is no longer open")
        try:
            await surface.page.evaluate(script)
        except PlaywrightError as e:
            raise ExtractionError(handle.carrier_id, "portal", f"could not run the extraction script: {e}") from e

    async def close(self, handle: SurfaceHandle) -> None:
        surface = self._surfaces.pop(handle.surface_id, None)
        if surface is None:
            return

        # Persist session state to reduce manual logins (best-effort).
        if surface.state_path is not None:
            try:
                surface.state_path.parent.mkdir(parents=True, exist_ok=True)
                await surface.context.storage_state(path=str(surface.state_path))
                self._backup_storage_state(surface.state_path)
            except PlaywrightError:
                logger.debug("Failed to persist storage_state for %s", handle.carrier_id, exc_info=True)

        try:
            await surface.context.close()
        except PlaywrightError:
            logger.debug("Failed to close browser context for %s", handle.carrier_id, exc_info=True)

    async def shutdown(self) -> None:
        for surface in list(self._surfaces.values()):
            await self.close(surface.handle)
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError:
                logger.debug("Failed to close browser.", exc_info=True)
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    # -- event plumbing ------------------------------------------------------------------------------------------

    def _on_channel(self, surface_id: str, data: Any) -> None:
        surface = self._surfaces.get(surface_id)
        if surface is None or self._listener is None:
            return
        if not isinstance(data, dict):
            logger.warning("%s: ignoring malformed completion event", surface.handle.carrier_id)
            return
        carrier_id = str(data.get("carrier_id") or "")
        token = str(data.get("token") or "")
        self._listener.on_outcome(carrier_id, token, SurfaceOutcome.from_channel(data))

    def _on_frame_navigated(self, surface_id: str, frame: Any) -> None:
        surface = self._surfaces.get(surface_id)
        if surface is None or self._listener is None:
            return
        if frame != surface.page.main_frame:
            return
        self._listener.on_navigation(surface.handle.carrier_id, frame.url)

    def _on_page_closed(self, surface_id: str) -> None:
        # Surfaces we closed ourselves are already unregistered; only user-closed windows get here.
        surface = self._surfaces.get(surface_id)
        if surface is None or self._listener is None:
            return
        logger.info("%s: portal window closed by the user", surface.handle.carrier_id)
        self._listener.on_closed(surface.handle.carrier_id)

    # -- storage_state persistence -------------------------------------------------------------------------------

    def _state_path(self, carrier_id: str) -> Optional[Path]:
        if self.storage_state_dir is None:
            return None
        return self.storage_state_dir / f"{_SAFE_NAME_RE.sub('_', carrier_id)}.json"

    def _storage_state_backup_path(self, state_path: Path) -> Path:
        # e.g. data/browser/carrier-uhc.json -> data/browser/carrier-uhc.json.bak
        return state_path.with_name(state_path.name + ".bak")

    @staticmethod
    def _looks_like_storage_state(path: Path) -> bool:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return False
        return isinstance(data, dict) and ("cookies" in data or "origins" in data)

    def _validate_or_restore_storage_state(self, state_path: Path) -> bool:
        """
        Return True if we should use `state_path` as Playwright storage_state.

        If the JSON is corrupted, we quarantine it and attempt to restore from `<file>.bak`.
        If that fails, return False so the caller uses a fresh session.
        """
        if self._looks_like_storage_state(state_path):
            return True

        logger.warning("storage_state file is invalid JSON; ignoring and attempting restore from backup: %s", state_path)
        self._quarantine_file(state_path, prefix="storage_state")

        bak = self._storage_state_backup_path(state_path)
        if bak.exists() and self._looks_like_storage_state(bak):
            try:
                shutil.copy2(bak, state_path)
                logger.warning("Restored storage_state from backup: %s", bak)
                return True
            except OSError:
                logger.debug("Failed to restore storage_state from backup.", exc_info=True)

        return False

    def _backup_storage_state(self, state_path: Path) -> None:
        """
        Keep a last-known-good copy of the storage_state so we can self-heal if the JSON corrupts.
        """
        if not self._looks_like_storage_state(state_path):
            return
        try:
            shutil.copy2(state_path, self._storage_state_backup_path(state_path))
        except OSError:
            logger.debug("Failed to write storage_state backup.", exc_info=True)

    def _quarantine_file(self, path: Path, *, prefix: str) -> None:
        try:
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            path.replace(path.with_name(f"{prefix}.{path.name}.corrupt-{stamp}"))
        except OSError:
            logger.debug("Failed to quarantine file=%s", path, exc_info=True)
