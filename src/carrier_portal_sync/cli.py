from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import threading
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .carriers import default_registry
from .config import AppConfig, load_config
from .errors import CarrierSyncError, NotFoundError, ReconciliationMutationError
from .logging_config import configure_logging
from .models import SyncResult
from .service import CarrierSyncService
from .store import BookStore
from .util.debug import create_debug_bundle


logger = logging.getLogger("carrier_portal_sync")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="carrier-portal-sync")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    def _with_config(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
        parser.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
        return parser

    _with_config(sub.add_parser("list-carriers", help="List the carrier portals this install can sync"))

    sync = _with_config(
        sub.add_parser("sync", help="Open a carrier portal, let you log in, then reconcile its roster")
    )
    sync.add_argument("--carrier", required=True, help="Carrier id (see list-carriers)")
    sync.add_argument("--headless", action="store_true", help="Run the browser headless (stored session required)")
    sync.add_argument("--slowmo-ms", type=int, default=None, help="Playwright slow motion in milliseconds (debug).")
    sync.add_argument(
        "--dump-payload",
        action="store_true",
        help="Save the raw portal payload under the debug dir (contains member PII).",
    )

    process = _with_config(
        sub.add_parser("process", help="Reconcile a raw payload saved from an earlier extraction")
    )
    process.add_argument("--carrier", required=True, help="Carrier id the payload came from")
    process.add_argument("--payload", required=True, help="Path to the raw payload JSON file")

    logs = _with_config(sub.add_parser("logs", help="Show carrier sync history, most recent first"))
    logs.add_argument("--carrier", default="", help="Only show runs for this carrier id")
    logs.add_argument("--limit", type=int, default=20, help="Max entries to show (default: 20)")
    logs.add_argument("--json", action="store_true", help="Print entries as JSON")

    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    cfg = load_config(args.config)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)

    try:
        if args.cmd == "list-carriers":
            # Print only; nothing is opened or written.
            for adapter in default_registry(cfg.carriers.enabled):
                print(f"{adapter.carrier_id()}\t{adapter.display_name()}")
            return 0

        if args.cmd == "sync":
            updates: dict = {}
            if args.headless:
                updates["headless"] = True
            if args.slowmo_ms is not None:
                updates["slow_mo_ms"] = args.slowmo_ms
            if updates:
                cfg = cfg.model_copy(update={"browser": cfg.browser.model_copy(update=updates)})
            if args.dump_payload:
                cfg = cfg.model_copy(update={"sync": cfg.sync.model_copy(update={"dump_raw_payloads": True})})
            try:
                return asyncio.run(_run_sync(cfg, args.carrier))
            except KeyboardInterrupt:
                print("Interrupted; nothing was changed.")
                return 130

        if args.cmd == "process":
            raw = Path(args.payload).read_text(encoding="utf-8")
            return asyncio.run(_run_process(cfg, args.carrier, raw))

        if args.cmd == "logs":
            return _show_logs(cfg, carrier_id=args.carrier or None, limit=args.limit, as_json=args.json)
    except NotFoundError as e:
        print(f"❌ {e}")
        return 2
    except ReconciliationMutationError as e:
        print(f"❌ {e}")
        if e.result is not None:
            print("Computed (not applied):")
            _print_result(e.result)
        return 1
    except CarrierSyncError as e:
        print(f"❌ {e}")
        return 1

    raise AssertionError("Unhandled command")


async def _run_sync(cfg: AppConfig, carrier_id: str) -> int:
    async with CarrierSyncService.from_config(cfg) as service:
        adapter = service.registry.get(carrier_id)
        try:
            session = await service.open_login(carrier_id)
            print(
                f"Log in to {adapter.display_name()} in the browser window. "
                "When the portal's home page is showing, press Enter here to sync (Ctrl+C to abort)."
            )
            await _wait_for_enter_or(session.done)
            if session.finished and session.error is not None:
                # The window was closed (or the login replaced) before extraction started.
                raise session.error
            result = await service.fetch_and_reconcile(carrier_id)
        except CarrierSyncError:
            _write_debug_bundle(cfg, carrier_id)
            raise

    _print_result(result)
    return 0


async def _wait_for_enter_or(other: "asyncio.Future") -> None:
    """
    Wait for the user to press Enter, or for `other` to resolve first (e.g. the portal window was closed).
    """
    loop = asyncio.get_running_loop()
    entered = loop.create_future()

    def _read() -> None:
        sys.stdin.readline()
        try:
            loop.call_soon_threadsafe(lambda: entered.done() or entered.set_result(None))
        except RuntimeError:
            # Event loop already closed; nobody is waiting any more.
            return

    # Daemon thread: a pending readline() must not keep the process alive after the browser side finished.
    threading.Thread(target=_read, name="wait-for-enter", daemon=True).start()
    await asyncio.wait({entered, other}, return_when=asyncio.FIRST_COMPLETED)


async def _run_process(cfg: AppConfig, carrier_id: str, raw_payload: str) -> int:
    # Reconciling a saved payload never needs a browser.
    async with CarrierSyncService(
        store=BookStore(cfg.store.db_path),
        registry=default_registry(cfg.carriers.enabled),
        host=_NoBrowserHost(),
        sync=cfg.sync,
    ) as service:
        result = await service.process_extracted_members(carrier_id, raw_payload)
    _print_result(result)
    return 0


class _NoBrowserHost:
    """
    SurfaceHost for commands that never open a portal.
    """

    def set_listener(self, listener) -> None:
        return None

    async def open_surface(self, carrier_id, url, setup_payload):
        raise CarrierSyncError("this command does not open carrier portals")

    async def inject(self, handle, script) -> None:
        raise CarrierSyncError("this command does not open carrier portals")

    async def close(self, handle) -> None:
        return None


def _show_logs(cfg: AppConfig, *, carrier_id: Optional[str], limit: int, as_json: bool) -> int:
    store = BookStore(cfg.store.db_path)
    try:
        entries = store.list_sync_logs(carrier_id, limit=limit)
    finally:
        store.close()

    if as_json:
        print(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return 0

    if not entries:
        print("No sync runs recorded.")
        return 0
    for e in entries:
        print(
            f"{e.synced_at.isoformat(timespec='seconds')}\t{e.carrier_name or e.carrier_id}\t{e.status.value}\t"
            f"portal={e.portal_count} matched={e.matched} disenrolled={e.disenrolled} new={e.new_found}"
        )
    return 0


def _print_result(result: SyncResult) -> None:
    print(f"✅ {result.carrier_name}: portal={result.portal_count} local={result.local_count} matched={result.matched}")
    if result.skipped or result.duplicates:
        print(f"   skipped={result.skipped} duplicates={result.duplicates}")

    print(f"Disenrolled ({len(result.disenrolled)}):")
    for d in result.disenrolled:
        print(f"  - {d.client_name}\t{d.plan_name or ''}")

    print(f"New in portal ({len(result.new_in_portal)}):")
    for m in result.new_in_portal:
        print(f"  - {m.display_name()}\t{m.plan_name or ''}")

    if result.held:
        print(f"Held for review, portal could not tell these clients apart ({len(result.held)}):")
        for h in result.held:
            print(f"  - {h.client_name}\t{h.plan_name or ''}")


def _write_debug_bundle(cfg: AppConfig, carrier_id: str) -> None:
    # Auto-bundle debug artifacts + log for easy sharing.
    try:
        bundle = create_debug_bundle(
            debug_dir=cfg.sync.debug_dir,
            log_file=cfg.logging.file_path,
            out_dir=str(Path(cfg.sync.debug_dir).parent),
            carrier_id=carrier_id,
        )
        logger.error("Wrote debug bundle: %s", bundle)
    except OSError:
        logger.debug("Failed to create debug bundle.", exc_info=True)
