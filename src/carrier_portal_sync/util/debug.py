from __future__ import annotations

import logging
import re
import time
import zipfile
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)

_SAFE_RE = re.compile(r"[^a-z0-9-]+")


def _slug(value: str) -> str:
    return _SAFE_RE.sub("-", (value or "").strip().lower()).strip("-")


def dump_raw_payload(*, debug_dir: str, carrier_id: str, payload: Optional[str]) -> Path:
    """
    Write a raw portal payload verbatim so it can be replayed later with `process --payload`.

    These files contain member PII; they are only written when explicitly enabled.
    """
    out_root = Path(debug_dir)
    out_root.mkdir(parents=True, exist_ok=True)
    stamp = time.strftime("%Y%m%d_%H%M%S")
    out_path = out_root / f"payload_{_slug(carrier_id) or 'carrier'}_{stamp}.json"
    out_path.write_text(payload or "", encoding="utf-8")
    logger.info("Wrote raw payload for %s: %s", carrier_id, out_path)
    return out_path


def create_debug_bundle(
    *,
    debug_dir: str,
    log_file: str,
    out_dir: str = "data",
    carrier_id: str = "",
) -> Path:
    """
    Create a shareable zip containing the debug directory + the log file.

    Never includes .env, config.yaml, the store DB or browser storage_state files.
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    slug = _slug(carrier_id)
    out_path = out_root / f"debug_bundle{'_' + slug if slug else ''}_{stamp}.zip"

    dbg = Path(debug_dir)
    log = Path(log_file) if log_file else None

    def _add_file(z: zipfile.ZipFile, file_path: Path, arcname: str) -> None:
        try:
            if file_path.is_file():
                z.write(file_path, arcname=arcname)
        except OSError:
            # a file disappearing mid-bundle is not worth failing over
            logger.debug("Skipped %s in debug bundle", file_path, exc_info=True)

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        if log is not None:
            _add_file(z, log, arcname=log.name)

        if dbg.is_dir():
            for p in sorted(dbg.rglob("*")):
                if p.is_file():
                    _add_file(z, p, arcname=str(Path("debug") / p.relative_to(dbg)))

    return out_path
