from __future__ import annotations

import zipfile
from pathlib import Path

from carrier_portal_sync.util.debug import create_debug_bundle, dump_raw_payload


def test_create_debug_bundle_includes_debug_and_log(tmp_path: Path) -> None:
    debug_dir = tmp_path / "debug"
    debug_dir.mkdir()
    (debug_dir / "payload_carrier-uhc_20250101_120000.json").write_text("[]", encoding="utf-8")
    (debug_dir / "nested").mkdir()
    (debug_dir / "nested" / "page.html").write_text("<html/>", encoding="utf-8")

    log_file = tmp_path / "sync.log"
    log_file.write_text("hello", encoding="utf-8")

    out = create_debug_bundle(
        debug_dir=str(debug_dir),
        log_file=str(log_file),
        out_dir=str(tmp_path),
        carrier_id="carrier-uhc",
    )
    assert out.exists()
    assert out.suffix == ".zip"
    assert out.name.startswith("debug_bundle_carrier-uhc_")

    with zipfile.ZipFile(out, "r") as z:
        names = set(z.namelist())
        assert "sync.log" in names
        assert "debug/payload_carrier-uhc_20250101_120000.json" in names
        assert "debug/nested/page.html" in names


def test_create_debug_bundle_tolerates_missing_inputs(tmp_path: Path) -> None:
    out = create_debug_bundle(
        debug_dir=str(tmp_path / "nope"),
        log_file=str(tmp_path / "missing.log"),
        out_dir=str(tmp_path / "out"),
    )
    with zipfile.ZipFile(out, "r") as z:
        assert z.namelist() == []


def test_dump_raw_payload_writes_verbatim(tmp_path: Path) -> None:
    out = dump_raw_payload(debug_dir=str(tmp_path / "debug"), carrier_id="Carrier UHC", payload='[{"a": 1}]')
    assert out.name.startswith("payload_carrier-uhc_")
    assert out.read_text(encoding="utf-8") == '[{"a": 1}]'
