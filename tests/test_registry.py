from __future__ import annotations

import pytest

from carrier_portal_sync.carriers import AdapterRegistry, HumanaAdapter, UhcAdapter, default_registry
from carrier_portal_sync.errors import NotFoundError


def test_default_registry_lists_builtin_carriers_sorted() -> None:
    ids = [a.carrier_id() for a in default_registry()]
    assert ids == sorted(ids)
    assert {"carrier-uhc", "carrier-humana", "carrier-medmutual", "carrier-caresource", "carrier-devoted"} <= set(ids)


def test_unknown_carrier_fails_closed() -> None:
    reg = default_registry()
    with pytest.raises(NotFoundError) as excinfo:
        reg.get("carrier-nope")
    assert excinfo.value.carrier_id == "carrier-nope"
    assert "not supported" in str(excinfo.value)
    assert "carrier-nope" not in reg


def test_duplicate_registration_rejected() -> None:
    reg = AdapterRegistry([UhcAdapter()])
    with pytest.raises(ValueError):
        reg.register(UhcAdapter())


def test_enabled_allow_list_restricts_registry() -> None:
    reg = default_registry(["carrier-humana"])
    assert len(reg) == 1
    assert isinstance(reg.get("carrier-humana"), HumanaAdapter)
    with pytest.raises(NotFoundError):
        reg.get("carrier-uhc")


def test_enabled_allow_list_with_unknown_id_is_an_error() -> None:
    with pytest.raises(NotFoundError):
        default_registry(["carrier-humana", "carrier-nope"])
