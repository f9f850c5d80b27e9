from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

from ..errors import ExtractionError
from ..models import NormalizedMember


logger = logging.getLogger(__name__)


def build_member(**fields: Any) -> Optional[NormalizedMember]:
    """
    Build a NormalizedMember, or return None when the row lacks a first or last name.

    Rows without both name parts are dropped rather than emitted partially.
    """
    first = " ".join(str(fields.get("first_name") or "").split())
    last = " ".join(str(fields.get("last_name") or "").split())
    if not first or not last:
        return None
    fields["first_name"] = first
    fields["last_name"] = last
    return NormalizedMember(**fields)


class CarrierAdapter(ABC):
    """
    One carrier portal integration.

    Subclasses declare:
    - `id`: stable carrier id (foreign key into the local store, e.g. "carrier-uhc")
    - `name`: human-readable carrier name
    - `login_url`: where the user authenticates
    - `setup_script`: optional JS installed at document start, before the user logs in
    - `extraction_script`: the body of an async JS function run inside the logged-in page. It gathers data
      through whatever transport the portal offers and `return`s a JSON-serializable array of carrier-native
      records (or throws). Delivery through the session's completion channel is handled by the session layer.

    and implement `to_member()` to map one carrier-native record to a NormalizedMember.
    """

    id: str = ""
    name: str = ""
    login_url: str = ""
    setup_script: str = ""
    extraction_script: str = ""

    def carrier_id(self) -> str:
        return self.id

    def display_name(self) -> str:
        return self.name

    def entry_url(self) -> str:
        return self.login_url

    def setup_payload(self) -> Optional[str]:
        script = (self.setup_script or "").strip()
        return script or None

    def extraction_payload(self) -> str:
        return self.extraction_script

    @abstractmethod
    def to_member(self, record: Mapping[str, Any]) -> Optional[NormalizedMember]:
        ...

    def normalize(self, raw_payload: str) -> list[NormalizedMember]:
        """
        Turn the raw payload returned by `extraction_payload()` into NormalizedMembers.

        Raises ExtractionError (stage "decode" or "record") when the payload does not have the shape this
        adapter expects; rows that merely lack a name are dropped.
        """
        try:
            data = json.loads(raw_payload)
        except (TypeError, ValueError) as e:
            raise ExtractionError(self.carrier_id(), "decode", f"payload is not valid JSON ({e})") from e

        if not isinstance(data, list):
            raise ExtractionError(
                self.carrier_id(), "decode", f"expected a JSON array of records, got {type(data).__name__}"
            )

        members: list[NormalizedMember] = []
        dropped = 0
        for idx, record in enumerate(data):
            if not isinstance(record, dict):
                raise ExtractionError(
                    self.carrier_id(), "record", f"record #{idx} is {type(record).__name__}, expected an object"
                )
            try:
                member = self.to_member(record)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                raise ExtractionError(self.carrier_id(), "record", f"record #{idx}: {e}") from e
            if member is None:
                dropped += 1
                continue
            members.append(member)

        if dropped:
            logger.warning("%s: dropped %d portal row(s) without a first/last name", self.carrier_id(), dropped)
        logger.debug("%s: normalized %d of %d portal row(s)", self.carrier_id(), len(members), len(data))
        return members

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r})"
