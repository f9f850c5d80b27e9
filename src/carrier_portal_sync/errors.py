from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import SyncResult


class CarrierSyncError(RuntimeError):
    """
    Base class for every failure surfaced by the portal sync engine.
    """


class NotFoundError(CarrierSyncError):
    """
    Raised when no adapter is registered for a carrier id. Never retried.
    """

    def __init__(self, carrier_id: str) -> None:
        self.carrier_id = carrier_id
        super().__init__(f"Carrier not supported for portal sync: {carrier_id!r}")


class SessionError(CarrierSyncError):
    """
    Session-lifecycle failures. Callers surface these as "try again"; no store state exists yet.
    """

    def __init__(self, carrier_id: str, message: str) -> None:
        self.carrier_id = carrier_id
        super().__init__(message)


class OpenError(SessionError):
    pass


class ExtractionTimeoutError(SessionError, TimeoutError):
    pass


class SessionBusyError(SessionError):
    pass


class InvalidStateError(SessionError):
    pass


class SessionCancelledError(SessionError):
    pass


class ExtractionError(CarrierSyncError):
    """
    An adapter could not produce members from what the portal handed back.

    `stage` tells the user where it broke:
    - "portal": the injected script reported a failure (auth expired, API shape changed, ...)
    - "decode": the raw payload is not a JSON array
    - "record": a record could not be interpreted
    """

    def __init__(self, carrier_id: str, stage: str, message: str) -> None:
        self.carrier_id = carrier_id
        self.stage = stage
        self.detail = message
        super().__init__(f"[{carrier_id}] extraction failed at stage={stage}: {message}")


class ReconciliationMutationError(CarrierSyncError):
    """
    The disenrollment sweep could not be applied. No enrollment was changed; a FAILED sync log row was written.
    """

    def __init__(self, carrier_id: str, *, attempts: int, result: Optional["SyncResult"] = None) -> None:
        self.carrier_id = carrier_id
        self.attempts = attempts
        self.result = result
        super().__init__(
            f"[{carrier_id}] failed to apply reconciliation after {attempts} attempt(s); no enrollments were changed"
        )


class StoreLockedError(CarrierSyncError):
    """
    The local store is closed (locked by the auth layer or already shut down).
    """
