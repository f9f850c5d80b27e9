from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlsplit

from ..carriers.registry import AdapterRegistry
from ..errors import (
    CarrierSyncError,
    ExtractionError,
    ExtractionTimeoutError,
    InvalidStateError,
    OpenError,
    SessionBusyError,
    SessionCancelledError,
)
from ..models import NormalizedMember
from .surface import COMPLETION_CHANNEL, SurfaceHandle, SurfaceHost, SurfaceOutcome


logger = logging.getLogger(__name__)

DEFAULT_EXTRACTION_TIMEOUT_S = 600.0

_EXTRACTION_WRAPPER = """void (async () => {
    const report = (outcome) => window.%(channel)s(
        Object.assign({carrier_id: %(carrier_id)s, token: %(token)s}, outcome));
    try {
        const records = await (async () => {
%(body)s
        })();
        report({ok: true, payload: JSON.stringify(records === undefined ? null : records)});
    } catch (e) {
        report({ok: false, message: String((e && e.message) || e)});
    }
})();"""


def wrap_extraction_payload(carrier_id: str, token: str, body: str) -> str:
    """
    Wrap an adapter's extraction body so its returned records (or thrown error) are reported through the
    completion channel, stamped with the carrier id and session token.

    The wrapper is fire-and-forget: `evaluate()` returns immediately and the outcome arrives as an event.
    """
    return _EXTRACTION_WRAPPER % {
        "channel": COMPLETION_CHANNEL,
        "carrier_id": json.dumps(carrier_id),
        "token": json.dumps(token),
        "body": body,
    }


class SessionState(str, enum.Enum):
    IDLE = "idle"
    LOGIN_PRESENTED = "login_presented"
    AWAITING_TRIGGER = "awaiting_trigger"
    EXTRACTING = "extracting"
    COMPLETED = "completed"
    FAILED = "failed"


_TRIGGERABLE = (SessionState.LOGIN_PRESENTED, SessionState.AWAITING_TRIGGER)


@dataclass(eq=False)
class Session:
    carrier_id: str
    entry_url: str
    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.IDLE
    handle: Optional[SurfaceHandle] = None
    raw_payload: Optional[str] = None
    members: Optional[list[NormalizedMember]] = None
    error: Optional[CarrierSyncError] = None
    opened_at: float = field(default_factory=time.monotonic)
    triggered_at: Optional[float] = None
    done: Optional["asyncio.Future[Session]"] = None
    timer: Optional[asyncio.TimerHandle] = None

    @property
    def finished(self) -> bool:
        return self.done is not None and self.done.done()


def _same_page(a: str, b: str) -> bool:
    pa, pb = urlsplit(a or ""), urlsplit(b or "")
    return (pa.netloc.lower(), pa.path.rstrip("/")) == (pb.netloc.lower(), pb.path.rstrip("/"))


class SessionController:
    """
    Owns every carrier's portal session: open, trigger, complete/fail, cancel.

    One session per carrier; sessions for different carriers are independent. Outcomes from the browsing surface
    are accepted only for the current session's token while it is extracting, anything else is stale.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        host: SurfaceHost,
        *,
        extraction_timeout_s: float = DEFAULT_EXTRACTION_TIMEOUT_S,
    ) -> None:
        self.registry = registry
        self.host = host
        self.extraction_timeout_s = float(extraction_timeout_s)
        self._sessions: dict[str, Session] = {}
        self._background: set[asyncio.Task] = set()
        host.set_listener(self)

    def get(self, carrier_id: str) -> Optional[Session]:
        return self._sessions.get(carrier_id)

    def state(self, carrier_id: str) -> SessionState:
        session = self._sessions.get(carrier_id)
        return session.state if session is not None else SessionState.IDLE

    # -- caller-facing -------------------------------------------------------------------------------------------

    async def open(self, carrier_id: str) -> Session:
        adapter = self.registry.get(carrier_id)

        previous = self._sessions.get(carrier_id)
        if previous is not None:
            if previous.state is SessionState.EXTRACTING:
                raise SessionBusyError(carrier_id, f"An extraction is already running for {adapter.display_name()}")
            # A fresh login replaces whatever was there; its late events will carry the old token.
            await self._discard(previous, reason="superseded by a new login")

        session = Session(carrier_id=carrier_id, entry_url=adapter.entry_url())
        session.done = asyncio.get_running_loop().create_future()
        self._sessions[carrier_id] = session

        try:
            handle = await self.host.open_surface(carrier_id, adapter.entry_url(), adapter.setup_payload())
        except OpenError as e:
            self._finish(session, SessionState.FAILED, error=e)
            raise
        except ExtractionError as e:
            err = OpenError(carrier_id, str(e))
            self._finish(session, SessionState.FAILED, error=err)
            raise err from e

        if self._sessions.get(carrier_id) is not session:
            # Superseded or cancelled while the window was opening.
            await self.host.close(handle)
            raise SessionCancelledError(carrier_id, f"Login for {carrier_id} was replaced before it opened")

        session.handle = handle
        if session.state is SessionState.IDLE:
            session.state = SessionState.LOGIN_PRESENTED
        logger.info("%s: login presented (session=%s)", carrier_id, session.token[:8])
        return session

    async def trigger_extraction(self, carrier_id: str) -> Session:
        adapter = self.registry.get(carrier_id)
        session = self._sessions.get(carrier_id)
        if session is None:
            raise InvalidStateError(carrier_id, f"No portal session for {carrier_id}; open the login first")
        if session.state is SessionState.EXTRACTING:
            raise SessionBusyError(carrier_id, f"An extraction is already running for {adapter.display_name()}")
        if session.state not in _TRIGGERABLE or session.handle is None:
            raise InvalidStateError(
                carrier_id, f"Cannot start extraction for {carrier_id} while the session is {session.state.value}"
            )

        loop = asyncio.get_running_loop()
        session.state = SessionState.EXTRACTING
        session.triggered_at = time.monotonic()
        session.timer = loop.call_later(self.extraction_timeout_s, self._on_timeout, carrier_id, session.token)
        logger.info("%s: extraction triggered (session=%s)", carrier_id, session.token[:8])

        script = wrap_extraction_payload(carrier_id, session.token, adapter.extraction_payload())
        try:
            await self.host.inject(session.handle, script)
        except ExtractionError as e:
            if self._sessions.get(carrier_id) is session and session.state is SessionState.EXTRACTING:
                self._finish(session, SessionState.FAILED, error=e)
            raise
        return session

    async def wait(self, carrier_id: str, *, timeout: Optional[float] = None) -> list[NormalizedMember]:
        """
        Wait until the carrier's session completes and return its members; raise the session's error otherwise.
        """
        session = self._sessions.get(carrier_id)
        if session is None or session.done is None:
            raise InvalidStateError(carrier_id, f"No portal session for {carrier_id}")

        # shield(): a caller giving up on the wait must not cancel the session itself.
        await asyncio.wait_for(asyncio.shield(session.done), timeout)
        if session.error is not None:
            raise session.error
        return list(session.members or [])

    async def cancel(self, carrier_id: str) -> bool:
        """
        Abandon the carrier's session. Returns False when there was nothing to cancel.
        """
        session = self._sessions.get(carrier_id)
        if session is None:
            return False
        if session.state is SessionState.COMPLETED:
            raise InvalidStateError(carrier_id, f"Extraction for {carrier_id} already completed; it cannot be cancelled")
        await self._discard(session, reason="cancelled")
        return True

    async def close(self, carrier_id: str) -> None:
        """
        Release the carrier's session and its window, whatever state it is in.
        """
        session = self._sessions.pop(carrier_id, None)
        if session is None:
            return
        if not session.finished:
            self._finish(session, SessionState.IDLE, error=SessionCancelledError(carrier_id, "session closed"))
        if session.handle is not None:
            await self.host.close(session.handle)

    async def shutdown(self) -> None:
        for carrier_id in list(self._sessions):
            await self.close(carrier_id)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # -- surface events ------------------------------------------------------------------------------------------

    def on_outcome(self, carrier_id: str, token: str, outcome: SurfaceOutcome) -> None:
        session = self._sessions.get(carrier_id)
        if session is None or session.token != token or session.state is not SessionState.EXTRACTING:
            logger.debug("%s: discarding stale completion event (token=%s)", carrier_id, (token or "")[:8])
            return

        if not outcome.ok:
            self._finish(
                session,
                SessionState.FAILED,
                error=ExtractionError(carrier_id, "portal", outcome.message or "extraction script reported an error"),
            )
            return

        session.raw_payload = outcome.payload
        adapter = self.registry.get(carrier_id)
        try:
            members = adapter.normalize(outcome.payload or "")
        except ExtractionError as e:
            self._finish(session, SessionState.FAILED, error=e)
            return

        session.members = members
        self._finish(session, SessionState.COMPLETED)

    def on_navigation(self, carrier_id: str, url: str) -> None:
        session = self._sessions.get(carrier_id)
        if session is None or session.state is not SessionState.LOGIN_PRESENTED:
            return
        if _same_page(url, session.entry_url):
            return
        session.state = SessionState.AWAITING_TRIGGER
        logger.info("%s: portal navigated past the login page; ready to extract", carrier_id)

    def on_closed(self, carrier_id: str) -> None:
        session = self._sessions.get(carrier_id)
        if session is None or session.state is SessionState.COMPLETED:
            return
        self._spawn(self._discard(session, reason="portal window closed"))

    # -- internals -----------------------------------------------------------------------------------------------

    def _on_timeout(self, carrier_id: str, token: str) -> None:
        session = self._sessions.get(carrier_id)
        if session is None or session.token != token or session.state is not SessionState.EXTRACTING:
            return
        logger.warning("%s: extraction timed out after %.0fs", carrier_id, self.extraction_timeout_s)
        self._finish(
            session,
            SessionState.FAILED,
            error=ExtractionTimeoutError(
                carrier_id, f"Extraction for {carrier_id} did not finish within {self.extraction_timeout_s:.0f}s"
            ),
        )

    def _finish(
        self,
        session: Session,
        state: SessionState,
        *,
        error: Optional[CarrierSyncError] = None,
    ) -> None:
        if session.timer is not None:
            session.timer.cancel()
            session.timer = None
        session.state = state
        session.error = error
        if session.done is not None and not session.done.done():
            session.done.set_result(session)

        if state is SessionState.COMPLETED:
            logger.info("%s: extraction completed (%d members)", session.carrier_id, len(session.members or []))
        elif state is SessionState.FAILED and error is not None:
            logger.warning("%s: session failed: %s", session.carrier_id, error)

    async def _discard(self, session: Session, *, reason: str) -> None:
        if self._sessions.get(session.carrier_id) is session:
            del self._sessions[session.carrier_id]
        if not session.finished:
            self._finish(
                session,
                SessionState.IDLE,
                error=SessionCancelledError(session.carrier_id, f"Session for {session.carrier_id} {reason}"),
            )
        logger.info("%s: session discarded (%s)", session.carrier_id, reason)
        if session.handle is not None:
            await self.host.close(session.handle)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
