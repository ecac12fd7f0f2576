"""Pairing handshake on the primary device.

After the code is issued two observers watch the approval state: the
channel's push subscription and a polling loop. A deadline timer runs beside
them. An observed decision settles a one-shot future and cancels the others
on the spot, so later firings are no-ops. The deadline and a user cancel
stop the observers too, but settle only after the server has retired the
code and confirmed no approval got in first.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from lifesign.client.channels import ApprovalChannel, IssuedCode
from lifesign.config import settings
from lifesign.models.family import ApprovalState

logger = logging.getLogger(__name__)


class HandshakeState(str, Enum):
    IDLE = "idle"
    CODE_ISSUED = "code_issued"
    WAITING = "waiting"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATES = {
    HandshakeState.APPROVED,
    HandshakeState.REJECTED,
    HandshakeState.TIMED_OUT,
    HandshakeState.CANCELLED,
}

OBSERVED = {
    ApprovalState.APPROVED: HandshakeState.APPROVED,
    ApprovalState.REJECTED: HandshakeState.REJECTED,
}


@dataclass
class HandshakeResult:
    state: HandshakeState
    family_id: Optional[str]
    code: Optional[str]
    resolved_by: Optional[str] = None  # push | poll | deadline | user | recheck


class PairingHandshake:
    def __init__(
        self,
        channel: ApprovalChannel,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        on_transition: Optional[Callable[[HandshakeState], None]] = None,
    ):
        self.channel = channel
        self.timeout = timeout or settings.handshake_timeout_seconds
        self.poll_interval = poll_interval or settings.poll_interval_seconds
        self.on_transition = on_transition

        self.state = HandshakeState.IDLE
        self.transitions: list[HandshakeState] = []
        self.family_id: Optional[str] = None
        self.code: Optional[str] = None
        self.resolved_by: Optional[str] = None

        self._subject: Optional[tuple[str, dict]] = None
        self._result: Optional[asyncio.Future] = None
        self._finalizer: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], object]] = None
        self._deadline: Optional[asyncio.TimerHandle] = None
        self._closing = False

    def _transition(self, state: HandshakeState) -> None:
        logger.info("Pairing handshake: %s -> %s", self.state.value, state.value)
        self.state = state
        self.transitions.append(state)
        if self.on_transition:
            self.on_transition(state)

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    # --- Lifecycle ---

    async def start(self, subject_name: str, **options) -> IssuedCode:
        """Issue a code and start watching for the watcher's decision."""
        if self.state != HandshakeState.IDLE:
            raise RuntimeError(f"Handshake already started ({self.state.value})")

        issued = await self.channel.create(subject_name, **options)
        self._subject = (subject_name, options)
        self.family_id = issued.family_id
        self.code = issued.code
        self._transition(HandshakeState.CODE_ISSUED)
        self._begin_waiting()
        return issued

    async def run(self, subject_name: str, **options) -> HandshakeResult:
        await self.start(subject_name, **options)
        return await self.wait()

    async def wait(self) -> HandshakeResult:
        """Wait until the handshake settles and its cleanup has run."""
        if self._result is None:
            raise RuntimeError("Handshake not started")
        await asyncio.shield(self._result)
        if self._finalizer is not None:
            await self._finalizer
        return HandshakeResult(
            state=self.state,
            family_id=self.family_id,
            code=self.code,
            resolved_by=self.resolved_by,
        )

    def cancel(self) -> bool:
        """User gave up ("try again"). Same cleanup as a timeout."""
        return self._close(HandshakeState.CANCELLED, "user")

    async def retry(self) -> IssuedCode:
        """Discard the settled attempt and issue a fresh code."""
        if not self.done:
            raise RuntimeError("Handshake still in progress")
        if self._subject is None:
            raise RuntimeError("Nothing to retry")
        subject_name, options = self._subject

        if self.state == HandshakeState.REJECTED and self.family_id:
            await self._discard()
        self.reset()
        return await self.start(subject_name, **options)

    def reset(self) -> None:
        """Back to IDLE. The transition history starts over with the next attempt."""
        if self.state not in TERMINAL_STATES and self.state != HandshakeState.IDLE:
            raise RuntimeError("Cannot reset a running handshake")
        self.state = HandshakeState.IDLE
        self.transitions = []
        self.family_id = None
        self.code = None
        self.resolved_by = None
        self._result = None
        self._finalizer = None
        self._closing = False

    # --- Observers ---

    def _begin_waiting(self) -> None:
        loop = asyncio.get_running_loop()
        self._result = loop.create_future()
        self._transition(HandshakeState.WAITING)

        self._deadline = loop.call_later(self.timeout, self._close, HandshakeState.TIMED_OUT, "deadline")
        try:
            self._unsubscribe = self.channel.subscribe(self.family_id, self._on_push)
        except Exception as e:
            logger.warning("Approval subscription failed, relying on polling: %s", e)
            self._unsubscribe = None
        self._poll_task = loop.create_task(self._poll())

    def _on_push(self, state: ApprovalState) -> None:
        self._observe(state, "push")

    def _observe(self, state: ApprovalState, source: str) -> None:
        outcome = OBSERVED.get(state)
        if outcome is not None:
            self._resolve(outcome, source)

    async def _poll(self) -> None:
        while self._open:
            try:
                state = await self.channel.fetch(self.family_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Approval poll failed, retrying: %s", e)
            else:
                self._observe(state, "poll")
            if not self._open:
                break
            await asyncio.sleep(self.poll_interval)

    @property
    def _open(self) -> bool:
        return self._result is not None and not self._result.done() and not self._closing

    def _resolve(self, outcome: HandshakeState, source: str) -> bool:
        """Settle on an observed decision. Returns False if already settled or closing."""
        if not self._open:
            return False
        self._stop_observers()
        self._settle(outcome, source)
        if outcome == HandshakeState.APPROVED:
            self._finalizer = asyncio.get_running_loop().create_task(self._complete())
        return True

    def _close(self, outcome: HandshakeState, source: str) -> bool:
        """Deadline or user cancel.

        The code is retired before anything settles. If the server reports
        that an approval got in first, the handshake finishes as APPROVED,
        so the primary never shows a timeout for a family the watcher holds.
        """
        if not self._open:
            return False
        self._closing = True
        self._stop_observers()
        self._finalizer = asyncio.get_running_loop().create_task(self._retire(outcome, source))
        return True

    async def _retire(self, outcome: HandshakeState, source: str) -> None:
        if await self._discard() is False and await self._approved_meanwhile():
            logger.info("Family %s was approved before its code was retired", self.family_id)
            self._settle(HandshakeState.APPROVED, "recheck")
            await self._complete()
            return
        self._settle(outcome, source)

    def _settle(self, outcome: HandshakeState, source: str) -> None:
        self._result.set_result(outcome)
        self.resolved_by = source
        self._transition(outcome)

    def _stop_observers(self) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None
        if self._unsubscribe is not None:
            try:
                self._unsubscribe()
            except Exception as e:
                logger.warning("Approval unsubscribe failed: %s", e)
            self._unsubscribe = None
        if self._poll_task is not None:
            if self._poll_task is not asyncio.current_task():
                self._poll_task.cancel()
            self._poll_task = None

    async def _approved_meanwhile(self) -> bool:
        try:
            state = await self.channel.fetch(self.family_id)
        except Exception as e:
            logger.error("Re-reading approval for %s failed: %s", self.family_id, e)
            return False
        return state == ApprovalState.APPROVED

    async def _complete(self) -> None:
        try:
            await self.channel.complete(self.family_id)
        except Exception as e:
            logger.error("Completing pairing for %s failed: %s", self.family_id, e)

    async def _discard(self) -> Optional[bool]:
        """Ask the channel to drop the family. None when the request failed."""
        try:
            return await self.channel.discard(self.family_id)
        except Exception as e:
            # The server purges expired codes on its own
            logger.error("Discarding family %s failed: %s", self.family_id, e)
            return None
