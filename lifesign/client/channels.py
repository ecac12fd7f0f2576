"""Approval channels used by the primary device's pairing handshake.

A channel creates the family, fetches the approval state on demand and
pushes state changes to a callback. Callbacks always run on the event loop
that subscribed.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

import httpx

from lifesign.config import settings
from lifesign.errors import FamilyNotFound
from lifesign.models.family import ApprovalState
from lifesign.schemas.family import FamilySetupResponse, PairingCancelResponse
from lifesign.services.pairing import PairingService

logger = logging.getLogger(__name__)

ApprovalCallback = Callable[[ApprovalState], None]

API_PREFIX = "/api/v1"


@dataclass
class IssuedCode:
    family_id: str
    code: str
    expires_at: Optional[datetime] = None


class ApprovalChannel(Protocol):
    async def create(self, subject_name: str, **options) -> IssuedCode:
        ...

    async def fetch(self, family_id: str) -> ApprovalState:
        ...

    def subscribe(self, family_id: str, callback: ApprovalCallback) -> Callable[[], None]:
        ...

    async def complete(self, family_id: str) -> None:
        ...

    async def discard(self, family_id: str) -> bool:
        """Retire the code and drop the family. False if it was approved first."""
        ...


class StoreApprovalChannel:
    """In-process channel backed directly by the pairing service."""

    def __init__(self, pairing: PairingService):
        self.pairing = pairing

    async def create(self, subject_name: str, **options) -> IssuedCode:
        family, pending = await asyncio.to_thread(self.pairing.setup_family, subject_name, **options)
        return IssuedCode(family_id=family.id, code=pending.code, expires_at=pending.expires_at)

    async def fetch(self, family_id: str) -> ApprovalState:
        return await asyncio.to_thread(self.pairing.approval_state, family_id)

    def subscribe(self, family_id: str, callback: ApprovalCallback) -> Callable[[], None]:
        loop = asyncio.get_running_loop()

        def on_change(family) -> None:
            loop.call_soon_threadsafe(callback, ApprovalState(family.approval_state))

        return self.pairing.store.subscribe(family_id, on_change)

    async def complete(self, family_id: str) -> None:
        await asyncio.to_thread(self.pairing.complete_pairing, family_id)

    async def discard(self, family_id: str) -> bool:
        return await asyncio.to_thread(self.pairing.cancel_pairing, family_id)


class HttpApprovalChannel:
    """Channel talking to a LifeSign server.

    Polling uses the approval endpoint; the subscription is a long-poll loop
    on ``/approval/wait`` running as a background task.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        longpoll_seconds: Optional[float] = None,
        retry_delay: float = 1.0,
    ):
        self.client = client
        self.longpoll_seconds = longpoll_seconds or settings.longpoll_max_seconds
        self.retry_delay = retry_delay

    def _raise_for_status(self, response: httpx.Response, family_id: str) -> None:
        if response.status_code == 404:
            raise FamilyNotFound(family_id)
        response.raise_for_status()

    async def create(self, subject_name: str, **options) -> IssuedCode:
        body = {"subject_name": subject_name}
        for key, value in options.items():
            body[key] = value.model_dump() if hasattr(value, "model_dump") else value
        response = await self.client.post(f"{API_PREFIX}/families", json=body)
        response.raise_for_status()
        data = FamilySetupResponse.model_validate(response.json())
        return IssuedCode(family_id=data.family_id, code=data.connection_code, expires_at=data.expires_at)

    async def fetch(self, family_id: str) -> ApprovalState:
        response = await self.client.get(f"{API_PREFIX}/families/{family_id}/approval")
        self._raise_for_status(response, family_id)
        return ApprovalState(response.json()["approval_state"])

    def subscribe(self, family_id: str, callback: ApprovalCallback) -> Callable[[], None]:
        task = asyncio.get_running_loop().create_task(self._watch(family_id, callback))
        return task.cancel

    async def _watch(self, family_id: str, callback: ApprovalCallback) -> None:
        since = ApprovalState.UNSET
        url = f"{API_PREFIX}/families/{family_id}/approval/wait"
        while True:
            try:
                response = await self.client.get(
                    url,
                    params={"since": since.value, "timeout": self.longpoll_seconds},
                    timeout=self.longpoll_seconds + 5,
                )
                self._raise_for_status(response, family_id)
                state = ApprovalState(response.json()["approval_state"])
            except asyncio.CancelledError:
                raise
            except (httpx.HTTPError, FamilyNotFound, KeyError, TypeError, ValueError) as e:
                logger.warning("Approval subscription error for %s: %s", family_id, e)
                await asyncio.sleep(self.retry_delay)
                continue

            if state != since:
                since = state
                callback(state)

    async def complete(self, family_id: str) -> None:
        response = await self.client.post(f"{API_PREFIX}/families/{family_id}/pairing/complete")
        self._raise_for_status(response, family_id)

    async def discard(self, family_id: str) -> bool:
        response = await self.client.delete(f"{API_PREFIX}/families/{family_id}/pairing")
        response.raise_for_status()
        return PairingCancelResponse.model_validate(response.json()).cancelled
