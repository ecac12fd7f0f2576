"""HTTP approval channel tests."""

import asyncio

import httpx
import pytest
import pytest_asyncio

from lifesign.client.channels import HttpApprovalChannel
from lifesign.client.handshake import HandshakeState, PairingHandshake
from lifesign.database import init_db
from lifesign.errors import FamilyNotFound
from lifesign.main import app
from lifesign.models.family import ApprovalState
from lifesign.schemas.family import SleepWindow


@pytest_asyncio.fixture
async def api_client():
    init_db()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.mark.asyncio
async def test_http_handshake_approved_by_watcher(api_client):
    channel = HttpApprovalChannel(api_client, longpoll_seconds=0.5, retry_delay=0.05)
    handshake = PairingHandshake(channel, timeout=10, poll_interval=0.1)

    issued = await handshake.start("어머니", sleep_window=SleepWindow(enabled=True))
    assert issued.expires_at is not None

    r = await api_client.post(
        f"/api/v1/connect/{issued.code}/approval",
        json={"decision": "approved", "push_token": "watcher-token"},
    )
    assert r.status_code == 200

    result = await handshake.wait()
    assert result.state == HandshakeState.APPROVED
    assert handshake.transitions.count(HandshakeState.APPROVED) == 1

    detail = (await api_client.get(f"/api/v1/families/{issued.family_id}")).json()
    assert detail["approval_state"] == "approved"
    assert detail["settings"]["sleep_window"]["enabled"]
    await asyncio.sleep(0.6)  # let the cancelled long-poll drain


@pytest.mark.asyncio
async def test_http_handshake_cancel_discards_family(api_client):
    channel = HttpApprovalChannel(api_client, longpoll_seconds=0.2, retry_delay=0.05)
    handshake = PairingHandshake(channel, timeout=10, poll_interval=0.1)

    issued = await handshake.start("어머니")
    handshake.cancel()
    result = await handshake.wait()

    assert result.state == HandshakeState.CANCELLED
    r = await api_client.get(f"/api/v1/connect/{issued.code}")
    assert r.status_code == 404
    await asyncio.sleep(0.3)


@pytest.mark.asyncio
async def test_missing_family_maps_to_domain_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"detail": "Family not found"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://lifesign") as client:
        channel = HttpApprovalChannel(client)
        with pytest.raises(FamilyNotFound):
            await channel.fetch("fam_missing")
        with pytest.raises(FamilyNotFound):
            await channel.complete("fam_missing")


@pytest.mark.asyncio
async def test_subscription_reports_changes_only():
    states = iter(["unset", "unset", "rejected"])

    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.005)
        return httpx.Response(200, json={"family_id": "fam_1", "approval_state": next(states, "rejected")})

    seen = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://lifesign") as client:
        channel = HttpApprovalChannel(client, longpoll_seconds=0.1)
        unsubscribe = channel.subscribe("fam_1", seen.append)
        await asyncio.sleep(0.05)
        unsubscribe()

    assert seen == [ApprovalState.REJECTED]


@pytest.mark.asyncio
async def test_subscription_survives_malformed_bodies():
    replies = iter([
        httpx.Response(200, text="<html>gateway timeout</html>"),
        httpx.Response(200, json={"family_id": "fam_1"}),
        httpx.Response(200, json={"family_id": "fam_1", "approval_state": "maybe"}),
        httpx.Response(200, json=["approved"]),
    ])

    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.005)
        return next(replies, httpx.Response(200, json={"family_id": "fam_1", "approval_state": "approved"}))

    seen = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://lifesign") as client:
        channel = HttpApprovalChannel(client, longpoll_seconds=0.1, retry_delay=0.01)
        unsubscribe = channel.subscribe("fam_1", seen.append)
        await asyncio.sleep(0.2)
        unsubscribe()

    assert seen == [ApprovalState.APPROVED]


@pytest.mark.asyncio
async def test_http_discard_reports_approval_that_won(api_client):
    channel = HttpApprovalChannel(api_client)
    issued = await channel.create("어머니")
    r = await api_client.post(f"/api/v1/connect/{issued.code}/approval", json={"decision": "approved"})
    assert r.status_code == 200

    assert await channel.discard(issued.family_id) is False
    assert await channel.fetch(issued.family_id) == ApprovalState.APPROVED
