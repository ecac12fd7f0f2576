"""Push transport tests."""

import json

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from lifesign.errors import NotificationDeliveryFailed
from lifesign.services.push import ANDROID_CHANNEL_ID, FcmTransport, LogTransport

TOKEN_URI = "https://oauth2.googleapis.com/token"


@pytest.fixture(scope="module")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def credentials(private_key):
    pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    return {
        "project_id": "lifesign-test",
        "client_email": "push@lifesign-test.iam.gserviceaccount.com",
        "private_key": pem,
    }


class FakeFcm:
    def __init__(self, dead_tokens=()):
        self.dead_tokens = set(dead_tokens)
        self.token_requests = []
        self.messages = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URI:
            self.token_requests.append(request)
            return httpx.Response(200, json={"access_token": "access-1", "expires_in": 3600})

        assert request.headers["Authorization"] == "Bearer access-1"
        body = json.loads(request.content)
        self.messages.append(body)
        if body["message"]["token"] in self.dead_tokens:
            return httpx.Response(404, json={"error": {"status": "NOT_FOUND"}})
        return httpx.Response(200, json={"name": f"projects/lifesign-test/messages/{len(self.messages)}"})


def test_fcm_send(credentials, private_key):
    fake = FakeFcm()
    transport = FcmTransport(credentials, client=httpx.Client(transport=httpx.MockTransport(fake)))

    first = transport.send("device-a", "⚠️ 어머니 안전 알림", "13시간 이상", {"type": "survival_alert", "hours": 13})
    second = transport.send("device-b", "title", "body", {})

    assert first == "projects/lifesign-test/messages/1"
    assert second == "projects/lifesign-test/messages/2"
    assert len(fake.token_requests) == 1  # access token cached

    message = fake.messages[0]["message"]
    assert message["token"] == "device-a"
    assert message["notification"]["title"] == "⚠️ 어머니 안전 알림"
    assert message["data"] == {"type": "survival_alert", "hours": "13"}
    assert message["android"]["priority"] == "high"
    assert message["android"]["notification"]["channel_id"] == ANDROID_CHANNEL_ID

    form = httpx.QueryParams(fake.token_requests[0].content.decode())
    claims = jwt.decode(
        form["assertion"],
        private_key.public_key(),
        algorithms=["RS256"],
        audience=TOKEN_URI,
    )
    assert claims["iss"] == credentials["client_email"]
    assert claims["scope"].endswith("firebase.messaging")


def test_fcm_rejected_token(credentials):
    fake = FakeFcm(dead_tokens={"expired"})
    transport = FcmTransport(credentials, client=httpx.Client(transport=httpx.MockTransport(fake)))
    with pytest.raises(NotificationDeliveryFailed) as exc:
        transport.send("expired", "t", "b", {})
    assert exc.value.status_code == 404


def test_fcm_network_error(credentials):
    def handler(request):
        if str(request.url) == TOKEN_URI:
            return httpx.Response(200, json={"access_token": "access-1", "expires_in": 3600})
        raise httpx.ConnectError("connection refused", request=request)

    transport = FcmTransport(credentials, client=httpx.Client(transport=httpx.MockTransport(handler)))
    with pytest.raises(NotificationDeliveryFailed):
        transport.send("device-a", "t", "b", {})


def test_fcm_token_exchange_failure(credentials):
    def handler(request):
        return httpx.Response(400, json={"error": "invalid_grant"})

    transport = FcmTransport(credentials, client=httpx.Client(transport=httpx.MockTransport(handler)))
    with pytest.raises(NotificationDeliveryFailed) as exc:
        transport.send("device-a", "t", "b", {})
    assert exc.value.status_code == 400


def test_log_transport():
    transport = LogTransport()
    assert transport.send("a" * 40, "t", "b", {}) == "log-1"
    assert transport.send("b", "t", "b", {}) == "log-2"
