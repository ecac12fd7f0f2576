"""Push delivery transports.

A transport sends one message to one device token and either returns a
message id or raises NotificationDeliveryFailed.
"""

import json
import logging
import threading
import time
from pathlib import Path
from typing import Optional, Protocol

import httpx
import jwt

from lifesign.config import settings
from lifesign.errors import NotificationDeliveryFailed
from lifesign.utils.security import truncate_token

logger = logging.getLogger(__name__)

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
ANDROID_CHANNEL_ID = "high_importance_channel"


class PushTransport(Protocol):
    def send(self, token: str, title: str, body: str, data: dict[str, str]) -> str:
        ...


class LogTransport:
    """Development transport: logs the message instead of sending it."""

    def __init__(self):
        self._counter = 0
        self._lock = threading.Lock()

    def send(self, token: str, title: str, body: str, data: dict[str, str]) -> str:
        with self._lock:
            self._counter += 1
            message_id = f"log-{self._counter}"
        logger.info("[push:%s] %s -> %s | %s %s", message_id, truncate_token(token), title, body, data)
        return message_id


class FcmTransport:
    """Firebase Cloud Messaging HTTP v1 transport.

    Access tokens come from a service-account JWT assertion and are cached
    until shortly before they expire.
    """

    def __init__(
        self,
        credentials: dict,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.project_id = credentials["project_id"]
        self.client_email = credentials["client_email"]
        self.private_key = credentials["private_key"]
        self.token_uri = credentials.get("token_uri", "https://oauth2.googleapis.com/token")
        self._client = client or httpx.Client(timeout=timeout or settings.push_send_timeout_seconds)
        self._access_token: Optional[str] = None
        self._access_token_expiry = 0.0
        self._lock = threading.Lock()

    @classmethod
    def from_file(cls, path: Path, **kwargs) -> "FcmTransport":
        return cls(json.loads(Path(path).read_text()), **kwargs)

    def _assertion(self, now: int) -> str:
        payload = {
            "iss": self.client_email,
            "scope": FCM_SCOPE,
            "aud": self.token_uri,
            "iat": now,
            "exp": now + 3600,
        }
        return jwt.encode(payload, self.private_key, algorithm="RS256")

    def access_token(self) -> str:
        with self._lock:
            now = int(time.time())
            if self._access_token and now < self._access_token_expiry - 60:
                return self._access_token

            response = self._client.post(self.token_uri, data={
                "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                "assertion": self._assertion(now),
            })
            if response.status_code >= 300:
                raise NotificationDeliveryFailed(
                    f"OAuth token exchange failed: {response.text}", response.status_code
                )
            body = response.json()
            self._access_token = body["access_token"]
            self._access_token_expiry = now + int(body.get("expires_in", 3600))
            return self._access_token

    def build_message(self, token: str, title: str, body: str, data: dict[str, str]) -> dict:
        return {
            "message": {
                "token": token,
                "notification": {"title": title, "body": body},
                "data": {k: str(v) for k, v in data.items()},
                "android": {
                    "priority": "high",
                    "notification": {
                        "sound": "default",
                        "channel_id": ANDROID_CHANNEL_ID,
                    },
                },
            }
        }

    def send(self, token: str, title: str, body: str, data: dict[str, str]) -> str:
        try:
            response = self._client.post(
                FCM_SEND_URL.format(project_id=self.project_id),
                headers={"Authorization": f"Bearer {self.access_token()}"},
                json=self.build_message(token, title, body, data),
            )
        except httpx.HTTPError as e:
            raise NotificationDeliveryFailed(f"{type(e).__name__}: {e}") from e

        if response.status_code >= 300:
            logger.warning(
                "FCM error %s for %s: %s",
                response.status_code, truncate_token(token), response.text,
            )
            raise NotificationDeliveryFailed(
                f"FCM error {response.status_code}", response.status_code
            )
        return response.json().get("name", "")


def build_transport() -> PushTransport:
    """FCM when credentials are configured, otherwise log-only."""
    if settings.fcm_credentials_file:
        return FcmTransport.from_file(settings.fcm_credentials_file)
    logger.warning("FCM not configured; push messages will only be logged.")
    return LogTransport()
