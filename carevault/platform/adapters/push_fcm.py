"""Firebase Cloud Messaging over the HTTP v1 API.

Authenticates as a service account: a signed RS256 assertion is exchanged at
the token endpoint for a short-lived OAuth access token, which is cached and
refreshed shortly before it lapses.
"""
import asyncio
import logging
import time
from typing import Callable
import httpx
from jose import jwt
from carevault.core.config import settings
from carevault.core.errors import PushDeliveryError
from carevault.platform.ports.push import PushPort

log = logging.getLogger("push.fcm")

GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME_SECONDS = 3600
REFRESH_MARGIN_SECONDS = 60


class ServiceAccountCredentials:
    def __init__(self, client_email: str, private_key: str, client: httpx.AsyncClient, *,
                 token_uri: str | None = None, scope: str | None = None,
                 clock: Callable[[], float] = time.time):
        self.client_email = client_email
        # keys pasted into .env usually carry escaped newlines
        self.private_key = private_key.replace("\\n", "\n")
        self.client = client
        self.token_uri = token_uri or settings.FCM_TOKEN_URI
        self.scope = scope or settings.FCM_SCOPE
        self.clock = clock
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def assertion(self) -> str:
        now = int(self.clock())
        claims = {
            "iss": self.client_email,
            "scope": self.scope,
            "aud": self.token_uri,
            "iat": now,
            "exp": now + ASSERTION_LIFETIME_SECONDS,
        }
        return jwt.encode(claims, self.private_key, algorithm="RS256")

    async def token(self, *, force: bool = False) -> str:
        async with self._lock:
            if force or self._token is None or self.clock() >= self._expires_at - REFRESH_MARGIN_SECONDS:
                await self._refresh()
            return self._token

    async def _refresh(self):
        try:
            response = await self.client.post(
                self.token_uri, data={"grant_type": GRANT_TYPE, "assertion": self.assertion()}
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            log.error(f"FCM token exchange rejected: {e.response.status_code} {e.response.text[:300]}")
            raise PushDeliveryError(f"token endpoint returned {e.response.status_code}")
        except httpx.HTTPError as e:
            log.error(f"FCM token exchange failed: {e}")
            raise PushDeliveryError(str(e) or e.__class__.__name__)
        body = response.json()
        self._token = body["access_token"]
        self._expires_at = self.clock() + float(body.get("expires_in", ASSERTION_LIFETIME_SECONDS))
        log.info("Refreshed FCM access token for %s", self.client_email)


class FcmPush(PushPort):
    def __init__(self, client: httpx.AsyncClient | None = None,
                 credentials: ServiceAccountCredentials | None = None, project_id: str | None = None):
        project_id = project_id or settings.FCM_PROJECT_ID
        if not project_id:
            raise RuntimeError("FCM_PROJECT_ID must be configured for PUSH_PROVIDER=fcm")
        self.url = settings.FCM_ENDPOINT.format(project_id=project_id)
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(settings.PUSH_TIMEOUT_SECONDS))
        if credentials is None:
            if not settings.FCM_CLIENT_EMAIL or not settings.FCM_PRIVATE_KEY:
                raise RuntimeError("FCM_CLIENT_EMAIL and FCM_PRIVATE_KEY must be configured for PUSH_PROVIDER=fcm")
            credentials = ServiceAccountCredentials(settings.FCM_CLIENT_EMAIL, settings.FCM_PRIVATE_KEY, self.client)
        self.credentials = credentials

    async def _post(self, message: dict, *, refresh: bool = False) -> httpx.Response:
        token = await self.credentials.token(force=refresh)
        return await self.client.post(self.url, json=message, headers={"Authorization": f"Bearer {token}"})

    async def send(self, address: str, title: str, body: str, data: dict | None = None) -> str | None:
        message = {
            "message": {
                "token": address,
                "notification": {"title": title, "body": body},
                # FCM data values must be strings
                "data": {k: str(v) for k, v in (data or {}).items()},
                "android": {"priority": "high", "notification": {"sound": "default"}},
                "apns": {"payload": {"aps": {"sound": "default", "badge": 1}}},
            }
        }
        try:
            response = await self._post(message)
            if response.status_code == 401:
                # revoked before its advertised expiry
                response = await self._post(message, refresh=True)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            log.error(f"FCM rejected push: {e.response.status_code} {e.response.text[:300]}")
            raise PushDeliveryError(f"FCM returned {e.response.status_code}")
        except httpx.HTTPError as e:
            log.error(f"FCM request failed: {e}")
            raise PushDeliveryError(str(e) or e.__class__.__name__)
        return response.json().get("name")

    async def close(self):
        await self.client.aclose()
