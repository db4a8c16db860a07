"""Channel transports used by the notification dispatcher.

Each transport is an async ``send(delivery) -> TransportReceipt``. Transports
never touch the database; the dispatcher turns receipts and raised
``TransportFailure`` errors into NotificationLog outcomes.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Mapping, Protocol
from uuid import UUID

import httpx
import jwt

from chatline.core.config import settings
from chatline.core.errors import TransportFailure
from chatline.core.structured_logging import mask_token
from chatline.db.enums import NotificationChannel, NotificationPriority, TokenType
from chatline.services.http_service import error_detail, request_with_retries

logger = logging.getLogger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
RESEND_SEND_URL = "https://api.resend.com/emails"
TRANSPORT_MAX_ATTEMPTS = 2

# FCM error statuses meaning the token will never work again
FCM_INVALID_TOKEN_STATUSES = {"UNREGISTERED", "INVALID_ARGUMENT", "NOT_FOUND"}

APNS_HOSTS = {
    False: "https://api.push.apple.com",
    True: "https://api.sandbox.push.apple.com",
}
# APNs rejection reasons meaning the token will never work again
APNS_INVALID_TOKEN_REASONS = {"BadDeviceToken", "Unregistered", "DeviceTokenNotForTopic"}
# Apple rejects provider tokens older than an hour
APNS_PROVIDER_TOKEN_TTL_SECONDS = 50 * 60
APNS_EXPIRATION_SECONDS = 3600


@dataclass(frozen=True)
class Delivery:
    """Everything a transport needs for one (recipient, channel) attempt."""
    log_id: UUID
    recipient_id: UUID
    channel: NotificationChannel
    title: str
    body: str
    payload: dict | None = None
    priority: str = NotificationPriority.NORMAL.value
    email: str | None = None
    phone: str | None = None
    device_tokens: tuple[str, ...] = ()
    # (token, TokenType value) pairs; unlisted tokens are FCM tokens
    token_types: tuple[tuple[str, str], ...] = ()

    def tokens_for(self, token_type: TokenType) -> tuple[str, ...]:
        kinds = dict(self.token_types)
        return tuple(
            token
            for token in self.device_tokens
            if kinds.get(token, TokenType.FCM.value) == token_type.value
        )


@dataclass
class TransportReceipt:
    accepted: int = 0
    provider_ids: list[str] = field(default_factory=list)
    invalid_tokens: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class Transport(Protocol):
    channel: NotificationChannel

    async def send(self, delivery: Delivery) -> TransportReceipt: ...


def _default_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.TRANSPORT_TIMEOUT_SECONDS)


def _http2_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(http2=True, timeout=settings.TRANSPORT_TIMEOUT_SECONDS)


def _string_data(payload: dict | None) -> dict[str, str]:
    """FCM data messages only carry string values."""
    return {str(k): "" if v is None else str(v) for k, v in (payload or {}).items()}


# =============================================================================
# Push (FCM HTTP v1)
# =============================================================================


class PushTransport:
    """One FCM send per active FCM device token of the recipient."""

    channel = NotificationChannel.PUSH

    def __init__(
        self,
        project_id: str,
        access_token: str,
        *,
        client_factory: Callable[[], httpx.AsyncClient] = _default_client,
    ):
        self.project_id = project_id
        self.access_token = access_token
        self.client_factory = client_factory

    def _message(self, delivery: Delivery, token: str) -> dict:
        high = delivery.priority == NotificationPriority.HIGH.value
        return {
            "message": {
                "token": token,
                "notification": {"title": delivery.title, "body": delivery.body},
                "data": _string_data(delivery.payload),
                "android": {"priority": "high" if high else "normal"},
                "apns": {"headers": {"apns-priority": "10" if high else "5"}},
            }
        }

    @staticmethod
    def _is_invalid_token(response: httpx.Response) -> bool:
        if response.status_code == 404:
            return True
        if response.status_code != 400:
            return False
        try:
            error = response.json().get("error") or {}
        except ValueError:
            return False
        return isinstance(error, dict) and error.get("status") in FCM_INVALID_TOKEN_STATUSES

    async def send(self, delivery: Delivery) -> TransportReceipt:
        if not self.project_id or not self.access_token:
            raise TransportFailure("Push transport is not configured")
        tokens = delivery.tokens_for(TokenType.FCM)
        if not tokens:
            raise TransportFailure("Recipient has no active FCM device tokens")

        url = FCM_SEND_URL.format(project_id=self.project_id)
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        receipt = TransportReceipt()
        async with self.client_factory() as client:
            for token in tokens:
                body = self._message(delivery, token)

                async def request_fn() -> httpx.Response:
                    return await client.post(url, headers=headers, json=body)

                response = await request_with_retries(request_fn, max_attempts=TRANSPORT_MAX_ATTEMPTS)
                if 200 <= response.status_code < 300:
                    receipt.accepted += 1
                    name = response.json().get("name")
                    if name:
                        receipt.provider_ids.append(name)
                elif self._is_invalid_token(response):
                    receipt.invalid_tokens.append(token)
                    receipt.errors.append(f"{mask_token(token)}: {error_detail(response)}")
                else:
                    receipt.errors.append(f"{mask_token(token)}: {error_detail(response)}")

        if receipt.errors:
            logger.warning(
                "Push to %s: %s accepted, %s failed",
                delivery.recipient_id,
                receipt.accepted,
                len(receipt.errors),
            )
        return receipt


# =============================================================================
# Push (APNs HTTP/2)
# =============================================================================


def _apns_reason(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    return data.get("reason") if isinstance(data, dict) else None


class ApnsTransport:
    """
    One APNs request per APN device token, authenticated with a provider JWT.

    The ES256 provider token is cached and re-signed before Apple's one hour
    limit.
    """

    channel = NotificationChannel.PUSH

    def __init__(
        self,
        key_id: str,
        team_id: str,
        bundle_id: str,
        signing_key: str,
        *,
        sandbox: bool = False,
        client_factory: Callable[[], httpx.AsyncClient] = _http2_client,
    ):
        self.key_id = key_id
        self.team_id = team_id
        self.bundle_id = bundle_id
        self.signing_key = signing_key
        self.host = APNS_HOSTS[sandbox]
        self.client_factory = client_factory
        self._provider_token: str | None = None
        self._issued_at = 0.0

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.team_id and self.bundle_id and self.signing_key)

    def provider_token(self) -> str:
        now = time.time()
        if self._provider_token is None or now - self._issued_at > APNS_PROVIDER_TOKEN_TTL_SECONDS:
            self._provider_token = jwt.encode(
                {"iss": self.team_id, "iat": int(now)},
                self.signing_key,
                algorithm="ES256",
                headers={"kid": self.key_id},
            )
            self._issued_at = now
        return self._provider_token

    def _notification(self, delivery: Delivery) -> dict:
        body = dict(delivery.payload or {})
        body["aps"] = {
            "alert": {"title": delivery.title, "body": delivery.body},
            "sound": "default",
        }
        return body

    async def send(self, delivery: Delivery) -> TransportReceipt:
        if not self.configured:
            raise TransportFailure("APNs transport is not configured")
        tokens = delivery.tokens_for(TokenType.APN)
        if not tokens:
            raise TransportFailure("Recipient has no active APN device tokens")

        high = delivery.priority == NotificationPriority.HIGH.value
        headers = {
            "authorization": f"bearer {self.provider_token()}",
            "apns-topic": self.bundle_id,
            "apns-push-type": "alert",
            "apns-priority": "10" if high else "5",
            "apns-expiration": str(int(time.time()) + APNS_EXPIRATION_SECONDS),
        }
        body = self._notification(delivery)
        receipt = TransportReceipt()
        async with self.client_factory() as client:
            for token in tokens:
                url = f"{self.host}/3/device/{token}"

                async def request_fn() -> httpx.Response:
                    return await client.post(url, headers=headers, json=body)

                response = await request_with_retries(request_fn, max_attempts=TRANSPORT_MAX_ATTEMPTS)
                if response.status_code == 200:
                    receipt.accepted += 1
                    apns_id = response.headers.get("apns-id")
                    if apns_id:
                        receipt.provider_ids.append(apns_id)
                    continue
                reason = _apns_reason(response)
                if response.status_code == 410 or reason in APNS_INVALID_TOKEN_REASONS:
                    receipt.invalid_tokens.append(token)
                receipt.errors.append(f"{mask_token(token)}: {reason or error_detail(response)}")

        if receipt.errors:
            logger.warning(
                "APNs push to %s: %s accepted, %s failed",
                delivery.recipient_id,
                receipt.accepted,
                len(receipt.errors),
            )
        return receipt


class PushRouter:
    """Splits a push delivery by token provider and merges the receipts."""

    channel = NotificationChannel.PUSH

    def __init__(self, transports: Mapping[TokenType, Transport]):
        self.transports = dict(transports)

    async def send(self, delivery: Delivery) -> TransportReceipt:
        if not delivery.device_tokens:
            raise TransportFailure("Recipient has no active device tokens")

        receipt = TransportReceipt()
        for token_type in TokenType:
            tokens = delivery.tokens_for(token_type)
            if not tokens:
                continue
            transport = self.transports.get(token_type)
            if transport is None:
                # Unrouted tokens stay active
                receipt.errors.append(f"No transport for {len(tokens)} {token_type.value} token(s)")
                continue
            try:
                part = await transport.send(replace(delivery, device_tokens=tokens))
            except TransportFailure as exc:
                receipt.errors.append(f"{token_type.value}: {exc.message}")
                continue
            receipt.accepted += part.accepted
            receipt.provider_ids.extend(part.provider_ids)
            receipt.invalid_tokens.extend(part.invalid_tokens)
            receipt.errors.extend(part.errors)
        return receipt


# =============================================================================
# Email (Resend)
# =============================================================================


class EmailTransport:
    channel = NotificationChannel.EMAIL

    def __init__(
        self,
        api_key: str,
        from_email: str,
        *,
        client_factory: Callable[[], httpx.AsyncClient] = _default_client,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.client_factory = client_factory

    async def send(self, delivery: Delivery) -> TransportReceipt:
        if not self.api_key:
            raise TransportFailure("Email transport is not configured")
        if not delivery.email:
            raise TransportFailure("Recipient has no email address")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            # Stable across sweep retries of the same log row
            "Idempotency-Key": f"notification-log/{delivery.log_id}",
        }
        payload = {
            "from": self.from_email,
            "to": [delivery.email],
            "subject": delivery.title,
            "text": delivery.body,
        }
        async with self.client_factory() as client:

            async def request_fn() -> httpx.Response:
                return await client.post(RESEND_SEND_URL, headers=headers, json=payload)

            response = await request_with_retries(request_fn, max_attempts=TRANSPORT_MAX_ATTEMPTS)

        # 409 is an idempotency conflict: already sent
        if 200 <= response.status_code < 300 or response.status_code == 409:
            receipt = TransportReceipt(accepted=1)
            try:
                message_id = response.json().get("id")
            except ValueError:
                message_id = None
            if message_id:
                receipt.provider_ids.append(message_id)
            return receipt

        raise TransportFailure(f"Resend API error: {error_detail(response)}")


# =============================================================================
# SMS (gateway webhook)
# =============================================================================


class SmsTransport:
    channel = NotificationChannel.SMS

    def __init__(
        self,
        webhook_url: str,
        api_key: str = "",
        *,
        client_factory: Callable[[], httpx.AsyncClient] = _default_client,
    ):
        self.webhook_url = webhook_url
        self.api_key = api_key
        self.client_factory = client_factory

    async def send(self, delivery: Delivery) -> TransportReceipt:
        if not self.webhook_url:
            raise TransportFailure("SMS transport is not configured")
        if not delivery.phone:
            raise TransportFailure("Recipient has no phone number")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        text = f"{delivery.title}: {delivery.body}" if delivery.title else delivery.body

        async with self.client_factory() as client:

            async def request_fn() -> httpx.Response:
                return await client.post(
                    self.webhook_url,
                    headers=headers,
                    json={"to": delivery.phone, "body": text, "reference": str(delivery.log_id)},
                )

            response = await request_with_retries(request_fn, max_attempts=TRANSPORT_MAX_ATTEMPTS)

        if 200 <= response.status_code < 300:
            return TransportReceipt(accepted=1)
        raise TransportFailure(f"SMS gateway error: {error_detail(response)}")


# =============================================================================
# In-app
# =============================================================================


class InAppTransport:
    """The log row itself is the in-app notification; nothing leaves the process."""

    channel = NotificationChannel.IN_APP

    async def send(self, delivery: Delivery) -> TransportReceipt:
        return TransportReceipt(accepted=1)


def _read_signing_key(path: str) -> str:
    return Path(path).read_text() if path else ""


def build_default_transports() -> dict[NotificationChannel, Transport]:
    """Transports configured from settings."""
    push = PushRouter(
        {
            TokenType.FCM: PushTransport(settings.FCM_PROJECT_ID, settings.FCM_ACCESS_TOKEN),
            TokenType.APN: ApnsTransport(
                settings.APN_KEY_ID,
                settings.APN_TEAM_ID,
                settings.APN_BUNDLE_ID,
                _read_signing_key(settings.APN_KEY_PATH),
                sandbox=settings.APN_USE_SANDBOX,
            ),
        }
    )
    return {
        NotificationChannel.PUSH: push,
        NotificationChannel.EMAIL: EmailTransport(settings.RESEND_API_KEY, settings.EMAIL_FROM),
        NotificationChannel.SMS: SmsTransport(settings.SMS_WEBHOOK_URL, settings.SMS_API_KEY),
        NotificationChannel.IN_APP: InAppTransport(),
    }
