from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol, Sequence

import firebase_admin
from firebase_admin import credentials, exceptions, messaging

from config import Settings

logger = logging.getLogger(__name__)

# FCM rejects multicast requests addressed to more tokens than this.
MULTICAST_TOKEN_LIMIT = 500


class PushGatewayError(RuntimeError):
    """The gateway call failed as a whole; no per-token outcome is known."""


class DeliveryFailure(str, Enum):
    token_not_registered = "token_not_registered"
    invalid_token = "invalid_token"
    invalid_request = "invalid_request"
    sender_mismatch = "sender_mismatch"
    quota_exceeded = "quota_exceeded"
    unavailable = "unavailable"
    internal = "internal"
    unknown = "unknown"

    @property
    def is_permanent(self) -> bool:
        return self in (
            DeliveryFailure.token_not_registered,
            DeliveryFailure.invalid_token,
        )

    @classmethod
    def from_code(cls, code: Optional[str]) -> "DeliveryFailure":
        if not code:
            return cls.unknown
        return _FAILURE_CODES.get(code.strip().lower(), cls.unknown)


_FAILURE_CODES: dict[str, DeliveryFailure] = {
    "messaging/registration-token-not-registered": DeliveryFailure.token_not_registered,
    "registration-token-not-registered": DeliveryFailure.token_not_registered,
    "token-not-registered": DeliveryFailure.token_not_registered,
    "unregistered": DeliveryFailure.token_not_registered,
    "not_found": DeliveryFailure.token_not_registered,
    "messaging/invalid-registration-token": DeliveryFailure.invalid_token,
    "invalid-registration-token": DeliveryFailure.invalid_token,
    "invalid-token": DeliveryFailure.invalid_token,
    "messaging/invalid-argument": DeliveryFailure.invalid_request,
    "invalid_argument": DeliveryFailure.invalid_request,
    "messaging/mismatched-credential": DeliveryFailure.sender_mismatch,
    "sender_id_mismatch": DeliveryFailure.sender_mismatch,
    "permission_denied": DeliveryFailure.sender_mismatch,
    "messaging/message-rate-exceeded": DeliveryFailure.quota_exceeded,
    "quota_exceeded": DeliveryFailure.quota_exceeded,
    "resource_exhausted": DeliveryFailure.quota_exceeded,
    "messaging/server-unavailable": DeliveryFailure.unavailable,
    "unavailable": DeliveryFailure.unavailable,
    "deadline_exceeded": DeliveryFailure.unavailable,
    "messaging/internal-error": DeliveryFailure.internal,
    "internal": DeliveryFailure.internal,
}


@dataclass(frozen=True)
class DeliveryOutcome:
    token: str
    success: bool
    failure: Optional[DeliveryFailure] = None


class PushGateway(Protocol):
    def send_multicast(
        self,
        tokens: Sequence[str],
        title: str,
        body: str,
        data: dict[str, str],
    ) -> list[DeliveryOutcome]: ...


def _failure_from_exception(exc: Optional[Exception]) -> DeliveryFailure:
    if isinstance(exc, messaging.UnregisteredError):
        return DeliveryFailure.token_not_registered
    if isinstance(exc, messaging.SenderIdMismatchError):
        return DeliveryFailure.sender_mismatch
    if isinstance(exc, exceptions.FirebaseError):
        return DeliveryFailure.from_code(exc.code)
    return DeliveryFailure.unknown


class FirebasePushGateway:
    def __init__(self, app: firebase_admin.App) -> None:
        self.app = app

    @classmethod
    def from_settings(cls, settings: Settings) -> "FirebasePushGateway":
        options = {"httpTimeout": settings.push_timeout_secs}
        cred_path = Path(settings.firebase_credentials)
        if cred_path.exists():
            cred = credentials.Certificate(str(cred_path))
        else:
            logger.warning(
                f"push_gateway: credentials={cred_path} not found, "
                "using application default credentials"
            )
            cred = credentials.ApplicationDefault()
        try:
            app = firebase_admin.get_app()
        except ValueError:
            app = firebase_admin.initialize_app(cred, options=options)
        return cls(app)

    def send_multicast(
        self,
        tokens: Sequence[str],
        title: str,
        body: str,
        data: dict[str, str],
    ) -> list[DeliveryOutcome]:
        outcomes: list[DeliveryOutcome] = []
        for offset in range(0, len(tokens), MULTICAST_TOKEN_LIMIT):
            chunk = list(tokens[offset : offset + MULTICAST_TOKEN_LIMIT])
            outcomes.extend(self._send_chunk(chunk, title, body, data))
        return outcomes

    def _send_chunk(
        self,
        tokens: list[str],
        title: str,
        body: str,
        data: dict[str, str],
    ) -> list[DeliveryOutcome]:
        message = messaging.MulticastMessage(
            tokens=tokens,
            notification=messaging.Notification(title=title, body=body),
            data=data,
            android=messaging.AndroidConfig(priority="high"),
            apns=messaging.APNSConfig(
                headers={"apns-priority": "10"},
                payload=messaging.APNSPayload(aps=messaging.Aps(sound="default")),
            ),
        )
        try:
            response = messaging.send_each_for_multicast(message, app=self.app)
        except (exceptions.FirebaseError, ValueError) as exc:
            raise PushGatewayError(f"Multicast to {len(tokens)} tokens failed") from exc

        outcomes: list[DeliveryOutcome] = []
        for token, send_response in zip(tokens, response.responses):
            if send_response.success:
                outcomes.append(DeliveryOutcome(token=token, success=True))
                continue
            outcomes.append(
                DeliveryOutcome(
                    token=token,
                    success=False,
                    failure=_failure_from_exception(send_response.exception),
                )
            )
        return outcomes


class DisabledPushGateway:
    def send_multicast(
        self,
        tokens: Sequence[str],
        title: str,
        body: str,
        data: dict[str, str],
    ) -> list[DeliveryOutcome]:
        raise PushGatewayError("Push delivery is disabled")


def create_push_gateway(settings: Settings) -> PushGateway:
    provider = (settings.push_provider or "fcm").lower()
    if provider == "none":
        logger.info("push_gateway: provider=none, alerts will not be delivered")
        return DisabledPushGateway()
    if provider != "fcm":
        raise ValueError(f"Unsupported push provider: {provider}")
    return FirebasePushGateway.from_settings(settings)
