"""
Customer notifications.

Sending is decoupled from provisioning: `NotificationQueue.enqueue` schedules
delivery on the event loop and returns immediately, so a slow or failing mail
relay never holds a database transaction open or aborts an issuance.
Delivery failures are logged as `notification_failed` and go no further.
"""

from __future__ import annotations
import asyncio
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Set

import httpx

from .config import Settings
from .errors import ExternalServiceError
from .helpers import from_cents
from .infra.log import get_logger

log = get_logger("notify")


@dataclass(frozen=True)
class Notification:
    kind: str
    to_email: str
    to_name: Optional[str]
    subject: str
    body: str
    context: Dict[str, Any] = field(default_factory=dict)


class Notifier(ABC):
    @abstractmethod
    async def send(self, message: Notification) -> None: ...


class LogNotifier(Notifier):
    """Used when no relay is configured: the message only goes to the log."""

    async def send(self, message: Notification) -> None:
        log.info(
            "notification_logged",
            kind=message.kind,
            to=message.to_email,
            subject=message.subject,
        )


class HttpNotifier(Notifier):
    """POSTs each message as JSON to a mail relay."""

    def __init__(self, url: str, client: httpx.AsyncClient) -> None:
        self.url = url
        self.client = client

    async def send(self, message: Notification) -> None:
        try:
            r = await self.client.post(self.url, json=asdict(message))
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError(
                f"relay rejected {message.kind}: {e}", kind=message.kind
            ) from e
        log.info("notification_sent", kind=message.kind, to=message.to_email)


def build_notifier(settings: Settings,
                   client: Optional[httpx.AsyncClient]) -> Notifier:
    if settings.notify_url and client is not None:
        return HttpNotifier(settings.notify_url, client)
    return LogNotifier()


class NotificationQueue:
    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def enqueue(self, message: Notification) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, message: Notification) -> None:
        try:
            await self.notifier.send(message)
        except ExternalServiceError as e:
            log.error(
                "notification_failed",
                kind=message.kind,
                to=message.to_email,
                error=e.message,
            )
        except Exception:
            # a broken notifier must not surface as an unretrieved task error
            log.exception(
                "notification_failed", kind=message.kind, to=message.to_email
            )

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks))


# ----------------------------
# Messages
# ----------------------------
def code_issued_message(*, code: str, plan_name: str, amount_cents: int | None,
                        to_email: str, to_name: str | None,
                        settings: Settings) -> Notification:
    creation_url = f"{settings.public_url}/activate/{code}"
    amount = from_cents(amount_cents)
    body = (
        f"Hello {to_name or ''}!\n\n"
        f"Your payment was confirmed. Your activation code is:\n\n"
        f"    {code}\n\n"
        f"Plan: {plan_name}\n"
        + (f"Amount: {settings.currency.upper()} {amount}\n" if amount else "")
        + f"\nCreate your digital card here: {creation_url}\n"
    )
    return Notification(
        kind="code_issued",
        to_email=to_email,
        to_name=to_name,
        subject="Your digital card activation code",
        body=body,
        context={"code": code, "creation_url": creation_url},
    )


def pix_instructions_message(*, payment_id: str, pix_code: str,
                             amount_cents: int, to_email: str,
                             to_name: str | None,
                             settings: Settings) -> Notification:
    minutes = settings.pix_ttl_seconds // 60
    body = (
        f"Hello {to_name or ''}!\n\n"
        f"Amount: {settings.currency.upper()} {from_cents(amount_cents)}\n"
        f"PIX key: {settings.pix_key}\n"
        f"Payment ID: {payment_id}\n\n"
        f"PIX code (copy and paste in your bank app):\n{pix_code}\n\n"
        f"This PIX expires in {minutes} minutes. Once it is confirmed you "
        f"will receive your activation code.\n"
    )
    return Notification(
        kind="pix_instructions",
        to_email=to_email,
        to_name=to_name,
        subject="PIX payment instructions",
        body=body,
        context={"payment_id": payment_id},
    )
