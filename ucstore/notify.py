from __future__ import annotations
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.message import EmailMessage
from collections import deque
from typing import Any, Deque, Dict, Optional

import aiosmtplib
import httpx
from jinja2 import Environment, PackageLoader, select_autoescape

from .errors import NotificationError

log = logging.getLogger(__name__)

CHANNEL_EMAIL = "email"
CHANNEL_TELEGRAM = "telegram"

TELEGRAM_API = "https://api.telegram.org"

_templates = Environment(
    loader=PackageLoader("ucstore", "templates"),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


# ----------------------------
# Intents
# ----------------------------
@dataclass(frozen=True)
class Notification:
    channel: str
    to: str
    subject: str
    template: str
    context: Dict[str, Any] = field(default_factory=dict)


def render(intent: Notification) -> str:
    return _templates.get_template(intent.template).render(**intent.context)


# ----------------------------
# Channel Interface
# ----------------------------
class Channel(ABC):
    name: str

    @abstractmethod
    async def send(self, intent: Notification, body: str) -> None: ...


class EmailChannel(Channel):
    name = CHANNEL_EMAIL

    def __init__(self, *, host: str, port: int, username: str,
                 password: str, sender_name: str, start_tls: bool = True,
                 timeout: float = 5.0) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender_name = sender_name
        self.start_tls = start_tls
        self.timeout = timeout

    def build(self, intent: Notification, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = f'"{self.sender_name}" <{self.username}>'
        msg["To"] = intent.to
        msg["Subject"] = intent.subject
        msg.set_content(body, subtype="html")
        return msg

    async def send(self, intent: Notification, body: str) -> None:
        await aiosmtplib.send(
            self.build(intent, body),
            hostname=self.host,
            port=self.port,
            username=self.username or None,
            password=self.password or None,
            start_tls=self.start_tls,
            timeout=self.timeout,
        )


class TelegramChannel(Channel):
    name = CHANNEL_TELEGRAM

    def __init__(self, *, bot_token: str, http: httpx.AsyncClient) -> None:
        self.bot_token = bot_token
        self.http = http

    async def send(self, intent: Notification, body: str) -> None:
        r = await self.http.post(
            f"{TELEGRAM_API}/bot{self.bot_token}/sendMessage",
            json={"chat_id": intent.to, "text": body, "parse_mode": "HTML"},
        )
        r.raise_for_status()
        payload = r.json()
        if not payload.get("ok", False):
            raise RuntimeError(
                f"telegram rejected message: {payload.get('description')}"
            )


class NullChannel(Channel):
    """A channel that isn't configured: log and drop."""

    def __init__(self, name: str) -> None:
        self.name = name

    async def send(self, intent: Notification, body: str) -> None:
        log.info("channel %s disabled; dropping %r to %s",
                 self.name, intent.subject, intent.to)


# ----------------------------
# Delivery
# ----------------------------
class Notifier:
    """Direct, bounded delivery. Every failure surfaces as
    NotificationError."""

    def __init__(self, channels: Dict[str, Channel],
                 timeout: float = 5.0) -> None:
        self.channels = channels
        self.timeout = timeout

    async def send(self, intent: Notification) -> None:
        channel = self.channels.get(intent.channel)
        if channel is None:
            raise NotificationError(f"no channel {intent.channel!r}")
        try:
            body = render(intent)
            await asyncio.wait_for(
                channel.send(intent, body), timeout=self.timeout
            )
        except NotificationError:
            raise
        except asyncio.TimeoutError as exc:
            log.warning("%s delivery timed out after %.1fs (%s)",
                        intent.channel, self.timeout, intent.template)
            raise NotificationError("notification timed out") from exc
        except Exception as exc:
            log.warning("%s delivery failed (%s): %s",
                        intent.channel, intent.template, exc)
            raise NotificationError("notification could not be sent") from exc


class NotificationDispatcher:
    """Fire-and-forget boundary between request handling and delivery.

    ``emit`` only enqueues; a single worker task delivers through the
    Notifier. A failed delivery is logged and dropped, never retried.
    """

    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier
        self._queue: asyncio.Queue[Notification] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        # most recent undelivered intents, for inspection
        self.failed: Deque[Notification] = deque(maxlen=100)

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if not self.running:
            self._worker = asyncio.create_task(self._run())

    def emit(self, intent: Notification) -> None:
        self._queue.put_nowait(intent)

    async def _run(self) -> None:
        while True:
            intent = await self._queue.get()
            try:
                await self.notifier.send(intent)
            except NotificationError:
                self.failed.append(intent)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        if self._worker is None:
            return
        if self.running:
            await self.drain()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
