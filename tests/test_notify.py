import asyncio
import json

import httpx
import pytest

from ucstore.errors import NotificationError
from ucstore.notify import (
    CHANNEL_EMAIL, CHANNEL_TELEGRAM, Channel, EmailChannel, Notification,
    NotificationDispatcher, Notifier, NullChannel, TelegramChannel, render,
)

from .conftest import RecordingChannel


def _intent(channel=CHANNEL_EMAIL, **ctx):
    context = {"subject": "Hello", "message": "hi", "store_name": "Shop"}
    context.update(ctx)
    return Notification(channel, "to@example.com", "Hello",
                        "direct_message.html", context)


class SlowChannel(Channel):
    name = CHANNEL_EMAIL

    async def send(self, intent, body):
        await asyncio.sleep(5)


def test_render_escapes_user_text():
    body = render(_intent(message="<script>x</script>"))
    assert "<script>" not in body
    assert "&lt;script&gt;" in body
    assert "مع تحيات فريق Shop" in body


def test_email_message_shape():
    channel = EmailChannel(host="smtp.example.com", port=587,
                           username="shop@example.com", password="pw",
                           sender_name="Shop")
    msg = channel.build(_intent(), "<p>hi</p>")
    assert msg["To"] == "to@example.com"
    assert msg["Subject"] == "Hello"
    assert "shop@example.com" in msg["From"]
    assert msg.get_content_type() == "text/html"


async def test_notifier_delivers_rendered_body():
    channel = RecordingChannel(CHANNEL_EMAIL)
    await Notifier({CHANNEL_EMAIL: channel}).send(_intent())
    [(intent, body)] = channel.sent
    assert intent.to == "to@example.com"
    assert "hi" in body


async def test_notifier_failures_become_notification_errors():
    failing = Notifier({CHANNEL_EMAIL: RecordingChannel(CHANNEL_EMAIL,
                                                        fail=True)})
    with pytest.raises(NotificationError):
        await failing.send(_intent())

    with pytest.raises(NotificationError, match="no channel"):
        await Notifier({}).send(_intent())

    slow = Notifier({CHANNEL_EMAIL: SlowChannel()}, timeout=0.05)
    with pytest.raises(NotificationError, match="timed out"):
        await slow.send(_intent())


async def test_null_channel_drops_quietly():
    await Notifier({CHANNEL_EMAIL: NullChannel(CHANNEL_EMAIL)}).send(_intent())


async def test_telegram_channel_posts_send_message():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True, "result": {}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) \
            as http:
        channel = TelegramChannel(bot_token="123:abc", http=http)
        await Notifier({CHANNEL_TELEGRAM: channel}).send(
            _intent(CHANNEL_TELEGRAM)
        )

    [request] = seen
    assert request.url.host == "api.telegram.org"
    assert request.url.path.endswith("/sendMessage")
    assert "bot123" in request.url.path
    payload = json.loads(request.content)
    assert payload["chat_id"] == "to@example.com"
    assert payload["parse_mode"] == "HTML"


async def test_telegram_rejection_is_a_failure():
    def handler(request):
        return httpx.Response(200, json={"ok": False,
                                         "description": "chat not found"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) \
            as http:
        notifier = Notifier({
            CHANNEL_TELEGRAM: TelegramChannel(bot_token="t", http=http)
        })
        with pytest.raises(NotificationError):
            await notifier.send(_intent(CHANNEL_TELEGRAM))


async def test_dispatcher_keeps_going_after_a_failure():
    good = RecordingChannel(CHANNEL_EMAIL)
    bad = RecordingChannel(CHANNEL_TELEGRAM, fail=True)
    dispatcher = NotificationDispatcher(
        Notifier({CHANNEL_EMAIL: good, CHANNEL_TELEGRAM: bad})
    )
    dispatcher.start()
    assert dispatcher.running

    dispatcher.emit(_intent(CHANNEL_TELEGRAM))
    dispatcher.emit(_intent())
    await dispatcher.drain()

    assert len(good.sent) == 1
    assert len(dispatcher.failed) == 1
    await dispatcher.stop()
    assert not dispatcher.running


async def test_stop_delivers_what_is_queued():
    channel = RecordingChannel(CHANNEL_EMAIL)
    dispatcher = NotificationDispatcher(Notifier({CHANNEL_EMAIL: channel}))
    dispatcher.start()
    for _ in range(3):
        dispatcher.emit(_intent())
    await dispatcher.stop()
    assert len(channel.sent) == 3
