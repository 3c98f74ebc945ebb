from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from ..errors import NotificationError
from ..notify import (
    CHANNEL_EMAIL, CHANNEL_TELEGRAM, Notification, NotificationDispatcher,
    Notifier,
)

log = logging.getLogger(__name__)


class Notices:
    """What the store tells people, and through which path.

    Admin announcements go through the dispatcher and never block or fail
    the request. Customer-facing mail is sent directly so the caller learns
    whether it went out.
    """

    def __init__(self, notifier: Notifier,
                 dispatcher: Optional[NotificationDispatcher] = None, *,
                 admin_email: str = "", store_name: str = "",
                 order_channel: str = "", chat_id: str = "") -> None:
        self.notifier = notifier
        self.dispatcher = dispatcher
        self.admin_email = admin_email
        self.store_name = store_name
        self.order_channel = order_channel
        self.chat_id = chat_id

    def _emit(self, intent: Notification) -> None:
        if self.dispatcher is None:
            log.debug("no dispatcher; dropping %s", intent.template)
            return
        if not intent.to:
            log.warning("no recipient for %s; not sent", intent.template)
            return
        self.dispatcher.emit(intent)

    def _ctx(self, **kw: Any) -> Dict[str, Any]:
        return dict(kw, store_name=self.store_name)

    # ---- admin-addressed, fire-and-forget
    def announce_inquiry(self, inquiry: Dict[str, Any]) -> None:
        self._emit(Notification(
            CHANNEL_EMAIL, self.admin_email, "استفسار جديد من العميل",
            "admin_inquiry.html",
            self._ctx(name=inquiry.get("name"), email=inquiry["email"],
                      message=inquiry["message"]),
        ))

    def announce_suggestion(self, suggestion: Dict[str, Any]) -> None:
        self._emit(Notification(
            CHANNEL_EMAIL, self.admin_email, "اقتراح جديد للموقع",
            "admin_suggestion.html",
            self._ctx(name=suggestion["name"], contact=suggestion["contact"],
                      message=suggestion["message"]),
        ))

    def announce_order(self, order: Dict[str, Any]) -> None:
        """``order`` is the wire shape. Off unless an order channel is set."""
        if self.order_channel == CHANNEL_TELEGRAM:
            self._emit(Notification(
                CHANNEL_TELEGRAM, self.chat_id, f"order {order['id']}",
                "new_order_chat.html", self._ctx(order=order),
            ))
        elif self.order_channel == CHANNEL_EMAIL:
            self._emit(Notification(
                CHANNEL_EMAIL, self.admin_email, f"طلب جديد #{order['id']}",
                "new_order.html", self._ctx(order=order),
            ))

    # ---- customer-addressed, synchronous
    async def reply_to_customer(self, email: str, message: str,
                                reply: str) -> None:
        await self.notifier.send(Notification(
            CHANNEL_EMAIL, email, f"رد على استفسارك من {self.store_name}",
            "inquiry_reply.html",
            self._ctx(message=message, reply=reply),
        ))

    async def direct_message(self, email: str, subject: str,
                             message: str) -> None:
        await self.notifier.send(Notification(
            CHANNEL_EMAIL, email, subject, "direct_message.html",
            self._ctx(subject=subject, message=message),
        ))


def require_notices(notices: Optional[Notices]) -> Notices:
    if notices is None:
        raise NotificationError("notifications are not configured")
    return notices
