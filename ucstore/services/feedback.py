from __future__ import annotations
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..auth import Requester, require_role
from ..errors import ConflictError, NotFound, ValidationError
from ..helpers import clean, is_valid_email
from ..model.domain import (
    INQUIRY_REPLIED, ROLE_ADMIN, inquiry_to_api, suggestion_to_api,
)
from .notices import Notices, require_notices

log = logging.getLogger(__name__)


def _required(fields: Mapping[str, Any],
              names: Tuple[str, ...]) -> Dict[str, str]:
    out = {n: clean(fields.get(n)) for n in names}
    missing = [n for n, v in out.items() if v is None]
    if missing:
        raise ValidationError(
            f"missing required fields: {', '.join(missing)}"
        )
    return out


# ----------------------------
# Public submissions
# ----------------------------
async def create_inquiry(store, fields: Mapping[str, Any],
                         notices: Optional[Notices] = None
                         ) -> Dict[str, Any]:
    values = _required(fields, ("name", "email", "message"))
    if not is_valid_email(values["email"]):
        raise ValidationError("email must be a valid email address")
    row = await store.insert_inquiry(values)
    if notices is not None:
        notices.announce_inquiry(row)
    return inquiry_to_api(row)


async def create_suggestion(store, fields: Mapping[str, Any],
                            notices: Optional[Notices] = None
                            ) -> Dict[str, Any]:
    values = _required(fields, ("name", "contact", "message"))
    row = await store.insert_suggestion(values)
    if notices is not None:
        notices.announce_suggestion(row)
    return suggestion_to_api(row)


# ----------------------------
# Moderation
# ----------------------------
async def list_inquiries(store,
                         requester: Requester) -> List[Dict[str, Any]]:
    require_role(requester, ROLE_ADMIN)
    return [inquiry_to_api(r) for r in await store.list_inquiries()]


async def list_suggestions(store,
                           requester: Requester) -> List[Dict[str, Any]]:
    require_role(requester, ROLE_ADMIN)
    return [suggestion_to_api(r) for r in await store.list_suggestions()]


async def delete_inquiry(store, inquiry_id, requester: Requester) -> None:
    require_role(requester, ROLE_ADMIN)
    if not await store.delete_inquiry(inquiry_id):
        raise NotFound("inquiry not found")


async def delete_suggestion(store, suggestion_id,
                            requester: Requester) -> None:
    require_role(requester, ROLE_ADMIN)
    if not await store.delete_suggestion(suggestion_id):
        raise NotFound("suggestion not found")


async def reply_inquiry(store, notices: Optional[Notices], inquiry_id,
                        reply: Any, requester: Requester) -> Dict[str, Any]:
    """Mail the customer, then mark the inquiry replied.

    The status only changes once the mail went out; a NotificationError
    leaves the inquiry pending. An inquiry is answered at most once.
    """
    require_role(requester, ROLE_ADMIN)
    reply = clean(reply)
    if reply is None:
        raise ValidationError("reply is required")
    inquiry = await store.get_inquiry(inquiry_id)
    if inquiry is None:
        raise NotFound("inquiry not found")
    if inquiry["status"] == INQUIRY_REPLIED:
        raise ConflictError("inquiry was already replied to")

    await require_notices(notices).reply_to_customer(
        inquiry["email"], inquiry["message"], reply
    )

    if not await store.mark_inquiry_replied(inquiry_id, reply):
        # deleted or answered by another admin while the mail was in flight
        if await store.get_inquiry(inquiry_id) is None:
            raise NotFound("inquiry not found")
        raise ConflictError("inquiry was already replied to")
    log.info("inquiry %s replied by %s", inquiry_id, requester.subject_id)
    return inquiry_to_api(dict(inquiry, status=INQUIRY_REPLIED, reply=reply))


async def send_message(notices: Optional[Notices], fields: Mapping[str, Any],
                       requester: Requester) -> None:
    require_role(requester, ROLE_ADMIN)
    values = _required(fields, ("email", "subject", "message"))
    if not is_valid_email(values["email"]):
        raise ValidationError("email must be a valid email address")
    await require_notices(notices).direct_message(
        values["email"], values["subject"], values["message"]
    )
