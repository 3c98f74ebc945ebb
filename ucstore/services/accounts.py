from __future__ import annotations
import logging
import re
from typing import Any, Dict, Mapping

from ..auth import (
    SCHEME_TOKEN, CredentialStore, Requester, hash_password, require_role,
)
from ..errors import Forbidden, NotFound, ValidationError
from ..helpers import clean
from ..model.domain import ROLE_ADMIN, ROLE_USER

log = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,32}$")
MIN_PASSWORD_LEN = 6


def _check_password(password: Any, field: str = "password") -> str:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LEN:
        raise ValidationError(
            f"{field} must be at least {MIN_PASSWORD_LEN} characters"
        )
    return password


async def register_user(store, fields: Mapping[str, Any]) -> Dict[str, Any]:
    username = clean(fields.get("username"))
    if username is None or not USERNAME_RE.match(username):
        raise ValidationError(
            "username must be 3-32 letters, digits, '.', '_' or '-'"
        )
    password = _check_password(fields.get("password"))
    # the insert enforces uniqueness; this only gives a nicer error
    if await store.get_user_by_username(username) is not None:
        raise ValidationError("username is already taken")
    user = await store.insert_user(
        username, hash_password(password), ROLE_USER
    )
    log.info("registered user %s", user["id"])
    return {"id": user["id"], "username": user["username"],
            "role": user["role"]}


async def change_password(store, credentials: CredentialStore,
                          requester: Requester,
                          fields: Mapping[str, Any]) -> None:
    """Rotate the caller's own admin password after re-checking it."""
    require_role(requester, ROLE_ADMIN)
    current = fields.get("currentPassword")
    new = _check_password(fields.get("newPassword"), "newPassword")
    if not isinstance(current, str) or not current:
        raise ValidationError("currentPassword is required")

    if requester.scheme == SCHEME_TOKEN:
        user = await store.get_user(requester.subject_id)
        if user is None:
            raise NotFound("unknown account")
        username = user["username"]
    else:
        username = requester.subject_id

    if await credentials.verify(username, current) is None:
        raise Forbidden("current password is incorrect")
    await credentials.rotate(username, new)
    log.info("password rotated for %s", username)
