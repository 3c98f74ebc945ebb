import pytest

from ucstore.auth import (
    ConfiguredCredentialStore, Requester, UserCredentialStore,
    ensure_admin_user,
)
from ucstore.errors import Forbidden, ValidationError
from ucstore.model.domain import ROLE_ADMIN
from ucstore.services import accounts

from .conftest import ALICE, SESSION_ADMIN, SESSION_ANON


async def test_register_user(store):
    user = await accounts.register_user(
        store, {"username": "sara_1", "password": "pw-123456"}
    )
    assert user["username"] == "sara_1"
    assert user["role"] == "user"
    assert "password_hash" not in user
    stored = await store.get_user_by_username("sara_1")
    assert stored["password_hash"] != "pw-123456"

    with pytest.raises(ValidationError, match="taken"):
        await accounts.register_user(
            store, {"username": "sara_1", "password": "another-pw"}
        )


@pytest.mark.parametrize("fields", [
    {"username": "ab", "password": "pw-123456"},
    {"username": "has space", "password": "pw-123456"},
    {"username": "sara", "password": "short"},
    {"password": "pw-123456"},
])
async def test_register_rejects(store, fields):
    with pytest.raises(ValidationError):
        await accounts.register_user(store, fields)


async def test_change_configured_password():
    creds = ConfiguredCredentialStore("admin", "old-password")
    with pytest.raises(Forbidden):
        await accounts.change_password(
            None, creds, SESSION_ANON,
            {"currentPassword": "old-password", "newPassword": "new-pass"},
        )
    with pytest.raises(Forbidden):
        await accounts.change_password(
            None, creds, SESSION_ADMIN,
            {"currentPassword": "wrong", "newPassword": "new-pass"},
        )
    with pytest.raises(ValidationError):
        await accounts.change_password(
            None, creds, SESSION_ADMIN,
            {"currentPassword": "old-password", "newPassword": "x"},
        )

    await accounts.change_password(
        None, creds, SESSION_ADMIN,
        {"currentPassword": "old-password", "newPassword": "new-pass"},
    )
    assert await creds.verify("admin", "new-pass") is not None


async def test_change_account_password(store):
    await ensure_admin_user(store, "boss", "first-pass")
    boss = await store.get_user_by_username("boss")
    requester = Requester(str(boss["id"]), ROLE_ADMIN, "token")
    creds = UserCredentialStore(store)

    with pytest.raises(Forbidden):
        await accounts.change_password(
            store, creds, ALICE,
            {"currentPassword": "first-pass", "newPassword": "second-pass"},
        )
    await accounts.change_password(
        store, creds, requester,
        {"currentPassword": "first-pass", "newPassword": "second-pass"},
    )
    assert await creds.verify("boss", "second-pass") is not None
