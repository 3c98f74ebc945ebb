"""Auth gate.

Two interchangeable strategies, one picked at startup:

* ``SessionAuth`` - a single configured admin; a signed session cookie
  carries ``admin_user`` once the pair matched. No user accounts.
* ``TokenAuth`` - user and admin accounts stored with bcrypt hashes; login
  returns a signed, time-limited JWT carrying ``sub`` and ``role``.

Every protected operation calls ``require_role`` before touching storage.
"""
from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import bcrypt
import jwt
from fastapi import Request

from .errors import Forbidden, NotFound, Unauthenticated, ValidationError
from .helpers import ct_equal, now_ts
from .model.domain import ROLE_ADMIN, ROLE_USER

log = logging.getLogger(__name__)

SCHEME_SESSION = "session"
SCHEME_TOKEN = "token"

# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72


@dataclass(frozen=True)
class Requester:
    subject_id: Optional[str]
    role: Optional[str]
    scheme: str

    @property
    def authenticated(self) -> bool:
        return self.subject_id is not None

    @property
    def is_admin(self) -> bool:
        return self.authenticated and self.role == ROLE_ADMIN


def anonymous(scheme: str) -> Requester:
    return Requester(subject_id=None, role=None, scheme=scheme)


def require_role(ctx: Requester, role: str) -> None:
    # admin satisfies every role
    if not ctx.authenticated and ctx.scheme == SCHEME_TOKEN:
        raise Unauthenticated("authentication required")
    if ctx.role == ROLE_ADMIN or (ctx.authenticated and ctx.role == role):
        return
    raise Forbidden("not authorized")


# ----------------------------
# Password hashing
# ----------------------------
def hash_password(password: str) -> str:
    raw = password.encode()
    if len(raw) > MAX_PASSWORD_BYTES:
        raise ValidationError(
            f"password must be at most {MAX_PASSWORD_BYTES} bytes"
        )
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode()


def check_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        # over-long input or a malformed stored hash
        return False


# checked against when the username doesn't exist, so a miss costs the
# same as a wrong password
_DUMMY_HASH = bcrypt.hashpw(b"not-a-password", bcrypt.gensalt()).decode()


# ----------------------------
# Credential stores
# ----------------------------
@dataclass(frozen=True)
class Identity:
    subject_id: str
    username: str
    role: str


class CredentialStore(ABC):
    @abstractmethod
    async def verify(self, username: str,
                     password: str) -> Optional[Identity]: ...

    @abstractmethod
    async def rotate(self, username: str, new_password: str) -> None: ...


class ConfiguredCredentialStore(CredentialStore):
    """The single admin pair handed in from configuration.

    Only the bcrypt hash is kept; ``rotate`` swaps it in memory, the
    configuration source itself is never rewritten.
    """

    def __init__(self, username: str, password: str) -> None:
        self._username = username
        self._hash = hash_password(password)

    async def verify(self, username: str,
                     password: str) -> Optional[Identity]:
        ok_user = ct_equal(username.strip(), self._username)
        ok_pass = check_password(password, self._hash)
        if ok_user and ok_pass:
            return Identity(self._username, self._username, ROLE_ADMIN)
        return None

    async def rotate(self, username: str, new_password: str) -> None:
        if not ct_equal(username, self._username):
            raise NotFound("unknown account")
        self._hash = hash_password(new_password)


class UserCredentialStore(CredentialStore):
    def __init__(self, store) -> None:
        self.store = store

    async def verify(self, username: str,
                     password: str) -> Optional[Identity]:
        user = await self.store.get_user_by_username(username.strip())
        if user is None:
            check_password(password, _DUMMY_HASH)
            return None
        if not check_password(password, user["password_hash"]):
            return None
        return Identity(str(user["id"]), user["username"], user["role"])

    async def rotate(self, username: str, new_password: str) -> None:
        user = await self.store.get_user_by_username(username)
        if user is None:
            raise NotFound("unknown account")
        await self.store.set_user_password(
            user["id"], hash_password(new_password)
        )


async def ensure_admin_user(store, username: str, password: str) -> bool:
    """Seed the configured admin as an account (token backend)."""
    if await store.get_user_by_username(username) is not None:
        return False
    await store.insert_user(username, hash_password(password), ROLE_ADMIN)
    return True


# ----------------------------
# Strategies
# ----------------------------
class AuthStrategy(ABC):
    scheme: str

    @abstractmethod
    def resolve(self, request: Request) -> Requester: ...

    @abstractmethod
    async def login(self, request: Request, credentials: CredentialStore,
                    username: str, password: str,
                    role: Optional[str] = None) -> Dict[str, Any]: ...

    @abstractmethod
    def logout(self, request: Request) -> None: ...


class SessionAuth(AuthStrategy):
    scheme = SCHEME_SESSION

    def resolve(self, request: Request) -> Requester:
        admin_user = request.session.get("admin_user")
        if not admin_user:
            return anonymous(self.scheme)
        return Requester(admin_user, ROLE_ADMIN, self.scheme)

    async def login(self, request, credentials, username, password,
                    role=None):
        if role == ROLE_USER:
            raise ValidationError("user accounts are not enabled")
        identity = await credentials.verify(username, password)
        if identity is None:
            log.info("admin login failed for %r", username)
            raise Unauthenticated("invalid credentials")
        request.session["admin_user"] = identity.username
        return {"role": identity.role}

    def logout(self, request: Request) -> None:
        request.session.clear()


class TokenAuth(AuthStrategy):
    scheme = SCHEME_TOKEN

    def __init__(self, secret: str, ttl_seconds: int,
                 algorithm: str = "HS256") -> None:
        self.secret = secret
        self.ttl = ttl_seconds
        self.algorithm = algorithm

    def issue(self, identity: Identity) -> str:
        now = int(now_ts())
        return jwt.encode(
            {
                "sub": identity.subject_id,
                "role": identity.role,
                "iat": now,
                "exp": now + self.ttl,
            },
            self.secret,
            algorithm=self.algorithm,
        )

    def decode(self, token: str) -> Requester:
        try:
            claims = jwt.decode(
                token, self.secret, algorithms=[self.algorithm],
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            raise Forbidden("token expired")
        except jwt.InvalidTokenError:
            raise Forbidden("invalid token")
        role = claims.get("role")
        if role not in (ROLE_USER, ROLE_ADMIN):
            raise Forbidden("invalid token")
        return Requester(str(claims["sub"]), role, self.scheme)

    def resolve(self, request: Request) -> Requester:
        header = request.headers.get("authorization")
        if not header:
            return anonymous(self.scheme)
        kind, _, token = header.partition(" ")
        if kind.lower() != "bearer" or not token.strip():
            raise Unauthenticated("malformed authorization header")
        return self.decode(token.strip())

    async def login(self, request, credentials, username, password,
                    role=None):
        identity = await credentials.verify(username, password)
        if identity is None:
            log.info("login failed for %r", username)
            raise Unauthenticated("invalid credentials")
        if role is not None and identity.role != role:
            raise Forbidden("not authorized")
        return {"token": self.issue(identity), "role": identity.role}

    def logout(self, request: Request) -> None:
        # stateless: the client drops its token
        return None
