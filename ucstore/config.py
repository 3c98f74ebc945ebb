from __future__ import annotations
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional

from .errors import ConfigError

STORE_BACKENDS = ("sql", "redis")
AUTH_BACKENDS = ("session", "token")
PRODUCT_RESOLUTIONS = ("inline", "reference")
ORDER_NOTIFY_CHANNELS = ("", "email", "telegram")


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _choice(name: str, value: str, allowed: tuple) -> str:
    value = value.strip().lower()
    if value not in allowed:
        raise ConfigError(
            f"{name} must be one of {', '.join(repr(a) for a in allowed)}, "
            f"got {value!r}"
        )
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./data.db"
    store_backend: str = "sql"
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_connections: int = 64

    auth_backend: str = "session"
    product_resolution: str = "inline"

    session_secret: str = "dev-secret-change-me"
    token_secret: str = ""
    token_ttl_seconds: int = 24 * 3600
    session_max_age: int = 24 * 3600
    admin_username: str = "admin"
    admin_password: str = field(default="supasecret", repr=False)

    admin_email: str = ""
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = field(default="", repr=False)
    smtp_starttls: bool = True
    telegram_bot_token: str = field(default="", repr=False)
    telegram_chat_id: str = ""
    notify_on_order: str = ""
    notify_timeout: float = 5.0

    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: int = 0

    strict_status_transitions: bool = False
    upload_dir: str = "./uploads"
    store_name: str = "7ODA STORE"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        # normalize / validate enumerated values once, at startup
        object.__setattr__(self, "store_backend", _choice(
            "STORE_BACKEND", self.store_backend, STORE_BACKENDS))
        object.__setattr__(self, "auth_backend", _choice(
            "AUTH_BACKEND", self.auth_backend, AUTH_BACKENDS))
        object.__setattr__(self, "product_resolution", _choice(
            "PRODUCT_RESOLUTION", self.product_resolution,
            PRODUCT_RESOLUTIONS))
        object.__setattr__(self, "notify_on_order", _choice(
            "NOTIFY_ON_ORDER", self.notify_on_order, ORDER_NOTIFY_CHANNELS))
        if not self.token_secret:
            object.__setattr__(self, "token_secret", self.session_secret)
        if not self.admin_email:
            object.__setattr__(self, "admin_email", self.smtp_user)

    @property
    def token_auth(self) -> bool:
        return self.auth_backend == "token"

    def with_overrides(self, **kw) -> "Settings":
        return replace(self, **kw)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        try:
            return cls(
                database_url=env.get("DATABASE_URL", cls.database_url),
                store_backend=env.get("STORE_BACKEND", cls.store_backend),
                redis_url=env.get("REDIS_URL", cls.redis_url),
                db_pool_size=int(env.get("DB_POOL_SIZE", cls.db_pool_size)),
                db_max_overflow=int(
                    env.get("DB_MAX_OVERFLOW", cls.db_max_overflow)),
                db_pool_timeout=int(
                    env.get("DB_POOL_TIMEOUT", cls.db_pool_timeout)),
                db_gate_limit=int(env.get("DB_GATE_LIMIT", cls.db_gate_limit)),
                redis_max_connections=int(
                    env.get("REDIS_MAX_CONN", cls.redis_max_connections)),
                auth_backend=env.get("AUTH_BACKEND", cls.auth_backend),
                product_resolution=env.get(
                    "PRODUCT_RESOLUTION", cls.product_resolution),
                session_secret=env.get("SESSION_SECRET", cls.session_secret),
                token_secret=env.get("TOKEN_SECRET", ""),
                token_ttl_seconds=int(
                    env.get("TOKEN_TTL_SECONDS", cls.token_ttl_seconds)),
                admin_username=env.get("ADMIN_USERNAME", cls.admin_username),
                admin_password=env.get("ADMIN_PASSWORD", cls.admin_password),
                admin_email=env.get("ADMIN_EMAIL", ""),
                smtp_host=env.get("SMTP_HOST", cls.smtp_host),
                smtp_port=int(env.get("SMTP_PORT", cls.smtp_port)),
                smtp_user=env.get("SMTP_USER", ""),
                smtp_password=env.get("SMTP_PASS", ""),
                smtp_starttls=_flag(env.get("SMTP_STARTTLS", "1")),
                telegram_bot_token=env.get("TELEGRAM_BOT_TOKEN", ""),
                telegram_chat_id=env.get("TELEGRAM_CHAT_ID", ""),
                notify_on_order=env.get("NOTIFY_ON_ORDER", ""),
                notify_timeout=float(
                    env.get("NOTIFY_TIMEOUT", cls.notify_timeout)),
                strict_status_transitions=_flag(
                    env.get("STRICT_STATUS_TRANSITIONS")),
                upload_dir=env.get("UPLOAD_DIR", cls.upload_dir),
                store_name=env.get("STORE_NAME", cls.store_name),
                log_level=env.get("LOG_LEVEL", cls.log_level),
            )
        except ValueError as exc:
            # int()/float() on a malformed number
            raise ConfigError(f"invalid configuration: {exc}") from exc


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
