from __future__ import annotations
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import httpx
import redis.asyncio as redis
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.datastructures import UploadFile
from starlette.middleware.sessions import SessionMiddleware

from .auth import (
    AuthStrategy, ConfiguredCredentialStore, CredentialStore, Requester,
    SessionAuth, TokenAuth, UserCredentialStore, ensure_admin_user,
    require_role,
)
from .config import Settings, configure_logging
from .errors import NotFound, StoreError, ValidationError
from .infra.sql import make_async_engine
from .model.domain import CATEGORY_UC, ROLE_ADMIN, ROLE_USER, uc_option_to_api
from .model.store import Store, create_schema, new_store
from .notify import (
    CHANNEL_EMAIL, CHANNEL_TELEGRAM, Channel, EmailChannel,
    NotificationDispatcher, Notifier, NullChannel, TelegramChannel,
)
from .services import accounts, catalog, feedback, orders
from .services.notices import Notices
from .uploads import URL_PREFIX, remove_attachment, save_attachment

log = logging.getLogger(__name__)

router = APIRouter()


def ok(data: Any = None, message: Optional[str] = None,
       **extra: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    body.update(extra)
    return body


# ----------------------------
# Dependencies
# ----------------------------
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_store(request: Request) -> AsyncIterator[Store]:
    state = request.app.state
    if state.settings.store_backend == "sql":
        async with state.SessionAsync() as session:
            yield new_store("sql", db=session, gated=state.gated)
    else:
        yield new_store("redis", r=state.redis)


def get_requester(request: Request) -> Requester:
    auth: AuthStrategy = request.app.state.auth
    return auth.resolve(request)


def get_credentials(request: Request,
                    store: Store = Depends(get_store)) -> CredentialStore:
    if request.app.state.settings.token_auth:
        return UserCredentialStore(store)
    return request.app.state.credentials


def get_policy(request: Request) -> orders.OrderPolicy:
    return request.app.state.order_policy


def get_notices(request: Request) -> Optional[Notices]:
    return getattr(request.app.state, "notices", None)


async def json_body(request: Request) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("request body must be JSON")
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    return payload


async def order_submission(
        request: Request) -> Tuple[Dict[str, Any], Optional[UploadFile]]:
    ctype = request.headers.get("content-type", "")
    if ctype.startswith(("multipart/form-data",
                         "application/x-www-form-urlencoded")):
        form = await request.form()
        fields = {k: v for k, v in form.items() if isinstance(v, str)}
        shot = form.get("screenshot")
        if isinstance(shot, UploadFile) and shot.filename:
            return fields, shot
        return fields, None
    return await json_body(request), None


def _id_from(payload: Dict[str, Any], *names: str) -> str:
    for name in names:
        value = payload.get(name)
        if value not in (None, ""):
            return str(value)
    raise ValidationError(f"{names[0]} is required")


# ----------------------------
# Health
# ----------------------------
@router.get("/api/health")
async def health(settings: Settings = Depends(get_settings)):
    return ok({
        "status": "ok",
        "store": settings.store_backend,
        "auth": settings.auth_backend,
        "productResolution": settings.product_resolution,
    })


# ----------------------------
# Auth
# ----------------------------
async def _login(request: Request, credentials: CredentialStore,
                 payload: Dict[str, Any], role: Optional[str]):
    username = payload.get("username")
    password = payload.get("password")
    if not isinstance(username, str) or not isinstance(password, str) \
            or not username.strip() or not password:
        raise ValidationError("username and password are required")
    auth: AuthStrategy = request.app.state.auth
    result = await auth.login(request, credentials, username, password,
                              role=role)
    return ok(message="logged in", **result)


@router.post("/api/login")
async def login(request: Request,
                payload: Dict[str, Any] = Depends(json_body),
                credentials: CredentialStore = Depends(get_credentials)):
    return await _login(request, credentials, payload, None)


@router.post("/api/login-admin")
@router.post("/api/admin/login")
async def login_admin(request: Request,
                      payload: Dict[str, Any] = Depends(json_body),
                      credentials: CredentialStore = Depends(get_credentials)):
    return await _login(request, credentials, payload, ROLE_ADMIN)


@router.post("/api/login-user")
async def login_user(request: Request,
                     payload: Dict[str, Any] = Depends(json_body),
                     credentials: CredentialStore = Depends(get_credentials)):
    return await _login(request, credentials, payload, ROLE_USER)


@router.post("/api/register")
async def register(payload: Dict[str, Any] = Depends(json_body),
                   settings: Settings = Depends(get_settings),
                   store: Store = Depends(get_store)):
    if not settings.token_auth:
        raise NotFound("registration is not enabled")
    user = await accounts.register_user(store, payload)
    return ok(user, message="registered")


@router.post("/api/admin/logout")
@router.post("/api/logout")
async def logout(request: Request):
    request.app.state.auth.logout(request)
    return ok(message="logged out")


@router.post("/api/admin/change-password")
async def change_password(
        payload: Dict[str, Any] = Depends(json_body),
        requester: Requester = Depends(get_requester),
        store: Store = Depends(get_store),
        credentials: CredentialStore = Depends(get_credentials)):
    await accounts.change_password(store, credentials, requester, payload)
    return ok(message="password changed")


# ----------------------------
# Orders
# ----------------------------
@router.post("/api/order")
@router.post("/api/orders")
async def create_order(
        submission=Depends(order_submission),
        requester: Requester = Depends(get_requester),
        settings: Settings = Depends(get_settings),
        policy: orders.OrderPolicy = Depends(get_policy),
        notices: Optional[Notices] = Depends(get_notices),
        store: Store = Depends(get_store)):
    fields, upload = submission
    attachment = None
    if upload is not None:
        attachment = await save_attachment(upload, settings.upload_dir)
    try:
        order = await orders.create_order(
            store, policy, fields, requester,
            attachment=attachment, notices=notices,
        )
    except StoreError:
        remove_attachment(attachment, settings.upload_dir)
        raise
    return ok(order, message="order received", id=order["id"])


@router.get("/api/orders")
@router.get("/api/admin/orders")
async def list_orders(requester: Requester = Depends(get_requester),
                      policy: orders.OrderPolicy = Depends(get_policy),
                      store: Store = Depends(get_store)):
    return ok(await orders.list_orders(store, policy, requester))


@router.get("/api/orders/{order_id}")
async def get_order(order_id: str,
                    requester: Requester = Depends(get_requester),
                    policy: orders.OrderPolicy = Depends(get_policy),
                    store: Store = Depends(get_store)):
    return ok(await orders.get_order(store, policy, order_id, requester))


@router.patch("/api/orders/{order_id}")
@router.post("/api/orders/{order_id}")
async def update_order_status(
        order_id: str,
        payload: Dict[str, Any] = Depends(json_body),
        requester: Requester = Depends(get_requester),
        policy: orders.OrderPolicy = Depends(get_policy),
        store: Store = Depends(get_store)):
    result = await orders.update_status(
        store, policy, order_id, payload.get("status"), requester
    )
    return ok(result, message="order status updated")


@router.post("/api/admin/update-status")
async def admin_update_status(
        payload: Dict[str, Any] = Depends(json_body),
        requester: Requester = Depends(get_requester),
        policy: orders.OrderPolicy = Depends(get_policy),
        store: Store = Depends(get_store)):
    result = await orders.update_status(
        store, policy, _id_from(payload, "id"), payload.get("status"),
        requester,
    )
    return ok(result, message="order status updated")


@router.delete("/api/orders/{order_id}")
async def delete_order(order_id: str,
                       requester: Requester = Depends(get_requester),
                       store: Store = Depends(get_store)):
    await orders.delete_order(store, order_id, requester)
    return ok(message="order deleted")


@router.delete("/api/admin/delete-order")
async def admin_delete_order(payload: Dict[str, Any] = Depends(json_body),
                             requester: Requester = Depends(get_requester),
                             store: Store = Depends(get_store)):
    await orders.delete_order(store, _id_from(payload, "id"), requester)
    return ok(message="order deleted")


# ----------------------------
# Feedback
# ----------------------------
@router.post("/api/inquiry")
async def create_inquiry(payload: Dict[str, Any] = Depends(json_body),
                         notices: Optional[Notices] = Depends(get_notices),
                         store: Store = Depends(get_store)):
    inquiry = await feedback.create_inquiry(store, payload, notices)
    return ok(inquiry, message="inquiry sent", id=inquiry["id"])


@router.post("/api/suggestion")
async def create_suggestion(payload: Dict[str, Any] = Depends(json_body),
                            notices: Optional[Notices] = Depends(get_notices),
                            store: Store = Depends(get_store)):
    suggestion = await feedback.create_suggestion(store, payload, notices)
    return ok(suggestion, message="suggestion sent", id=suggestion["id"])


@router.get("/api/admin/inquiries")
async def list_inquiries(requester: Requester = Depends(get_requester),
                         store: Store = Depends(get_store)):
    return ok(await feedback.list_inquiries(store, requester))


@router.get("/api/admin/suggestions")
async def list_suggestions(requester: Requester = Depends(get_requester),
                           store: Store = Depends(get_store)):
    return ok(await feedback.list_suggestions(store, requester))


@router.delete("/api/admin/inquiries/{inquiry_id}")
async def delete_inquiry(inquiry_id: str,
                         requester: Requester = Depends(get_requester),
                         store: Store = Depends(get_store)):
    await feedback.delete_inquiry(store, inquiry_id, requester)
    return ok(message="inquiry deleted")


@router.delete("/api/admin/delete-inquiry")
async def admin_delete_inquiry(payload: Dict[str, Any] = Depends(json_body),
                               requester: Requester = Depends(get_requester),
                               store: Store = Depends(get_store)):
    await feedback.delete_inquiry(store, _id_from(payload, "id"), requester)
    return ok(message="inquiry deleted")


@router.delete("/api/admin/suggestions/{suggestion_id}")
async def delete_suggestion(suggestion_id: str,
                            requester: Requester = Depends(get_requester),
                            store: Store = Depends(get_store)):
    await feedback.delete_suggestion(store, suggestion_id, requester)
    return ok(message="suggestion deleted")


@router.delete("/api/admin/delete-suggestion")
async def admin_delete_suggestion(
        payload: Dict[str, Any] = Depends(json_body),
        requester: Requester = Depends(get_requester),
        store: Store = Depends(get_store)):
    await feedback.delete_suggestion(
        store, _id_from(payload, "id"), requester
    )
    return ok(message="suggestion deleted")


@router.post("/api/admin/reply-inquiry")
async def reply_inquiry(payload: Dict[str, Any] = Depends(json_body),
                        requester: Requester = Depends(get_requester),
                        notices: Optional[Notices] = Depends(get_notices),
                        store: Store = Depends(get_store)):
    inquiry = await feedback.reply_inquiry(
        store, notices, _id_from(payload, "inquiryId", "id"),
        payload.get("reply"), requester,
    )
    return ok(inquiry, message="reply sent")


@router.post("/api/admin/send-message")
async def send_message(payload: Dict[str, Any] = Depends(json_body),
                       requester: Requester = Depends(get_requester),
                       notices: Optional[Notices] = Depends(get_notices)):
    await feedback.send_message(notices, payload, requester)
    return ok(message="message sent")


# ----------------------------
# Catalog
# ----------------------------
@router.get("/api/products")
async def list_products(category: Optional[str] = None,
                        store: Store = Depends(get_store)):
    return ok(await catalog.list_products(store, category))


@router.get("/api/products/{product_id}")
async def get_product(product_id: str, store: Store = Depends(get_store)):
    return ok(await catalog.get_product(store, product_id))


@router.get("/api/admin/products")
async def admin_list_products(category: Optional[str] = None,
                              requester: Requester = Depends(get_requester),
                              store: Store = Depends(get_store)):
    require_role(requester, ROLE_ADMIN)
    return ok(await catalog.list_products(store, category))


@router.post("/api/admin/products")
async def create_product(payload: Dict[str, Any] = Depends(json_body),
                         requester: Requester = Depends(get_requester),
                         store: Store = Depends(get_store)):
    product = await catalog.create_product(store, payload, requester)
    return ok(product, message="product created", id=product["id"])


@router.put("/api/admin/products/{product_id}")
async def update_product(product_id: str,
                         payload: Dict[str, Any] = Depends(json_body),
                         requester: Requester = Depends(get_requester),
                         store: Store = Depends(get_store)):
    product = await catalog.update_product(
        store, product_id, payload, requester
    )
    return ok(product, message="product updated")


@router.delete("/api/admin/products/{product_id}")
async def delete_product(product_id: str,
                         requester: Requester = Depends(get_requester),
                         store: Store = Depends(get_store)):
    await catalog.delete_product(store, product_id, requester)
    return ok(message="product deleted")


# legacy uc-options surface of the first storefront
@router.get("/api/uc-options")
async def list_uc_options(store: Store = Depends(get_store)):
    rows = await store.list_products(category=CATEGORY_UC)
    return ok([uc_option_to_api(r) for r in rows])


@router.get("/api/admin/uc-options")
async def admin_list_uc_options(requester: Requester = Depends(get_requester),
                                store: Store = Depends(get_store)):
    require_role(requester, ROLE_ADMIN)
    rows = await store.list_products(category=CATEGORY_UC)
    return ok([uc_option_to_api(r) for r in rows])


@router.post("/api/admin/uc-options")
async def create_uc_option(payload: Dict[str, Any] = Depends(json_body),
                           requester: Requester = Depends(get_requester),
                           store: Store = Depends(get_store)):
    product = await catalog.create_product(
        store, catalog.uc_option_fields(payload), requester
    )
    return ok(message="uc option created", id=product["id"])


@router.put("/api/admin/uc-options/{option_id}")
async def update_uc_option(option_id: str,
                           payload: Dict[str, Any] = Depends(json_body),
                           requester: Requester = Depends(get_requester),
                           store: Store = Depends(get_store)):
    await catalog.update_product(
        store, option_id, catalog.uc_option_fields(payload), requester
    )
    return ok(message="uc option updated")


@router.delete("/api/admin/uc-options/{option_id}")
async def delete_uc_option(option_id: str,
                           requester: Requester = Depends(get_requester),
                           store: Store = Depends(get_store)):
    await catalog.delete_product(store, option_id, requester)
    return ok(message="uc option deleted")


# ----------------------------
# Errors -> envelope
# ----------------------------
async def _store_error(request: Request, exc: StoreError):
    return ORJSONResponse(
        {"success": False, "message": exc.message},
        status_code=exc.status_code,
    )


async def _request_validation_error(request: Request,
                                    exc: RequestValidationError):
    return ORJSONResponse(
        {"success": False, "message": "invalid request"},
        status_code=400,
    )


async def _unhandled_error(request: Request, exc: Exception):
    log.exception("unhandled error on %s %s", request.method, request.url.path)
    return ORJSONResponse(
        {"success": False, "message": "internal error"},
        status_code=500,
    )


# ----------------------------
# App factory
# ----------------------------
def _channels(settings: Settings,
              http: httpx.AsyncClient) -> Dict[str, Channel]:
    email: Channel = NullChannel(CHANNEL_EMAIL)
    if settings.smtp_user:
        email = EmailChannel(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            sender_name=settings.store_name,
            start_tls=settings.smtp_starttls,
            timeout=settings.notify_timeout,
        )
    chat: Channel = NullChannel(CHANNEL_TELEGRAM)
    if settings.telegram_bot_token:
        chat = TelegramChannel(bot_token=settings.telegram_bot_token,
                               http=http)
    return {CHANNEL_EMAIL: email, CHANNEL_TELEGRAM: chat}


def create_app(settings: Optional[Settings] = None, *,
               channels: Optional[Dict[str, Channel]] = None,
               redis_client: Optional[redis.Redis] = None) -> FastAPI:
    """Build the API.

    ``channels`` and ``redis_client`` replace the outbound channels and the
    Redis connection built from settings (tests hand in fakes).
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state = app.state
        log.info("ucstore is starting up: store=%s auth=%s products=%s",
                 settings.store_backend, settings.auth_backend,
                 settings.product_resolution)

        if settings.store_backend == "sql":
            engine, state.SessionAsync, state.gated = make_async_engine(
                settings.database_url,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
                gate_limit=settings.db_gate_limit,
            )
            async with engine.begin() as conn:
                await create_schema(conn)
        else:
            engine = None
            state.redis = redis_client
            if state.redis is None:
                state.redis = redis.from_url(
                    settings.redis_url,
                    decode_responses=True,
                    max_connections=settings.redis_max_connections,
                    socket_timeout=2.0,
                    socket_connect_timeout=2.0,
                )

        state.http = httpx.AsyncClient(
            timeout=settings.notify_timeout,
            limits=httpx.Limits(max_connections=64,
                                max_keepalive_connections=16),
        )
        notifier = Notifier(channels or _channels(settings, state.http),
                            timeout=settings.notify_timeout)
        dispatcher = NotificationDispatcher(notifier)
        dispatcher.start()
        state.notices = Notices(
            notifier, dispatcher,
            admin_email=settings.admin_email,
            store_name=settings.store_name,
            order_channel=settings.notify_on_order,
            chat_id=settings.telegram_chat_id,
        )

        if settings.token_auth:
            if settings.store_backend == "sql":
                async with state.SessionAsync() as session:
                    seeded = await ensure_admin_user(
                        new_store("sql", db=session, gated=state.gated),
                        settings.admin_username, settings.admin_password,
                    )
            else:
                seeded = await ensure_admin_user(
                    new_store("redis", r=state.redis),
                    settings.admin_username, settings.admin_password,
                )
            if seeded:
                log.info("seeded admin account %r", settings.admin_username)

        try:
            yield
        finally:
            await dispatcher.stop()
            await state.http.aclose()
            if engine is not None:
                await engine.dispose()
            if redis_client is None and engine is None:
                await state.redis.aclose()

    app = FastAPI(
        title="ucstore",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.order_policy = orders.OrderPolicy(
        resolution=orders.resolution_for(settings.product_resolution),
        owner_scoped=settings.token_auth,
        strict_transitions=settings.strict_status_transitions,
    )
    if settings.token_auth:
        app.state.auth = TokenAuth(settings.token_secret,
                                   settings.token_ttl_seconds)
    else:
        app.state.auth = SessionAuth()
        app.state.credentials = ConfiguredCredentialStore(
            settings.admin_username, settings.admin_password
        )

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        max_age=settings.session_max_age,
        same_site="lax",
    )
    app.add_exception_handler(StoreError, _store_error)
    app.add_exception_handler(RequestValidationError,
                              _request_validation_error)
    app.add_exception_handler(Exception, _unhandled_error)
    app.include_router(router)

    os.makedirs(settings.upload_dir, exist_ok=True)
    app.mount(URL_PREFIX, StaticFiles(directory=settings.upload_dir),
              name="uploads")
    return app
