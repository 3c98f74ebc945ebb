import asyncio

import pytest

from ucstore.errors import Forbidden, NotFound, Unauthenticated, ValidationError
from ucstore.infra.sql import make_async_engine
from ucstore.model.domain import (
    STATUS_AWAITING_PAYMENT, STATUS_CONFIRMED, STATUS_DELIVERED, STATUS_PAID,
)
from ucstore.model.store import SqlStore, create_schema
from ucstore.services import orders
from ucstore.services.notices import Notices

from .conftest import (
    ADMIN, ALICE, BOB, SESSION_ADMIN, SESSION_ANON, TOKEN_ANON,
    order_payload,
)

INLINE = orders.OrderPolicy(resolution=orders.InlineResolution())
OWNED = orders.OrderPolicy(resolution=orders.InlineResolution(),
                           owner_scoped=True)
REFERENCE = orders.OrderPolicy(resolution=orders.ReferenceResolution())
STRICT = orders.OrderPolicy(resolution=orders.InlineResolution(),
                            strict_transitions=True)


async def test_new_order_awaits_payment(store):
    order = await orders.create_order(store, INLINE, order_payload(),
                                      SESSION_ANON)
    assert order["status"] == STATUS_AWAITING_PAYMENT
    assert order["type"] == "UC"
    assert order["ucAmount"] == 60
    assert order["bundle"] is None
    assert order["ownerId"] is None
    assert await store.count_orders() == 1


async def test_bundle_order(store):
    order = await orders.create_order(
        store, INLINE, order_payload(ucAmount=None, bundle="Season Pass"),
        SESSION_ANON,
    )
    assert order["type"] == "Bundle"
    assert order["bundle"] == "Season Pass"
    assert order["ucAmount"] is None


@pytest.mark.parametrize("overrides", [
    {"name": None},
    {"playerId": "   "},
    {"transactionId": None},
    {"totalAmount": ""},
    {"email": "not-an-email"},
    {"ucAmount": None},
    {"ucAmount": "60", "bundle": "Season Pass"},
    {"ucAmount": "-60"},
    {"ucAmount": "99999999999999999999"},
])
async def test_invalid_submissions_store_nothing(store, overrides):
    with pytest.raises(ValidationError):
        await orders.create_order(store, INLINE, order_payload(**overrides),
                                  SESSION_ANON)
    assert await store.count_orders() == 0


async def test_admin_updates_status(store):
    order = await orders.create_order(store, INLINE, order_payload(),
                                      SESSION_ANON)
    result = await orders.update_status(store, INLINE, order["id"],
                                        STATUS_PAID, SESSION_ADMIN)
    assert result == {"id": order["id"], "status": "تم الدفع"}
    assert (await store.get_order(order["id"]))["status"] == STATUS_PAID


async def test_non_admin_cannot_update_status(store):
    order = await orders.create_order(store, INLINE, order_payload(),
                                      SESSION_ANON)
    with pytest.raises(Forbidden):
        await orders.update_status(store, INLINE, order["id"], STATUS_PAID,
                                   SESSION_ANON)
    with pytest.raises(Forbidden):
        await orders.update_status(store, OWNED, order["id"], STATUS_PAID,
                                   ALICE)
    with pytest.raises(Unauthenticated):
        await orders.update_status(store, OWNED, order["id"], STATUS_PAID,
                                   TOKEN_ANON)
    row = await store.get_order(order["id"])
    assert row["status"] == STATUS_AWAITING_PAYMENT


async def test_update_missing_order_is_not_found(store):
    await orders.create_order(store, INLINE, order_payload(), SESSION_ANON)
    with pytest.raises(NotFound):
        await orders.update_status(store, INLINE, "424242", STATUS_PAID,
                                   SESSION_ADMIN)
    assert await store.count_orders() == 1


async def test_update_requires_status(store):
    order = await orders.create_order(store, INLINE, order_payload(),
                                      SESSION_ANON)
    with pytest.raises(ValidationError):
        await orders.update_status(store, INLINE, order["id"], "  ",
                                   SESSION_ADMIN)


async def test_status_is_free_form_by_default(store):
    order = await orders.create_order(store, INLINE, order_payload(),
                                      SESSION_ANON)
    await orders.update_status(store, INLINE, order["id"], STATUS_DELIVERED,
                               SESSION_ADMIN)
    # going back is allowed when transitions are not enforced
    await orders.update_status(store, INLINE, order["id"], STATUS_PAID,
                               SESSION_ADMIN)
    assert (await store.get_order(order["id"]))["status"] == STATUS_PAID


async def test_strict_transitions(store):
    order = await orders.create_order(store, STRICT, order_payload(),
                                      SESSION_ANON)
    with pytest.raises(ValidationError):
        await orders.update_status(store, STRICT, order["id"],
                                   STATUS_DELIVERED, SESSION_ADMIN)
    await orders.update_status(store, STRICT, order["id"], STATUS_CONFIRMED,
                               SESSION_ADMIN)
    await orders.update_status(store, STRICT, order["id"], STATUS_DELIVERED,
                               SESSION_ADMIN)
    with pytest.raises(ValidationError):
        await orders.update_status(store, STRICT, order["id"], STATUS_PAID,
                                   SESSION_ADMIN)
    with pytest.raises(NotFound):
        await orders.update_status(store, STRICT, "424242", STATUS_PAID,
                                   SESSION_ADMIN)


async def test_owner_scoping(store):
    with pytest.raises(Unauthenticated):
        await orders.create_order(store, OWNED, order_payload(), TOKEN_ANON)

    a = await orders.create_order(store, OWNED, order_payload(), ALICE)
    b = await orders.create_order(store, OWNED,
                                  order_payload(transactionId="TX-2"), BOB)
    assert a["ownerId"] == ALICE.subject_id

    mine = await orders.list_orders(store, OWNED, ALICE)
    assert [o["id"] for o in mine] == [a["id"]]
    everything = await orders.list_orders(store, OWNED, ADMIN)
    assert {o["id"] for o in everything} == {a["id"], b["id"]}

    assert (await orders.get_order(store, OWNED, a["id"], ALICE))["id"] \
        == a["id"]
    # someone else's order is reported as missing
    with pytest.raises(NotFound):
        await orders.get_order(store, OWNED, b["id"], ALICE)


async def test_session_listing_is_admin_only(store):
    await orders.create_order(store, INLINE, order_payload(), SESSION_ANON)
    with pytest.raises(Forbidden):
        await orders.list_orders(store, INLINE, SESSION_ANON)
    assert len(await orders.list_orders(store, INLINE, SESSION_ADMIN)) == 1


async def test_reference_resolution(store):
    uc = await store.insert_product({
        "name": "325 UC", "category": "uc", "amount": 325, "price": 4.99,
        "image_url": None,
    })
    bundle = await store.insert_product({
        "name": "Season Pass", "category": "bundle", "amount": None,
        "price": 9.99, "image_url": None,
    })

    order = await orders.create_order(
        store, REFERENCE,
        order_payload(ucAmount=None, selectedProductId=str(uc["id"])),
        SESSION_ANON,
    )
    assert order["ucAmount"] == 325
    assert order["productId"] == str(uc["id"])

    order = await orders.create_order(
        store, REFERENCE,
        order_payload(ucAmount=None, productId=str(bundle["id"])),
        SESSION_ANON,
    )
    assert order["type"] == "Bundle"
    assert order["bundle"] == "Season Pass"


async def test_reference_to_deleted_product(store):
    product = await store.insert_product({
        "name": "60 UC", "category": "uc", "amount": 60, "price": 0.99,
        "image_url": None,
    })
    await store.delete_product(product["id"])
    with pytest.raises(NotFound):
        await orders.create_order(
            store, REFERENCE,
            order_payload(ucAmount=None, selectedProductId=str(product["id"])),
            SESSION_ANON,
        )
    with pytest.raises(ValidationError):
        await orders.create_order(store, REFERENCE,
                                  order_payload(ucAmount=None), SESSION_ANON)
    assert await store.count_orders() == 0


async def test_delete_order(store):
    order = await orders.create_order(store, INLINE, order_payload(),
                                      SESSION_ANON)
    with pytest.raises(Forbidden):
        await orders.delete_order(store, order["id"], SESSION_ANON)
    await orders.delete_order(store, order["id"], SESSION_ADMIN)
    with pytest.raises(NotFound):
        await orders.delete_order(store, order["id"], SESSION_ADMIN)


async def test_order_announcement(store, notices: Notices, chat_channel):
    notices.order_channel = "telegram"
    order = await orders.create_order(store, INLINE, order_payload(),
                                      SESSION_ANON, notices=notices)
    await notices.dispatcher.drain()
    [(intent, body)] = chat_channel.sent
    assert intent.to == "42"
    assert str(order["id"]) in body
    assert "60 UC" in body


async def test_concurrent_creates_get_distinct_ids(tmp_path):
    engine, SessionAsync, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'concurrent.db'}"
    )
    async with engine.begin() as conn:
        await create_schema(conn)

    async def submit(i):
        async with SessionAsync() as session:
            store = SqlStore(db=session, gated=gated)
            return await orders.create_order(
                store, INLINE, order_payload(transactionId=f"TX-{i}"),
                SESSION_ANON,
            )

    created = await asyncio.gather(*(submit(i) for i in range(10)))
    assert len({o["id"] for o in created}) == 10

    async with SessionAsync() as session:
        store = SqlStore(db=session, gated=gated)
        assert await store.count_orders() == 10
        listed = await orders.list_orders(store, INLINE, SESSION_ADMIN)
    assert {o["id"] for o in listed} == {o["id"] for o in created}
    await engine.dispose()


async def test_concurrent_creates_redis(redis_store):
    created = await asyncio.gather(*(
        orders.create_order(redis_store, INLINE,
                            order_payload(transactionId=f"TX-{i}"),
                            SESSION_ANON)
        for i in range(10)
    ))
    assert len({o["id"] for o in created}) == 10
    assert await redis_store.count_orders() == 10
    listed = await orders.list_orders(redis_store, INLINE, SESSION_ADMIN)
    assert {o["id"] for o in listed} == {o["id"] for o in created}
