import sqlite3
from decimal import Decimal

import pytest

import db
import market
from market import (
    AuthorizationError,
    Cart,
    CheckoutError,
    InvalidStatusError,
    InvalidTransitionError,
    NotFoundError,
)


def place_order(buyer, *lines):
    cart = Cart()
    for product, qty in lines:
        market.cart_add(buyer, cart, product["product_id"], qty)
    return market.checkout(buyer, cart)


def stock_of(product):
    return db.db_scalar("SELECT stock FROM products WHERE product_id = ?", (product["product_id"],))


def order_count():
    return db.db_scalar("SELECT COUNT(*) AS c FROM orders")


def test_checkout_happy_path(ctx, users, make_product):
    p = make_product(price="9.99", stock=5)
    cart = Cart()
    market.cart_add(users["buyer"], cart, p["product_id"], 3)

    order = market.checkout(users["buyer"], cart)

    assert order["total_price"] == Decimal("29.97")
    assert order["status_id"] == market.STATUS_PENDING
    assert order["status"]["name"] == "Pending"
    assert order["buyer"]["id"] == users["buyer"]["id"]
    [item] = order["line_items"]
    assert item["quantity"] == 3
    assert item["price_per_unit"] == Decimal("9.99")
    assert item["line_total"] == Decimal("29.97")
    assert stock_of(p) == 2
    assert len(cart) == 0


def test_checkout_notifies_each_farmer_once(ctx, users, make_product):
    a = make_product(name="Beans")
    b = make_product(name="Peas")
    c = make_product(farmer=users["farmer2"], name="Corn")
    place_order(users["buyer"], (a, 1), (b, 1), (c, 1))

    for farmer in ("farmer", "farmer2"):
        kinds = [n["kind"] for n in market.notifications_since(users[farmer], 0)]
        assert kinds.count("NEW_ORDER") == 1


def test_empty_cart_is_refused(ctx, users):
    with pytest.raises(CheckoutError):
        market.checkout(users["buyer"], Cart())


def test_only_buyers_check_out(ctx, users, make_product):
    p = make_product()
    cart = Cart()
    cart.add(p, 1)
    with pytest.raises(AuthorizationError):
        market.checkout(users["farmer"], cart)
    assert stock_of(p) == 5


def test_checkout_refused_when_stock_was_bought_elsewhere(ctx, users, make_product):
    p = make_product(stock=5)
    cart = Cart()
    market.cart_add(users["buyer"], cart, p["product_id"], 3)
    place_order(users["buyer2"], (p, 4))

    with pytest.raises(CheckoutError, match="Only 1 of Tomatoes"):
        market.checkout(users["buyer"], cart)

    assert stock_of(p) == 1
    assert market.list_orders(users["buyer"]) == []
    # the refused cart is lowered to what is left
    assert cart.quantity(p["product_id"]) == 1


def test_checkout_refused_when_product_was_rejected(ctx, users, make_product):
    keep = make_product(name="Eggs")
    pulled = make_product(name="Milk")
    cart = Cart()
    market.cart_add(users["buyer"], cart, keep["product_id"], 2)
    market.cart_add(users["buyer"], cart, pulled["product_id"], 2)
    market.set_product_status(users["admin"], pulled["product_id"], "Rejected")

    with pytest.raises(CheckoutError, match="Milk is no longer available"):
        market.checkout(users["buyer"], cart)

    assert stock_of(keep) == 5
    assert stock_of(pulled) == 5
    assert order_count() == 0
    assert pulled["product_id"] not in cart
    assert cart.quantity(keep["product_id"]) == 2


def test_checkout_rolls_back_partial_writes(ctx, users, make_product, monkeypatch):
    first = make_product(name="Eggs", stock=5)
    second = make_product(name="Milk", stock=5)
    cart = Cart()
    market.cart_add(users["buyer"], cart, first["product_id"], 2)
    market.cart_add(users["buyer"], cart, second["product_id"], 2)

    real_fetchall = market.db_fetchall

    def racing_fetchall(sql, params=()):
        rows = real_fetchall(sql, params)
        if "FROM products WHERE product_id IN" in sql:
            # another buyer takes most of the milk after the stock pre-check
            db.db_execute("UPDATE products SET stock = 1 WHERE product_id = ?", (second["product_id"],))
            db.db_commit()
        return rows

    monkeypatch.setattr(market, "db_fetchall", racing_fetchall)

    with pytest.raises(CheckoutError, match="Not enough stock left for Milk"):
        market.checkout(users["buyer"], cart)

    assert stock_of(first) == 5
    assert stock_of(second) == 1
    assert order_count() == 0
    assert db.db_scalar("SELECT COUNT(*) AS c FROM order_items") == 0
    assert cart.quantity(first["product_id"]) == 2
    assert cart.quantity(second["product_id"]) == 1


def test_price_per_unit_is_fixed_at_checkout(ctx, users, make_product, category_id):
    p = make_product(price="9.99", stock=5)
    order = place_order(users["buyer"], (p, 2))

    market.update_product(users["farmer"], p["product_id"], {
        "name": "Tomatoes", "price": "20.00", "stock": "3", "category_id": category_id,
    })

    again = market.get_order(users["buyer"], order["order_id"])
    assert again["line_items"][0]["price_per_unit"] == Decimal("9.99")
    assert again["total_price"] == Decimal("19.98")


def test_checkout_charges_the_current_price(ctx, users, make_product, category_id):
    p = make_product(price="9.99", stock=5)
    cart = Cart()
    market.cart_add(users["buyer"], cart, p["product_id"], 2)
    market.update_product(users["farmer"], p["product_id"], {
        "name": "Tomatoes", "price": "12.00", "stock": "5", "category_id": category_id,
    })

    order = market.checkout(users["buyer"], cart)
    assert order["total_price"] == Decimal("24.00")
    assert order["line_items"][0]["price_per_unit"] == Decimal("12.00")


def test_delivery_is_idempotent_and_keeps_stock(ctx, users, make_product):
    p = make_product(stock=5)
    order = place_order(users["buyer"], (p, 3))

    first = market.set_order_status(users["admin"], order["order_id"], 4)
    assert first.changed
    assert first.order["status"]["name"] == "Delivered"
    assert first.notice == f"Order #{order['order_id']} marked Delivered."
    assert stock_of(p) == 2

    second = market.set_order_status(users["admin"], order["order_id"], "4")
    assert not second.changed
    assert second.notice == "Order is already Delivered."
    assert stock_of(p) == 2


def test_forward_steps_by_owning_farmer(ctx, users, make_product):
    p = make_product()
    order = place_order(users["buyer"], (p, 1))
    for status_id, name in ((2, "Confirmed"), (3, "Shipped"), (4, "Delivered")):
        result = market.set_order_status(users["farmer"], order["order_id"], status_id)
        assert result.order["status_name"] == name


def test_backward_move_is_refused(ctx, users, make_product):
    p = make_product()
    order = place_order(users["buyer"], (p, 1))
    market.set_order_status(users["admin"], order["order_id"], 3)
    with pytest.raises(InvalidTransitionError):
        market.set_order_status(users["admin"], order["order_id"], 2)
    assert market.get_order(users["admin"], order["order_id"])["status_id"] == 3


def test_cancel_restores_stock_once(ctx, users, make_product):
    p = make_product(stock=5)
    order = place_order(users["buyer"], (p, 3))
    assert stock_of(p) == 2

    result = market.set_order_status(users["admin"], order["order_id"], 5)
    assert result.changed
    assert stock_of(p) == 5

    again = market.set_order_status(users["admin"], order["order_id"], 5)
    assert not again.changed
    assert stock_of(p) == 5

    with pytest.raises(InvalidTransitionError):
        market.set_order_status(users["admin"], order["order_id"], 4)
    assert stock_of(p) == 5


def test_delivered_order_cannot_be_cancelled(ctx, users, make_product):
    p = make_product(stock=5)
    order = place_order(users["buyer"], (p, 2))
    market.set_order_status(users["admin"], order["order_id"], 4)
    with pytest.raises(InvalidTransitionError):
        market.set_order_status(users["admin"], order["order_id"], 5)
    assert stock_of(p) == 3


@pytest.mark.parametrize("bad", [0, 6, 7, "abc", None])
def test_unknown_status_is_rejected(ctx, users, make_product, bad):
    p = make_product()
    order = place_order(users["buyer"], (p, 1))
    with pytest.raises(InvalidStatusError):
        market.set_order_status(users["admin"], order["order_id"], bad)
    assert market.get_order(users["admin"], order["order_id"])["status_id"] == 1


def test_status_change_permissions(ctx, users, make_product):
    p = make_product()
    order = place_order(users["buyer"], (p, 1))
    with pytest.raises(AuthorizationError):
        market.set_order_status(users["buyer"], order["order_id"], 2)
    with pytest.raises(AuthorizationError):
        market.set_order_status(users["farmer2"], order["order_id"], 2)
    with pytest.raises(NotFoundError):
        market.set_order_status(users["admin"], 9999, 2)


def test_status_change_notifies_buyer(ctx, users, make_product):
    p = make_product()
    order = place_order(users["buyer"], (p, 1))
    market.set_order_status(users["farmer"], order["order_id"], 2)

    notes = market.notifications_since(users["buyer"], 0)
    assert [n["kind"] for n in notes] == ["ORDER_CONFIRMED"]
    assert notes[0]["message"] == f"Order #{order['order_id']} is now Confirmed."


def test_order_visibility(ctx, users, make_product):
    mine = make_product(name="Beans")
    theirs = make_product(farmer=users["farmer2"], name="Corn")
    o1 = place_order(users["buyer"], (mine, 1))
    o2 = place_order(users["buyer2"], (theirs, 1))

    assert [o["order_id"] for o in market.list_orders(users["buyer"])] == [o1["order_id"]]
    assert [o["order_id"] for o in market.list_orders(users["farmer"])] == [o1["order_id"]]
    assert [o["order_id"] for o in market.list_orders(users["farmer2"])] == [o2["order_id"]]
    assert {o["order_id"] for o in market.list_orders(users["admin"])} == {o1["order_id"], o2["order_id"]}

    with pytest.raises(NotFoundError):
        market.get_order(users["buyer2"], o1["order_id"])
    with pytest.raises(NotFoundError):
        market.get_order(users["farmer2"], o1["order_id"])


def test_orders_filtered_by_status(ctx, users, make_product):
    p = make_product()
    o1 = place_order(users["buyer"], (p, 1))
    o2 = place_order(users["buyer"], (p, 1))
    market.set_order_status(users["admin"], o2["order_id"], 2)

    assert [o["order_id"] for o in market.list_orders(users["admin"], status="Pending")] == [o1["order_id"]]
    assert [o["order_id"] for o in market.list_orders(users["admin"], status="confirmed")] == [o2["order_id"]]


def test_ordered_product_cannot_be_deleted(ctx, users, make_product):
    p = make_product()
    place_order(users["buyer"], (p, 1))
    with pytest.raises(market.ValidationError):
        market.delete_product(users["farmer"], p["product_id"])


def test_farmer_cannot_move_an_order_shared_with_another_farmer(ctx, users, make_product):
    beans = make_product(name="Beans", stock=5)
    corn = make_product(farmer=users["farmer2"], name="Corn", stock=5)
    order = place_order(users["buyer"], (beans, 1), (corn, 3))
    assert stock_of(corn) == 2

    for farmer in ("farmer", "farmer2"):
        for status_id in (market.STATUS_CONFIRMED, market.STATUS_CANCELLED):
            with pytest.raises(AuthorizationError):
                market.set_order_status(users[farmer], order["order_id"], status_id)

    assert stock_of(beans) == 4
    assert stock_of(corn) == 2
    assert market.get_order(users["farmer"], order["order_id"])["status_id"] == market.STATUS_PENDING

    # the admin can still cancel it, restocking both farmers
    market.set_order_status(users["admin"], order["order_id"], market.STATUS_CANCELLED)
    assert stock_of(beans) == 5
    assert stock_of(corn) == 5


def test_farmer_cancels_an_order_of_only_their_products(ctx, users, make_product):
    beans = make_product(name="Beans", stock=5)
    peas = make_product(name="Peas", stock=5)
    order = place_order(users["buyer"], (beans, 2), (peas, 1))

    result = market.set_order_status(users["farmer"], order["order_id"], market.STATUS_CANCELLED)
    assert result.changed
    assert stock_of(beans) == 5
    assert stock_of(peas) == 5


def test_checkout_survives_follow_up_failures(ctx, users, make_product, monkeypatch):
    p = make_product(stock=5)
    cart = Cart()
    market.cart_add(users["buyer"], cart, p["product_id"], 2)

    def broken_notify(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(market, "notify_user", broken_notify)

    order = market.checkout(users["buyer"], cart)

    assert order["total_price"] == Decimal("19.98")
    assert order_count() == 1
    assert stock_of(p) == 3
    assert len(cart) == 0


def test_status_change_survives_follow_up_failures(ctx, users, make_product, monkeypatch):
    p = make_product()
    order = place_order(users["buyer"], (p, 1))

    def broken_notify(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(market, "notify_user", broken_notify)

    result = market.set_order_status(users["admin"], order["order_id"], market.STATUS_CONFIRMED)
    assert result.changed
    assert result.order["status"]["name"] == "Confirmed"
    assert market.get_order(users["admin"], order["order_id"])["status_id"] == market.STATUS_CONFIRMED
