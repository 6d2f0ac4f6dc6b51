import pytest

from catalog import StockLine
from conftest import cart, stock_of
from errors import Forbidden, InsufficientStock, InvalidState, NotFound, ValidationFailed


def test_place_order_computes_total_from_price_snapshots(services, make_user, make_product, address):
    user = make_user()
    socks = make_product(price=10.00, stock=5, name="Socks")
    gel = make_product(price=5.50, stock=9, name="Energy Gel")

    order = services.order_workflow.place_order(user, cart((socks, 2), (gel, 3)), address)

    assert order["total_amount"] == pytest.approx(36.50)
    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["payment_method"] == "cash_on_delivery"
    assert [i["product_name"] for i in order["items"]] == ["Socks", "Energy Gel"]
    assert all(i["is_reviewed"] is False for i in order["items"])
    assert stock_of(services, socks) == 3
    assert stock_of(services, gel) == 6


def test_later_price_change_does_not_touch_order(services, make_user, make_product, address):
    user = make_user()
    shoe = make_product(price=120.0, stock=4)
    order = services.order_workflow.place_order(user, cart((shoe, 1)), address)

    services.catalog.update(shoe["_id"], make_product.owner, {"price": 80.0, "name": "Renamed"})

    stored = services.order_workflow.get_order(user, order["_id"])
    assert stored["total_amount"] == 120.0
    assert stored["items"][0]["price"] == 120.0
    assert stored["items"][0]["product_name"] == "Trail Runner"


def test_insufficient_stock_leaves_stock_untouched(services, make_user, make_product, address):
    user = make_user()
    shoe = make_product(stock=3)

    with pytest.raises(InsufficientStock) as exc:
        services.order_workflow.place_order(user, cart((shoe, 5)), address)

    assert exc.value.available == 3
    assert "Trail Runner" in exc.value.message
    assert stock_of(services, shoe) == 3
    assert services.database["order"].count_documents({}) == 0


def test_one_short_item_blocks_every_decrement(services, make_user, make_product, address):
    user = make_user()
    plenty = make_product(stock=10, name="Plenty")
    scarce = make_product(stock=1, name="Scarce")

    with pytest.raises(InsufficientStock) as exc:
        services.order_workflow.place_order(user, cart((plenty, 2), (scarce, 2)), address)

    assert exc.value.product_name == "Scarce"
    assert stock_of(services, plenty) == 10
    assert stock_of(services, scarce) == 1


def test_reserve_rolls_back_when_stock_vanishes_mid_way(services, make_product):
    first = make_product(stock=5, name="First")
    second = make_product(stock=1, name="Second")
    lines = [StockLine(str(first["_id"]), "First", 3), StockLine(str(second["_id"]), "Second", 2)]

    with pytest.raises(InsufficientStock):
        services.catalog.reserve(lines)

    assert stock_of(services, first) == 5
    assert stock_of(services, second) == 1


def test_duplicate_lines_cannot_oversell(services, make_user, make_product, address):
    user = make_user()
    shoe = make_product(stock=3)

    with pytest.raises(InsufficientStock):
        services.order_workflow.place_order(user, cart((shoe, 2), (shoe, 2)), address)

    assert stock_of(services, shoe) == 3


def test_failed_insert_releases_reservation(services, make_user, make_product, address, monkeypatch):
    user = make_user()
    shoe = make_product(stock=4)

    def broken_insert(order):
        raise RuntimeError("write failed")

    monkeypatch.setattr(services.orders, "insert", broken_insert)
    with pytest.raises(RuntimeError):
        services.order_workflow.place_order(user, cart((shoe, 2)), address)

    assert stock_of(services, shoe) == 4


def test_place_order_validation(services, make_user, make_product, address):
    user = make_user()
    shoe = make_product()

    with pytest.raises(ValidationFailed):
        services.order_workflow.place_order(user, [], address)
    with pytest.raises(ValidationFailed):
        services.order_workflow.place_order(user, cart((shoe, 1)), None)
    with pytest.raises(NotFound):
        services.order_workflow.place_order(user, cart(({"_id": "64b7f0c2a1b2c3d4e5f60718"}, 1)), address)
    with pytest.raises(ValidationFailed):
        services.order_workflow.place_order(user, cart(({"_id": "not-an-id"}, 1)), address)


def test_delete_pending_order_restores_stock(services, make_user, make_product, address):
    user = make_user()
    a = make_product(stock=5, name="A")
    b = make_product(stock=7, name="B")
    order = services.order_workflow.place_order(user, cart((a, 2), (b, 3)), address)

    services.order_workflow.delete_order(user, order["_id"])

    assert stock_of(services, a) == 5
    assert stock_of(services, b) == 7
    with pytest.raises(NotFound):
        services.orders.get(order["_id"])


def test_delete_shipped_order_is_rejected(services, make_user, make_product, address):
    user = make_user()
    admin = make_user(is_admin=True)
    shoe = make_product(stock=5)
    order = services.order_workflow.place_order(user, cart((shoe, 1)), address)
    services.order_workflow.update_status(admin, order["_id"], "processing")
    services.order_workflow.update_status(admin, order["_id"], "shipped")

    with pytest.raises(InvalidState):
        services.order_workflow.delete_order(admin, order["_id"])
    assert stock_of(services, shoe) == 4


def test_delete_requires_owner_or_admin(services, make_user, make_product, address):
    owner = make_user()
    stranger = make_user()
    admin = make_user(is_admin=True)
    shoe = make_product(stock=5)
    order = services.order_workflow.place_order(owner, cart((shoe, 1)), address)

    with pytest.raises(Forbidden):
        services.order_workflow.delete_order(stranger, order["_id"])

    services.order_workflow.delete_order(admin, order["_id"])
    assert stock_of(services, shoe) == 5


def test_cancel_then_delete_restores_stock_once(services, make_user, make_product, address):
    user = make_user()
    shoe = make_product(stock=5)
    order = services.order_workflow.place_order(user, cart((shoe, 2)), address)

    cancelled = services.order_workflow.update_status(user, order["_id"], "cancelled")
    assert cancelled["status"] == "cancelled"
    assert cancelled["stock_restored"] is True
    assert stock_of(services, shoe) == 5

    services.order_workflow.delete_order(user, order["_id"])
    assert stock_of(services, shoe) == 5


def serve_stale_once(services, monkeypatch, snapshot):
    """Make the next order lookup return an outdated copy of the order."""
    real_get = services.orders.get
    calls = []

    def get(order_id):
        calls.append(order_id)
        return dict(snapshot) if len(calls) == 1 else real_get(order_id)

    monkeypatch.setattr(services.orders, "get", get)


def test_cancel_from_stale_snapshot_cannot_undo_shipping(services, make_user, make_product, address, monkeypatch):
    user = make_user()
    admin = make_user(is_admin=True)
    shoe = make_product(stock=5)
    order = services.order_workflow.place_order(user, cart((shoe, 1)), address)
    stale = services.orders.get(order["_id"])
    services.order_workflow.update_status(admin, order["_id"], "processing")
    services.order_workflow.update_status(admin, order["_id"], "shipped")

    serve_stale_once(services, monkeypatch, stale)
    with pytest.raises(InvalidState) as exc:
        services.order_workflow.update_status(user, order["_id"], "cancelled")

    assert "shipped" in exc.value.message
    assert services.orders.get(order["_id"])["status"] == "shipped"
    assert stock_of(services, shoe) == 4


def test_delete_from_stale_snapshot_keeps_shipped_order(services, make_user, make_product, address, monkeypatch):
    user = make_user()
    admin = make_user(is_admin=True)
    shoe = make_product(stock=5)
    order = services.order_workflow.place_order(user, cart((shoe, 1)), address)
    stale = services.orders.get(order["_id"])
    services.order_workflow.update_status(admin, order["_id"], "processing")
    services.order_workflow.update_status(admin, order["_id"], "shipped")

    serve_stale_once(services, monkeypatch, stale)
    with pytest.raises(InvalidState):
        services.order_workflow.delete_order(user, order["_id"])

    assert services.orders.get(order["_id"])["status"] == "shipped"
    assert stock_of(services, shoe) == 4


def test_status_follows_forward_only_graph(services, make_user, make_product, address, mailer):
    user = make_user()
    admin = make_user(is_admin=True)
    shoe = make_product(stock=5)
    order = services.order_workflow.place_order(user, cart((shoe, 1)), address)

    with pytest.raises(InvalidState):
        services.order_workflow.update_status(admin, order["_id"], "delivered")

    for status in ("processing", "shipped", "delivered"):
        order = services.order_workflow.update_status(admin, order["_id"], status)
        assert order["status"] == status

    with pytest.raises(InvalidState):
        services.order_workflow.update_status(admin, order["_id"], "pending")
    with pytest.raises(InvalidState):
        services.order_workflow.update_status(admin, order["_id"], "cancelled")

    assert [m["to"] for m in mailer.sent] == [user.email] * 3
    assert "delivered" in mailer.sent[-1]["subject"]


def test_unknown_status_is_rejected(services, make_user, make_product, address):
    user = make_user()
    order = services.order_workflow.place_order(user, cart((make_product(), 1)), address)

    with pytest.raises(ValidationFailed):
        services.order_workflow.update_status(user, order["_id"], "teleported")
    with pytest.raises(ValidationFailed):
        services.order_workflow.update_status(user, order["_id"], payment_status="maybe")


def test_payment_status_change_sends_no_email(services, make_user, make_product, address, mailer):
    user = make_user()
    admin = make_user(is_admin=True)
    order = services.order_workflow.place_order(user, cart((make_product(), 1)), address)

    updated = services.order_workflow.update_status(admin, order["_id"], payment_status="paid")

    assert updated["payment_status"] == "paid"
    assert updated["status"] == "pending"
    assert mailer.sent == []


def test_status_email_failure_does_not_fail_transition(services, make_user, make_product, address, mailer):
    user = make_user()
    admin = make_user(is_admin=True)
    order = services.order_workflow.place_order(user, cart((make_product(), 1)), address)
    mailer.fail = True

    updated = services.order_workflow.update_status(admin, order["_id"], "processing")

    assert updated["status"] == "processing"
    assert services.orders.get(order["_id"])["status"] == "processing"


def test_stranger_cannot_view_or_update_order(services, make_user, make_product, address):
    owner = make_user()
    stranger = make_user()
    order = services.order_workflow.place_order(owner, cart((make_product(), 1)), address)

    with pytest.raises(Forbidden):
        services.order_workflow.get_order(stranger, order["_id"])
    with pytest.raises(Forbidden):
        services.order_workflow.update_status(stranger, order["_id"], "cancelled")


def test_list_orders_scopes_to_owner_unless_admin(services, make_user, make_product, address):
    alice = make_user()
    bob = make_user()
    admin = make_user(is_admin=True)
    shoe = make_product(stock=10)
    services.order_workflow.place_order(alice, cart((shoe, 1)), address)
    services.order_workflow.place_order(alice, cart((shoe, 1)), address)
    services.order_workflow.place_order(bob, cart((shoe, 1)), address)

    assert services.order_workflow.list_orders(alice)["total"] == 2
    assert services.order_workflow.list_orders(bob)["total"] == 1
    page = services.order_workflow.list_orders(admin, limit=2)
    assert page["total"] == 3
    assert page["count"] == 2
    assert page["pages"] == 2


def test_find_delivered_matches_owner_and_status(services, make_user, make_product, address):
    owner = make_user()
    stranger = make_user()
    order = services.order_workflow.place_order(owner, cart((make_product(), 1)), address)

    assert services.orders.find_delivered(order["_id"], owner.id) is None
    services.orders.transition(order["_id"], "pending", {"status": "delivered"})
    assert services.orders.find_delivered(order["_id"], stranger.id) is None
    assert services.orders.find_delivered(str(order["_id"]), owner.id)["_id"] == order["_id"]
