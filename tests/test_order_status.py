"""Tests for OrderStateMachine."""

from datetime import timedelta

import pytest

from errors import InvalidTransitionError, OrderCancelledError, OrderNotFoundError
from orders import compute_totals
from schemas import Order, OrderItem, ShippingAddress


@pytest.fixture
def place_order(service, add_product, fill_cart, buyer, now):
    """Place an order for the default buyer."""
    add_product("P1", 800)

    def _place(payment_method="card", at=None):
        fill_cart(buyer, [("P1", 1)])
        return service.create_order(buyer, payment_method, now=at or now)

    return _place


@pytest.fixture
def untracked_order(mongo_db, buyer, now):
    """A confirmed COD order stored before tracking existed."""
    legacy = Order(
        id="ZY123456",
        user_id=buyer,
        items=[OrderItem(product_id="P1", name="Tee", price=500, quantity=1)],
        totals=compute_totals(500, 0, "cod"),
        payment_method="cod",
        payment_status="cod",
        order_status="confirmed",
        shipping_address=ShippingAddress(name="Asha", address_text="Somewhere"),
        idempotency_key="legacy-1",
        created_at=now,
    )
    mongo_db["order"].insert_one(legacy.model_dump())
    return legacy.id


def statuses(order):
    return [u.status for u in order.tracking.updates]


class TestMarkPaid:
    def test_confirms_pending_order(self, service, place_order, now):
        order = place_order("card")

        paid = service.machine.mark_paid(order, now + timedelta(minutes=3))

        assert paid.payment_status == "paid"
        assert paid.order_status == "confirmed"
        assert statuses(paid) == ["pending_payment", "confirmed"]
        assert paid.tracking.current_location == "Processing Center"

    def test_idempotent(self, service, place_order, now):
        order = place_order("card")
        first = service.machine.mark_paid(order, now)

        second = service.machine.mark_paid(first, now + timedelta(minutes=1))

        assert second.payment_status == "paid"
        assert statuses(second).count("confirmed") == 1

    def test_stale_snapshot_does_not_duplicate(self, service, place_order, now):
        order = place_order("card")
        service.machine.mark_paid(order, now)

        again = service.machine.mark_paid(order, now)

        assert statuses(again).count("confirmed") == 1

    def test_cod_cannot_be_marked_paid(self, service, place_order):
        order = place_order("cod")
        with pytest.raises(InvalidTransitionError):
            service.machine.mark_paid(order)

    def test_cancelled_cannot_be_paid(self, service, place_order):
        order = service.machine.cancel(place_order("card"))
        with pytest.raises(OrderCancelledError):
            service.machine.mark_paid(order)

    def test_retry_after_failure(self, service, place_order, now):
        order = place_order("card")
        failed = service.machine.mark_payment_failed(order, now)
        assert failed.payment_status == "failed"
        assert failed.order_status == "pending_payment"

        paid = service.machine.mark_paid(failed, now + timedelta(minutes=2))

        assert paid.payment_status == "paid"
        assert paid.order_status == "confirmed"

    def test_paid_order_cannot_fail(self, service, place_order):
        paid = service.machine.mark_paid(place_order("card"))
        with pytest.raises(InvalidTransitionError):
            service.machine.mark_payment_failed(paid)

    def test_confirm_payment_clears_cart(self, service, mongo_db, place_order, buyer):
        order = place_order("card")
        assert len(mongo_db["cart"].find_one({"user_id": buyer})["items"]) == 1

        paid = service.confirm_payment(order.id, buyer)

        assert paid.cart_cleared is True
        assert mongo_db["cart"].find_one({"user_id": buyer})["items"] == []

    def test_confirm_payment_for_other_user(self, service, place_order, add_user):
        order = place_order("card")
        stranger = add_user(email="stranger@example.com")
        with pytest.raises(OrderNotFoundError):
            service.confirm_payment(order.id, stranger)


class TestAdminSetStatus:
    def test_appends_admin_update(self, service, place_order, now):
        order = place_order("cod")

        updated = service.machine.admin_set_status(order, "packed", now + timedelta(hours=1))

        assert updated.order_status == "packed"
        last = updated.tracking.updates[-1]
        assert last.status == "packed"
        assert last.source == "admin"
        assert last.message == "Order has been packed and is ready for shipment"
        assert last.location == "Packaging Facility"
        assert updated.tracking.current_location == "Packaging Facility"

    def test_backward_move_allowed(self, service, place_order):
        order = service.machine.admin_set_status(place_order("cod"), "shipped")
        order = service.machine.admin_set_status(order, "processing")
        assert order.order_status == "processing"

    def test_one_update_per_status(self, service, place_order):
        order = place_order("cod")
        order = service.machine.admin_set_status(order, "processing")
        order = service.machine.admin_set_status(order, "packed")
        order = service.machine.admin_set_status(order, "processing")

        assert order.order_status == "processing"
        assert statuses(order).count("processing") == 1
        assert statuses(order) == ["confirmed", "processing", "packed"]

    def test_same_status_is_noop(self, service, place_order):
        order = place_order("cod")
        same = service.machine.admin_set_status(order, "confirmed")
        assert statuses(same) == ["confirmed"]

    def test_unknown_status(self, service, place_order):
        with pytest.raises(InvalidTransitionError):
            service.machine.admin_set_status(place_order("cod"), "lost")

    def test_delivery_stamped_once(self, service, place_order, now):
        first_delivery = now + timedelta(days=2)
        order = service.machine.admin_set_status(place_order("cod"), "delivered", first_delivery)
        stamped = order.tracking.actual_delivery
        assert stamped is not None

        order = service.machine.admin_set_status(order, "shipped", now + timedelta(days=3))
        order = service.machine.admin_set_status(order, "delivered", now + timedelta(days=4))

        assert order.tracking.actual_delivery == stamped
        assert statuses(order).count("delivered") == 1

    def test_lazily_initialises_tracking(self, service, untracked_order):
        order = service.set_order_status(untracked_order, "shipped")

        assert order.tracking is not None
        assert order.tracking.tracking_number.startswith("BD")
        assert statuses(order) == ["confirmed", "shipped"]

    def test_same_status_still_initialises_tracking(self, service, untracked_order):
        order = service.set_order_status(untracked_order, "confirmed")

        assert order.tracking is not None
        assert statuses(order) == ["confirmed"]
        assert service.get_order(untracked_order).tracking is not None

    def test_missing_order(self, service):
        with pytest.raises(OrderNotFoundError):
            service.set_order_status("ZY000000", "shipped")


class TestCancel:
    def test_cancel_is_terminal(self, service, place_order):
        order = service.machine.cancel(place_order("cod"))

        assert order.order_status == "cancelled"
        assert statuses(order)[-1] == "cancelled"
        assert order.tracking.current_location == "Cancelled"
        with pytest.raises(OrderCancelledError):
            service.machine.admin_set_status(order, "shipped")

    def test_cancel_twice_is_noop(self, service, place_order):
        order = service.machine.cancel(place_order("cod"))
        again = service.machine.cancel(order)
        assert statuses(again).count("cancelled") == 1

    def test_stale_snapshot_cannot_undo_cancel(self, service, place_order):
        order = place_order("cod")
        service.machine.cancel(order)

        with pytest.raises(OrderCancelledError):
            service.machine.admin_set_status(order, "shipped")
        assert service.get_order(order.id).order_status == "cancelled"

    def test_simulator_primitives_refuse(self, service, place_order, now):
        order = service.machine.cancel(place_order("cod"))
        assert service.machine.advance(order, "processing", "Packaging Facility", now) is None
        assert service.machine.append_location(order, "Delhi Distribution Center", now) is None


class TestAdvance:
    def test_guarded_by_read_status(self, service, place_order, now):
        snapshot = place_order("cod")

        moved = service.machine.advance(snapshot, "processing", "Packaging Facility", now)
        again = service.machine.advance(snapshot, "processing", "Packaging Facility", now)

        assert moved.order_status == "processing"
        assert again is None
        assert statuses(service.get_order(snapshot.id)).count("processing") == 1

    def test_existing_status_moves_without_append(self, service, place_order, now):
        order = service.machine.admin_set_status(place_order("cod"), "processing")
        order = service.machine.admin_set_status(order, "confirmed")

        moved = service.machine.advance(order, "processing", "Packaging Facility", now)

        assert moved.order_status == "processing"
        assert statuses(moved).count("processing") == 1
