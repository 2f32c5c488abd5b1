"""
Order status state machine.

Two loosely coupled axes live on an order:

- order_status: pending_payment -> confirmed -> processing -> packed ->
  shipped -> delivered, with cancelled reachable from anywhere and terminal.
- payment_status: initiated -> paid | failed, or fixed at cod.

Every write here is a single conditional MongoDB update. Status writes
compare-and-set on the status that was read, and tracking appends are
guarded by ``tracking.status_index.<status>`` not existing yet, so two
racing callers can never both append the same status.
"""
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from config import CARRIERS, DELIVERY_DAYS_MAX, DELIVERY_DAYS_MIN
from database import utcnow
from errors import (
    InvalidTransitionError,
    OrderCancelledError,
    OrderNotFoundError,
)
from schemas import ORDER_STATUSES, Order, Tracking, TrackingUpdate

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    'pending_payment': 'Order placed, awaiting payment confirmation',
    'confirmed': 'Payment confirmed - Order processing has begun',
    'processing': 'Order is being prepared for shipment',
    'packed': 'Order has been packed and is ready for shipment',
    'shipped': 'Package has been dispatched and is on the way',
    'delivered': 'Package has been delivered successfully',
    'cancelled': 'Order has been cancelled',
}

STATUS_LOCATIONS = {
    'pending_payment': 'Order System',
    'confirmed': 'Processing Center',
    'processing': 'Packaging Facility',
    'packed': 'Packaging Facility',
    'shipped': 'In Transit',
    'delivered': 'Delivered',
    'cancelled': 'Cancelled',
}


def tracking_number(rng: random.Random) -> str:
    return f"BD{rng.randint(1_000_000_000, 9_999_999_999)}"


def new_tracking(
    status: str,
    now: datetime,
    rng: random.Random,
    message: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> Tracking:
    """Fresh tracking block seeded with one update for ``status``."""
    seed = TrackingUpdate(
        status=status,
        message=message or STATUS_MESSAGES[status],
        location=STATUS_LOCATIONS[status],
        timestamp=timestamp or now,
    )
    return Tracking(
        tracking_number=tracking_number(rng),
        carrier=rng.choice(CARRIERS),
        estimated_delivery=now + timedelta(days=rng.randint(DELIVERY_DAYS_MIN, DELIVERY_DAYS_MAX)),
        current_location='Processing Center',
        updates=[seed],
        status_index={status: seed.timestamp},
    )


class OrderStateMachine:
    def __init__(self, db: Database, rng: Optional[random.Random] = None) -> None:
        self.orders = db["order"]
        self.rng = rng or random.Random()

    def get(self, order_id: str) -> Order:
        doc = self.orders.find_one({"id": order_id.strip().upper()})
        if not doc:
            raise OrderNotFoundError(order_id)
        return Order.model_validate(doc)

    # -------------------- tracking log --------------------

    def ensure_tracking(self, order: Order, now: Optional[datetime] = None) -> Order:
        """Attach a tracking block to orders created without one."""
        if order.tracking is not None:
            return order
        tracking = new_tracking(order.order_status, now or utcnow(), self.rng, timestamp=order.created_at)
        self.orders.update_one(
            {"id": order.id, "tracking": None},
            {"$set": {"tracking": tracking.model_dump()}},
        )
        logger.info(f"Initialised tracking for order {order.id}")
        return self.get(order.id)

    def _append(self, order_id: str, update: TrackingUpdate) -> bool:
        """Append ``update`` unless its status is already in the log."""
        result = self.orders.update_one(
            {"id": order_id, f"tracking.status_index.{update.status}": {"$exists": False}},
            {
                "$push": {"tracking.updates": update.model_dump()},
                "$set": {f"tracking.status_index.{update.status}": update.timestamp},
            },
        )
        return result.modified_count == 1

    def _stamp_delivery(self, order_id: str, now: datetime) -> None:
        self.orders.update_one(
            {"id": order_id, "tracking.actual_delivery": None},
            {"$set": {"tracking.actual_delivery": now}},
        )

    # -------------------- payment --------------------

    def mark_paid(self, order: Order, now: Optional[datetime] = None) -> Order:
        """Record a successful online payment and confirm the order."""
        now = now or utcnow()
        if order.order_status == 'cancelled':
            raise OrderCancelledError(order.id)
        if order.payment_status == 'cod':
            raise InvalidTransitionError(order.id, order.payment_status, 'paid')

        order = self.ensure_tracking(order, now)
        if order.payment_status != 'paid':
            result = self.orders.update_one(
                {
                    "id": order.id,
                    "payment_status": {"$in": ['initiated', 'failed']},
                    "order_status": {"$ne": 'cancelled'},
                },
                {"$set": {"payment_status": 'paid', "updated_at": now}},
            )
            if result.matched_count == 0 and self.get(order.id).order_status == 'cancelled':
                raise OrderCancelledError(order.id)

        self.orders.update_one(
            {"id": order.id, "order_status": 'pending_payment'},
            {"$set": {
                "order_status": 'confirmed',
                "tracking.current_location": STATUS_LOCATIONS['confirmed'],
                "updated_at": now,
            }},
        )
        self._append(order.id, TrackingUpdate(
            status='confirmed',
            message=STATUS_MESSAGES['confirmed'],
            location=STATUS_LOCATIONS['confirmed'],
            timestamp=now,
        ))
        logger.info(f"Order {order.id} paid")
        return self.get(order.id)

    def mark_payment_failed(self, order: Order, now: Optional[datetime] = None) -> Order:
        if order.order_status == 'cancelled':
            raise OrderCancelledError(order.id)
        if order.payment_status == 'failed':
            return order
        if order.payment_status != 'initiated':
            raise InvalidTransitionError(order.id, order.payment_status, 'failed')

        result = self.orders.update_one(
            {"id": order.id, "payment_status": 'initiated', "order_status": {"$ne": 'cancelled'}},
            {"$set": {"payment_status": 'failed', "updated_at": now or utcnow()}},
        )
        if result.matched_count == 0:
            current = self.get(order.id)
            if current.order_status == 'cancelled':
                raise OrderCancelledError(order.id)
            if current.payment_status != 'failed':
                raise InvalidTransitionError(order.id, current.payment_status, 'failed')
        logger.warning(f"Payment failed for order {order.id}")
        return self.get(order.id)

    # -------------------- admin --------------------

    def admin_set_status(self, order: Order, new_status: str, now: Optional[datetime] = None) -> Order:
        """Move an order to any status except out of cancelled.

        Administrators use this to correct mistakes, so forward and backward
        moves are both allowed. Each status gets at most one log entry.
        """
        if new_status not in ORDER_STATUSES:
            raise InvalidTransitionError(order.id, order.order_status, new_status)
        now = now or utcnow()
        order = self.ensure_tracking(order, now)
        if order.order_status == new_status:
            return order
        if order.order_status == 'cancelled':
            raise OrderCancelledError(order.id)

        location = STATUS_LOCATIONS[new_status]
        result = self.orders.update_one(
            {"id": order.id, "order_status": {"$ne": 'cancelled'}},
            {"$set": {
                "order_status": new_status,
                "tracking.current_location": location,
                "updated_at": now,
            }},
        )
        if result.matched_count == 0:
            raise OrderCancelledError(order.id)

        self._append(order.id, TrackingUpdate(
            status=new_status,
            message=STATUS_MESSAGES[new_status],
            location=location,
            timestamp=now,
            source='admin',
        ))
        if new_status == 'delivered':
            self._stamp_delivery(order.id, now)

        logger.info(f"Order {order.id}: {order.order_status} -> {new_status} (admin)")
        return self.get(order.id)

    def cancel(self, order: Order, now: Optional[datetime] = None) -> Order:
        return self.admin_set_status(order, 'cancelled', now)

    # -------------------- simulator primitives --------------------

    def advance(
        self,
        order: Order,
        new_status: str,
        location: str,
        now: datetime,
        timestamp: Optional[datetime] = None,
    ) -> Optional[Order]:
        """Forward move on behalf of the tracking simulator.

        Applies only if the order still has the status it was read with.
        Returns the updated order, or None when another writer got there first.
        """
        if order.order_status == 'cancelled' or order.tracking is None:
            return None

        query: Dict[str, Any] = {"id": order.id, "order_status": order.order_status}
        fields: Dict[str, Any] = {
            "order_status": new_status,
            "tracking.current_location": location,
            "updated_at": now,
        }
        update: Dict[str, Any] = {"$set": fields}

        if not order.tracking.has_status(new_status):
            entry = TrackingUpdate(
                status=new_status,
                message=STATUS_MESSAGES[new_status],
                location=location,
                timestamp=timestamp or now,
                source='simulator',
            )
            query[f"tracking.status_index.{new_status}"] = {"$exists": False}
            fields[f"tracking.status_index.{new_status}"] = entry.timestamp
            update["$push"] = {"tracking.updates": entry.model_dump()}

        if new_status == 'delivered' and order.tracking.actual_delivery is None:
            query["tracking.actual_delivery"] = None
            fields["tracking.actual_delivery"] = now

        doc = self.orders.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
        if doc is None:
            logger.debug(f"Order {order.id} changed underneath simulator, skipping {new_status}")
            return None
        logger.info(f"Order {order.id}: {order.order_status} -> {new_status} (simulated)")
        return Order.model_validate(doc)

    def append_location(self, order: Order, location: str, now: datetime) -> Optional[Order]:
        """Log an in-transit hop for a shipped order."""
        if order.order_status != 'shipped' or order.tracking is None:
            return None
        entry = TrackingUpdate(
            status='shipped',
            message=f"Package arrived at {location}",
            location=location,
            timestamp=now,
            source='simulator',
        )
        doc = self.orders.find_one_and_update(
            {
                "id": order.id,
                "order_status": 'shipped',
                "tracking.current_location": order.tracking.current_location,
            },
            {
                "$push": {"tracking.updates": entry.model_dump()},
                "$set": {"tracking.current_location": location, "updated_at": now},
            },
            return_document=ReturnDocument.AFTER,
        )
        return Order.model_validate(doc) if doc else None
