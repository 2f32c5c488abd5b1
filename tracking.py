"""
Simulated shipment tracking.

There is no carrier integration, so progress is derived from how long ago
the order was placed each time a customer looks it up:

    confirmed  --[2h]-->  processing  --[12h]-->  shipped  --[48h]-->  delivered

Shipped orders older than 24h also walk through IN_TRANSIT_STOPS, one stop
per lookup and no more often than every ADMIN_HOLD_MINUTES. All writes go
through OrderStateMachine's guarded primitives, so a cancellation or admin
edit that lands first always wins.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from pymongo.errors import PyMongoError

from config import ADMIN_HOLD_MINUTES, SORTING_HUB
from database import utcnow
from errors import OrderEngineError
from order_status import OrderStateMachine
from schemas import Order

logger = logging.getLogger(__name__)

IN_TRANSIT_STOPS = [
    'Delhi Distribution Center',
    'Bangalore Sorting Facility',
    'Out for Delivery',
    'With Delivery Partner',
]

IDLE_STATUSES = ('pending_payment', 'delivered', 'cancelled')


class TrackingSimulator:
    def __init__(
        self,
        machine: OrderStateMachine,
        admin_hold: timedelta = timedelta(minutes=ADMIN_HOLD_MINUTES),
        hub: str = SORTING_HUB,
        stop_interval: timedelta = timedelta(minutes=ADMIN_HOLD_MINUTES),
    ) -> None:
        self.machine = machine
        self.admin_hold = admin_hold
        self.hub = hub
        self.stop_interval = stop_interval

    def tick(self, order: Order, now: Optional[datetime] = None) -> Order:
        """Bring ``order`` up to date with its age. Never raises."""
        now = now or utcnow()
        try:
            return self._tick(order, now)
        except (PyMongoError, OrderEngineError):
            logger.error(f"Tracking simulation failed for order {order.id}", exc_info=True)
            return order

    def _tick(self, order: Order, now: datetime) -> Order:
        if order.order_status in IDLE_STATUSES:
            return order
        order = self.machine.ensure_tracking(order, now)
        if self._held_by_admin(order, now):
            logger.debug(f"Order {order.id} recently edited by admin, not simulating")
            return order

        age_hours = (now - order.created_at).total_seconds() / 3600
        status = order.order_status

        step = None
        if 2 <= age_hours < 12 and status == 'confirmed':
            step = ('processing', 'Packaging Facility', order.created_at + timedelta(hours=2))
        elif 12 <= age_hours < 48 and status in ('confirmed', 'processing', 'packed'):
            step = (
                'shipped',
                f"In Transit - {self.hub} Sorting Center",
                order.created_at + timedelta(hours=12),
            )
        elif age_hours >= 48:
            step = ('delivered', 'Delivered', now)

        if step is not None:
            new_status, location, timestamp = step
            advanced = self.machine.advance(order, new_status, location, now, timestamp=timestamp)
            if advanced is None:
                return self.machine.get(order.id)
            order = advanced

        if order.order_status == 'shipped' and age_hours >= 24 and self._stop_due(order, now):
            stop = self._next_stop(order)
            if stop is not None:
                moved = self.machine.append_location(order, stop, now)
                order = moved or self.machine.get(order.id)
        return order

    def _held_by_admin(self, order: Order, now: datetime) -> bool:
        last = order.tracking.last_update
        return last is not None and last.source == 'admin' and now - last.timestamp < self.admin_hold

    def _stop_due(self, order: Order, now: datetime) -> bool:
        last = order.tracking.last_update
        return last is None or now - last.timestamp >= self.stop_interval

    @staticmethod
    def _next_stop(order: Order) -> Optional[str]:
        """Stop after the last logged location; the first stop if none logged yet."""
        last = order.tracking.last_update
        location = last.location if last is not None else None
        if location not in IN_TRANSIT_STOPS:
            return IN_TRANSIT_STOPS[0]
        index = IN_TRANSIT_STOPS.index(location) + 1
        return IN_TRANSIT_STOPS[index] if index < len(IN_TRANSIT_STOPS) else None
