"""
Operations exposed by the order engine, independent of the HTTP layer.
"""
import logging
import math
import random
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from coupons import CouponEngine
from database import get_documents
from errors import CouponNotFoundError, OrderNotFoundError, OwnershipError
from order_status import OrderStateMachine
from orders import OrderAssembler
from schemas import Order, ShippingAddress
from stores import Catalog, CartStore, UserDirectory
from tracking import TrackingSimulator

logger = logging.getLogger(__name__)


class OrderService:
    def __init__(self, db: Database, rng: Optional[random.Random] = None) -> None:
        self.db = db
        self.catalog = Catalog(db)
        self.carts = CartStore(db)
        self.users = UserDirectory(db)
        self.coupons = CouponEngine(db)
        self.machine = OrderStateMachine(db, rng)
        self.assembler = OrderAssembler(db, self.catalog, self.carts, self.users, self.coupons, rng)
        self.simulator = TrackingSimulator(self.machine)

    # Customer

    def create_order(
        self,
        user_id: str,
        payment_method: str,
        shipping_address: Optional[ShippingAddress] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        cart = self.carts.read(user_id)
        return self.assembler.assemble(
            cart, user_id, payment_method, shipping_address, idempotency_key, now
        )

    def confirm_payment(self, order_id: str, user_id: Optional[str] = None, now: Optional[datetime] = None) -> Order:
        order = self.get_order(order_id, user_id)
        order = self.machine.mark_paid(order, now)
        return self.assembler.clear_cart(order)

    def fail_payment(self, order_id: str, user_id: Optional[str] = None, now: Optional[datetime] = None) -> Order:
        order = self.get_order(order_id, user_id)
        return self.machine.mark_payment_failed(order, now)

    def get_order(self, order_id: str, user_id: Optional[str] = None) -> Order:
        order = self.machine.get(order_id)
        if user_id is not None and order.user_id != user_id:
            raise OrderNotFoundError(order_id)
        return order

    def list_orders(self, user_id: str) -> List[Order]:
        docs = get_documents(
            "order", {"user_id": user_id}, sort=[("created_at", DESCENDING)], database=self.db
        )
        return [Order.model_validate(d) for d in docs]

    def track_order(self, order_id: str, email: str, now: Optional[datetime] = None) -> Order:
        """Public lookup: the email must belong to the order's owner."""
        order = self.machine.get(order_id)
        owner = self.users.by_id(order.user_id)
        if owner is None or owner.email.strip().lower() != email.strip().lower():
            raise OwnershipError(order.id)
        return self.simulator.tick(order, now)

    def preview_coupon(self, code: str, order_value: int) -> Dict[str, Any]:
        coupon = self.coupons.get(code)
        if not coupon.is_active:
            raise CouponNotFoundError(code)
        validation = self.coupons.validate_for_order(coupon, order_value)
        discount = self.coupons.calculate_discount(coupon, order_value) if validation.valid else 0
        return {
            "code": coupon.code,
            "description": coupon.description,
            "discount_type": coupon.discount_type,
            "discount_value": coupon.discount_value,
            "valid": validation.valid,
            "reason": validation.reason,
            "discount": discount,
        }

    # Admin

    def set_order_status(self, order_id: str, new_status: str, now: Optional[datetime] = None) -> Order:
        order = self.machine.get(order_id)
        return self.machine.admin_set_status(order, new_status, now)

    def cancel_order(self, order_id: str, now: Optional[datetime] = None) -> Order:
        order = self.machine.get(order_id)
        return self.machine.cancel(order, now)

    def list_all_orders(self, status: Optional[str] = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        filter_dict = {"order_status": status} if status else {}
        skip = (page - 1) * limit
        docs = get_documents(
            "order",
            filter_dict,
            sort=[("created_at", DESCENDING)],
            skip=skip,
            limit=limit,
            database=self.db,
        )
        total = self.db["order"].count_documents(filter_dict)
        return {
            "orders": [Order.model_validate(d) for d in docs],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if limit else 0,
            },
        }

    def coupon_stats(self, code: str) -> Dict[str, Any]:
        return self.coupons.stats(code)
