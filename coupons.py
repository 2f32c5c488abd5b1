"""
Coupon validation, discount computation and usage bookkeeping.

Validation problems a buyer can fix are returned as CouponValidation values.
Only usage recording raises, because by then the caller has committed to
consuming the coupon.
"""
import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import utcnow
from errors import AlreadyUsedError, CouponExhaustedError, CouponNotFoundError
from schemas import Coupon, CouponUsage, CouponValidation

logger = logging.getLogger(__name__)


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class CouponEngine:
    def __init__(self, db: Database) -> None:
        self.coupons = db["coupon"]

    def get(self, code: str) -> Coupon:
        doc = self.coupons.find_one({"code": code.strip().upper()})
        if not doc:
            raise CouponNotFoundError(code)
        return Coupon.model_validate(doc)

    @staticmethod
    def validate_for_order(
        coupon: Coupon, order_value: int, now: Optional[datetime] = None
    ) -> CouponValidation:
        now = now or utcnow()
        if not coupon.is_active:
            return CouponValidation(valid=False, reason="Coupon is not active")
        if now < coupon.valid_from:
            return CouponValidation(valid=False, reason="Coupon is not valid yet")
        if now > coupon.valid_to:
            return CouponValidation(valid=False, reason="Coupon has expired")
        if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
            return CouponValidation(valid=False, reason="Coupon usage limit exceeded")
        if order_value < coupon.minimum_order_value:
            return CouponValidation(
                valid=False,
                reason=f"Minimum order value should be ₹{coupon.minimum_order_value}",
            )
        return CouponValidation(valid=True)

    @staticmethod
    def calculate_discount(coupon: Coupon, order_value: int) -> int:
        """Discount in whole units; never more than the order value."""
        if coupon.discount_type == "percentage":
            amount = round_half_up(Decimal(order_value) * coupon.discount_value / 100)
            if coupon.maximum_discount is not None:
                amount = min(amount, coupon.maximum_discount)
        else:
            amount = coupon.discount_value
        return max(0, min(amount, order_value))

    def record_usage(
        self,
        coupon: Coupon,
        user_id: str,
        order_value: int,
        discount_applied: int,
        now: Optional[datetime] = None,
    ) -> Coupon:
        """Append a usage entry, conditioned on the user and the limit in one write.

        ``coupon`` may be stale: the repeat-user and usage-limit checks run
        against the stored document, not against this snapshot.
        """
        entry = CouponUsage(
            user=user_id,
            used_at=now or utcnow(),
            order_value=order_value,
            discount_applied=discount_applied,
        )
        query: Dict[str, Any] = {"code": coupon.code, "used_by.user": {"$ne": user_id}}
        if coupon.usage_limit is not None:
            query["used_count"] = {"$lt": coupon.usage_limit}

        doc = self.coupons.find_one_and_update(
            query,
            {
                "$push": {"used_by": entry.model_dump()},
                "$inc": {"used_count": 1},
                "$set": {"updated_at": utcnow()},
            },
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            logger.info(f"Coupon {coupon.code} used by {user_id} (discount {discount_applied})")
            return Coupon.model_validate(doc)

        # Nothing matched; work out which condition failed.
        current = self.get(coupon.code)
        if any(u.user == user_id for u in current.used_by):
            raise AlreadyUsedError(coupon.code, user_id)
        raise CouponExhaustedError(coupon.code, current.usage_limit)

    def release_usage(self, code: str, user_id: str) -> None:
        """Undo record_usage for an order that never got persisted."""
        result = self.coupons.update_one(
            {"code": code, "used_by.user": user_id},
            {
                "$pull": {"used_by": {"user": user_id}},
                "$inc": {"used_count": -1},
                "$set": {"updated_at": utcnow()},
            },
        )
        if result.modified_count:
            logger.warning(f"Released usage of coupon {code} by {user_id}")

    def stats(self, code: str) -> Dict[str, Any]:
        coupon = self.get(code)
        usages = coupon.used_by
        total_discount = sum(u.discount_applied for u in usages)
        average_order_value = (
            sum(u.order_value for u in usages) / len(usages) if usages else 0
        )
        return {
            "code": coupon.code,
            "total_usage": coupon.used_count,
            "usage_limit": coupon.usage_limit,
            "total_discount": total_discount,
            "average_order_value": round(average_order_value, 2),
            "usage_history": [
                u.model_dump() for u in sorted(usages, key=lambda u: u.used_at, reverse=True)
            ],
        }
