"""
Order assembly: turns a cart snapshot into a priced, immutable order.

Pricing rules (whole currency units):

- every line is re-priced from the catalog, cart prices are never trusted
- at most one coupon, re-validated against the current subtotal
- tax is TAX_RATE of the discounted subtotal, rounded half up
- shipping is free above FREE_SHIPPING_THRESHOLD, SHIPPING_FEE otherwise
- cash on delivery adds COD_CHARGE

Persisting the order, recording coupon usage and (for COD) clearing the
cart form one unit of work. A retried request carrying the same
idempotency key gets the stored order back and finishes any cart clear the
first attempt didn't reach. Failures midway undo the earlier steps.
"""
import logging
import random
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import (
    COD_CHARGE,
    FREE_SHIPPING_THRESHOLD,
    ORDER_ID_ATTEMPTS,
    SHIPPING_FEE,
    TAX_RATE,
)
from coupons import CouponEngine, round_half_up
from database import create_document, utcnow
from errors import (
    AlreadyUsedError,
    CouponExhaustedError,
    CouponNotFoundError,
    EmptyCartError,
    OrderEngineError,
    OwnershipError,
    ProductNotFoundError,
)
from order_status import new_tracking
from schemas import (
    AppliedCoupon,
    Cart,
    Coupon,
    Order,
    OrderItem,
    ShippingAddress,
    Totals,
)
from stores import Catalog, CartStore, UserDirectory

logger = logging.getLogger(__name__)

INITIAL_MESSAGES = {
    'confirmed': 'Order confirmed and processing has begun',
    'pending_payment': 'Order placed, awaiting payment confirmation',
}


def compute_totals(subtotal: int, coupon_discount: int, payment_method: str) -> Totals:
    discounted = subtotal - coupon_discount
    tax = round_half_up(Decimal(discounted) * TAX_RATE)
    shipping = 0 if discounted > FREE_SHIPPING_THRESHOLD else SHIPPING_FEE
    cod_charges = COD_CHARGE if payment_method == 'cod' else 0
    return Totals(
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        cod_charges=cod_charges,
        coupon_discount=coupon_discount,
        total=discounted + tax + shipping + cod_charges,
    )


class OrderAssembler:
    def __init__(
        self,
        db: Database,
        catalog: Catalog,
        carts: CartStore,
        users: UserDirectory,
        coupons: CouponEngine,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.db = db
        self.orders = db["order"]
        self.catalog = catalog
        self.carts = carts
        self.users = users
        self.coupons = coupons
        self.rng = rng or random.Random()

    def assemble(
        self,
        cart: Cart,
        user_id: str,
        payment_method: str,
        shipping_address: Optional[ShippingAddress] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        now = now or utcnow()
        key = idempotency_key or str(uuid.uuid4())

        existing = self.orders.find_one({"idempotency_key": key})
        if existing:
            logger.info(f"Duplicate order request detected with key: {key}")
            return self._replay(Order.model_validate(existing), user_id)

        if not cart.items:
            raise EmptyCartError(user_id)

        items = self._price_items(cart)
        subtotal = sum(i.price * i.quantity for i in items)
        coupon, discount = self._redeem_coupon(cart, user_id, subtotal, now)
        totals = compute_totals(subtotal, discount, payment_method)

        applied_coupon = None
        if coupon is not None:
            applied_coupon = AppliedCoupon(
                code=coupon.code,
                discount_amount=discount,
                discount_type=coupon.discount_type,
                original_total=compute_totals(subtotal, 0, payment_method).total,
                final_total=totals.total,
            )

        cod = payment_method == 'cod'
        order_status = 'confirmed' if cod else 'pending_payment'
        order = Order(
            id=self._new_order_id(),
            user_id=user_id,
            items=items,
            totals=totals,
            applied_coupon=applied_coupon,
            payment_method=payment_method,
            payment_status='cod' if cod else 'initiated',
            order_status=order_status,
            shipping_address=shipping_address or self._fallback_address(user_id),
            tracking=new_tracking(order_status, now, self.rng, message=INITIAL_MESSAGES[order_status]),
            idempotency_key=key,
            created_at=now,
        )

        try:
            stored = self._insert(order)
        except Exception:
            if coupon is not None:
                self.coupons.release_usage(coupon.code, user_id)
            raise
        if stored is not order:
            # A concurrent request with the same key won the insert.
            if coupon is not None:
                self.coupons.release_usage(coupon.code, user_id)
            return self._replay(stored, user_id)

        logger.info(
            f"Order {order.id} created for user {user_id}: total {totals.total} via {payment_method}"
        )
        if cod:
            self._clear_cart_for(order, compensate=coupon)
        return order

    def clear_cart(self, order: Order) -> Order:
        """Empty the buyer's cart once for ``order``."""
        if order.cart_cleared:
            return order
        self.carts.clear(order.user_id)
        self._mark_cart_cleared(order)
        return order

    def _mark_cart_cleared(self, order: Order) -> None:
        self.orders.update_one({"id": order.id}, {"$set": {"cart_cleared": True}})
        order.cart_cleared = True

    # -------------------- helpers --------------------

    def _price_items(self, cart: Cart) -> List[OrderItem]:
        products = {p.id: p for p in self.catalog.find_by_ids(i.product_id for i in cart.items)}
        items = []
        for line in cart.items:
            product = products.get(line.product_id)
            if product is None:
                raise ProductNotFoundError(line.product_id)
            items.append(OrderItem(
                product_id=product.id,
                name=product.name,
                brand=product.brand,
                image=product.image,
                price=product.price,
                quantity=line.quantity,
                size=line.size,
            ))
        return items

    def _redeem_coupon(
        self, cart: Cart, user_id: str, subtotal: int, now: datetime
    ) -> Tuple[Optional[Coupon], int]:
        """Consume the cart's coupon, or fall back to no discount.

        The buyer is not told when the coupon is dropped here; the order
        simply goes through at full price.
        """
        if cart.applied_coupon is None or not cart.applied_coupon.code:
            return None, 0
        code = cart.applied_coupon.code
        try:
            coupon = self.coupons.get(code)
        except CouponNotFoundError:
            logger.warning(f"Dropping unknown coupon {code} for user {user_id}")
            return None, 0

        validation = self.coupons.validate_for_order(coupon, subtotal, now)
        if not validation.valid:
            logger.warning(f"Dropping coupon {coupon.code} for user {user_id}: {validation.reason}")
            return None, 0

        discount = self.coupons.calculate_discount(coupon, subtotal)
        try:
            self.coupons.record_usage(coupon, user_id, subtotal, discount, now)
        except (AlreadyUsedError, CouponExhaustedError) as e:
            logger.warning(f"Dropping coupon {coupon.code} for user {user_id}: {e}")
            return None, 0
        return coupon, discount

    def _fallback_address(self, user_id: str) -> ShippingAddress:
        user = self.users.by_id(user_id)
        name = ''
        if user is not None:
            name = f"{user.first_name or ''} {user.last_name or ''}".strip()
        return ShippingAddress(name=name or 'Customer', address_text='Address not provided')

    def _new_order_id(self) -> str:
        return f"ZY{self.rng.randint(0, 999_999):06d}"

    def _insert(self, order: Order) -> Order:
        """Insert ``order``, drawing a new id on collision.

        Returns the stored order, which is a different object when another
        request already inserted one under the same idempotency key.
        """
        for _ in range(ORDER_ID_ATTEMPTS):
            try:
                create_document("order", order.model_dump(), database=self.db)
                return order
            except DuplicateKeyError:
                existing = self.orders.find_one({"idempotency_key": order.idempotency_key})
                if existing:
                    return Order.model_validate(existing)
                logger.warning(f"Order id {order.id} already taken, retrying")
                order.id = self._new_order_id()
        raise OrderEngineError(f"Could not allocate a unique order id after {ORDER_ID_ATTEMPTS} attempts")

    def _clear_cart_for(self, order: Order, compensate: Optional[Coupon]) -> None:
        """Clear the cart for a new COD order, undoing the order if that fails.

        Once the cart is empty the order stands. A failed ``cart_cleared``
        write is left for a replay of the same key to finish.
        """
        try:
            self.carts.clear(order.user_id)
        except Exception:
            logger.error(f"Clearing cart failed for order {order.id}, rolling back", exc_info=True)
            self.orders.delete_one({"id": order.id})
            if compensate is not None:
                self.coupons.release_usage(compensate.code, order.user_id)
            raise
        try:
            self._mark_cart_cleared(order)
        except PyMongoError:
            logger.error(f"Cart cleared for order {order.id} but flag not saved", exc_info=True)

    def _replay(self, order: Order, user_id: str) -> Order:
        if order.user_id != user_id:
            raise OwnershipError(order.id, "Idempotency key belongs to another user's order")
        if order.payment_method == 'cod' and not order.cart_cleared:
            self.clear_cart(order)
        return order
