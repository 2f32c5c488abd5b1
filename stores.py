"""
Collaborator stores the engine reads from: catalog, carts and users.

These are thin views over collections maintained elsewhere in the store
backend. The engine only ever reads them, except for clearing a cart once
its order is placed.
"""
import logging
from typing import Iterable, List, Optional

from bson import ObjectId
from pymongo.database import Database

from database import utcnow
from schemas import Cart, Product, User

logger = logging.getLogger(__name__)


class Catalog:
    """Authoritative product pricing."""

    def __init__(self, db: Database) -> None:
        self.products = db["product"]

    def find_by_ids(self, ids: Iterable[str]) -> List[Product]:
        wanted = list(dict.fromkeys(ids))
        docs = self.products.find({"id": {"$in": wanted}})
        return [Product.model_validate(d) for d in docs]


class CartStore:
    def __init__(self, db: Database) -> None:
        self.carts = db["cart"]

    def read(self, user_id: str) -> Cart:
        doc = self.carts.find_one({"user_id": user_id})
        if not doc:
            return Cart(user_id=user_id)
        return Cart.model_validate(doc)

    def clear(self, user_id: str) -> None:
        """Empty the cart and drop its coupon."""
        self.carts.update_one(
            {"user_id": user_id},
            {"$set": {"items": [], "applied_coupon": None, "updated_at": utcnow()}},
        )
        logger.info(f"Cleared cart for user {user_id}")


class UserDirectory:
    def __init__(self, db: Database) -> None:
        self.users = db["user"]

    def by_id(self, user_id: str) -> Optional[User]:
        key = ObjectId(user_id) if ObjectId.is_valid(user_id) else user_id
        doc = self.users.find_one({"_id": key})
        if not doc:
            return None
        return User(
            id=str(doc["_id"]),
            first_name=doc.get("first_name"),
            last_name=doc.get("last_name"),
            email=doc.get("email", ""),
        )
