"""
Process-scoped entity store.

Read-through / write-through cache over PersistentStore for users, products
and runtime settings. All mutations go through per-key asyncio locks. When
the database is unavailable the store logs the failure, flips `degraded` and
keeps serving from the cache; nothing raised by SQLAlchemy reaches callers.
"""

import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from marketbot.constants.event_types import EVENT_ATOMIC_UPDATE_CONFLICT, EVENT_STORE_DEGRADED
from marketbot.core.errors import NotFoundError, StoreUnavailableError
from marketbot.services.entities import Product, User
from marketbot.services.metrics import record_failed_atomic_update, record_store_degraded
from marketbot.services.store.locks import KeyedLocks
from marketbot.services.store.persistence import (
    COLLECTION_BOT_SETTINGS,
    COLLECTION_PRODUCTS,
    COLLECTION_USERS,
    PersistentStore,
)
from marketbot.services.system_event_service import emit
from marketbot.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

_MISSING = object()


class EntityStore:
    def __init__(self, persistence: PersistentStore | None = None):
        self.persistence = persistence or PersistentStore()
        self.locks = KeyedLocks()
        self.degraded = False
        self._users: dict[int, User] = {}
        self._products: dict[int, Product] = {}
        self._settings: dict[str, str | None] = {}
        # None until read from the database
        self._next_product_id: int | None = None

    # ---- persistence plumbing ----

    def safe(self, operation: str, fn: Callable[..., Any], *args, default: Any = None, **kwargs) -> Any:
        """
        Run a persistence call, degrading to cache-only on database failure.

        Returns `default` when the call failed.
        """
        try:
            result = fn(*args, **kwargs)
        except SQLAlchemyError as e:
            if not self.degraded:
                logger.error(f"Persistent store unavailable during {operation}; serving from cache: {e}")
                emit("ERROR", EVENT_STORE_DEGRADED, payload={"operation": operation}, exc=e)
            else:
                logger.warning(f"Persistent store still unavailable ({operation}): {e}")
            self.degraded = True
            record_store_degraded(operation)
            return default
        if self.degraded:
            logger.info(f"Persistent store recovered ({operation})")
            self.degraded = False
        return result

    def write(self, collection: str, doc_id: Any, data: dict) -> None:
        self.safe(f"set_merge.{collection}", self.persistence.set_merge, collection, doc_id, data)

    def remove(self, collection: str, doc_id: Any) -> None:
        self.safe(f"delete.{collection}", self.persistence.delete, collection, doc_id)

    def read_all(self, collection: str, **query) -> list[dict]:
        return self.safe(f"query.{collection}", self.persistence.query, collection, default=[], **query)

    # ---- lifecycle ----

    def hydrate(self) -> None:
        """Load users, products and settings into the cache (startup)."""
        for doc in self.read_all(COLLECTION_USERS):
            user = User.from_document(doc)
            self._users[user.id] = user
        product_docs = self.safe(
            f"query.{COLLECTION_PRODUCTS}", self.persistence.query, COLLECTION_PRODUCTS, default=_MISSING
        )
        if product_docs is not _MISSING:
            for doc in product_docs:
                product = Product.from_document(doc)
                self._products[product.id] = product
            self._next_product_id = max(self._products, default=0) + 1
        else:
            logger.warning("Product id sequence unknown until the database answers")
        for doc in self.read_all(COLLECTION_BOT_SETTINGS):
            self._settings[doc["key"]] = doc.get("value")
        logger.info(
            f"EntityStore hydrated: {len(self._users)} users, {len(self._products)} products, "
            f"next product id {self._next_product_id}, degraded={self.degraded}"
        )

    def flush(self) -> None:
        """Write every cached entity back (shutdown, or after recovering from degradation)."""
        for user in list(self._users.values()):
            self.write(COLLECTION_USERS, user.id, user.to_document())
        for product in list(self._products.values()):
            self.write(COLLECTION_PRODUCTS, product.id, product.to_document())
        for key, value in list(self._settings.items()):
            self.write(COLLECTION_BOT_SETTINGS, key, {"value": value})
        logger.info(f"EntityStore flushed (degraded={self.degraded})")

    # ---- users ----

    def get_user(self, user_id: int) -> User | None:
        user = self._users.get(user_id)
        if user is None:
            doc = self.safe("get.users", self.persistence.get, COLLECTION_USERS, user_id)
            if doc is not None:
                user = User.from_document(doc)
                self._users.setdefault(user.id, user)
                user = self._users[user.id]
        return user

    def require_user(self, user_id: int) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", user_message="User not found.")
        return user

    def list_users(self) -> list[User]:
        """All known users, oldest first."""
        for doc in self.read_all(COLLECTION_USERS):
            self._users.setdefault(int(doc["id"]), User.from_document(doc))
        return sorted(self._users.values(), key=lambda u: (u.joined_at, u.id))

    async def register_user(
        self,
        user_id: int,
        username: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> tuple[User, bool]:
        """Create-if-absent. Returns (user, created)."""
        existing = self._users.get(user_id)
        if existing is not None:
            return existing, False
        async with self.locks.hold(("user", user_id)):
            existing = self.get_user(user_id)
            if existing is not None:
                return existing, False
            user = User(id=user_id, username=username, first_name=first_name, last_name=last_name)
            self._users[user_id] = user
            self.write(COLLECTION_USERS, user_id, user.to_document())
            logger.info(f"Registered user {user_id} ({user.display_name})")
            return user, True

    async def set_banned(self, user_id: int, banned: bool) -> User:
        async with self.locks.hold(("user", user_id)):
            user = self.require_user(user_id)
            user.is_banned = banned
            self.write(COLLECTION_USERS, user_id, {"is_banned": banned, "updated_at": utcnow()})
            return user

    # ---- products ----

    def get_product(self, product_id: int) -> Product | None:
        product = self._products.get(product_id)
        if product is None:
            doc = self.safe("get.products", self.persistence.get, COLLECTION_PRODUCTS, product_id)
            if doc is not None:
                product = self._products.setdefault(product_id, Product.from_document(doc))
        return product

    def require_product(self, product_id: int) -> Product:
        product = self.get_product(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found", user_message="Product not found.")
        return product

    def list_products(
        self,
        status: str | None = None,
        seller_id: int | None = None,
        newest_first: bool = True,
        limit: int | None = None,
    ) -> list[Product]:
        where: dict = {}
        if status is not None:
            where["status"] = status
        if seller_id is not None:
            where["seller_id"] = seller_id
        for doc in self.read_all(COLLECTION_PRODUCTS, where=where):
            self._products.setdefault(int(doc["id"]), Product.from_document(doc))

        products = [
            p
            for p in self._products.values()
            if (status is None or p.status == status) and (seller_id is None or p.seller_id == seller_id)
        ]
        products.sort(key=lambda p: (p.created_at, p.id), reverse=newest_first)
        return products[:limit] if limit is not None else products

    def _allocate_product_id(self) -> int:
        """
        Next unused product id. Caller holds the product-sequence lock.

        The sequence is read from the database the first time it is needed;
        while that read fails no id is handed out.
        """
        if self._next_product_id is None:
            highest = self.safe(
                f"max_id.{COLLECTION_PRODUCTS}", self.persistence.max_id, COLLECTION_PRODUCTS, default=_MISSING
            )
            if highest is _MISSING:
                raise StoreUnavailableError(
                    "Product id sequence unknown while the database is unavailable",
                    user_message="Listings cannot be submitted right now. Please try again in a few minutes.",
                )
            self._next_product_id = max(highest, max(self._products, default=0)) + 1

        product_id = self._next_product_id
        while self.get_product(product_id) is not None:
            logger.warning(f"Product id {product_id} already taken, skipping")
            product_id += 1
        self._next_product_id = product_id + 1
        return product_id

    async def create_product(
        self,
        seller_id: int,
        title: str,
        price: int,
        category: str,
        description: str,
        images: list[str],
    ) -> Product:
        async with self.locks.hold(("product-sequence",)):
            product_id = self._allocate_product_id()
            product = Product(
                id=product_id,
                seller_id=seller_id,
                title=title,
                price=price,
                category=category,
                description=description,
                images=list(images),
            )
            self._products[product_id] = product
            self.write(COLLECTION_PRODUCTS, product_id, product.to_document())
        logger.info(f"Created product {product_id} for seller {seller_id}: {title!r} ({price})")
        return product

    async def transition_product(
        self,
        product_id: int,
        expected_status: str,
        new_status: str,
        moderator_id: int | None = None,
    ) -> tuple[bool, Product]:
        """
        Compare-and-set on product status.

        Returns (applied, product). Exactly one caller observes applied=True for
        a given expected -> new transition, both within this process (key lock)
        and against the database (conditional UPDATE).
        """
        async with self.locks.hold(("product", product_id)):
            product = self.require_product(product_id)
            if product.status != expected_status:
                self._record_conflict(product, expected_status)
                return False, product

            decided_at = utcnow()
            updates = {"status": new_status, "moderator_id": moderator_id, "decided_at": decided_at}
            won = self.safe(
                "update_if.products",
                self.persistence.update_if,
                COLLECTION_PRODUCTS,
                product_id,
                "status",
                expected_status,
                updates,
                default=_MISSING,
            )
            if won is False:
                # Database already holds a different status; adopt it
                doc = self.safe("get.products", self.persistence.get, COLLECTION_PRODUCTS, product_id)
                if doc is not None:
                    fresh = Product.from_document(doc)
                    product.status = fresh.status
                    product.moderator_id = fresh.moderator_id
                    product.decided_at = fresh.decided_at
                self._record_conflict(product, expected_status)
                return False, product
            if won is _MISSING:
                logger.warning(f"Product {product_id} transition applied to cache only (store degraded)")

            product.status = new_status
            product.moderator_id = moderator_id
            product.decided_at = decided_at
            return True, product

    def _record_conflict(self, product: Product, expected_status: str) -> None:
        record_failed_atomic_update(
            operation="transition_product",
            entity_id=product.id,
            expected_status=expected_status,
            actual_status=product.status,
        )
        emit(
            "WARN",
            EVENT_ATOMIC_UPDATE_CONFLICT,
            product_id=product.id,
            payload={
                "operation": "transition_product",
                "expected_status": expected_status,
                "actual_status": product.status,
            },
        )

    def product_counts(self, seller_id: int | None = None) -> dict[str, int]:
        counts: dict[str, int] = {}
        for product in self.list_products(seller_id=seller_id):
            counts[product.status] = counts.get(product.status, 0) + 1
        return counts

    # ---- runtime settings ----

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        value = self._settings.get(key)
        return default if value is None else value

    async def set_setting(self, key: str, value: str | None) -> None:
        async with self.locks.hold(("setting", key)):
            self._settings[key] = value
            self.write(COLLECTION_BOT_SETTINGS, key, {"value": value})
