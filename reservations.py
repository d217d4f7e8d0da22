"""
Stock reservation engine.

Every write to a product's stock goes through DocumentStore.update_if: the
precondition is evaluated against the stored document at write time and the
mutation is applied only if it still holds. No in-process lock is involved, so
any number of workers can share one store without overselling.

Ledger layout (product.stock):
    quantity      physical units owned
    reserved      units held by live reservations (== sum of reservations[].quantity)
    reservations  [{reservation_id, user_id, session_id, quantity, variant_id,
                    reserved_at, expires_at}, ...]
Variants carry their own stock/reserved counters which move in the same write.
"""

import logging
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

from bson import ObjectId

import config
from database import DocumentStore, utcnow
from errors import (
    ConcurrentUpdateError,
    DocumentNotFoundError,
    InsufficientReservedStockError,
    InsufficientStockError,
    ProductNotFoundError,
    ShopError,
    StockReservationFailedError,
    VariantNotFoundError,
)
from schemas import Reservation, Stock, Variant

logger = logging.getLogger(__name__)

PRODUCTS = "product"


def stock_of(doc: dict) -> Stock:
    return Stock.model_validate(doc.get("stock") or {})


def find_variant(doc: dict, variant_id: str) -> Variant:
    for raw in doc.get("variants") or []:
        if raw.get("id") == variant_id:
            return Variant.model_validate(raw)
    raise VariantNotFoundError(str(doc["_id"]), variant_id)


def _adjust_variant(doc: dict, variant_id: Optional[str], stock_delta: int = 0, reserved_delta: int = 0) -> None:
    if variant_id is None:
        return
    for raw in doc.get("variants") or []:
        if raw.get("id") == variant_id:
            raw["stock"] = raw.get("stock", 0) + stock_delta
            raw["reserved"] = raw.get("reserved", 0) + reserved_delta
            return
    raise VariantNotFoundError(str(doc["_id"]), variant_id)


def _availability(doc: dict, variant_id: Optional[str]) -> Tuple[bool, int]:
    """(track_quantity, units a new hold may take) for the product, capped by the variant."""
    stock = stock_of(doc)
    available = stock.available_quantity
    if variant_id is not None:
        available = min(available, find_variant(doc, variant_id).available_quantity)
    return stock.track_quantity, available


def _match_index(
    stock: Stock,
    user_id: str,
    quantity: int,
    variant_id: Optional[str],
    reservation_id: Optional[str],
) -> Optional[int]:
    for index, r in enumerate(stock.reservations):
        if r.user_id != user_id or r.quantity != quantity or r.variant_id != variant_id:
            continue
        if reservation_id is not None and r.reservation_id != reservation_id:
            continue
        return index
    return None


class ReservationEngine:
    """Atomic reserve / confirm / release / expire over the stock ledger."""

    def __init__(
        self,
        store: DocumentStore,
        ttl: Optional[timedelta] = None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.ttl = ttl or timedelta(minutes=config.RESERVATION_TTL_MINUTES)
        self.clock = clock

    # -------------------- reads --------------------

    def _load(self, product_id: str) -> dict:
        product = self.store.find_by_id(PRODUCTS, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    def get_stock_snapshot(self, product_id: str) -> dict:
        product = self._load(product_id)
        stock = stock_of(product)
        return {
            "product_id": product_id,
            "name": product.get("name"),
            "sku": product.get("sku"),
            "quantity": stock.quantity,
            "reserved": stock.reserved,
            "available": stock.available_quantity,
            "status": stock.status_label,
            "track_quantity": stock.track_quantity,
            "low_stock_threshold": stock.low_stock_threshold,
            "active_reservations": len(stock.reservations),
            "variants": [
                {
                    "id": v["id"],
                    "name": v.get("name"),
                    "value": v.get("value"),
                    "stock": v.get("stock", 0),
                    "reserved": v.get("reserved", 0),
                    "available": v.get("stock", 0) - v.get("reserved", 0),
                }
                for v in product.get("variants") or []
            ],
        }

    def get_stock_status(self, product_ids: List[str]) -> List[dict]:
        snapshots = []
        for product_id in product_ids:
            try:
                snapshots.append(self.get_stock_snapshot(product_id))
            except ProductNotFoundError:
                logger.warning(f"Stock status requested for unknown product {product_id}")
        return snapshots

    # -------------------- reserve --------------------

    def reserve(
        self,
        product_id: str,
        quantity: int,
        user_id: str,
        session_id: str,
        variant_id: Optional[str] = None,
        ttl: Optional[timedelta] = None,
        reservation_id: Optional[str] = None,
    ) -> Reservation:
        """Hold `quantity` units for this user/session until the lease expires.

        Raises InsufficientStockError when available stock (product, and variant
        if given) cannot cover the request at write time.
        """
        if quantity <= 0:
            raise ValueError("quantity must be positive")

        now = self.clock()
        reservation = Reservation(
            reservation_id=reservation_id or str(ObjectId()),
            user_id=user_id,
            session_id=session_id,
            quantity=quantity,
            variant_id=variant_id,
            reserved_at=now,
            expires_at=now + (ttl if ttl is not None else self.ttl),
        )

        seen = {}

        def can_reserve(doc: dict) -> bool:
            seen["tracked"], seen["available"] = _availability(doc, variant_id)
            seen["name"] = doc.get("name")
            return seen["tracked"] and seen["available"] >= quantity

        def hold(doc: dict) -> None:
            stock = stock_of(doc)
            stock.reserved += quantity
            stock.reservations.append(reservation)
            stock.last_updated = now
            doc["stock"] = stock.model_dump()
            _adjust_variant(doc, variant_id, reserved_delta=quantity)

        try:
            updated = self.store.update_if(PRODUCTS, product_id, can_reserve, hold)
        except DocumentNotFoundError:
            raise ProductNotFoundError(product_id)

        if updated is not None:
            logger.info(
                f"Reserved {quantity} of {product_id} for user {user_id} "
                f"(reservation {reservation.reservation_id}, expires {reservation.expires_at.isoformat()})"
            )
            return reservation

        # seen holds the document the refusal was decided on
        if not seen["tracked"]:
            return reservation

        available = seen["available"]
        logger.warning(f"Reservation refused for {product_id}: available {available}, requested {quantity}")
        raise InsufficientStockError(product_id, available, quantity, name=seen["name"])

    def reserve_stock(self, items: List[dict], user_id: str, session_id: str) -> dict:
        """Reserve every item or none of them.

        Each item is {product_id, quantity, variant_id?}. All items are
        attempted so the caller gets the full failure list; anything already
        reserved is released before StockReservationFailedError is raised.
        """
        reservation_id = str(ObjectId())
        made: List[dict] = []
        failures: List[dict] = []

        try:
            for item in items:
                product_id = item["product_id"]
                variant_id = item.get("variant_id")
                try:
                    reservation = self.reserve(
                        product_id,
                        item["quantity"],
                        user_id,
                        session_id,
                        variant_id=variant_id,
                        reservation_id=reservation_id,
                    )
                except InsufficientStockError as exc:
                    failures.append({
                        "product_id": product_id,
                        "variant_id": variant_id,
                        "requested": exc.requested,
                        "available": exc.available,
                        "reason": "insufficient_stock",
                    })
                except (ProductNotFoundError, VariantNotFoundError, ConcurrentUpdateError) as exc:
                    failures.append({
                        "product_id": product_id,
                        "variant_id": variant_id,
                        "requested": item["quantity"],
                        "reason": type(exc).__name__,
                        "message": str(exc),
                    })
                else:
                    made.append({"product_id": product_id, **reservation.model_dump()})
        except Exception:
            self.release_reservations(made, "reservation_error")
            raise

        if failures:
            self.release_reservations(made, "batch_rollback")
            logger.warning(
                f"Batch reservation {reservation_id} rolled back: "
                f"{len(failures)} failed, {len(made)} released"
            )
            raise StockReservationFailedError(failures)

        expires_at = max((r["expires_at"] for r in made), default=None)
        return {
            "reservation_id": reservation_id,
            "session_id": session_id,
            "reservations": made,
            "expires_at": expires_at,
        }

    # -------------------- confirm --------------------

    def confirm(
        self,
        product_id: str,
        quantity: int,
        order_id: str,
        user_id: str,
        variant_id: Optional[str] = None,
        reservation_id: Optional[str] = None,
    ) -> dict:
        """Turn a reservation into a sale: quantity and reserved both drop.

        Raises InsufficientReservedStockError if no matching reservation is
        live (already confirmed, released, or expired and swept).
        """
        now = self.clock()

        def has_reservation(doc: dict) -> bool:
            stock = stock_of(doc)
            return (
                stock.track_quantity
                and stock.reserved >= quantity
                and _match_index(stock, user_id, quantity, variant_id, reservation_id) is not None
            )

        def sell(doc: dict) -> None:
            stock = stock_of(doc)
            stock.reservations.pop(_match_index(stock, user_id, quantity, variant_id, reservation_id))
            stock.quantity -= quantity
            stock.reserved -= quantity
            stock.last_updated = now
            doc["stock"] = stock.model_dump()
            _adjust_variant(doc, variant_id, stock_delta=-quantity, reserved_delta=-quantity)

        try:
            updated = self.store.update_if(PRODUCTS, product_id, has_reservation, sell)
        except DocumentNotFoundError:
            raise ProductNotFoundError(product_id)

        if updated is None:
            stock = stock_of(self._load(product_id))
            if stock.track_quantity:
                logger.warning(f"Confirm refused for {product_id}: no live reservation of {quantity} for user {user_id}")
                raise InsufficientReservedStockError(product_id, quantity, stock.reserved)
        else:
            logger.info(f"Confirmed {quantity} of {product_id} for order {order_id}")

        return {
            "product_id": product_id,
            "variant_id": variant_id,
            "quantity": quantity,
            "order_id": order_id,
            "confirmed_at": now,
        }

    def confirm_stock_reservation(
        self,
        order_id: str,
        items: List[dict],
        user_id: str,
        reservation_id: Optional[str] = None,
    ) -> dict:
        confirmed, failed = [], []
        for item in items:
            try:
                confirmed.append(self.confirm(
                    item["product_id"],
                    item["quantity"],
                    order_id,
                    user_id,
                    variant_id=item.get("variant_id"),
                    reservation_id=reservation_id,
                ))
            except ShopError as exc:
                logger.error(f"Could not confirm {item['product_id']} for order {order_id}: {exc}")
                failed.append({
                    "product_id": item["product_id"],
                    "variant_id": item.get("variant_id"),
                    "quantity": item["quantity"],
                    "error": str(exc),
                })
        return {"order_id": order_id, "confirmed": confirmed, "failed": failed}

    def claim(
        self,
        product_id: str,
        quantity: int,
        order_id: str,
        variant_id: Optional[str] = None,
    ) -> dict:
        """Sell units straight from available stock, with no reservation behind them.

        Used when a paid order's reservation is gone. The write only happens
        while quantity - reserved still covers the request, so live holds of
        other buyers are never consumed. Raises InsufficientStockError otherwise.
        """
        now = self.clock()
        seen = {}

        def can_claim(doc: dict) -> bool:
            seen["tracked"], seen["available"] = _availability(doc, variant_id)
            seen["name"] = doc.get("name")
            return seen["tracked"] and seen["available"] >= quantity

        def sell(doc: dict) -> None:
            stock = stock_of(doc)
            stock.quantity -= quantity
            stock.last_updated = now
            doc["stock"] = stock.model_dump()
            _adjust_variant(doc, variant_id, stock_delta=-quantity)

        try:
            updated = self.store.update_if(PRODUCTS, product_id, can_claim, sell)
        except DocumentNotFoundError:
            raise ProductNotFoundError(product_id)

        if updated is None and seen["tracked"]:
            logger.warning(
                f"Claim refused for {product_id} on order {order_id}: "
                f"available {seen['available']}, requested {quantity}"
            )
            raise InsufficientStockError(product_id, seen["available"], quantity, name=seen["name"])

        if updated is not None:
            logger.info(f"Claimed {quantity} of {product_id} from available stock for order {order_id}")
        return {
            "product_id": product_id,
            "variant_id": variant_id,
            "quantity": quantity,
            "order_id": order_id,
            "confirmed_at": now,
        }

    # -------------------- release --------------------

    def release(
        self,
        product_id: str,
        quantity: int,
        user_id: str,
        reason: str,
        variant_id: Optional[str] = None,
        reservation_id: Optional[str] = None,
    ) -> dict:
        """Give reserved units back to available stock without a sale."""
        now = self.clock()

        def has_reservation(doc: dict) -> bool:
            stock = stock_of(doc)
            return (
                stock.track_quantity
                and stock.reserved >= quantity
                and _match_index(stock, user_id, quantity, variant_id, reservation_id) is not None
            )

        def give_back(doc: dict) -> None:
            stock = stock_of(doc)
            stock.reservations.pop(_match_index(stock, user_id, quantity, variant_id, reservation_id))
            stock.reserved -= quantity
            stock.last_updated = now
            doc["stock"] = stock.model_dump()
            _adjust_variant(doc, variant_id, reserved_delta=-quantity)

        try:
            updated = self.store.update_if(PRODUCTS, product_id, has_reservation, give_back)
        except DocumentNotFoundError:
            raise ProductNotFoundError(product_id)

        if updated is None:
            stock = stock_of(self._load(product_id))
            if stock.track_quantity:
                logger.warning(f"Release refused for {product_id}: no live reservation of {quantity} for user {user_id}")
                raise InsufficientReservedStockError(product_id, quantity, stock.reserved)
        else:
            logger.info(f"Released {quantity} of {product_id} for user {user_id}: {reason}")

        return {
            "product_id": product_id,
            "variant_id": variant_id,
            "quantity": quantity,
            "reason": reason,
            "released_at": now,
        }

    def release_reservations(self, reservations: List[dict], reason: str) -> dict:
        """Release a list of reservations; failures are logged, never raised."""
        released, failed = [], []
        for r in reservations:
            try:
                released.append(self.release(
                    r["product_id"],
                    r["quantity"],
                    r["user_id"],
                    reason,
                    variant_id=r.get("variant_id"),
                    reservation_id=r.get("reservation_id"),
                ))
            except ShopError as exc:
                logger.warning(f"Release of {r['quantity']} on {r['product_id']} skipped ({reason}): {exc}")
                failed.append({"product_id": r["product_id"], "quantity": r["quantity"], "error": str(exc)})
        return {"released": released, "failed": failed}

    # -------------------- expiry --------------------

    def cleanup_expired(self) -> dict:
        """Drop every reservation whose lease has run out.

        One conditional write per product; only entries with expires_at < now
        are removed, so live reservations made concurrently are untouched.
        """
        now = self.clock()
        products_updated = 0
        total_released = 0

        candidates = self.store.find(PRODUCTS, {"stock.reservations.expires_at": {"$lt": now}})
        for product in candidates:
            released: Dict[str, int] = {}

            def has_expired(doc: dict) -> bool:
                return any(r.expires_at < now for r in stock_of(doc).reservations)

            def drop_expired(doc: dict) -> None:
                stock = stock_of(doc)
                expired = [r for r in stock.reservations if r.expires_at < now]
                stock.reservations = [r for r in stock.reservations if r.expires_at >= now]
                total = sum(r.quantity for r in expired)
                stock.reserved -= total
                stock.last_updated = now
                doc["stock"] = stock.model_dump()
                for r in expired:
                    if r.variant_id is not None:
                        try:
                            _adjust_variant(doc, r.variant_id, reserved_delta=-r.quantity)
                        except VariantNotFoundError:
                            logger.warning(f"Expired reservation names missing variant {r.variant_id}")
                released["quantity"] = total

            try:
                updated = self.store.update_if(PRODUCTS, product["_id"], has_expired, drop_expired)
            except DocumentNotFoundError:
                continue

            if updated is not None:
                products_updated += 1
                total_released += released["quantity"]

        if products_updated:
            logger.info(f"Expired reservations released: {total_released} units across {products_updated} products")
        return {"products_updated": products_updated, "total_released": total_released}

    # -------------------- adjustments --------------------

    def restock(self, product_id: str, quantity: int, variant_id: Optional[str] = None) -> bool:
        """Put sold units back on the shelf (order cancellation).

        Unconditional increment of physical quantity; reserved is untouched
        because the units were already confirmed.
        """
        def add_back(doc: dict) -> None:
            stock = stock_of(doc)
            stock.quantity += quantity
            stock.last_updated = self.clock()
            doc["stock"] = stock.model_dump()
            if variant_id is not None:
                try:
                    _adjust_variant(doc, variant_id, stock_delta=quantity)
                except VariantNotFoundError:
                    logger.warning(f"Restock skipped missing variant {variant_id} on {product_id}")

        try:
            self.store.update_if(PRODUCTS, product_id, lambda _doc: True, add_back)
        except DocumentNotFoundError:
            logger.warning(f"Restock skipped for deleted product {product_id}")
            return False
        return True

    def update_variant_stock(self, product_id: str, variant_id: str, quantity_change: int) -> dict:
        """Adjust a variant's physical stock; it never drops below its reserved count."""

        def keeps_reserved(doc: dict) -> bool:
            variant = find_variant(doc, variant_id)
            return variant.stock + quantity_change >= variant.reserved

        def adjust(doc: dict) -> None:
            _adjust_variant(doc, variant_id, stock_delta=quantity_change)

        try:
            updated = self.store.update_if(PRODUCTS, product_id, keeps_reserved, adjust)
        except DocumentNotFoundError:
            raise ProductNotFoundError(product_id)

        if updated is None:
            variant = find_variant(self._load(product_id), variant_id)
            logger.warning(f"Variant {variant_id} of {product_id} cannot drop below its {variant.reserved} reserved units")
            raise InsufficientStockError(product_id, variant.available_quantity, -quantity_change)

        variant = find_variant(updated, variant_id)
        logger.info(f"Variant {variant_id} of {product_id} adjusted by {quantity_change} to {variant.stock}")
        return {"product_id": product_id, "variant_id": variant_id, "stock": variant.stock, "reserved": variant.reserved}

    def bulk_stock_update(self, updates: List[dict]) -> dict:
        """Set physical quantity on many products; each must still cover its reservations."""
        successful, failed = [], []
        for update in updates:
            product_id = update["product_id"]
            quantity = update["quantity"]

            def covers_reserved(doc: dict) -> bool:
                return stock_of(doc).reserved <= quantity

            def set_quantity(doc: dict) -> None:
                stock = stock_of(doc)
                stock.quantity = quantity
                stock.last_updated = self.clock()
                doc["stock"] = stock.model_dump()

            try:
                updated = self.store.update_if(PRODUCTS, product_id, covers_reserved, set_quantity)
            except DocumentNotFoundError:
                failed.append({"product_id": product_id, "error": "Product not found"})
                continue
            except ConcurrentUpdateError as exc:
                failed.append({"product_id": product_id, "error": str(exc)})
                continue

            if updated is None:
                failed.append({"product_id": product_id, "error": "Quantity below reserved stock"})
            else:
                successful.append({"product_id": product_id, "quantity": quantity, "reason": update.get("reason")})

        logger.info(f"Bulk stock update: {len(successful)} successful, {len(failed)} failed")
        return {"successful": successful, "failed": failed, "total": len(updates)}
