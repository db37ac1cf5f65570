"""
Order Lifecycle Service

An order starts `open` and ends `paid` or `cancelled`; nothing leaves a
terminal state. While open, items can be added, annotated and removed. Every
item mutation resums the order's totals from its full item set.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone

from pydantic import TypeAdapter, ValidationError

from .audit import AuditEvent
from .context import EngineContext
from .errors import ErrorCode, OrderError
from .events import Event, Room
from .models import (
    AdHocItem,
    CancelRequest,
    CatalogItem,
    ItemSpec,
    KitchenStatus,
    Order,
    OrderCreate,
    OrderItem,
    OrderStatus,
    OrderType,
    RemoveItemRequest,
)
from .money import to_money
from .pricing import ensure_open, recalculate_order_totals
from .security import OWNER_ROLES, SUPERVISOR_ROLES, StaffIdentity

logger = logging.getLogger(__name__)

_item_spec = TypeAdapter(ItemSpec)

STATS_WINDOW_DAYS = 30


def parse_item_spec(payload: dict) -> CatalogItem | AdHocItem:
    """
    Validate a raw item payload into a catalog or open item.

    Payloads without an explicit `kind` are classified by their fields:
    `product_id` means catalog, `name`/`open_item_name` plus a price means open.
    """
    data = dict(payload)
    if "open_item_name" in data:
        data.setdefault("name", data.pop("open_item_name"))
    if "open_item_price" in data:
        data.setdefault("price", data.pop("open_item_price"))
    if "kind" not in data:
        if data.get("product_id") is not None:
            data["kind"] = "catalog"
        elif data.get("name") and data.get("price") is not None:
            data["kind"] = "open"
        else:
            raise OrderError(ErrorCode.INVALID_REQUEST, "Either product_id or open item details required")
    try:
        return _item_spec.validate_python(data)
    except ValidationError as e:
        raise OrderError(ErrorCode.INVALID_REQUEST, f"Invalid item: {e.errors()[0]['msg']}") from e


def item_snapshot(item: OrderItem) -> dict:
    return item.model_dump()


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


class OrderService:
    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    # ---- reads ----

    def get_order(self, order_id: int) -> dict:
        """Order with its items and payments."""
        with self.ctx.open_store() as store:
            order = store.get_order(order_id)
            data = order.model_dump()
            data["items"] = [item_snapshot(item) for item in store.list_items(order_id)]
            data["payments"] = [p.model_dump() for p in store.list_payments(order_id)]
        return data

    def list_orders(
        self,
        status: OrderStatus | None = None,
        table_id: int | None = None,
        limit: int = 50,
    ) -> list[Order]:
        with self.ctx.open_store() as store:
            return store.list_orders(status=status, table_id=table_id, limit=limit)

    def order_history(
        self,
        start_date: date | None = None,
        end_date: date | None = None,
        payment_method: str | None = None,
        limit: int = 100,
    ) -> list[dict]:
        """
        Paid orders, most recently paid first, filtered by payment day (UTC,
        `end_date` inclusive) and main payment method. `payment_method="all"`
        is the same as no filter.
        """
        if payment_method == "all":
            payment_method = None
        with self.ctx.open_store() as store:
            rows = store.paid_history(
                paid_from=_day_start(start_date) if start_date else None,
                paid_before=_day_start(end_date + timedelta(days=1)) if end_date else None,
                payment_method=payment_method,
                limit=limit,
            )

        history = []
        for order, method, item_count in rows:
            data = order.model_dump()
            data["payment_method"] = method
            data["item_count"] = item_count
            history.append(data)
        return history

    def order_stats(self, now: datetime | None = None) -> dict:
        """Status counts and paid revenue over orders created in the last 30 days, plus today's revenue."""
        today = _day_start((now or datetime.now(timezone.utc)).date())
        window_start = today - timedelta(days=STATS_WINDOW_DAYS)
        with self.ctx.open_store() as store:
            counts = store.order_counts_since(window_start)
            today_revenue = store.paid_revenue_since(today)
            total_revenue = store.paid_revenue_since(window_start)
        return {
            "open": counts.get(OrderStatus.open, 0),
            "paid": counts.get(OrderStatus.paid, 0),
            "cancelled": counts.get(OrderStatus.cancelled, 0),
            "today_revenue": to_money(today_revenue),
            "total_revenue": to_money(total_revenue),
        }

    # ---- transitions ----

    def create_order(self, data: OrderCreate, actor: StaffIdentity | None = None) -> Order:
        with self.ctx.open_store() as store:
            table_session_id = data.table_session_id
            # Dine-in orders join the table's running session unless told otherwise
            if data.order_type == OrderType.dine_in and data.table_id and not table_session_id:
                active = store.active_session_for_table(data.table_id)
                if active is not None:
                    table_session_id = active.id

            order = Order(
                order_type=data.order_type,
                table_id=data.table_id,
                table_session_id=table_session_id,
                customer_id=data.customer_id,
                user_id=actor.id if actor else None,
                note=data.note,
            )
            store.add(order)
            store.commit()
            store.refresh(order)

        logger.info(f"Created {order.order_type.value} order #{order.id}")
        self.ctx.emit(Room.pos, Event.order_created, {
            "order_id": order.id,
            "order_type": order.order_type,
            "table_id": order.table_id,
            "table_session_id": order.table_session_id,
        })
        return order

    def add_item(self, order_id: int, spec: CatalogItem | AdHocItem | dict) -> OrderItem:
        """
        Add a line to an open order. The unit price is snapshotted now and never
        re-read from the catalog. Items start `pending` and are not shown to the
        kitchen until the order is explicitly sent.
        """
        if isinstance(spec, dict):
            spec = parse_item_spec(spec)

        with self.ctx.open_store() as store:
            order = store.get_order(order_id)
            ensure_open(order, "Cannot add items to closed order")

            if isinstance(spec, CatalogItem):
                product = self.ctx.catalog.get_product(spec.product_id)
                if product is None:
                    raise OrderError(ErrorCode.PRODUCT_NOT_FOUND, "Product not found")
                if not product.is_available:
                    raise OrderError(ErrorCode.PRODUCT_SOLD_OUT, "Product is sold out")
                item = OrderItem(
                    order_id=order.id,
                    product_id=product.id,
                    product_name=product.name,
                    quantity=spec.quantity,
                    unit_price=product.price,
                    display_in_kitchen=product.display_in_kitchen,
                    note=spec.note,
                )
            else:
                item = OrderItem(
                    order_id=order.id,
                    open_item_name=spec.name,
                    open_item_price=spec.price,
                    quantity=spec.quantity,
                    unit_price=spec.price,
                    display_in_kitchen=spec.display_in_kitchen,
                    note=spec.note,
                )

            store.add(item)
            store.flush()
            recalculate_order_totals(store, order)
            store.commit()
            store.refresh(item)

        return item

    def update_item_note(self, order_id: int, item_id: int, note: str | None) -> OrderItem:
        """Metadata-only change; totals are untouched."""
        with self.ctx.open_store() as store:
            order = store.get_order(order_id)
            ensure_open(order, "Cannot modify items of a closed order")
            item = store.get_item(order_id, item_id)
            item.note = note
            store.add(item)
            store.commit()

        self.ctx.emit(Room.all, Event.order_item_updated, {
            "order_id": order_id,
            "item_id": item_id,
            "note": note,
        })
        if item.display_in_kitchen:
            self.ctx.emit(Room.kitchen, Event.kitchen_item_updated, {
                "order_id": order_id,
                "item_id": item_id,
                "note": note,
            })
        return item

    def remove_item(
        self,
        order_id: int,
        item_id: int,
        request: RemoveItemRequest | None = None,
        actor: StaffIdentity | None = None,
    ) -> Order:
        """
        Delete a line permanently. Once the kitchen has started on a
        kitchen-visible item, an owner PIN is required.
        """
        request = request or RemoveItemRequest()

        with self.ctx.open_store() as store:
            order = store.get_order(order_id)
            ensure_open(order, "Cannot remove items from a closed order")
            item = store.get_item(order_id, item_id)

            if item.kitchen_status != KitchenStatus.pending and item.display_in_kitchen:
                self.ctx.authorize(request.pin, OWNER_ROLES, "PIN required to cancel kitchen items")

            previous = item_snapshot(item)
            store.delete(item)
            store.flush()
            recalculate_order_totals(store, order)
            store.commit()

        self.ctx.audit(AuditEvent(
            action="cancel_item",
            target_type="order_item",
            target_id=item_id,
            user_id=actor.id if actor else None,
            old_value=previous,
            reason=request.reason,
        ))
        self.ctx.emit(Room.all, Event.order_item_removed, {
            "order_id": order_id,
            "item_id": item_id,
            "subtotal": order.subtotal,
            "total": order.total,
        })
        if previous["display_in_kitchen"]:
            self.ctx.emit(Room.kitchen, Event.kitchen_item_cancelled, {"item_id": item_id})
        return order

    def delete_empty_order(self, order_id: int, actor: StaffIdentity | None = None) -> None:
        """Drop an order that never got any items (abandoned takeaway/retail tickets)."""
        with self.ctx.open_store() as store:
            order = store.get_order(order_id)
            if order.status == OrderStatus.paid:
                raise OrderError(ErrorCode.ORDER_PAID, "Cannot delete a paid order")
            if order.status == OrderStatus.cancelled:
                raise OrderError(ErrorCode.ORDER_CANCELLED, "Cannot delete a cancelled order")
            if store.count_items(order_id) > 0:
                raise OrderError(
                    ErrorCode.ORDER_HAS_ITEMS,
                    "Cannot delete order with items. Use cancel instead.",
                )
            previous = order.model_dump()
            store.delete(order)
            store.commit()

        self.ctx.audit(AuditEvent(
            action="delete_empty_order",
            target_type="order",
            target_id=order_id,
            user_id=actor.id if actor else None,
            old_value=previous,
        ))

    def cancel_order(self, order_id: int, request: CancelRequest, actor: StaffIdentity | None = None) -> Order:
        """
        Cancel an unpaid order on a supervisor PIN. Frees the table; the table
        session is left alone because only settlement closes sessions.
        """
        # PIN is checked before the order so an unauthorised caller learns nothing
        cancelled_by = self.ctx.authorize(request.pin, SUPERVISOR_ROLES, "PIN required to cancel order")

        with self.ctx.open_store() as store:
            with store.with_order_lock(order_id) as order:
                if order.status == OrderStatus.paid:
                    raise OrderError(ErrorCode.ORDER_PAID, "Cannot cancel a paid order")
                if order.status == OrderStatus.cancelled:
                    raise OrderError(ErrorCode.ALREADY_CANCELLED, "Order already cancelled")

                previous = order.model_dump()
                order.status = OrderStatus.cancelled
                order.cancelled_at = datetime.now(timezone.utc)
                order.cancelled_by = cancelled_by.id
                order.cancel_reason = request.reason or "Cancelled by staff"
                store.add(order)

                if order.table_id:
                    store.free_table(order.table_id)
                store.commit()

        logger.info(f"Order #{order.id} cancelled by {cancelled_by.name}: {order.cancel_reason}")

        self.ctx.audit(AuditEvent(
            action="cancel_order",
            target_type="order",
            target_id=order.id,
            user_id=actor.id if actor else cancelled_by.id,
            old_value=previous,
            reason=request.reason,
        ))
        self.ctx.emit(Room.all, Event.order_cancelled, {
            "order_id": order.id,
            "cancelled_by": cancelled_by.name,
            "reason": order.cancel_reason,
        })
        self.ctx.emit(Room.kitchen, Event.kitchen_order_cancelled, {
            "order_id": order.id,
            "reason": order.cancel_reason,
        })
        return order
