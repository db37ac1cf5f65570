"""
Kitchen Dispatch

Items become visible to the kitchen only when the order is explicitly sent.
Adding an item never dispatches it.
"""

import logging
from datetime import datetime, timezone

from .context import EngineContext
from .errors import not_found
from .events import Event, Room
from .models import KitchenStatus, OrderItem

logger = logging.getLogger(__name__)


def kitchen_payload(item: OrderItem, table_id: int | None = None) -> dict:
    return {
        "order_id": item.order_id,
        "item_id": item.id,
        "product_name": item.display_name,
        "quantity": item.quantity,
        "note": item.note,
        "kitchen_status": item.kitchen_status,
        "table_id": table_id,
    }


class KitchenService:
    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    def send_to_kitchen(self, order_id: int) -> list[OrderItem]:
        """Move every pending kitchen item of the order to `preparing` and notify the kitchen."""
        with self.ctx.open_store() as store:
            order = store.get_order(order_id)
            pending = [
                item for item in store.list_items(order_id)
                if item.kitchen_status == KitchenStatus.pending and item.display_in_kitchen
            ]
            if not pending:
                return []

            started_at = datetime.now(timezone.utc)
            store.start_preparing([item.id for item in pending], started_at)
            store.commit()
            for item in pending:
                item.kitchen_status = KitchenStatus.preparing
                item.kitchen_started_at = started_at

        logger.info(f"Sent {len(pending)} items of order #{order_id} to kitchen")

        for item in pending:
            self.ctx.emit(Room.kitchen, Event.kitchen_new_item, kitchen_payload(item, order.table_id))
        self.ctx.emit(Room.kitchen, Event.kitchen_batch_update, {
            "order_id": order_id,
            "table_id": order.table_id,
            "item_ids": [item.id for item in pending],
        })
        self.ctx.emit(Room.kitchen, Event.notification_sound, {"order_id": order_id})
        return pending

    def update_item_status(self, item_id: int, status: KitchenStatus) -> OrderItem:
        with self.ctx.open_store() as store:
            item = store.find_item(item_id)
            if item is None:
                raise not_found("Item")
            now = datetime.now(timezone.utc)
            if status == KitchenStatus.preparing and item.kitchen_started_at is None:
                item.kitchen_started_at = now
            if status == KitchenStatus.ready:
                item.kitchen_ready_at = now
            previous = item.kitchen_status
            item.kitchen_status = status
            store.add(item)
            store.commit()
            order = store.find_order(item.order_id)

        table_id = order.table_id if order else None
        logger.info(f"Item #{item_id} kitchen status {previous.value} -> {status.value}")
        self.ctx.emit(Room.all, Event.kitchen_status_changed, {
            "item_id": item.id,
            "order_id": item.order_id,
            "status": status,
        })
        if status == KitchenStatus.ready:
            self.ctx.emit(Room.pos, Event.kitchen_item_ready, kitchen_payload(item, table_id))
        return item
