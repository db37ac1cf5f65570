"""
Settlement Service

Full payment, partial payment by item subset, bill splitting and the table
session closeout that follows a settled order. Settlement runs under the
order lock; the closeout cascade runs after commit and is safe to repeat.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from .audit import AuditEvent
from .context import EngineContext
from .errors import ErrorCode, InsufficientPaymentError, OrderError
from .events import Event, Room
from .models import (
    Order,
    OrderItem,
    OrderStatus,
    PartialPaymentRequest,
    Payment,
    PaymentIn,
    PaymentRequest,
    SplitRequest,
)
from .money import sum_money, to_money
from .pricing import compute_subtotal, order_total, recalculate_order_totals, validate_voucher
from .security import StaffIdentity
from .store import OrderStore

logger = logging.getLogger(__name__)


def total_paid(payments: list[PaymentIn]) -> Decimal:
    return sum_money(p.amount for p in payments)


def _ensure_payable(order: Order) -> None:
    if order.status == OrderStatus.paid:
        raise OrderError(ErrorCode.ALREADY_PAID, "Order already fully paid")
    if order.status == OrderStatus.cancelled:
        raise OrderError(ErrorCode.ORDER_CANCELLED, "Cannot pay a cancelled order")


def _record_payments(store: OrderStore, order_id: int, payments: list[PaymentIn]) -> list[Payment]:
    rows = [
        Payment(
            order_id=order_id,
            method=p.method,
            amount=to_money(p.amount),
            received_amount=p.received_amount,
            change_amount=p.change_amount,
            reference=p.reference,
        )
        for p in payments
    ]
    store.add(*rows)
    return rows


def _selected_items(store: OrderStore, order_id: int, item_ids: list[int]) -> list[OrderItem]:
    # a repeated id counts as a missing one
    items = store.items_in_order(order_id, item_ids)
    if len(items) != len(item_ids):
        raise OrderError(ErrorCode.INVALID_ITEMS, "Some items not found in this order")
    return items


def _join_reasons(*reasons: str | None) -> str | None:
    parts = [r for r in reasons if r]
    return " | ".join(parts) if parts else None


class SettlementService:
    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    @property
    def tolerance(self) -> Decimal:
        return to_money(self.ctx.settings.payment_tolerance)

    def _check_paid_enough(self, required: Decimal, paid: Decimal) -> None:
        if paid < required - self.tolerance:
            raise InsufficientPaymentError(required, paid)

    # ============ FULL PAYMENT ============

    def pay(self, order_id: int, request: PaymentRequest, actor: StaffIdentity | None = None) -> Order:
        """
        Settle the whole order.

        A voucher, when given, replaces any manual discount. Payments may fall
        short of the total by at most `payment_tolerance`.
        """
        with self.ctx.open_store() as store:
            with store.with_order_lock(order_id) as order:
                _ensure_payable(order)
                if not request.payments:
                    raise OrderError(ErrorCode.INVALID_REQUEST, "Payment method required")

                final_total = to_money(order.total)
                discount_amount = to_money(order.discount_amount)
                discount_reason = order.discount_reason
                voucher_id = None
                voucher_code = None

                if request.voucher_code:
                    quote = validate_voucher(store, request.voucher_code, to_money(order.subtotal))
                    discount_amount = quote.discount
                    discount_reason = f"Voucher: {quote.code}"
                    final_total = order_total(order.subtotal, discount_amount, order.surcharge_amount)
                    voucher_id = quote.voucher_id
                    voucher_code = quote.code
                    if not store.redeem_voucher(quote.voucher_id):
                        raise OrderError(ErrorCode.VOUCHER_LIMIT_REACHED, "Voucher usage limit reached")

                paid = total_paid(request.payments)
                self._check_paid_enough(final_total, paid)

                payments = _record_payments(store, order.id, request.payments)

                order.status = OrderStatus.paid
                order.paid_at = datetime.now(timezone.utc)
                order.discount_amount = discount_amount
                order.discount_reason = discount_reason
                order.total = final_total
                if voucher_id is not None:
                    order.voucher_id = voucher_id
                    order.voucher_code = voucher_code
                store.add(order)
                store.commit()

        logger.info(f"Order #{order.id} paid: total {final_total}, received {paid}")

        table_freed = self._close_out_quietly(order)
        self.ctx.emit(Room.all, Event.order_paid, {"order_id": order.id, "total": order.total})
        if table_freed and order.table_id:
            self.ctx.emit(Room.pos, Event.table_closed, {"table_id": order.table_id, "order_id": order.id})
        self.ctx.audit(AuditEvent(
            action="order_paid",
            target_type="order",
            target_id=order.id,
            user_id=actor.id if actor else None,
            new_value={
                "total": order.total,
                "payments": [p.model_dump() for p in payments],
                "voucher": voucher_code,
            },
        ))
        return order

    # ============ PARTIAL PAYMENT ============

    def pay_partial(
        self,
        order_id: int,
        request: PartialPaymentRequest,
        actor: StaffIdentity | None = None,
    ) -> dict:
        """
        Pay for a subset of an order's items.

        Selecting every item settles the original order in place. A strict
        subset is moved onto a new, already-paid order and the original stays
        open with the remaining items. Returns `{"order", "paid_order", "is_partial"}`.
        """
        if not request.item_ids:
            raise OrderError(ErrorCode.INVALID_REQUEST, "No items selected for payment")
        if not request.payments:
            raise OrderError(ErrorCode.INVALID_REQUEST, "Payment method required")

        extra_discount = to_money(request.discount_amount)

        with self.ctx.open_store() as store:
            with store.with_order_lock(order_id) as order:
                _ensure_payable(order)

                selected = _selected_items(store, order.id, request.item_ids)
                all_count = store.count_items(order.id)
                selected_subtotal = compute_subtotal(selected)
                selected_total = selected_subtotal - extra_discount
                paying_everything = len(selected) == all_count

                paid = total_paid(request.payments)
                self._check_paid_enough(selected_total, paid)

                now = datetime.now(timezone.utc)
                if paying_everything:
                    paid_order = order
                    payments = _record_payments(store, order.id, request.payments)
                    cumulative_discount = to_money(order.discount_amount) + extra_discount
                    order.subtotal = selected_subtotal
                    order.discount_amount = cumulative_discount
                    order.discount_reason = _join_reasons(order.discount_reason, request.discount_reason)
                    order.total = order_total(selected_subtotal, cumulative_discount, order.surcharge_amount)
                    order.status = OrderStatus.paid
                    order.paid_at = now
                    store.add(order)
                else:
                    paid_order = Order(
                        order_type=order.order_type,
                        status=OrderStatus.paid,
                        table_id=order.table_id,
                        table_session_id=order.table_session_id,
                        customer_id=order.customer_id,
                        user_id=actor.id if actor else order.user_id,
                        note=f"Partial payment from order #{order.id}",
                        subtotal=selected_subtotal,
                        discount_amount=extra_discount,
                        discount_reason=request.discount_reason,
                        total=selected_total,
                        paid_at=now,
                    )
                    store.add(paid_order)
                    store.flush()
                    store.reassign_items(selected, paid_order.id)
                    payments = _record_payments(store, paid_order.id, request.payments)
                    store.flush()
                    recalculate_order_totals(store, order)
                store.commit()

        is_partial = paid_order is not order
        if not is_partial:
            logger.info(f"Order #{order.id} paid in full through item selection")
            table_freed = self._close_out_quietly(order)
            self.ctx.emit(Room.all, Event.order_paid, {"order_id": order.id, "total": order.total})
            if table_freed and order.table_id:
                self.ctx.emit(Room.pos, Event.table_closed, {"table_id": order.table_id, "order_id": order.id})
            self.ctx.audit(AuditEvent(
                action="order_paid",
                target_type="order",
                target_id=order.id,
                user_id=actor.id if actor else None,
                new_value={"total": order.total, "payments": [p.model_dump() for p in payments]},
            ))
            return {"order": order, "paid_order": order, "is_partial": False}

        remaining_items = all_count - len(selected)
        logger.info(
            f"Order #{order.id}: {len(selected)} items paid on order #{paid_order.id}, "
            f"{remaining_items} remaining"
        )
        self._close_out_quietly(order)
        self.ctx.audit(AuditEvent(
            action="partial_payment",
            target_type="order",
            target_id=order.id,
            user_id=actor.id if actor else None,
            new_value={
                "paid_items": [item.id for item in selected],
                "paid_total": selected_total,
                "new_order_id": paid_order.id,
                "remaining_total": order.total,
                "payments": [p.model_dump() for p in payments],
            },
        ))
        self.ctx.emit(Room.all, Event.order_partial_paid, {
            "original_order_id": order.id,
            "paid_order_id": paid_order.id,
            "paid_items": len(selected),
            "paid_total": selected_total,
            "remaining_total": order.total,
            "remaining_items": remaining_items,
        })
        self.ctx.emit(Room.pos, Event.order_updated, {"order_id": order.id, "remaining_total": order.total})
        return {"order": order, "paid_order": paid_order, "is_partial": True}

    # ============ SPLIT ============

    def split(self, order_id: int, request: SplitRequest, actor: StaffIdentity | None = None) -> dict:
        """Move items onto a new open order on the same table. Returns `{"order", "new_order"}`."""
        if not request.item_ids:
            raise OrderError(ErrorCode.INVALID_REQUEST, "No items selected")

        with self.ctx.open_store() as store:
            with store.with_order_lock(order_id) as order:
                if order.status == OrderStatus.paid:
                    raise OrderError(ErrorCode.ORDER_PAID, "Cannot split a paid order")
                if order.status == OrderStatus.cancelled:
                    raise OrderError(ErrorCode.ORDER_CANCELLED, "Cannot split a cancelled order")

                selected = _selected_items(store, order.id, request.item_ids)

                new_order = Order(
                    order_type=order.order_type,
                    table_id=order.table_id,
                    table_session_id=order.table_session_id,
                    customer_id=order.customer_id,
                    user_id=actor.id if actor else order.user_id,
                    note=f"Split from order #{order.id}",
                )
                store.add(new_order)
                store.flush()
                store.reassign_items(selected, new_order.id)
                store.flush()
                recalculate_order_totals(store, order)
                recalculate_order_totals(store, new_order)
                store.commit()

        logger.info(f"Split {len(selected)} items from order #{order.id} to order #{new_order.id}")

        self.ctx.audit(AuditEvent(
            action="split_order",
            target_type="order",
            target_id=order.id,
            user_id=actor.id if actor else None,
            new_value={"new_order_id": new_order.id, "item_ids": [item.id for item in selected]},
        ))
        self.ctx.emit(Room.all, Event.order_split, {
            "original_order_id": order.id,
            "new_order_id": new_order.id,
            "original_total": order.total,
            "new_total": new_order.total,
        })
        return {"order": order, "new_order": new_order}

    # ============ SESSION CLOSEOUT ============

    def close_out_session(self, table_session_id: int | None, table_id: int | None) -> bool:
        """
        Complete the table session and free the table once no order on the
        session is still open. Returns True when the session was closed by this
        call; repeating it is harmless.
        """
        if not table_session_id:
            return False
        with self.ctx.open_store() as store:
            if store.count_open_orders_in_session(table_session_id) > 0:
                return False
            closed = store.complete_table_session(table_session_id)
            if closed and table_id:
                store.free_table(table_id)
            store.commit()
        if closed:
            logger.info(f"Table session #{table_session_id} completed, table {table_id} freed")
        return closed

    def _close_out_quietly(self, order: Order) -> bool:
        try:
            return self.close_out_session(order.table_session_id, order.table_id)
        except Exception as e:
            logger.error(f"Closeout failed for order #{order.id}: {e}", exc_info=True)
            return False

    def cleanup_stale_sessions(self, max_age: timedelta | None = None) -> dict[str, int]:
        """Cancel open orders on sessions older than `max_age`, then close those sessions."""
        if max_age is None:
            max_age = timedelta(hours=self.ctx.settings.stale_session_hours)
        hours = max_age.total_seconds() / 3600
        reason = f"Auto-cancelled: session timeout after {hours:g} hours"
        cutoff = datetime.now(timezone.utc) - max_age

        closed = 0
        cancelled = 0
        with self.ctx.open_store() as store:
            stale = store.stale_table_sessions(cutoff)
            if not stale:
                logger.info("No stale table sessions found")
                return {"closed": 0, "cancelled": 0}

            now = datetime.now(timezone.utc)
            for table_session in stale:
                for order in store.open_orders_in_session(table_session.id):
                    order.status = OrderStatus.cancelled
                    order.cancelled_at = now
                    order.cancel_reason = reason
                    store.add(order)
                    cancelled += 1
                store.complete_table_session(table_session.id)
                store.free_table(table_session.table_id)
                closed += 1
            store.commit()

        logger.info(f"Session cleanup: {closed} sessions closed, {cancelled} orders cancelled")
        return {"closed": closed, "cancelled": cancelled}
