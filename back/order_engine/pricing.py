"""
Pricing & Discount Service

Derives order totals from items and applies discounts:
- Subtotal is always an authoritative resum of quantity x unit_price
- Manual discounts (percent / fixed), PIN-gated above the configured percent
- Voucher validation and quoting
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from .audit import AuditEvent
from .context import EngineContext
from .errors import ErrorCode, OrderError
from .events import Event, Room
from .models import DiscountRequest, DiscountType, Order, OrderItem, OrderStatus, Voucher
from .money import ZERO, line_total, percent_of, sum_money, to_money
from .security import OWNER_ROLES, StaffIdentity
from .store import OrderStore

logger = logging.getLogger(__name__)


def compute_subtotal(items: Iterable[OrderItem]) -> Decimal:
    return sum_money(line_total(item.quantity, item.unit_price) for item in items)


def order_total(subtotal, discount_amount, surcharge_amount) -> Decimal:
    return to_money(subtotal) - to_money(discount_amount) + to_money(surcharge_amount)


def apply_totals(order: Order, subtotal: Decimal) -> None:
    order.subtotal = subtotal
    order.total = order_total(subtotal, order.discount_amount, order.surcharge_amount)


def recalculate_order_totals(store: OrderStore, order: Order) -> Decimal:
    """Resum the order from its current item set and return the new subtotal."""
    subtotal = compute_subtotal(store.list_items(order.id))
    apply_totals(order, subtotal)
    store.add(order)
    return subtotal


def ensure_open(order: Order, message: str) -> None:
    if order.status != OrderStatus.open:
        raise OrderError(ErrorCode.ORDER_CLOSED, message)


@dataclass(frozen=True)
class VoucherQuote:
    voucher_id: int
    code: str
    discount: Decimal


def _as_utc(moment: datetime) -> datetime:
    # SQLite hands datetimes back naive; they were written as UTC
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def voucher_discount(voucher: Voucher, subtotal: Decimal) -> Decimal:
    if voucher.type == DiscountType.percent:
        discount = percent_of(subtotal, voucher.value)
    else:
        discount = to_money(voucher.value)
    if voucher.max_discount_amount is not None:
        discount = min(discount, to_money(voucher.max_discount_amount))
    return discount


def validate_voucher(
    store: OrderStore,
    code: str,
    subtotal: Decimal,
    now: datetime | None = None,
) -> VoucherQuote:
    """
    Check a voucher against an order subtotal.

    Checks run in a fixed order so the cashier sees the first failing rule:
    active, start date, end date, usage limit, minimum order amount.
    """
    now = now or datetime.now(timezone.utc)
    voucher = store.find_voucher(code) if code and code.strip() else None

    if voucher is None or not voucher.is_active:
        raise OrderError(ErrorCode.INVALID_VOUCHER, "Invalid voucher code")
    if voucher.start_date and _as_utc(voucher.start_date) > now:
        raise OrderError(ErrorCode.VOUCHER_NOT_ACTIVE, "Voucher not yet active")
    if voucher.end_date and _as_utc(voucher.end_date) < now:
        raise OrderError(ErrorCode.VOUCHER_EXPIRED, "Voucher expired")
    if voucher.usage_limit is not None and voucher.usage_count >= voucher.usage_limit:
        raise OrderError(ErrorCode.VOUCHER_LIMIT_REACHED, "Voucher usage limit reached")
    if to_money(subtotal) < to_money(voucher.min_order_amount):
        raise OrderError(
            ErrorCode.MIN_ORDER_AMOUNT,
            f"Order minimum amount is {to_money(voucher.min_order_amount).normalize():f}",
        )

    return VoucherQuote(
        voucher_id=voucher.id,
        code=voucher.code,
        discount=voucher_discount(voucher, to_money(subtotal)),
    )


class PricingService:
    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    def quote_voucher(self, code: str, order_total: Decimal) -> VoucherQuote:
        """Preview a voucher without redeeming it. The discount never exceeds the order total."""
        with self.ctx.open_store() as store:
            quote = validate_voucher(store, code, to_money(order_total))
        return VoucherQuote(
            voucher_id=quote.voucher_id,
            code=quote.code,
            discount=min(quote.discount, to_money(order_total)),
        )

    def apply_manual_discount(
        self,
        order_id: int,
        request: DiscountRequest,
        actor: StaffIdentity | None = None,
    ) -> Order:
        """
        Set the order's manual discount, replacing any previous one.

        Percent discounts are computed against the current subtotal; above
        `discount_pin_percent` they need an owner PIN. Fixed discounts are taken
        as given and are not clamped to the subtotal, so the total can go negative.
        """
        settings = self.ctx.settings
        value = to_money(request.value)

        with self.ctx.open_store() as store:
            order = store.get_order(order_id)
            ensure_open(order, "Cannot discount a closed order")

            subtotal = to_money(order.subtotal)
            if request.type == DiscountType.percent:
                amount = percent_of(subtotal, value)
                if value > settings.discount_pin_percent:
                    self.ctx.authorize(
                        request.pin,
                        OWNER_ROLES,
                        f"PIN required for discounts over {settings.discount_pin_percent.normalize():f}%",
                    )
            else:
                amount = value

            order.discount_amount = amount
            order.discount_reason = request.reason
            order.total = order_total(subtotal, amount, order.surcharge_amount)
            store.add(order)
            store.commit()

        logger.info(f"Discount {amount} applied to order #{order.id} ({request.type.value} {value})")

        self.ctx.audit(AuditEvent(
            action="discount_applied",
            target_type="order",
            target_id=order.id,
            user_id=actor.id if actor else None,
            new_value={"type": request.type.value, "value": value, "discount_amount": amount},
            reason=request.reason,
        ))

        if value > settings.discount_pin_percent or amount > settings.discount_alert_amount:
            self._alert_large_discount(order, request, amount, actor)

        return order

    def _alert_large_discount(
        self,
        order: Order,
        request: DiscountRequest,
        amount: Decimal,
        actor: StaffIdentity | None,
    ) -> None:
        cashier_name = actor.name if actor else "Unknown"
        self.ctx.emit(Room.supervisor, Event.alert_discount, {
            "order_id": order.id,
            "discount_amount": amount,
            "cashier": cashier_name,
        })
        try:
            self.ctx.alerts.discount_alert(
                order_id=order.id,
                discount_percent=to_money(request.value) if request.type == DiscountType.percent else ZERO,
                discount_amount=amount,
                cashier_name=cashier_name,
                reason=request.reason,
            )
        except Exception as e:
            logger.error(f"Supervisor alert failed for order #{order.id}: {e}", exc_info=True)
