"""
Order Engine API Routes

REST surface over the engine services:
- Orders: create, read, list, history, stats, delete empty
- Items: add, annotate, remove
- Discounts, vouchers, payment, partial payment, split, cancel
- Kitchen dispatch and item status
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Header, Query, Request
from sqlmodel import SQLModel

from .context import EngineContext
from .events import json_default
from .kitchen import KitchenService
from .lifecycle import OrderService
from .models import (
    CancelRequest,
    DiscountRequest,
    ItemNoteUpdate,
    KitchenStatusUpdate,
    OrderCreate,
    OrderStatus,
    PartialPaymentRequest,
    PaymentRequest,
    RemoveItemRequest,
    SplitRequest,
    VoucherValidate,
)
from .pricing import PricingService
from .security import StaffIdentity
from .settlement import SettlementService


@dataclass
class Services:
    orders: OrderService
    pricing: PricingService
    settlement: SettlementService
    kitchen: KitchenService

    @classmethod
    def build(cls, ctx: EngineContext) -> "Services":
        return cls(
            orders=OrderService(ctx),
            pricing=PricingService(ctx),
            settlement=SettlementService(ctx),
            kitchen=KitchenService(ctx),
        )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_actor(
    x_user_id: Annotated[int | None, Header()] = None,
    x_user_name: Annotated[str | None, Header()] = None,
) -> StaffIdentity | None:
    """Acting staff member as forwarded by the auth gateway, if any."""
    if x_user_id is None:
        return None
    return StaffIdentity(id=x_user_id, name=x_user_name or f"User #{x_user_id}")


ServicesDep = Annotated[Services, Depends(get_services)]
ActorDep = Annotated[StaffIdentity | None, Depends(get_actor)]


def to_plain(value: Any) -> Any:
    """Make a response body JSON-ready; money goes out as exact decimal strings."""
    if isinstance(value, SQLModel):
        return to_plain(value.model_dump())
    if isinstance(value, dict):
        return {key: to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(item) for item in value]
    if isinstance(value, (Decimal, Enum, datetime, date)):
        return json_default(value)
    return value


def ok(data: Any = None) -> dict:
    return {"success": True, "data": to_plain(data)}


orders_router = APIRouter(prefix="/api/orders", tags=["Orders"])
vouchers_router = APIRouter(prefix="/api/vouchers", tags=["Vouchers"])
kitchen_router = APIRouter(prefix="/api/kitchen", tags=["Kitchen"])


# ============ ORDERS ============

@orders_router.get("")
def list_orders(
    services: ServicesDep,
    status: OrderStatus | None = None,
    table_id: int | None = None,
    limit: int = Query(default=50, ge=1, le=500),
):
    return ok(services.orders.list_orders(status=status, table_id=table_id, limit=limit))


@orders_router.get("/history")
def order_history(
    services: ServicesDep,
    start_date: date | None = None,
    end_date: date | None = None,
    payment_method: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
):
    orders = services.orders.order_history(
        start_date=start_date,
        end_date=end_date,
        payment_method=payment_method,
        limit=limit,
    )
    return ok({"orders": orders})


@orders_router.get("/stats")
def order_stats(services: ServicesDep):
    return ok(services.orders.order_stats())


@orders_router.get("/{order_id}")
def get_order(order_id: int, services: ServicesDep):
    return ok(services.orders.get_order(order_id))


@orders_router.post("", status_code=201)
def create_order(data: OrderCreate, services: ServicesDep, actor: ActorDep):
    return ok(services.orders.create_order(data, actor))


@orders_router.delete("/{order_id}")
def delete_empty_order(order_id: int, services: ServicesDep, actor: ActorDep):
    """Only orders without items can be deleted; anything else must be cancelled."""
    services.orders.delete_empty_order(order_id, actor)
    return ok({"order_id": order_id})


# ============ ITEMS ============

@orders_router.post("/{order_id}/items", status_code=201)
def add_item(order_id: int, services: ServicesDep, payload: dict = Body(...)):
    item = services.orders.add_item(order_id, payload)
    return ok(services.orders.get_order(order_id) | {"item": to_plain(item)})


@orders_router.put("/{order_id}/items/{item_id}")
def update_item(order_id: int, item_id: int, data: ItemNoteUpdate, services: ServicesDep):
    return ok(services.orders.update_item_note(order_id, item_id, data.note))


@orders_router.delete("/{order_id}/items/{item_id}")
def remove_item(
    order_id: int,
    item_id: int,
    services: ServicesDep,
    actor: ActorDep,
    data: RemoveItemRequest | None = Body(default=None),
):
    return ok(services.orders.remove_item(order_id, item_id, data, actor))


# ============ DISCOUNTS & SETTLEMENT ============

@orders_router.post("/{order_id}/discount")
def apply_discount(order_id: int, data: DiscountRequest, services: ServicesDep, actor: ActorDep):
    return ok(services.pricing.apply_manual_discount(order_id, data, actor))


@orders_router.post("/{order_id}/pay")
def pay_order(order_id: int, data: PaymentRequest, services: ServicesDep, actor: ActorDep):
    order = services.settlement.pay(order_id, data, actor)
    return ok(services.orders.get_order(order.id))


@orders_router.post("/{order_id}/pay-partial")
def pay_partial(order_id: int, data: PartialPaymentRequest, services: ServicesDep, actor: ActorDep):
    return ok(services.settlement.pay_partial(order_id, data, actor))


@orders_router.post("/{order_id}/split")
def split_order(order_id: int, data: SplitRequest, services: ServicesDep, actor: ActorDep):
    return ok(services.settlement.split(order_id, data, actor))


@orders_router.post("/{order_id}/cancel")
def cancel_order(order_id: int, data: CancelRequest, services: ServicesDep, actor: ActorDep):
    return ok(services.orders.cancel_order(order_id, data, actor))


@orders_router.post("/{order_id}/send-to-kitchen")
def send_to_kitchen(order_id: int, services: ServicesDep):
    items = services.kitchen.send_to_kitchen(order_id)
    return ok({"order_id": order_id, "items": items})


# ============ VOUCHERS ============

@vouchers_router.post("/validate")
def validate_voucher(data: VoucherValidate, services: ServicesDep):
    quote = services.pricing.quote_voucher(data.code, data.order_total)
    return ok({"voucher_id": quote.voucher_id, "code": quote.code, "discount": quote.discount})


# ============ KITCHEN ============

@kitchen_router.patch("/items/{item_id}/status")
def update_kitchen_status(item_id: int, data: KitchenStatusUpdate, services: ServicesDep):
    return ok(services.kitchen.update_item_status(item_id, data.status))
