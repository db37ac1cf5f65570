"""
Order Store

Persistence and locking primitives over orders, items, payments, vouchers,
table sessions and tables. One store wraps one SQLModel session; callers open a
store per operation and commit (or let it roll back) before returning.
"""

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import func, or_, update
from sqlmodel import Session, select

from . import models
from .errors import not_found
from .models import Order, OrderItem, OrderStatus, TERMINAL_STATUSES


class KeyedLock:
    """One mutex per key, created on first use and dropped when nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[object, list] = {}  # key -> [lock, holders + waiters]

    @contextmanager
    def hold(self, key) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class OrderStore:
    def __init__(self, session: Session, locks: KeyedLock):
        self.session = session
        self.locks = locks

    def __enter__(self) -> "OrderStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.session.rollback()
        self.session.close()

    # ---- unit of work ----

    def add(self, *objs) -> None:
        for obj in objs:
            self.session.add(obj)

    def delete(self, obj) -> None:
        self.session.delete(obj)

    def flush(self) -> None:
        self.session.flush()

    def commit(self) -> None:
        self.session.commit()

    def refresh(self, obj) -> None:
        self.session.refresh(obj)

    @contextmanager
    def with_order_lock(self, order_id: int) -> Iterator[Order]:
        """
        Hold an exclusive lock on the order for the duration of the block.

        Serialises settlement in this process with a keyed mutex and across
        processes with SELECT ... FOR UPDATE (a no-op on SQLite). The block is
        expected to commit; anything else is rolled back before the lock drops.
        """
        with self.locks.hold(order_id):
            try:
                order = self.session.exec(
                    select(Order).where(Order.id == order_id).with_for_update()
                ).first()
                if order is None:
                    raise not_found()
                yield order
            except BaseException:
                self.session.rollback()
                raise

    # ---- orders ----

    def find_order(self, order_id: int) -> Order | None:
        return self.session.get(Order, order_id)

    def get_order(self, order_id: int) -> Order:
        order = self.find_order(order_id)
        if order is None:
            raise not_found()
        return order

    def list_orders(
        self,
        status: OrderStatus | None = None,
        table_id: int | None = None,
        limit: int = 50,
    ) -> list[Order]:
        statement = select(Order)
        if status is not None:
            statement = statement.where(Order.status == status)
        if table_id is not None:
            statement = statement.where(Order.table_id == table_id)
        statement = statement.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit)
        return list(self.session.exec(statement).all())

    def count_open_orders_in_session(self, table_session_id: int) -> int:
        return self.session.exec(
            select(func.count(Order.id)).where(
                Order.table_session_id == table_session_id,
                Order.status.not_in(TERMINAL_STATUSES),
            )
        ).one()

    def open_orders_in_session(self, table_session_id: int) -> list[Order]:
        return list(self.session.exec(
            select(Order).where(
                Order.table_session_id == table_session_id,
                Order.status == OrderStatus.open,
            )
        ).all())

    def paid_history(
        self,
        paid_from: datetime | None = None,
        paid_before: datetime | None = None,
        payment_method: str | None = None,
        limit: int = 100,
    ) -> list[tuple[Order, str | None, int]]:
        """Paid orders as `(order, main payment method, item count)`, latest payment first."""
        # The largest tender names the order's payment method
        main_method = (
            select(models.Payment.method)
            .where(models.Payment.order_id == Order.id)
            .order_by(models.Payment.amount.desc(), models.Payment.id.asc())
            .limit(1)
            .correlate(Order)
            .scalar_subquery()
        )
        item_count = (
            select(func.count(OrderItem.id))
            .where(OrderItem.order_id == Order.id)
            .correlate(Order)
            .scalar_subquery()
        )
        statement = select(Order, main_method.label("payment_method"), item_count.label("item_count")).where(
            Order.status == OrderStatus.paid
        )
        if paid_from is not None:
            statement = statement.where(Order.paid_at >= paid_from)
        if paid_before is not None:
            statement = statement.where(Order.paid_at < paid_before)
        if payment_method:
            statement = statement.where(main_method == payment_method)
        statement = statement.order_by(Order.paid_at.desc(), Order.id.desc()).limit(limit)
        return [tuple(row) for row in self.session.exec(statement).all()]

    def order_counts_since(self, created_from: datetime) -> dict[OrderStatus, int]:
        rows = self.session.exec(
            select(Order.status, func.count(Order.id))
            .where(Order.created_at >= created_from)
            .group_by(Order.status)
        ).all()
        return {status: count for status, count in rows}

    def paid_revenue_since(self, created_from: datetime):
        return self.session.exec(
            select(func.coalesce(func.sum(Order.total), 0)).where(
                Order.status == OrderStatus.paid,
                Order.created_at >= created_from,
            )
        ).one()

    # ---- items ----

    def list_items(self, order_id: int) -> list[OrderItem]:
        return list(self.session.exec(
            select(OrderItem)
            .where(OrderItem.order_id == order_id)
            .order_by(OrderItem.created_at.asc(), OrderItem.id.asc())
        ).all())

    def count_items(self, order_id: int) -> int:
        return self.session.exec(
            select(func.count(OrderItem.id)).where(OrderItem.order_id == order_id)
        ).one()

    def find_item(self, item_id: int) -> OrderItem | None:
        return self.session.get(OrderItem, item_id)

    def get_item(self, order_id: int, item_id: int) -> OrderItem:
        item = self.session.exec(
            select(OrderItem).where(OrderItem.id == item_id, OrderItem.order_id == order_id)
        ).first()
        if item is None:
            raise not_found("Item")
        return item

    def items_in_order(self, order_id: int, item_ids: Iterable[int]) -> list[OrderItem]:
        return list(self.session.exec(
            select(OrderItem).where(
                OrderItem.id.in_(list(item_ids)),
                OrderItem.order_id == order_id,
            )
        ).all())

    def start_preparing(self, item_ids: list[int], started_at: datetime) -> int:
        """Bulk move items to `preparing`. Returns the number of rows written."""
        result = self.session.exec(
            update(OrderItem)
            .where(OrderItem.id.in_(item_ids))
            .values(kitchen_status=models.KitchenStatus.preparing, kitchen_started_at=started_at)
        )
        return result.rowcount

    def reassign_items(self, items: Iterable[OrderItem], order_id: int) -> None:
        """Move items to another order. Items are moved, never copied."""
        for item in items:
            item.order_id = order_id
            self.session.add(item)

    # ---- payments ----

    def list_payments(self, order_id: int) -> list[models.Payment]:
        return list(self.session.exec(
            select(models.Payment)
            .where(models.Payment.order_id == order_id)
            .order_by(models.Payment.id.asc())
        ).all())

    # ---- vouchers ----

    def find_voucher(self, code: str) -> models.Voucher | None:
        return self.session.exec(
            select(models.Voucher).where(models.Voucher.code == code.strip().upper())
        ).first()

    def redeem_voucher(self, voucher_id: int) -> bool:
        """Increment usage only while under the limit. False means the limit was hit."""
        Voucher = models.Voucher
        result = self.session.exec(
            update(Voucher)
            .where(
                Voucher.id == voucher_id,
                or_(Voucher.usage_limit.is_(None), Voucher.usage_count < Voucher.usage_limit),
            )
            .values(usage_count=Voucher.usage_count + 1)
        )
        return result.rowcount == 1

    # ---- tables & sessions ----

    def active_session_for_table(self, table_id: int) -> models.TableSession | None:
        return self.session.exec(
            select(models.TableSession)
            .where(
                models.TableSession.table_id == table_id,
                models.TableSession.ended_at.is_(None),
            )
            .order_by(models.TableSession.started_at.desc())
        ).first()

    def get_table_session(self, table_session_id: int) -> models.TableSession | None:
        return self.session.get(models.TableSession, table_session_id)

    def complete_table_session(self, table_session_id: int) -> bool:
        """Mark the session completed. False if it was already ended."""
        table_session = self.get_table_session(table_session_id)
        if table_session is None or table_session.ended_at is not None:
            return False
        table_session.status = models.TableSessionStatus.completed
        table_session.ended_at = datetime.now(timezone.utc)
        self.session.add(table_session)
        return True

    def free_table(self, table_id: int) -> bool:
        table = self.session.get(models.DiningTable, table_id)
        if table is None:
            return False
        table.status = models.TableStatus.available
        table.current_order_id = None
        self.session.add(table)
        return True

    def stale_table_sessions(self, started_before: datetime) -> list[models.TableSession]:
        return list(self.session.exec(
            select(models.TableSession).where(
                models.TableSession.ended_at.is_(None),
                models.TableSession.started_at < started_before,
            )
        ).all())
