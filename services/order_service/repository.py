from datetime import timezone
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Order
from .schemas import OrderFilter, OrderSnapshot


def _utc(value):
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_values(order: OrderSnapshot) -> dict:
    """Column values for an order; nested records go into JSON columns."""
    return {
        "order_number": order.order_number,
        "owner_id": order.owner_id,
        "stage": order.stage.value,
        "items": [item.model_dump(mode="json") for item in order.items],
        "date_required": order.date_required,
        "price": order.price,
        "fulfillment": order.fulfillment.model_dump(mode="json") if order.fulfillment else None,
        "approved_by": order.approved_by,
        "approved_at": _utc(order.approved_at),
        "update_request": order.update_request.model_dump(mode="json") if order.update_request else None,
        "stage_history": [entry.model_dump(mode="json") for entry in order.stage_history],
        "created_at": _utc(order.created_at),
        "updated_at": _utc(order.updated_at),
        "version": order.version,
    }


class OrderRepository:
    """Durable order store with optimistic versioning.

    `put` and `delete` only succeed when the stored version still equals the
    version the caller read; they return False otherwise and leave the row as is.
    """

    @staticmethod
    async def insert(db: AsyncSession, order: OrderSnapshot) -> OrderSnapshot:
        row = Order(id=order.id, **_row_values(order))
        db.add(row)
        await db.commit()
        db.expunge(row)
        return order

    @staticmethod
    async def get(db: AsyncSession, order_id: str) -> Optional[OrderSnapshot]:
        result = await db.execute(select(Order).where(Order.id == order_id))
        row = result.scalars().first()
        if row is None:
            return None
        snapshot = OrderSnapshot.model_validate(row)
        # Detach so a later read in this session sees fresh column values
        db.expunge(row)
        return snapshot

    @staticmethod
    async def put(db: AsyncSession, order: OrderSnapshot, expected_version: int) -> bool:
        stmt = (
            update(Order)
            .where(Order.id == order.id, Order.version == expected_version)
            .values(**_row_values(order))
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            await db.rollback()
            return False
        await db.commit()
        return True

    @staticmethod
    async def delete(db: AsyncSession, order_id: str, expected_version: int) -> bool:
        stmt = (
            delete(Order)
            .where(Order.id == order_id, Order.version == expected_version)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            await db.rollback()
            return False
        await db.commit()
        return True

    @staticmethod
    async def order_numbers_for(db: AsyncSession, owner_id: str) -> List[str]:
        result = await db.execute(select(Order.order_number).where(Order.owner_id == owner_id))
        return list(result.scalars().all())

    @staticmethod
    async def query(db: AsyncSession, filters: Optional[OrderFilter] = None) -> List[OrderSnapshot]:
        """Orders matching the column-level filters, newest first.

        Filters over the fulfillment record are applied by the caller, which
        owns the pickup-status rules.
        """
        stmt = select(Order).order_by(Order.created_at.desc())
        if filters is not None:
            if filters.stage is not None:
                stmt = stmt.where(Order.stage == filters.stage.value)
            if filters.owner_id is not None:
                stmt = stmt.where(Order.owner_id == filters.owner_id)
            if filters.date_from is not None:
                stmt = stmt.where(Order.date_required >= filters.date_from)
            if filters.date_to is not None:
                stmt = stmt.where(Order.date_required <= filters.date_to)
        result = await db.execute(stmt)
        rows = result.scalars().all()
        snapshots = [OrderSnapshot.model_validate(row) for row in rows]
        for row in rows:
            db.expunge(row)
        return snapshots
