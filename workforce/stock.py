"""Stock collaborator and item allocations.

Stock quantities are never changed here.  What a worker holds is tracked
only through ``ItemAllocation.status``; the stock row just gets its
``last_updated`` marker touched whenever one of its items moves.
"""

import logging

from sqlalchemy import func, select

from . import db
from .models import ALLOCATED, ItemAllocation, StockItem, utcnow

logger = logging.getLogger(__name__)


def find_stock_item(item_name, farm_id):
    stmt = select(StockItem).where(
        StockItem.farm_id == farm_id,
        func.lower(StockItem.item_name) == str(item_name).strip().lower(),
    )
    return db.session.scalars(stmt).first()


def available_quantity(stock: StockItem) -> int:
    held = db.session.scalar(
        select(func.count(ItemAllocation.id)).where(
            ItemAllocation.stock_item_id == stock.id, ItemAllocation.status == ALLOCATED
        )
    )
    return (stock.quantity or 0) - (held or 0)


def _touch(stock_item_id, when):
    if stock_item_id is None:
        return
    stock = db.session.get(StockItem, stock_item_id)
    if stock is not None:
        stock.last_updated = when


def held_items(worker):
    return [a for a in worker.allocated_items if a.status == ALLOCATED]


def allocate_items(worker, item_names, actor_id=None, when=None):
    """Give ``worker`` each named item it does not already hold.

    Items without stock in the worker's farm are skipped with a warning.
    """

    when = when or utcnow()
    holding = {a.item_name.lower() for a in held_items(worker)}
    warnings = []
    for name in item_names or []:
        name = str(name).strip()
        if not name or name.lower() in holding:
            continue
        stock = find_stock_item(name, worker.farm_id)
        if stock is None or available_quantity(stock) <= 0:
            warnings.append(f"{name} is out of stock in farm {worker.farm_id}; it was not allocated")
            continue
        worker.allocated_items.append(
            ItemAllocation(
                item_name=stock.item_name,
                allocated_at=when,
                allocated_by=actor_id,
                stock_item_id=stock.id,
                farm_id=worker.farm_id,
            )
        )
        db.session.flush()
        stock.last_updated = when
        holding.add(name.lower())
    return warnings


def return_items(worker, item_names=None, when=None) -> int:
    """Move held items to returned; all of them when ``item_names`` is None."""

    when = when or utcnow()
    wanted = None if item_names is None else {str(n).strip().lower() for n in item_names}
    returned = 0
    for allocation in held_items(worker):
        if wanted is not None and allocation.item_name.lower() not in wanted:
            continue
        if allocation.mark_returned(when):
            _touch(allocation.stock_item_id, when)
            returned += 1
    if returned:
        logger.info("Returned %d item(s) held by worker %s", returned, worker.id)
    return returned


def apply_item_selection(worker, selected, actor_id=None, when=None):
    """Bring held items in line with ``selected`` item names."""

    selected = [str(n).strip() for n in selected or [] if str(n).strip()]
    keep = {n.lower() for n in selected}
    dropped = [a.item_name for a in held_items(worker) if a.item_name.lower() not in keep]
    if dropped:
        return_items(worker, dropped, when)
    return allocate_items(worker, selected, actor_id, when)
