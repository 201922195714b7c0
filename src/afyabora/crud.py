from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Sequence

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from afyabora.models import (
    CartItem,
    Order,
    OrderStatus,
    PaymentMethod,
    Transaction,
    TransactionStatus,
    WishlistEntry,
)
from afyabora.schemas import LineItem, Product

# statuses a delivery agent keeps seeing once an order is handed to them
AGENT_VISIBLE_STATUSES = (
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Orders ──────────────────────────────────────────────────────────

async def create_order(
    *,
    user_id: str,
    items: Sequence[LineItem],
    total_amount: Decimal,
    shipping_address: str,
    session: AsyncSession,
    notes: str | None = None,
    prescription_image: str | None = None,
    checkout_request_id: str | None = None,
    payment_method: PaymentMethod = PaymentMethod.MPESA,
) -> Order:
    """
    Persists a new order in Pending status.

    Items are stored as plain dicts so later catalog edits never reach them.
    """
    order = Order(
        user_id=user_id,
        items=[item.model_dump(mode="json", by_alias=True) for item in items],
        total_amount=total_amount,
        status=OrderStatus.PENDING.value,
        date=utcnow(),
        payment_method=payment_method.value,
        shipping_address=shipping_address,
        notes=notes,
        prescription_image=prescription_image,
        checkout_request_id=checkout_request_id,
    )
    session.add(order)
    await session.commit()
    await session.refresh(order)
    return order


async def get_order(
    order_id: str,
    session: AsyncSession
) -> Order | None:
    return await session.get(Order, order_id, populate_existing=True)


async def get_orders_by_user(
    user_id: str,
    session: AsyncSession
) -> List[Order]:
    """Orders placed by one customer, newest first."""
    result = await session.execute(
        select(Order)
        .where(Order.user_id == user_id)
        .order_by(Order.date.desc(), Order.id.desc())
    )
    return list(result.scalars().all())


async def get_all_orders(session: AsyncSession) -> List[Order]:
    result = await session.execute(
        select(Order).order_by(Order.date.desc(), Order.id.desc())
    )
    return list(result.scalars().all())


async def get_orders_for_agent(
    agent_id: str,
    session: AsyncSession
) -> List[Order]:
    """
    Orders assigned to an agent that have left Pending, newest first.

    Delivered orders stay in the list as the agent's delivery history.
    """
    result = await session.execute(
        select(Order)
        .where(
            Order.delivery_agent_id == agent_id,
            Order.status.in_(AGENT_VISIBLE_STATUSES),
        )
        .order_by(Order.date.desc(), Order.id.desc())
    )
    return list(result.scalars().all())


async def update_order_status(
    order_id: str,
    expected_status: str,
    new_status: str,
    session: AsyncSession
) -> bool:
    """
    Moves an order to new_status only if it is still in expected_status.

    Returns False when another writer got there first.
    """
    result = await session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == expected_status)
        .values(status=new_status)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def set_delivery_agent(
    order_id: str,
    agent_id: str,
    allowed_statuses: Iterable[str],
    session: AsyncSession
) -> bool:
    result = await session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status.in_(list(allowed_statuses)))
        .values(delivery_agent_id=agent_id)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


# ── Payment transactions ────────────────────────────────────────────

async def create_transaction(
    checkout_request_id: str,
    phone_number: str,
    amount: Decimal,
    session: AsyncSession
) -> Transaction:
    tx = Transaction(
        checkout_request_id=checkout_request_id,
        phone_number=phone_number,
        amount=amount,
        status=TransactionStatus.PENDING.value,
        date=utcnow(),
    )
    session.add(tx)
    await session.commit()
    await session.refresh(tx)
    return tx


async def get_transaction(
    checkout_request_id: str,
    session: AsyncSession
) -> Transaction | None:
    return await session.get(Transaction, checkout_request_id, populate_existing=True)


async def settle_transaction(
    checkout_request_id: str,
    new_status: TransactionStatus,
    session: AsyncSession
) -> bool:
    """Single terminal move out of PENDING; a second call is a no-op."""
    result = await session.execute(
        update(Transaction)
        .where(
            Transaction.checkout_request_id == checkout_request_id,
            Transaction.status == TransactionStatus.PENDING.value,
        )
        .values(status=new_status.value)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


# ── Cart and wishlist ───────────────────────────────────────────────

def cart_line_items(rows: Iterable[CartItem]) -> List[LineItem]:
    return [
        LineItem(
            id=row.product_id,
            name=row.name,
            price=float(row.price),
            quantity=row.quantity,
            category=row.category,
            image_url=row.image_url,
            requires_prescription=bool(row.requires_prescription),
        )
        for row in rows
    ]


async def get_cart(
    user_id: str,
    session: AsyncSession
) -> List[CartItem]:
    result = await session.execute(
        select(CartItem).where(CartItem.user_id == user_id).order_by(CartItem.id)
    )
    return list(result.scalars().all())


async def add_to_cart(
    user_id: str,
    product: Product,
    quantity: int,
    session: AsyncSession
) -> List[CartItem]:
    result = await session.execute(
        select(CartItem).where(
            CartItem.user_id == user_id, CartItem.product_id == product.id
        )
    )
    row = result.scalar_one_or_none()
    if row:
        row.quantity += quantity
    else:
        session.add(CartItem(
            user_id=user_id,
            product_id=product.id,
            name=product.name,
            price=Decimal(str(product.price)),
            quantity=quantity,
            category=product.category,
            image_url=product.image_url,
            requires_prescription=product.requires_prescription,
        ))
    await session.commit()
    return await get_cart(user_id, session)


async def remove_from_cart(
    user_id: str,
    product_id: str,
    session: AsyncSession
) -> List[CartItem]:
    await session.execute(
        delete(CartItem).where(
            CartItem.user_id == user_id, CartItem.product_id == product_id
        )
    )
    await session.commit()
    return await get_cart(user_id, session)


async def remove_ordered_items(
    user_id: str,
    items: Sequence[LineItem],
    session: AsyncSession
) -> None:
    """
    Takes the ordered quantities out of the cart.

    Rows added or topped up after the order snapshot keep the difference.
    """
    ordered = {item.id: item.quantity for item in items}
    if not ordered:
        return
    result = await session.execute(
        select(CartItem).where(
            CartItem.user_id == user_id, CartItem.product_id.in_(list(ordered))
        )
    )
    for row in result.scalars().all():
        left = row.quantity - ordered[row.product_id]
        if left > 0:
            row.quantity = left
        else:
            await session.delete(row)
    await session.commit()


async def get_wishlist(
    user_id: str,
    session: AsyncSession
) -> List[str]:
    result = await session.execute(
        select(WishlistEntry.product_id)
        .where(WishlistEntry.user_id == user_id)
        .order_by(WishlistEntry.id)
    )
    return list(result.scalars().all())


async def toggle_wishlist(
    user_id: str,
    product_id: str,
    session: AsyncSession
) -> List[str]:
    result = await session.execute(
        select(WishlistEntry).where(
            WishlistEntry.user_id == user_id, WishlistEntry.product_id == product_id
        )
    )
    entry = result.scalar_one_or_none()
    if entry:
        await session.delete(entry)
    else:
        session.add(WishlistEntry(user_id=user_id, product_id=product_id))
    await session.commit()
    return await get_wishlist(user_id, session)
