"""
Order lifecycle: who may move an order where.

Every status change and agent assignment goes through this module. The
transition table below is the only place role permissions are written down;
routes never branch on roles themselves.
"""
import logging
from typing import Dict, FrozenSet, List, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from afyabora import crud
from afyabora.errors import Forbidden, InvalidInput, InvalidTransition, NotFound
from afyabora.models import Order, OrderStatus, Role
from afyabora.schemas import Identity

logger = logging.getLogger("pharmacy.lifecycle")

ADMIN_ONLY = frozenset({Role.ADMIN})
# admins keep the authority to do an agent's job on any order
AGENT_OR_ADMIN = frozenset({Role.DELIVERY_AGENT, Role.ADMIN})

TRANSITIONS: Dict[Tuple[OrderStatus, OrderStatus], FrozenSet[Role]] = {
    (OrderStatus.PENDING, OrderStatus.PROCESSING): ADMIN_ONLY,
    (OrderStatus.PENDING, OrderStatus.CANCELLED): ADMIN_ONLY,
    (OrderStatus.PROCESSING, OrderStatus.SHIPPED): AGENT_OR_ADMIN,
    (OrderStatus.PROCESSING, OrderStatus.CANCELLED): ADMIN_ONLY,
    (OrderStatus.SHIPPED, OrderStatus.DELIVERED): AGENT_OR_ADMIN,
}

ASSIGNABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})


def authorize(identity: Identity, order: Order, allowed: FrozenSet[Role]) -> None:
    """Raises Forbidden unless identity may act on order with one of the allowed roles."""
    if identity.role not in allowed:
        raise Forbidden(f"{identity.role.value} may not perform this action")
    if identity.role == Role.DELIVERY_AGENT and order.delivery_agent_id != identity.id:
        raise Forbidden("Order is not assigned to you")


async def _load(order_id: str, session: AsyncSession) -> Order:
    order = await crud.get_order(order_id, session)
    if order is None:
        raise NotFound("Order", order_id)
    return order


async def transition_order(
    session: AsyncSession,
    identity: Identity,
    order_id: str,
    to_status: OrderStatus,
) -> Order:
    order = await _load(order_id, session)
    from_status = OrderStatus(order.status)

    allowed = TRANSITIONS.get((from_status, to_status))
    if allowed is None:
        logger.warning("[Lifecycle] Rejected %s -> %s on order %s by %s",
                       from_status.value, to_status.value, order_id, identity.id)
        raise InvalidTransition(from_status.value, to_status.value)
    authorize(identity, order, allowed)

    moved = await crud.update_order_status(order_id, from_status.value, to_status.value, session)
    order = await _load(order_id, session)
    if not moved:
        # lost the race to a concurrent transition
        logger.warning("[Lifecycle] Order %s changed to %s before %s -> %s committed",
                       order_id, order.status, from_status.value, to_status.value)
        raise InvalidTransition(order.status, to_status.value)

    logger.info("[Lifecycle] Order %s %s -> %s by %s %s",
                order_id, from_status.value, to_status.value, identity.role.value, identity.id)
    return order


async def assign_agent(
    session: AsyncSession,
    identity: Identity,
    order_id: str,
    agent_id: str,
) -> Order:
    if identity.role != Role.ADMIN:
        raise Forbidden("Only an admin may assign delivery agents")
    if not agent_id or not agent_id.strip():
        raise InvalidInput("must not be empty", field="agentId")

    order = await _load(order_id, session)
    status = OrderStatus(order.status)
    if status not in ASSIGNABLE_STATUSES:
        raise InvalidTransition(
            status.value, status.value,
            message=f"Cannot assign an agent to a {status.value} order",
        )

    assigned = await crud.set_delivery_agent(
        order_id, agent_id, [s.value for s in ASSIGNABLE_STATUSES], session
    )
    order = await _load(order_id, session)
    if not assigned:
        raise InvalidTransition(
            order.status, order.status,
            message=f"Cannot assign an agent to a {order.status} order",
        )

    logger.info("[Lifecycle] Order %s assigned to agent %s", order_id, agent_id)
    return order


# ── Read views ──────────────────────────────────────────────────────

async def customer_orders(session: AsyncSession, identity: Identity) -> List[Order]:
    return await crud.get_orders_by_user(identity.id, session)


async def admin_orders(session: AsyncSession, identity: Identity) -> List[Order]:
    if identity.role != Role.ADMIN:
        raise Forbidden("Admin access required")
    return await crud.get_all_orders(session)


async def agent_orders(session: AsyncSession, identity: Identity) -> List[Order]:
    if identity.role not in AGENT_OR_ADMIN:
        raise Forbidden("Delivery agent access required")
    return await crud.get_orders_for_agent(identity.id, session)


async def visible_order(session: AsyncSession, identity: Identity, order_id: str) -> Order:
    """A single order, for tracking, as far as the caller is allowed to see it."""
    order = await _load(order_id, session)
    if identity.role == Role.ADMIN:
        return order
    if identity.role == Role.DELIVERY_AGENT and order.delivery_agent_id == identity.id:
        return order
    if order.user_id == identity.id:
        return order
    # same answer as a missing order so other customers cannot discover order ids
    raise NotFound("Order", order_id)
