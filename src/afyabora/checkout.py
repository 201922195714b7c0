"""
Checkout: prescription gate, M-Pesa confirmation, then the order.

An order is written only after its payment is confirmed, and only if the
confirmation attempt being honoured is still the customer's active one. The
ordered quantities leave the customer's cart once the order is committed.
"""
import asyncio
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from afyabora import crud
from afyabora.collaborators import FileStorage, UploadedFile
from afyabora.config import settings
from afyabora.errors import (
    EmptyCart,
    InvalidInput,
    OrderPersistenceError,
    PaymentCancelled,
    PaymentFailed,
    PaymentGatewayError,
    PaymentTimeout,
    PrescriptionRequired,
    PrescriptionUploadFailed,
)
from afyabora.models import Order
from afyabora.poller import (
    ConfirmationAttempt,
    ConfirmationOutcome,
    ConfirmationResult,
    GatewayClient,
    PaymentConfirmationPoller,
)
from afyabora.schemas import LineItem

logger = logging.getLogger("pharmacy.checkout")


def order_total(cart: Sequence[LineItem], delivery_fee: Decimal) -> Decimal:
    subtotal = sum((item.subtotal for item in cart), Decimal("0"))
    return subtotal + delivery_fee


def needs_prescription(cart: Sequence[LineItem]) -> bool:
    return any(item.requires_prescription for item in cart)


class CheckoutOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: GatewayClient,
        storage: FileStorage,
        delivery_fee: int = settings.DELIVERY_FEE,
        poll_interval: float = settings.PAYMENT_POLL_INTERVAL,
        payment_timeout: float = settings.PAYMENT_TIMEOUT,
    ):
        self._session_factory = session_factory
        self._gateway = gateway
        self._storage = storage
        self.delivery_fee = Decimal(delivery_fee)
        self.poll_interval = poll_interval
        self.payment_timeout = payment_timeout
        self._pollers: Dict[str, PaymentConfirmationPoller] = {}

    def poller_for(self, customer_id: str) -> PaymentConfirmationPoller:
        poller = self._pollers.get(customer_id)
        if poller is None:
            poller = PaymentConfirmationPoller(
                self._gateway, interval=self.poll_interval, timeout=self.payment_timeout
            )
            self._pollers[customer_id] = poller
        return poller

    @property
    def pending_confirmations(self) -> int:
        return len(self._pollers)

    def _release(self, customer_id: str, poller: PaymentConfirmationPoller) -> None:
        # a poller is only kept while it has an attempt in flight
        if self._pollers.get(customer_id) is poller and not poller.running:
            del self._pollers[customer_id]

    def abandon(self, customer_id: str) -> bool:
        """Cancels the customer's pending payment confirmation, if any."""
        poller = self._pollers.get(customer_id)
        if poller is None:
            return False
        cancelled = poller.cancel()
        self._release(customer_id, poller)
        return cancelled

    async def load_cart(self, customer_id: str) -> List[LineItem]:
        async with self._session_factory() as session:
            return crud.cart_line_items(await crud.get_cart(customer_id, session))

    @staticmethod
    def validate(
        cart: Sequence[LineItem],
        address: str,
        phone: str,
        prescription_file: Optional[UploadedFile] = None,
        prescription_ref: Optional[str] = None,
    ) -> None:
        if not cart:
            raise EmptyCart()
        if not address or not address.strip():
            raise InvalidInput("must not be empty", field="shippingAddress")
        if not phone or not phone.strip():
            raise InvalidInput("must not be empty", field="phone")
        if needs_prescription(cart) and prescription_file is None and not prescription_ref:
            raise PrescriptionRequired()

    async def checkout(
        self,
        customer_id: str,
        cart: Sequence[LineItem],
        address: str,
        phone: str,
        notes: Optional[str] = None,
        prescription_file: Optional[UploadedFile] = None,
        prescription_ref: Optional[str] = None,
    ) -> Order:
        self.validate(cart, address, phone, prescription_file, prescription_ref)
        items = [item.model_copy() for item in cart]

        if prescription_file is not None:
            try:
                prescription_ref = await self._storage.store(prescription_file)
            except Exception as exc:
                logger.warning("[Checkout] Prescription upload failed for %s: %s", customer_id, exc)
                raise PrescriptionUploadFailed(f"Prescription upload failed: {exc}") from exc

        total = order_total(items, self.delivery_fee)
        poller = self.poller_for(customer_id)
        try:
            attempt = poller.start(phone.strip(), total)
            logger.info("[Checkout] Customer %s awaiting payment of %s KSh (attempt %s)",
                        customer_id, total, attempt.id)
            result = await self._await_confirmation(poller, attempt)
            return await self._finalize(customer_id, items, total, address, notes,
                                        prescription_ref, result.checkout_request_id)
        finally:
            self._release(customer_id, poller)

    async def _await_confirmation(
        self,
        poller: PaymentConfirmationPoller,
        attempt: ConfirmationAttempt,
    ) -> ConfirmationResult:
        """Returns the claimed result of a confirmed payment; raises for every other outcome."""
        try:
            result = await attempt.result()
        except asyncio.CancelledError:
            if attempt.cancelled and not _current_task_cancelling():
                raise PaymentCancelled()
            raise

        if result.outcome == ConfirmationOutcome.FAILED:
            poller.claim(attempt)
            raise PaymentFailed(result.checkout_request_id)
        if result.outcome == ConfirmationOutcome.TIMED_OUT:
            poller.claim(attempt)
            raise PaymentTimeout(result.checkout_request_id)
        if result.outcome == ConfirmationOutcome.GATEWAY_ERROR:
            poller.claim(attempt)
            raise PaymentGatewayError(result.checkout_request_id)
        if not poller.claim(attempt):
            logger.warning("[Checkout] Payment %s confirmed for a superseded attempt, no order created",
                           result.checkout_request_id)
            raise PaymentCancelled("Checkout was abandoned before the payment was confirmed")
        return result

    async def _finalize(
        self,
        customer_id: str,
        items: Sequence[LineItem],
        total: Decimal,
        address: str,
        notes: Optional[str],
        prescription_ref: Optional[str],
        checkout_request_id: str,
    ) -> Order:
        async with self._session_factory() as session:
            try:
                order = await crud.create_order(
                    user_id=customer_id,
                    items=items,
                    total_amount=total,
                    shipping_address=address.strip(),
                    notes=notes or None,
                    prescription_image=prescription_ref,
                    checkout_request_id=checkout_request_id,
                    session=session,
                )
            except SQLAlchemyError as exc:
                logger.critical("[Checkout] Payment %s of %s KSh by %s confirmed but order not saved: %s",
                                checkout_request_id, total, customer_id, exc)
                raise OrderPersistenceError(checkout_request_id) from exc

            logger.info("[Checkout] Order %s created for %s (payment %s)",
                        order.id, customer_id, checkout_request_id)
            try:
                await crud.remove_ordered_items(customer_id, items, session)
            except SQLAlchemyError:
                # the order stands; a stale cart is recoverable
                logger.exception("[Checkout] Could not clear cart of %s after order %s",
                                 customer_id, order.id)
        return order


def _current_task_cancelling() -> bool:
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0
