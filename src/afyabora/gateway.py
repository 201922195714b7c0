"""
Simulated M-Pesa STK push gateway.

initiate() records a PENDING transaction and schedules one completion task
for it. The task stands in for the payer entering their PIN: it fires after a
fixed delay whether or not anybody polls, and callers cannot cancel it.
"""
import asyncio
import logging
import secrets
import string
import time
from decimal import Decimal
from typing import Dict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from afyabora import crud
from afyabora.config import settings
from afyabora.errors import InvalidInput, NotFound
from afyabora.models import Transaction, TransactionStatus

logger = logging.getLogger("pharmacy.gateway")

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def new_checkout_request_id() -> str:
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(5))
    return f"ws_CO_{int(time.time() * 1000)}{suffix}"


class PaymentGatewaySimulator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        completion_delay: float = settings.PAYMENT_COMPLETION_DELAY,
    ):
        self._session_factory = session_factory
        self.completion_delay = completion_delay
        self._completions: Dict[str, asyncio.Task] = {}

    @property
    def pending_completions(self) -> int:
        return len(self._completions)

    async def initiate(self, phone: str, amount: Decimal) -> str:
        if not phone or not phone.strip():
            raise InvalidInput("must not be empty", field="phoneNumber")
        amount = Decimal(str(amount))
        if amount <= 0:
            raise InvalidInput("must be positive", field="amount")

        checkout_request_id = new_checkout_request_id()
        async with self._session_factory() as session:
            await crud.create_transaction(checkout_request_id, phone.strip(), amount, session)
        logger.info("[Gateway] STK push %s initiated: %s KSh to %s",
                    checkout_request_id, amount, phone)

        task = asyncio.create_task(
            self._complete_later(checkout_request_id),
            name=f"mpesa-complete-{checkout_request_id}",
        )
        self._completions[checkout_request_id] = task
        task.add_done_callback(lambda _t: self._completions.pop(checkout_request_id, None))
        return checkout_request_id

    async def _complete_later(self, checkout_request_id: str) -> None:
        await asyncio.sleep(self.completion_delay)
        try:
            async with self._session_factory() as session:
                settled = await crud.settle_transaction(
                    checkout_request_id, TransactionStatus.COMPLETED, session
                )
        except Exception:
            logger.exception("[Gateway] Could not complete %s", checkout_request_id)
            return
        if settled:
            logger.info("[Gateway] Simulated M-Pesa payment success for %s", checkout_request_id)
        else:
            logger.info("[Gateway] %s was already settled", checkout_request_id)

    async def get_transaction(self, checkout_request_id: str) -> Transaction:
        async with self._session_factory() as session:
            tx = await crud.get_transaction(checkout_request_id, session)
        if tx is None:
            raise NotFound("Transaction", checkout_request_id)
        return tx

    async def query_status(self, checkout_request_id: str) -> TransactionStatus:
        tx = await self.get_transaction(checkout_request_id)
        return TransactionStatus(tx.status)

    async def shutdown(self) -> None:
        tasks = list(self._completions.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("[Gateway] Dropped %d pending completions on shutdown", len(tasks))
