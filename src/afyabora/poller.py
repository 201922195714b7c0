"""
Waits for an STK push to be confirmed.

A confirmation attempt is one asyncio task that initiates the payment, polls
its status on a fixed interval and gives up at a deadline. Cancelling that
task stops the polling and the deadline together.
"""
import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

import httpx

from afyabora.config import settings
from afyabora.errors import ConfirmationInProgress, NotFound
from afyabora.models import TransactionStatus

logger = logging.getLogger("pharmacy.poller")


class GatewayClient(Protocol):
    async def initiate(self, phone: str, amount: Decimal) -> str: ...

    async def query_status(self, checkout_request_id: str) -> TransactionStatus: ...


class HttpGatewayClient:
    """GatewayClient for a gateway reached over its /api/mpesa HTTP routes."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout, transport=transport
        )

    async def initiate(self, phone: str, amount: Decimal) -> str:
        resp = await self._client.post(
            "/api/mpesa/stkpush",
            json={"phoneNumber": phone, "amount": float(amount)},
        )
        resp.raise_for_status()
        return resp.json()["checkoutRequestId"]

    async def query_status(self, checkout_request_id: str) -> TransactionStatus:
        resp = await self._client.get(f"/api/mpesa/status/{checkout_request_id}")
        if resp.status_code == 404:
            raise NotFound("Transaction", checkout_request_id)
        resp.raise_for_status()
        return TransactionStatus(resp.json()["status"])

    async def aclose(self) -> None:
        await self._client.aclose()


class ConfirmationOutcome(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    GATEWAY_ERROR = "gateway_error"


@dataclass
class ConfirmationResult:
    outcome: ConfirmationOutcome
    checkout_request_id: Optional[str]


class ConfirmationAttempt:
    def __init__(self):
        self.id = uuid.uuid4().hex
        self.checkout_request_id: Optional[str] = None
        self.cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> None:
        self.cancelled = True
        if self._task is not None:
            self._task.cancel()

    async def result(self) -> ConfirmationResult:
        """Raises asyncio.CancelledError if the attempt was cancelled."""
        return await self._task


class PaymentConfirmationPoller:
    """Runs at most one confirmation attempt at a time."""

    def __init__(
        self,
        client: GatewayClient,
        interval: float = settings.PAYMENT_POLL_INTERVAL,
        timeout: float = settings.PAYMENT_TIMEOUT,
    ):
        self.client = client
        self.interval = interval
        self.timeout = timeout
        self._active: Optional[ConfirmationAttempt] = None

    @property
    def running(self) -> bool:
        return self._active is not None and not self._active.done

    def start(self, phone: str, amount: Decimal) -> ConfirmationAttempt:
        if self.running:
            raise ConfirmationInProgress()
        attempt = ConfirmationAttempt()
        attempt._task = asyncio.create_task(
            self._run(attempt, phone, amount), name=f"mpesa-confirm-{attempt.id}"
        )
        self._active = attempt
        return attempt

    def is_active(self, attempt: ConfirmationAttempt) -> bool:
        return attempt is self._active and not attempt.cancelled

    def claim(self, attempt: ConfirmationAttempt) -> bool:
        """
        Hands a finished attempt to the caller for finalizing.

        Succeeds once, and only while the attempt is still the active one;
        after that, cancel() has nothing left to cancel.
        """
        if not self.is_active(attempt):
            return False
        self._active = None
        return True

    def cancel(self) -> bool:
        attempt = self._active
        if attempt is None:
            return False
        attempt.cancel()
        self._active = None
        logger.info("[Poller] Attempt %s cancelled (request %s)", attempt.id, attempt.checkout_request_id)
        return True

    async def _run(self, attempt: ConfirmationAttempt, phone: str, amount: Decimal) -> ConfirmationResult:
        try:
            return await asyncio.wait_for(self._confirm(attempt, phone, amount), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("[Poller] No confirmation for %s after %.1fs",
                           attempt.checkout_request_id, self.timeout)
            return ConfirmationResult(ConfirmationOutcome.TIMED_OUT, attempt.checkout_request_id)
        except (httpx.HTTPError, NotFound, KeyError, ValueError) as exc:
            # no usable answer from the gateway
            logger.warning("[Poller] Gateway error while confirming %s: %r",
                           attempt.checkout_request_id, exc)
            return ConfirmationResult(ConfirmationOutcome.GATEWAY_ERROR, attempt.checkout_request_id)

    async def _confirm(self, attempt: ConfirmationAttempt, phone: str, amount: Decimal) -> ConfirmationResult:
        checkout_request_id = await self.client.initiate(phone, amount)
        attempt.checkout_request_id = checkout_request_id
        logger.info("[Poller] Waiting for confirmation of %s", checkout_request_id)

        while True:
            await asyncio.sleep(self.interval)
            status = await self.client.query_status(checkout_request_id)
            if status == TransactionStatus.COMPLETED:
                logger.info("[Poller] %s completed", checkout_request_id)
                return ConfirmationResult(ConfirmationOutcome.COMPLETED, checkout_request_id)
            if status == TransactionStatus.FAILED:
                logger.warning("[Poller] %s failed", checkout_request_id)
                return ConfirmationResult(ConfirmationOutcome.FAILED, checkout_request_id)
