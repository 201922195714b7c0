"""
Tests for the checkout orchestrator: preconditions, payment outcomes, order
snapshot, cart clearing, abandonment and gateway errors.
"""
import asyncio
import logging
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from afyabora import crud
from afyabora.checkout import CheckoutOrchestrator, order_total
from afyabora.collaborators import InMemoryCatalog, UploadedFile
from afyabora.errors import (
    ConfirmationInProgress,
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
from afyabora.gateway import PaymentGatewaySimulator
from afyabora.models import OrderStatus, TransactionStatus
from afyabora.poller import HttpGatewayClient
from afyabora.schemas import LineItem

ADDRESS = "Kenyatta Avenue 12, Nairobi"
PHONE = "0712345678"


class StubGateway:
    def __init__(self, status: TransactionStatus):
        self.status = status
        self.initiate = AsyncMock(return_value="ws_CO_stub")

    async def query_status(self, checkout_request_id):
        return self.status


@pytest.fixture
def storage():
    store = AsyncMock()
    store.store.return_value = "http://localhost:8000/uploads/rx.png"
    return store


@pytest.fixture
async def gateway(session_factory):
    gw = PaymentGatewaySimulator(session_factory, completion_delay=0.05)
    yield gw
    await gw.shutdown()


def make_orchestrator(session_factory, gateway, storage, timeout=2.0):
    return CheckoutOrchestrator(
        session_factory, gateway, storage,
        delivery_fee=200, poll_interval=0.01, payment_timeout=timeout,
    )


async def fill_cart(session_factory, user_id, *entries):
    catalog = InMemoryCatalog()
    async with session_factory() as session:
        for product_id, qty in entries:
            await crud.add_to_cart(user_id, await catalog.get_product(product_id), qty, session)
        return crud.cart_line_items(await crud.get_cart(user_id, session))


async def order_count(session_factory):
    async with session_factory() as session:
        return len(await crud.get_all_orders(session))


@pytest.mark.unit
def test_total_includes_delivery_fee(panadol_items):
    assert order_total(panadol_items, Decimal("200")) == Decimal("550")


class TestPreconditions:

    @pytest.mark.asyncio
    async def test_prescription_item_without_prescription(self, session_factory, storage, amoxicillin_items):
        gateway = StubGateway(TransactionStatus.COMPLETED)
        orchestrator = make_orchestrator(session_factory, gateway, storage)

        with pytest.raises(PrescriptionRequired):
            await orchestrator.checkout("u_customer", amoxicillin_items, ADDRESS, PHONE)

        gateway.initiate.assert_not_called()
        storage.store.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_cart(self, session_factory, storage):
        gateway = StubGateway(TransactionStatus.COMPLETED)
        with pytest.raises(EmptyCart):
            await make_orchestrator(session_factory, gateway, storage).checkout("u_customer", [], ADDRESS, PHONE)
        gateway.initiate.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("address, phone", [("", PHONE), (ADDRESS, ""), ("   ", PHONE)])
    async def test_missing_contact_details(self, session_factory, storage, panadol_items, address, phone):
        gateway = StubGateway(TransactionStatus.COMPLETED)
        with pytest.raises(InvalidInput):
            await make_orchestrator(session_factory, gateway, storage).checkout(
                "u_customer", panadol_items, address, phone)
        gateway.initiate.assert_not_called()

    @pytest.mark.asyncio
    async def test_upload_failure_charges_nothing(self, session_factory, storage, amoxicillin_items):
        gateway = StubGateway(TransactionStatus.COMPLETED)
        storage.store.side_effect = OSError("disk full")

        with pytest.raises(PrescriptionUploadFailed):
            await make_orchestrator(session_factory, gateway, storage).checkout(
                "u_customer", amoxicillin_items, ADDRESS, PHONE,
                prescription_file=UploadedFile("rx.png", b"\x89PNG"))
        gateway.initiate.assert_not_called()


@pytest.mark.asyncio
async def test_successful_checkout(session_factory, gateway, storage):
    cart = await fill_cart(session_factory, "u_customer", ("p1", 7))
    orchestrator = make_orchestrator(session_factory, gateway, storage)

    order = await orchestrator.checkout("u_customer", cart, ADDRESS, PHONE, notes="Call on arrival")

    assert Decimal(order.total_amount) == Decimal("550")
    assert order.status == OrderStatus.PENDING.value
    assert order.user_id == "u_customer"
    assert order.payment_method == "MPESA"
    assert order.notes == "Call on arrival"
    assert order.items[0]["id"] == "p1"
    assert order.items[0]["quantity"] == 7

    tx = await gateway.get_transaction(order.checkout_request_id)
    assert tx.status == TransactionStatus.COMPLETED.value
    assert Decimal(tx.amount) == Decimal("550")

    async with session_factory() as session:
        assert await crud.get_cart("u_customer", session) == []


@pytest.mark.asyncio
async def test_prescription_upload_is_attached(session_factory, gateway, storage):
    cart = await fill_cart(session_factory, "u_customer", ("p3", 1))
    orchestrator = make_orchestrator(session_factory, gateway, storage)

    order = await orchestrator.checkout(
        "u_customer", cart, ADDRESS, PHONE, prescription_file=UploadedFile("rx.png", b"\x89PNG"))

    assert order.prescription_image == "http://localhost:8000/uploads/rx.png"
    assert Decimal(order.total_amount) == Decimal("500")


@pytest.mark.asyncio
async def test_order_items_survive_catalog_changes(session_factory, gateway, storage, panadol_items):
    orchestrator = make_orchestrator(session_factory, gateway, storage)
    order = await orchestrator.checkout("u_customer", panadol_items, ADDRESS, PHONE)

    panadol_items[0].price = 9999
    async with session_factory() as session:
        stored = await crud.get_order(order.id, session)
    assert stored.items[0]["price"] == 50
    assert Decimal(stored.total_amount) == Decimal("550")


@pytest.mark.asyncio
@pytest.mark.parametrize("status, error", [
    (TransactionStatus.FAILED, PaymentFailed),
    (TransactionStatus.PENDING, PaymentTimeout),
])
async def test_unconfirmed_payment_leaves_no_order(session_factory, storage, status, error):
    cart = await fill_cart(session_factory, "u_customer", ("p1", 2))
    orchestrator = make_orchestrator(session_factory, StubGateway(status), storage, timeout=0.1)

    with pytest.raises(error):
        await orchestrator.checkout("u_customer", cart, ADDRESS, PHONE)

    assert await order_count(session_factory) == 0
    async with session_factory() as session:
        assert len(await crud.get_cart("u_customer", session)) == 1


@pytest.mark.asyncio
async def test_retry_allowed_after_timeout(session_factory, storage, panadol_items):
    orchestrator = make_orchestrator(session_factory, StubGateway(TransactionStatus.PENDING), storage, timeout=0.05)
    with pytest.raises(PaymentTimeout):
        await orchestrator.checkout("u_customer", panadol_items, ADDRESS, PHONE)
    with pytest.raises(PaymentTimeout):
        await orchestrator.checkout("u_customer", panadol_items, ADDRESS, PHONE)


@pytest.mark.asyncio
async def test_abandoned_checkout_creates_no_order(session_factory, storage, panadol_items):
    slow_gateway = PaymentGatewaySimulator(session_factory, completion_delay=0.1)
    orchestrator = make_orchestrator(session_factory, slow_gateway, storage)

    checkout = asyncio.create_task(orchestrator.checkout("u_customer", panadol_items, ADDRESS, PHONE))
    await asyncio.sleep(0.03)
    assert orchestrator.abandon("u_customer")

    with pytest.raises(PaymentCancelled):
        await checkout

    # the payment still lands at the gateway, but no order follows it
    await asyncio.sleep(0.2)
    assert await order_count(session_factory) == 0
    await slow_gateway.shutdown()


@pytest.mark.asyncio
async def test_second_concurrent_checkout_is_rejected(session_factory, gateway, storage, panadol_items):
    orchestrator = make_orchestrator(session_factory, gateway, storage)

    first = asyncio.create_task(orchestrator.checkout("u_customer", panadol_items, ADDRESS, PHONE))
    await asyncio.sleep(0)
    with pytest.raises(ConfirmationInProgress):
        await orchestrator.checkout("u_customer", panadol_items, ADDRESS, PHONE)

    # another customer is unaffected
    other = await orchestrator.checkout("u_other", panadol_items, ADDRESS, PHONE)
    order = await first
    assert order.user_id == "u_customer"
    assert other.user_id == "u_other"
    assert await order_count(session_factory) == 2


@pytest.mark.asyncio
async def test_persistence_failure_is_loud(session_factory, gateway, storage, panadol_items, monkeypatch, caplog):
    monkeypatch.setattr(crud, "create_order", AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("db down"))))
    orchestrator = make_orchestrator(session_factory, gateway, storage)

    with pytest.raises(OrderPersistenceError) as exc_info:
        await orchestrator.checkout("u_customer", panadol_items, ADDRESS, PHONE)

    assert exc_info.value.checkout_request_id.startswith("ws_CO_")
    assert any(r.levelname == "CRITICAL" for r in caplog.records)


@pytest.mark.unit
def test_line_item_subtotal():
    item = LineItem(id="p5", name="Vitamin C", price=1200, quantity=2)
    assert item.subtotal == Decimal("2400")


@pytest.mark.unit
def test_order_total_adds_delivery_fee_exactly():
    cart = [LineItem(id="x1", name="Syrup", price=0.1, quantity=3),
            LineItem(id="p1", name="Panadol Extra", price=50, quantity=7)]
    assert order_total(cart, Decimal("200")) == Decimal("550.3")


class GatedGateway(StubGateway):
    """Stays PENDING until `release` is set, then reports COMPLETED."""

    def __init__(self):
        super().__init__(TransactionStatus.PENDING)
        self.release = asyncio.Event()

    async def query_status(self, checkout_request_id):
        return TransactionStatus.COMPLETED if self.release.is_set() else TransactionStatus.PENDING


def refused(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


def failing_status(code: int):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/mpesa/stkpush":
            return httpx.Response(200, json={"success": True, "checkoutRequestId": "ws_CO_remote"})
        return httpx.Response(code, json={"status": "NOT_FOUND"})
    return handler


class TestGatewayErrors:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("handler", [refused, failing_status(500), failing_status(404)],
                             ids=["connect-error", "server-error", "unknown-request"])
    async def test_gateway_errors_map_to_payment_gateway_error(self, session_factory, storage, handler, caplog):
        cart = await fill_cart(session_factory, "u_customer", ("p1", 2))
        client = HttpGatewayClient("http://gateway.test", transport=httpx.MockTransport(handler))
        orchestrator = make_orchestrator(session_factory, client, storage)

        with caplog.at_level(logging.WARNING, logger="pharmacy.poller"):
            with pytest.raises(PaymentGatewayError) as exc_info:
                await orchestrator.checkout("u_customer", cart, ADDRESS, PHONE)
        await client.aclose()

        assert exc_info.value.status_code == 502
        assert any(r.name == "pharmacy.poller" and r.levelname == "WARNING" for r in caplog.records)
        assert await order_count(session_factory) == 0
        async with session_factory() as session:
            assert len(await crud.get_cart("u_customer", session)) == 1
        assert orchestrator.pending_confirmations == 0

    @pytest.mark.asyncio
    async def test_retry_allowed_after_gateway_error(self, session_factory, storage, panadol_items):
        client = HttpGatewayClient("http://gateway.test", transport=httpx.MockTransport(refused))
        orchestrator = make_orchestrator(session_factory, client, storage)

        for _ in range(2):
            with pytest.raises(PaymentGatewayError):
                await orchestrator.checkout("u_customer", panadol_items, ADDRESS, PHONE)
        await client.aclose()


class TestPollerBookkeeping:

    @pytest.mark.asyncio
    async def test_no_pollers_kept_after_checkouts_end(self, session_factory, storage, panadol_items):
        orchestrator = make_orchestrator(session_factory, StubGateway(TransactionStatus.COMPLETED), storage)

        for n in range(5):
            await orchestrator.checkout(f"u_customer{n}", panadol_items, ADDRESS, PHONE)

        assert orchestrator.pending_confirmations == 0
        assert await order_count(session_factory) == 5

    @pytest.mark.asyncio
    async def test_no_pollers_kept_after_failure_or_abandonment(self, session_factory, storage, panadol_items):
        failing = make_orchestrator(session_factory, StubGateway(TransactionStatus.FAILED), storage)
        with pytest.raises(PaymentFailed):
            await failing.checkout("u_customer", panadol_items, ADDRESS, PHONE)
        assert failing.pending_confirmations == 0

        gated = make_orchestrator(session_factory, GatedGateway(), storage)
        checkout = asyncio.create_task(gated.checkout("u_customer", panadol_items, ADDRESS, PHONE))
        await asyncio.sleep(0.03)
        assert gated.pending_confirmations == 1
        assert gated.abandon("u_customer")
        with pytest.raises(PaymentCancelled):
            await checkout
        assert gated.pending_confirmations == 0
        assert not gated.abandon("u_customer")

    @pytest.mark.asyncio
    async def test_rejected_second_checkout_keeps_the_running_one(self, session_factory, storage, panadol_items):
        gateway = GatedGateway()
        orchestrator = make_orchestrator(session_factory, gateway, storage)

        first = asyncio.create_task(orchestrator.checkout("u_customer", panadol_items, ADDRESS, PHONE))
        await asyncio.sleep(0.03)
        with pytest.raises(ConfirmationInProgress):
            await orchestrator.checkout("u_customer", panadol_items, ADDRESS, PHONE)
        assert orchestrator.pending_confirmations == 1

        gateway.release.set()
        order = await first
        assert order.user_id == "u_customer"
        assert orchestrator.pending_confirmations == 0


@pytest.mark.asyncio
async def test_items_added_while_paying_stay_in_cart(session_factory, storage):
    gateway = GatedGateway()
    orchestrator = make_orchestrator(session_factory, gateway, storage)
    await fill_cart(session_factory, "u_customer", ("p1", 7))
    cart = await orchestrator.load_cart("u_customer")

    checkout = asyncio.create_task(orchestrator.checkout("u_customer", cart, ADDRESS, PHONE))
    await asyncio.sleep(0.03)
    await fill_cart(session_factory, "u_customer", ("p5", 1), ("p1", 1))
    gateway.release.set()
    order = await checkout

    assert Decimal(order.total_amount) == Decimal("550")
    left = {item.id: item.quantity for item in await orchestrator.load_cart("u_customer")}
    assert left == {"p1": 1, "p5": 1}
