import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, File, Form, UploadFile
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.ext.asyncio import AsyncSession

from afyabora import crud, lifecycle, schemas
from afyabora.checkout import CheckoutOrchestrator
from afyabora.collaborators import Catalog, InMemoryCatalog, LocalFileStorage, UploadedFile
from afyabora.config import settings
from afyabora.db import AsyncSessionLocal, Base, engine, get_session
from afyabora.deps import get_catalog, get_gateway, get_identity, get_orchestrator
from afyabora.errors import NotFound
from afyabora.gateway import PaymentGatewaySimulator
from afyabora.poller import HttpGatewayClient
from afyabora.schemas import Identity

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    Path(settings.UPLOAD_DIR).mkdir(parents=True, exist_ok=True)

    gateway = PaymentGatewaySimulator(
        AsyncSessionLocal, completion_delay=settings.PAYMENT_COMPLETION_DELAY
    )
    if settings.GATEWAY_BASE_URL:
        client = HttpGatewayClient(settings.GATEWAY_BASE_URL)
    else:
        client = gateway

    app.state.gateway = gateway
    app.state.catalog = InMemoryCatalog()
    app.state.orchestrator = CheckoutOrchestrator(
        AsyncSessionLocal,
        client,
        LocalFileStorage(settings.UPLOAD_DIR, settings.PUBLIC_BASE_URL),
        delivery_fee=settings.DELIVERY_FEE,
        poll_interval=settings.PAYMENT_POLL_INTERVAL,
        payment_timeout=settings.PAYMENT_TIMEOUT,
    )
    logger.info("Pharmacy service started")
    yield

    await gateway.shutdown()
    if isinstance(client, HttpGatewayClient):
        await client.aclose()
    await engine.dispose()


app = FastAPI(title="AfyaBora E-Pharmacy", lifespan=lifespan)

# Prescription uploads, linked from orders as <PUBLIC_BASE_URL>/uploads/<name>
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False), name="uploads")


@app.get("/", response_class=PlainTextResponse)
async def health():
    return "AfyaBora E-Pharmacy API is running"


# ── M-Pesa (simulated) ──────────────────────────────────────────────

@app.post("/api/mpesa/stkpush", response_model=schemas.StkPushResponse)
async def stk_push(
    req: schemas.StkPushRequest,
    identity: Identity = Depends(get_identity),
    gateway: PaymentGatewaySimulator = Depends(get_gateway),
):
    request_id = await gateway.initiate(req.phone_number, req.amount)
    return schemas.StkPushResponse(checkout_request_id=request_id)


@app.get("/api/mpesa/status/{request_id}", response_model=schemas.TransactionStatusRead)
async def stk_status(
    request_id: str,
    identity: Identity = Depends(get_identity),
    gateway: PaymentGatewaySimulator = Depends(get_gateway),
):
    try:
        status = await gateway.query_status(request_id)
    except NotFound:
        return JSONResponse(status_code=404, content={"status": "NOT_FOUND"})
    return schemas.TransactionStatusRead(status=status)


# ── Cart and wishlist ───────────────────────────────────────────────

@app.get("/api/cart", response_model=List[schemas.LineItem])
async def get_cart(
    identity: Identity = Depends(get_identity),
    session: AsyncSession = Depends(get_session),
):
    return crud.cart_line_items(await crud.get_cart(identity.id, session))


@app.post("/api/cart/items", response_model=List[schemas.LineItem])
async def add_cart_item(
    item_in: schemas.CartItemCreate,
    identity: Identity = Depends(get_identity),
    session: AsyncSession = Depends(get_session),
    catalog: Catalog = Depends(get_catalog),
):
    product = await catalog.get_product(item_in.product_id)
    rows = await crud.add_to_cart(identity.id, product, item_in.quantity, session)
    return crud.cart_line_items(rows)


@app.delete("/api/cart/items/{product_id}", response_model=List[schemas.LineItem])
async def remove_cart_item(
    product_id: str,
    identity: Identity = Depends(get_identity),
    session: AsyncSession = Depends(get_session),
):
    return crud.cart_line_items(await crud.remove_from_cart(identity.id, product_id, session))


@app.get("/api/wishlist", response_model=List[str])
async def get_wishlist(
    identity: Identity = Depends(get_identity),
    session: AsyncSession = Depends(get_session),
):
    return await crud.get_wishlist(identity.id, session)


@app.post("/api/wishlist/toggle", response_model=List[str])
async def toggle_wishlist(
    req: schemas.WishlistToggleRequest,
    identity: Identity = Depends(get_identity),
    session: AsyncSession = Depends(get_session),
):
    return await crud.toggle_wishlist(identity.id, req.product_id, session)


# ── Checkout ────────────────────────────────────────────────────────

@app.post("/api/checkout", response_model=schemas.OrderRead, status_code=201)
async def checkout(
    shipping_address: str = Form("", alias="shippingAddress"),
    phone: str = Form(""),
    notes: Optional[str] = Form(None),
    prescription_ref: Optional[str] = Form(None, alias="prescriptionImage"),
    prescription: Optional[UploadFile] = File(None),
    identity: Identity = Depends(get_identity),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    # no request-scoped session: the payment wait can last up to PAYMENT_TIMEOUT
    cart = await orchestrator.load_cart(identity.id)
    upload = None
    if prescription is not None and prescription.filename:
        upload = UploadedFile(
            filename=prescription.filename,
            content=await prescription.read(),
            content_type=prescription.content_type,
        )
    return await orchestrator.checkout(
        identity.id,
        cart,
        shipping_address,
        phone,
        notes=notes,
        prescription_file=upload,
        prescription_ref=prescription_ref,
    )


@app.delete("/api/checkout")
async def abandon_checkout(
    identity: Identity = Depends(get_identity),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    return {"cancelled": orchestrator.abandon(identity.id)}


# ── Orders ──────────────────────────────────────────────────────────

@app.get("/api/orders", response_model=List[schemas.OrderRead])
async def list_my_orders(
    identity: Identity = Depends(get_identity),
    session: AsyncSession = Depends(get_session),
):
    return await lifecycle.customer_orders(session, identity)


@app.get("/api/orders/{order_id}", response_model=schemas.OrderRead)
async def get_order(
    order_id: str,
    identity: Identity = Depends(get_identity),
    session: AsyncSession = Depends(get_session),
):
    return await lifecycle.visible_order(session, identity, order_id)


@app.get("/api/admin/orders", response_model=List[schemas.OrderRead])
async def list_all_orders(
    identity: Identity = Depends(get_identity),
    session: AsyncSession = Depends(get_session),
):
    return await lifecycle.admin_orders(session, identity)


@app.get("/api/delivery/orders", response_model=List[schemas.OrderRead])
async def list_delivery_orders(
    identity: Identity = Depends(get_identity),
    session: AsyncSession = Depends(get_session),
):
    return await lifecycle.agent_orders(session, identity)


@app.patch("/api/orders/{order_id}/status", response_model=schemas.OrderRead)
async def update_order_status(
    order_id: str,
    req: schemas.OrderStatusUpdate,
    identity: Identity = Depends(get_identity),
    session: AsyncSession = Depends(get_session),
):
    return await lifecycle.transition_order(session, identity, order_id, req.status)


@app.patch("/api/orders/{order_id}/assign", response_model=schemas.OrderRead)
async def assign_order(
    order_id: str,
    req: schemas.AgentAssignRequest,
    identity: Identity = Depends(get_identity),
    session: AsyncSession = Depends(get_session),
):
    return await lifecycle.assign_agent(session, identity, order_id, req.agent_id)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    uvicorn.run("afyabora.main:app", host="0.0.0.0", port=8000)
