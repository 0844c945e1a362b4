# agrimarket/main.py
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List

from fastapi import FastAPI, Depends, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from agrimarket.auth_utils import create_access_token, decode_access_token, verify_password
from agrimarket.cart import Cart, CartResult, CartStore
from agrimarket.config import CORS_ORIGINS, LOG_LEVEL, ORDER_EVENTS_QUEUE, PORT, RABBITMQ_URL
from agrimarket.db import schemas
from agrimarket.db.database import SessionLocal, get_db
from agrimarket.db.functions import (
    create_product, create_user, delete_product, get_all_products, get_all_users,
    get_product_by_id, get_user_by_email, get_user_by_id, update_product, update_user,
)
from agrimarket.db.init_db import init_db
from agrimarket.db.models import Capability, Order, User
from agrimarket.db.orders import (
    get_order_for_user, list_buyer_orders, list_seller_orders, place_order,
    rate_order_item, update_order_status,
)
from agrimarket.dependencies import get_carts, get_current_user, get_feed, get_publisher, require
from agrimarket.errors import AuthRequired, MarketError, NotFound
from agrimarket.events import OrderEventPublisher
from agrimarket.feed import FeedScope, OrderChange, OrderFeed

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    await init_db()
    await app.state.publisher.connect()
    yield
    await app.state.publisher.close()


app = FastAPI(title="AgriMarket API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.session_factory = SessionLocal
app.state.carts = CartStore()
app.state.feed = OrderFeed(SessionLocal)
app.state.publisher = OrderEventPublisher(RABBITMQ_URL, ORDER_EVENTS_QUEUE)


@app.exception_handler(MarketError)
async def market_error_handler(request: Request, exc: MarketError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code, "detail": exc.detail},
        headers=exc.headers,
    )


# Helpers

def cart_line_out(line) -> schemas.CartLine:
    snapshot = line.product
    return schemas.CartLine(
        product_id=snapshot.id,
        name=snapshot.name,
        price=snapshot.price,
        image=snapshot.image,
        ai_hint=snapshot.ai_hint,
        quantity=line.quantity,
        subtotal=round(line.subtotal, 2),
    )


def cart_out(cart: Cart) -> schemas.Cart:
    return schemas.Cart(
        items=[cart_line_out(line) for line in cart.lines],
        item_count=cart.item_count,
        total=round(cart.cart_total, 2),
    )


def cart_update_out(result: CartResult, cart: Cart) -> schemas.CartUpdate:
    return schemas.CartUpdate(
        status=result.status.value,
        line=cart_line_out(result.line) if result.line else None,
        cart=cart_out(cart),
    )


async def broadcast_order_change(order: Order, feed: OrderFeed, publisher: OrderEventPublisher):
    change = OrderChange.from_order(order)
    await feed.publish(change)
    await publisher.publish(change)


@app.get("/")
async def health_check():
    """Health check endpoint."""
    return {"status": "agrimarket running"}


# Auth & profile

@app.post("/api/register", response_model=schemas.Token, status_code=201)
async def register(payload: schemas.UserCreate, db: AsyncSession = Depends(get_db)):
    user = await create_user(db, payload)
    token = create_access_token({"sub": user.email, "id": user.id, "role": user.role.value})
    return schemas.Token(access_token=token, role=user.role)


@app.post("/api/login", response_model=schemas.Token)
async def login(payload: schemas.LoginRequest, db: AsyncSession = Depends(get_db)):
    user = await get_user_by_email(db, payload.email)
    if not user or not verify_password(payload.password, user.hashed_password):
        logger.info("Failed login for %s", payload.email)
        raise AuthRequired("Invalid email or password")
    token = create_access_token({"sub": user.email, "id": user.id, "role": user.role.value})
    return schemas.Token(access_token=token, role=user.role)


@app.get("/api/profile", response_model=schemas.User)
async def get_profile(user: User = Depends(get_current_user)):
    return user


@app.put("/api/profile", response_model=schemas.User)
async def update_profile(payload: schemas.UserUpdate, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await update_user(db, user, payload)


@app.get("/api/admin/users", response_model=List[schemas.User])
async def list_users(user: User = Depends(require(Capability.administer)), db: AsyncSession = Depends(get_db)):
    return await get_all_users(db)


# Catalog

@app.get("/api/products", response_model=List[schemas.Product])
async def read_products(search: str = "", db: AsyncSession = Depends(get_db)):
    return await get_all_products(db, search=search)


@app.get("/api/products/{product_id}", response_model=schemas.Product)
async def read_product(product_id: str, db: AsyncSession = Depends(get_db)):
    return await get_product_by_id(db, product_id)


@app.post("/api/products", response_model=schemas.Product, status_code=201)
async def create_new_product(payload: schemas.ProductCreate, farmer: User = Depends(require(Capability.sell)), db: AsyncSession = Depends(get_db)):
    return await create_product(db, farmer, payload)


@app.put("/api/products/{product_id}", response_model=schemas.Product)
async def update_existing_product(
    product_id: str,
    payload: schemas.ProductUpdate,
    farmer: User = Depends(require(Capability.sell)),
    db: AsyncSession = Depends(get_db),
):
    return await update_product(db, product_id, farmer, payload)


@app.delete("/api/products/{product_id}", status_code=204)
async def delete_existing_product(product_id: str, farmer: User = Depends(require(Capability.sell)), db: AsyncSession = Depends(get_db)):
    await delete_product(db, product_id, farmer)
    return Response(status_code=204)


@app.get("/api/farmer/products", response_model=List[schemas.Product])
async def read_farmer_products(farmer: User = Depends(require(Capability.sell)), db: AsyncSession = Depends(get_db)):
    return await get_all_products(db, seller_id=farmer.id)


# Cart

@app.get("/api/cart", response_model=schemas.Cart)
async def read_cart(buyer: User = Depends(require(Capability.buy)), carts: CartStore = Depends(get_carts)):
    return cart_out(carts.get(buyer.id))


@app.post("/api/cart/items", response_model=schemas.CartUpdate)
async def add_to_cart(
    payload: schemas.CartAdd,
    buyer: User = Depends(require(Capability.buy)),
    db: AsyncSession = Depends(get_db),
    carts: CartStore = Depends(get_carts),
):
    product = await get_product_by_id(db, payload.product_id)
    cart = carts.get(buyer.id)
    result = cart.add_to_cart(product, payload.quantity)
    return cart_update_out(result, cart)


@app.put("/api/cart/items/{product_id}", response_model=schemas.CartUpdate)
async def update_cart_item_quantity(
    product_id: str,
    payload: schemas.CartQuantity,
    buyer: User = Depends(require(Capability.buy)),
    db: AsyncSession = Depends(get_db),
    carts: CartStore = Depends(get_carts),
):
    cart = carts.get(buyer.id)
    if product_id not in cart:
        raise NotFound("Product not found in the cart")
    if payload.quantity <= 0:
        result = cart.update_quantity(product_id, payload.quantity)
    else:
        product = await get_product_by_id(db, product_id)
        result = cart.update_quantity(product_id, payload.quantity, stock=product.stock)
    return cart_update_out(result, cart)


@app.delete("/api/cart/items/{product_id}", response_model=schemas.Cart)
async def remove_from_cart(product_id: str, buyer: User = Depends(require(Capability.buy)), carts: CartStore = Depends(get_carts)):
    cart = carts.get(buyer.id)
    cart.remove_from_cart(product_id)
    return cart_out(cart)


@app.delete("/api/cart", response_model=schemas.Cart)
async def clear_cart(buyer: User = Depends(require(Capability.buy)), carts: CartStore = Depends(get_carts)):
    cart = carts.get(buyer.id)
    cart.clear_cart()
    return cart_out(cart)


# Orders

@app.post("/api/checkout", response_model=schemas.CheckoutResponse, status_code=201)
async def checkout(
    payload: schemas.CheckoutRequest,
    buyer: User = Depends(require(Capability.buy)),
    db: AsyncSession = Depends(get_db),
    carts: CartStore = Depends(get_carts),
    feed: OrderFeed = Depends(get_feed),
    publisher: OrderEventPublisher = Depends(get_publisher),
):
    order = await place_order(db, carts.get(buyer.id), buyer, payload.shipping_address)
    await broadcast_order_change(order, feed, publisher)
    return schemas.CheckoutResponse(order_id=order.id)


@app.get("/api/orders", response_model=List[schemas.Order])
async def read_orders(buyer: User = Depends(require(Capability.buy)), db: AsyncSession = Depends(get_db)):
    return await list_buyer_orders(db, buyer.id)


@app.get("/api/farmer/orders", response_model=List[schemas.Order])
async def read_farmer_orders(farmer: User = Depends(require(Capability.sell)), db: AsyncSession = Depends(get_db)):
    return await list_seller_orders(db, farmer.id)


@app.get("/api/orders/{order_id}", response_model=schemas.Order)
async def read_order(order_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await get_order_for_user(db, order_id, user)


@app.patch("/api/orders/{order_id}/status", response_model=schemas.Order)
async def change_order_status(
    order_id: str,
    payload: schemas.StatusUpdate,
    farmer: User = Depends(require(Capability.sell)),
    db: AsyncSession = Depends(get_db),
    feed: OrderFeed = Depends(get_feed),
    publisher: OrderEventPublisher = Depends(get_publisher),
):
    order = await update_order_status(db, order_id, farmer, payload.status)
    await broadcast_order_change(order, feed, publisher)
    return order


@app.post("/api/orders/{order_id}/items/{product_id}/rating", response_model=schemas.RatingResponse)
async def rate_item(
    order_id: str,
    product_id: str,
    payload: schemas.RatingRequest,
    buyer: User = Depends(require(Capability.buy)),
    db: AsyncSession = Depends(get_db),
    feed: OrderFeed = Depends(get_feed),
    publisher: OrderEventPublisher = Depends(get_publisher),
):
    outcome = await rate_order_item(db, order_id, product_id, buyer, payload.rating)
    await broadcast_order_change(outcome.order, feed, publisher)
    return schemas.RatingResponse(
        product_id=product_id,
        rating=outcome.rating,
        review_count=outcome.review_count,
    )


@app.websocket("/ws/orders")
async def orders_feed(websocket: WebSocket, token: str = Query(...)):
    try:
        payload = decode_access_token(token)
    except AuthRequired:
        await websocket.close(code=1008)
        return
    # short-lived session: a live socket must not pin a pooled connection
    async with websocket.app.state.session_factory() as db:
        user = await get_user_by_id(db, payload["id"])
    if user is None:
        await websocket.close(code=1008)
        return

    await websocket.accept()

    async def push(orders):
        await websocket.send_json([
            schemas.Order.model_validate(order).model_dump(mode="json", by_alias=True) for order in orders
        ])

    feed: OrderFeed = websocket.app.state.feed
    subscription = await feed.subscribe(user.id, FeedScope.for_role(user.role), push)
    if not subscription.active:
        await websocket.close(code=1011)
        return
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Order feed client %s disconnected", user.id)
    finally:
        subscription.cancel()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
