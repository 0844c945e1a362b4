import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret")

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from agrimarket.cart import CartStore
from agrimarket.db.database import Base, get_db
from agrimarket.db.models import Product, Role, User
from agrimarket.auth_utils import hash_password
from agrimarket.events import OrderEventPublisher
from agrimarket.feed import OrderFeed
from agrimarket.main import app


@pytest.fixture
async def engine(tmp_path):
    # no pooling: the websocket test client serves requests on its own event loops
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'market.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def market_app(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.session_factory = session_factory
    app.state.carts = CartStore()
    app.state.feed = OrderFeed(session_factory)
    app.state.publisher = OrderEventPublisher(None)
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def client(market_app):
    transport = httpx.ASGITransport(app=market_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def make_user(db, email, role=Role.buyer, full_name=None, **extra):
    user = User(
        full_name=full_name or email.split("@")[0].title(),
        email=email,
        hashed_password=hash_password("secret123"),
        role=role,
        **extra,
    )
    db.add(user)
    await db.commit()
    return user


async def make_product(db, farmer, name, price, stock, **extra):
    product = Product(uid=farmer.id, seller=farmer.full_name, name=name, price=price, stock=stock, **extra)
    db.add(product)
    await db.commit()
    return product


@pytest.fixture
async def farmer(db):
    return await make_user(db, "fern@greenacre.farm", Role.farmer, full_name="Green Acre")


@pytest.fixture
async def buyer(db):
    return await make_user(db, "bea@market.io", Role.buyer, full_name="Bea Buyer", address="1 Mill Lane", city="Leeds", zip="LS1")


async def register(client, email, role="buyer", full_name="Someone", password="secret123"):
    response = await client.post("/api/register", json={
        "fullName": full_name, "email": email, "password": password, "role": role,
    })
    assert response.status_code == 201, response.text
    return {"Authorization": f"Bearer {response.json()['accessToken']}"}
