# agrimarket/db/functions.py
import logging

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from agrimarket.auth_utils import hash_password
from agrimarket.db.models import Product, User, Role
from agrimarket.db.schemas import UserCreate, UserUpdate, ProductCreate, ProductUpdate
from agrimarket.errors import NotFound, Forbidden, EmailTaken, StoreUnavailable

logger = logging.getLogger(__name__)


async def _commit(db: AsyncSession, action: str):
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Store write failed: %s", action)
        raise StoreUnavailable()


# Пользователи

async def get_all_users(db: AsyncSession, skip: int = 0, limit: int = 100):
    result = await db.execute(select(User).order_by(User.email).offset(skip).limit(limit))
    return result.scalars().all()


async def get_user_by_id(db: AsyncSession, user_id: str):
    result = await db.execute(select(User).filter(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str):
    result = await db.execute(select(User).filter(User.email == email.lower()))
    return result.scalar_one_or_none()


async def create_user(db: AsyncSession, user_data: UserCreate, allow_admin: bool = False):
    if user_data.role is Role.admin and not allow_admin:
        raise Forbidden("Admin accounts cannot be self-registered")
    if await get_user_by_email(db, user_data.email):
        raise EmailTaken()

    db_user = User(
        full_name=user_data.full_name,
        email=user_data.email.lower(),
        hashed_password=hash_password(user_data.password),
        role=user_data.role,
        address=user_data.address,
        city=user_data.city,
        zip=user_data.zip,
    )
    db.add(db_user)
    try:
        await db.commit()
    except IntegrityError:
        # lost a race with a concurrent registration of the same email
        await db.rollback()
        raise EmailTaken()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Store write failed: create user %s", user_data.email)
        raise StoreUnavailable()
    await db.refresh(db_user)
    logger.info("Registered %s as %s", db_user.email, db_user.role.value)
    return db_user


async def update_user(db: AsyncSession, user: User, user_data: UserUpdate):
    for field, value in user_data.model_dump(exclude_unset=True).items():
        setattr(user, field, value)
    await _commit(db, f"update user {user.id}")
    await db.refresh(user)
    return user


# Товары

async def get_all_products(db: AsyncSession, search: str = "", seller_id: str = None, skip: int = 0, limit: int = 100):
    query = select(Product)
    if search:
        query = query.filter(Product.name.ilike(f"%{search}%"))
    if seller_id:
        query = query.filter(Product.uid == seller_id)
    result = await db.execute(query.order_by(Product.name).offset(skip).limit(limit))
    return result.scalars().all()


async def get_product_by_id(db: AsyncSession, product_id: str):
    result = await db.execute(select(Product).filter(Product.id == product_id))
    product = result.scalar_one_or_none()
    if not product:
        raise NotFound("Product not found")
    return product


async def get_owned_product(db: AsyncSession, product_id: str, farmer: User):
    product = await get_product_by_id(db, product_id)
    if product.uid != farmer.id:
        raise Forbidden("You don't have permission to edit this product")
    return product


async def create_product(db: AsyncSession, farmer: User, product_data: ProductCreate):
    new_product = Product(
        uid=farmer.id,
        seller=farmer.full_name,
        name=product_data.name,
        description=product_data.description or "",
        price=product_data.price,
        stock=product_data.stock,
        image=product_data.image or "https://placehold.co/600x400.png",
        ai_hint=product_data.ai_hint or "fresh produce",
    )
    db.add(new_product)
    await _commit(db, f"create product {product_data.name}")
    await db.refresh(new_product)
    logger.info("Farmer %s listed product %s", farmer.id, new_product.id)
    return new_product


async def update_product(db: AsyncSession, product_id: str, farmer: User, product_data: ProductUpdate):
    product = await get_owned_product(db, product_id, farmer)
    for field, value in product_data.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(product, field, value)
    await _commit(db, f"update product {product_id}")
    await db.refresh(product)
    return product


async def delete_product(db: AsyncSession, product_id: str, farmer: User):
    product = await get_owned_product(db, product_id, farmer)
    await db.delete(product)
    await _commit(db, f"delete product {product_id}")
    logger.info("Farmer %s removed product %s", farmer.id, product_id)
    return product
