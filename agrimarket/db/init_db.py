# agrimarket/db/init_db.py
import logging

from agrimarket.config import ADMIN_EMAIL, ADMIN_PASSWORD
from agrimarket.db.database import engine, Base, SessionLocal
from agrimarket.db.functions import get_user_by_email, create_user
from agrimarket.db.models import Role
from agrimarket.db.schemas import UserCreate

logger = logging.getLogger(__name__)


async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await seed_admin()


async def seed_admin(session_factory=SessionLocal, email: str = ADMIN_EMAIL, password: str = ADMIN_PASSWORD):
    if not email or not password:
        return None
    async with session_factory() as db:
        admin = await get_user_by_email(db, email)
        if admin:
            return admin
        admin = await create_user(
            db,
            UserCreate(full_name="Admin User", email=email, password=password, role=Role.admin),
            allow_admin=True,
        )
        logger.info("Seeded admin account %s", email)
        return admin
