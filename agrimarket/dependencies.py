# agrimarket/dependencies.py
from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from agrimarket.auth_utils import decode_access_token
from agrimarket.cart import CartStore
from agrimarket.db.database import get_db
from agrimarket.db.functions import get_user_by_id
from agrimarket.db.models import Capability, User
from agrimarket.errors import AuthRequired, Forbidden
from agrimarket.events import OrderEventPublisher
from agrimarket.feed import OrderFeed

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/login", auto_error=False)


async def get_current_user(token: str = Depends(oauth2_scheme), db: AsyncSession = Depends(get_db)) -> User:
    if not token:
        raise AuthRequired()
    payload = decode_access_token(token)
    user = await get_user_by_id(db, payload["id"])
    if user is None:
        raise AuthRequired("Unknown user")
    return user


def require(capability: Capability):
    """Dependency that lets only roles holding ``capability`` through."""

    async def checker(user: User = Depends(get_current_user)) -> User:
        if not user.role.can(capability):
            raise Forbidden(f"{user.role.value} accounts cannot {capability.value}")
        return user

    return checker


def get_carts(request: Request) -> CartStore:
    return request.app.state.carts


def get_feed(request: Request) -> OrderFeed:
    return request.app.state.feed


def get_publisher(request: Request) -> OrderEventPublisher:
    return request.app.state.publisher
