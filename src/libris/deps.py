from typing import AsyncGenerator

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from libris.approvals import Caller
from libris.errors import Forbidden, Unauthorized
from libris.notifications.dispatcher import NotificationDispatcher


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    async with request.app.state.session_factory() as session:
        yield session


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_caller(
    x_user_id: int | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Caller:
    # La identidad ya viene validada por el gateway; aquí solo se transporta.
    if x_user_id is None:
        raise Unauthorized("Falta la identidad del solicitante.", code="MISSING_IDENTITY")
    return Caller(user_id=x_user_id, role=(x_user_role or "user").strip().lower())


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise Forbidden("Se requiere un administrador.", code="ADMIN_REQUIRED")
    return caller
