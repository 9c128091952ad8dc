from __future__ import annotations
import json
import logging
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, exists, update
from sqlalchemy.exc import IntegrityError

from libris.db import atomic
from libris.errors import Conflict, InvalidState, NotFound, ValidationFailed
from libris.models import ApprovalRequest, ApprovalStatus, User, UserRole, UserStatus
from libris.notifications.dispatcher import NotificationDispatcher, notify
from libris.notifications.jobs import (
    AccountStatusData, AccountStatusJob, Recipient, WelcomeData, WelcomeJob,
)

logger = logging.getLogger(__name__)

USER_REGISTRATION = "user_registration"

_STATUS_EVENT = {UserStatus.ACTIVE: "activated", UserStatus.SUSPENDED: "suspended"}

async def get_user(session: AsyncSession, user_id: int) -> User:
    user = await session.get(User, user_id, populate_existing=True)
    if not user or not user.is_active:
        raise NotFound(f"No existe el usuario {user_id}.", code="USER_NOT_FOUND")
    return user

async def register_user(session: AsyncSession, dispatcher: NotificationDispatcher | None, *, email: str,
                        first_name: str, last_name: str,
                        role: UserRole = UserRole.USER) -> Tuple[User, Optional[ApprovalRequest]]:
    """Registra un usuario. Los usuarios comunes quedan ``pending`` con una solicitud
    ``user_registration`` que un administrador debe aprobar; los administradores
    nacen activos."""
    email_norm = (email or "").strip().lower()
    if not (email_norm and first_name and last_name):
        raise ValidationFailed("Faltan datos para registrar el usuario (email, nombre, apellido).", code="MISSING_FIELDS")
    if await session.scalar(select(exists().where(User.email == email_norm))):
        raise Conflict("Ya existe un usuario con ese email.", code="EMAIL_EXISTS")
    role = UserRole(role)
    request = None
    try:
        async with atomic(session):
            user = User(
                email=email_norm, first_name=first_name.strip(), last_name=last_name.strip(), role=role,
                status=UserStatus.ACTIVE if role == UserRole.ADMIN else UserStatus.PENDING,
            )
            session.add(user)
            await session.flush()
            if role != UserRole.ADMIN:
                request = ApprovalRequest(
                    user_id=user.id, request_type=USER_REGISTRATION, resource_id=user.id,
                    request_data=json.dumps({"email": user.email, "first_name": user.first_name, "last_name": user.last_name}),
                    status=ApprovalStatus.PENDING,
                )
                session.add(request)
                await session.flush()
    except IntegrityError as e:
        raise Conflict("Ya existe un usuario con ese email.", code="EMAIL_EXISTS") from e
    logger.info("Usuario %s registrado (%s)", user.id, user.status.value)
    await notify(dispatcher, WelcomeJob(
        recipient=Recipient(email=user.email, name=user.full_name),
        data=WelcomeData(user_id=user.id, first_name=user.first_name, last_name=user.last_name),
    ))
    return user, request

async def set_status(session: AsyncSession, user_id: int, status: UserStatus) -> User:
    """Cambia el estado dentro de la transacción en curso; ``InvalidState`` si ya lo tiene."""
    await get_user(session, user_id)
    res = await session.execute(
        update(User)
        .where(User.id == user_id, User.status != status)
        .values(status=status)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise InvalidState(f"El usuario ya está {status.value}.", code=f"USER_ALREADY_{status.name}")
    return await get_user(session, user_id)

def account_status_job(user: User, *, reason: Optional[str] = None, admin_notes: Optional[str] = None) -> AccountStatusJob:
    return AccountStatusJob(
        recipient=Recipient(email=user.email, name=user.full_name),
        data=AccountStatusData(
            user_id=user.id, status=_STATUS_EVENT[user.status], reason=reason, admin_notes=admin_notes,
        ),
    )

async def _change_status(session, dispatcher, user_id, status, reason, admin_notes) -> User:
    async with atomic(session):
        user = await set_status(session, user_id, status)
    logger.info("Usuario %s -> %s", user_id, status.value)
    await notify(dispatcher, account_status_job(user, reason=reason, admin_notes=admin_notes))
    return user

async def activate_user(session: AsyncSession, dispatcher: NotificationDispatcher | None, user_id: int,
                        *, reason: Optional[str] = None, admin_notes: Optional[str] = None) -> User:
    return await _change_status(session, dispatcher, user_id, UserStatus.ACTIVE, reason, admin_notes)

async def suspend_user(session: AsyncSession, dispatcher: NotificationDispatcher | None, user_id: int,
                       *, reason: Optional[str] = None, admin_notes: Optional[str] = None) -> User:
    return await _change_status(session, dispatcher, user_id, UserStatus.SUSPENDED, reason, admin_notes)
