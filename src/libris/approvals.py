"""Flujo de aprobaciones: ``pending`` pasa una sola vez a ``approved`` o ``rejected``."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from pydantic import ValidationError
from sqlalchemy import select, update as sql_update, delete as sql_delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from libris import catalog, loans, users
from libris.clock import utcnow
from libris.db import atomic
from libris.errors import Conflict, Forbidden, InvalidState, NotFound, ValidationFailed
from libris.models import ApprovalRequest, ApprovalStatus, Book, User, UserRole, UserStatus
from libris.notifications.dispatcher import NotificationDispatcher, notify
from libris.notifications.jobs import ApprovalDecisionData, ApprovalDecisionJob, NotificationJob, Recipient
from libris.schemas import BookIn, BookPatch

logger = logging.getLogger(__name__)

BOOK_ADD = "book_add"
BOOK_UPDATE = "book_update"
BOOK_DELETE = "book_delete"


@dataclass(frozen=True)
class Caller:
    """Identidad ya validada de quien invoca la operación."""
    user_id: int
    role: str = UserRole.USER.value

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


def _require_admin(caller: Caller) -> None:
    if not caller.is_admin:
        raise Forbidden("Solo un administrador puede procesar solicitudes.", code="ADMIN_REQUIRED")


def _require_owner(caller: Caller, req: ApprovalRequest) -> None:
    if not (caller.is_admin or caller.user_id == req.user_id):
        raise Forbidden("Solo el autor de la solicitud o un administrador puede modificarla.", code="NOT_REQUEST_OWNER")


def _serialize(data: Any) -> Optional[str]:
    if data is None or isinstance(data, str):
        return data
    return json.dumps(data)


def _payload(req: ApprovalRequest) -> dict:
    try:
        data = json.loads(req.request_data or "{}")
    except json.JSONDecodeError as e:
        raise ValidationFailed("request_data no es JSON válido.", code="INVALID_REQUEST_DATA") from e
    if not isinstance(data, dict):
        raise ValidationFailed("request_data debe ser un objeto JSON.", code="INVALID_REQUEST_DATA")
    return data


def _book_fields(req: ApprovalRequest) -> dict:
    data = _payload(req)
    unknown = set(data) - catalog.BOOK_FIELDS
    if unknown:
        raise ValidationFailed(f"request_data inválido para {req.request_type}: sobran {sorted(unknown)}.",
                               code="INVALID_REQUEST_DATA")
    try:
        return BookIn.model_validate(data).model_dump()
    except ValidationError as e:
        raise ValidationFailed(f"request_data inválido para {req.request_type}: {e.error_count()} errores.",
                               code="INVALID_REQUEST_DATA", errors=_errors(e)) from e


def _book_patch(req: ApprovalRequest) -> dict:
    data = _payload(req)
    unknown = set(data) - catalog.BOOK_FIELDS
    if unknown:
        raise ValidationFailed(f"Campos no editables: {', '.join(sorted(unknown))}.", code="INVALID_FIELDS")
    try:
        return BookPatch.model_validate(data).model_dump(exclude_unset=True)
    except ValidationError as e:
        raise ValidationFailed(f"request_data inválido para {req.request_type}: {e.error_count()} errores.",
                               code="INVALID_REQUEST_DATA", errors=_errors(e)) from e


def _errors(e: ValidationError) -> list[str]:
    return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]


def _require_resource(req: ApprovalRequest) -> int:
    if req.resource_id is None:
        raise ValidationFailed(f"La solicitud {req.request_type} requiere resource_id.", code="MISSING_RESOURCE_ID")
    return req.resource_id


async def get_request(session: AsyncSession, request_id: int) -> ApprovalRequest:
    req = await session.get(ApprovalRequest, request_id, populate_existing=True)
    if not req:
        raise NotFound(f"No existe la solicitud {request_id}.", code="REQUEST_NOT_FOUND")
    return req


async def list_requests(session: AsyncSession, *, status: Optional[ApprovalStatus] = None,
                        request_type: Optional[str] = None, user_id: Optional[int] = None) -> List[ApprovalRequest]:
    q = select(ApprovalRequest)
    if status is not None:
        q = q.where(ApprovalRequest.status == ApprovalStatus(status))
    if request_type:
        q = q.where(ApprovalRequest.request_type == request_type)
    if user_id is not None:
        q = q.where(ApprovalRequest.user_id == user_id)
    q = q.order_by(ApprovalRequest.requested_at.desc(), ApprovalRequest.id.desc())
    return list((await session.execute(q.execution_options(populate_existing=True))).scalars().all())


async def submit(session: AsyncSession, caller: Caller, *, request_type: str,
                 resource_id: Optional[int] = None, request_data: Any = None) -> ApprovalRequest:
    request_type = (request_type or "").strip()
    if not request_type:
        raise ValidationFailed("Falta el tipo de solicitud.", code="MISSING_REQUEST_TYPE")
    async with atomic(session):
        await users.get_user(session, caller.user_id)
        req = ApprovalRequest(
            user_id=caller.user_id, request_type=request_type, resource_id=resource_id,
            request_data=_serialize(request_data), status=ApprovalStatus.PENDING,
        )
        session.add(req)
        await session.flush()
    logger.info("Solicitud %s (%s) creada por el usuario %s", req.id, request_type, caller.user_id)
    return req


async def _apply(session: AsyncSession, req: ApprovalRequest) -> tuple[Optional[str], list[NotificationJob]]:
    """Aplica el cambio aprobado. Devuelve (título del recurso, trabajos extra a encolar)."""
    now = utcnow()
    if req.request_type == users.USER_REGISTRATION:
        user = await users.get_user(session, req.resource_id or req.user_id)
        if user.status == UserStatus.ACTIVE:
            return user.full_name, []
        user = await users.set_status(session, user.id, UserStatus.ACTIVE)
        return user.full_name, [users.account_status_job(user, admin_notes=req.admin_notes)]
    if req.request_type == BOOK_ADD:
        book = await catalog.insert_book(session, **_book_fields(req))
        req.resource_id = book.id
        await session.flush()
        return book.title, []
    if req.request_type == BOOK_UPDATE:
        book = await catalog.apply_book_update(session, _require_resource(req), _book_patch(req))
        return book.title, []
    if req.request_type == BOOK_DELETE:
        book = await loans.deactivate_book(session, _require_resource(req), now)
        return book.title, []
    # Otros tipos quedan registrados sin efecto automático.
    if req.resource_id is not None:
        book = await session.get(Book, req.resource_id)
        if book:
            return book.title, []
    return None, []


async def _decide(session: AsyncSession, dispatcher: NotificationDispatcher | None, caller: Caller,
                  request_id: int, status: ApprovalStatus, notes: Optional[str]) -> ApprovalRequest:
    _require_admin(caller)
    now = utcnow()
    try:
        async with atomic(session):
            await get_request(session, request_id)
            res = await session.execute(
                sql_update(ApprovalRequest)
                .where(ApprovalRequest.id == request_id, ApprovalRequest.status == ApprovalStatus.PENDING)
                .values(status=status, admin_id=caller.user_id, admin_notes=notes, processed_at=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise InvalidState("La solicitud ya fue procesada.", code="REQUEST_NOT_PENDING", request_id=request_id)
            req = await get_request(session, request_id)
            resource_title, extra = None, []
            if status == ApprovalStatus.APPROVED:
                resource_title, extra = await _apply(session, req)
            requester = await session.get(User, req.user_id)
    except IntegrityError as e:
        raise Conflict("El cambio solicitado viola una restricción del catálogo.",
                       code="REQUEST_CONFLICT", request_id=request_id) from e
    logger.info("Solicitud %s %s por el admin %s", req.id, status.value, caller.user_id)
    if requester is not None:
        await notify(dispatcher, ApprovalDecisionJob(
            recipient=Recipient(email=requester.email, name=requester.full_name),
            data=ApprovalDecisionData(
                request_id=req.id, request_type=req.request_type, status=status.value,
                admin_notes=notes, resource_title=resource_title, user_id=req.user_id,
            ),
        ))
    for job in extra:
        await notify(dispatcher, job)
    return req


async def approve(session: AsyncSession, dispatcher: NotificationDispatcher | None, caller: Caller,
                  request_id: int, notes: Optional[str] = None) -> ApprovalRequest:
    return await _decide(session, dispatcher, caller, request_id, ApprovalStatus.APPROVED, notes)


async def reject(session: AsyncSession, dispatcher: NotificationDispatcher | None, caller: Caller,
                 request_id: int, notes: Optional[str] = None) -> ApprovalRequest:
    return await _decide(session, dispatcher, caller, request_id, ApprovalStatus.REJECTED, notes)


async def update(session: AsyncSession, caller: Caller, request_id: int, *, request_type: Optional[str] = None,
                 resource_id: Optional[int] = None, request_data: Any = None) -> ApprovalRequest:
    values: dict[str, Any] = {}
    if request_type is not None:
        if not request_type.strip():
            raise ValidationFailed("Falta el tipo de solicitud.", code="MISSING_REQUEST_TYPE")
        values["request_type"] = request_type.strip()
    if resource_id is not None:
        values["resource_id"] = resource_id
    if request_data is not None:
        values["request_data"] = _serialize(request_data)
    async with atomic(session):
        req = await get_request(session, request_id)
        _require_owner(caller, req)
        if values:
            res = await session.execute(
                sql_update(ApprovalRequest)
                .where(ApprovalRequest.id == request_id, ApprovalRequest.status == ApprovalStatus.PENDING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            ok = res.rowcount == 1
        else:
            ok = req.status == ApprovalStatus.PENDING
        if not ok:
            raise InvalidState("No se puede modificar una solicitud procesada.", code="REQUEST_NOT_PENDING", request_id=request_id)
        req = await get_request(session, request_id)
    return req


async def delete(session: AsyncSession, caller: Caller, request_id: int) -> ApprovalRequest:
    async with atomic(session):
        req = await get_request(session, request_id)
        _require_owner(caller, req)
        res = await session.execute(
            sql_delete(ApprovalRequest)
            .where(ApprovalRequest.id == request_id, ApprovalRequest.status == ApprovalStatus.PENDING)
            .execution_options(synchronize_session="fetch")
        )
        if res.rowcount != 1:
            raise InvalidState("No se puede eliminar una solicitud procesada.", code="REQUEST_NOT_PENDING", request_id=request_id)
    logger.info("Solicitud %s eliminada por el usuario %s", request_id, caller.user_id)
    return req
