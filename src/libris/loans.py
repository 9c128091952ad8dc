"""Motor de préstamos: inventario y préstamos cambian juntos en una sola transacción."""
from __future__ import annotations
import logging
import math
from datetime import datetime, timedelta
from typing import Optional, List, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, exists, and_

from libris.catalog import get_book
from libris.clock import utcnow, as_utc
from libris.config import settings
from libris.db import atomic
from libris.errors import Conflict, InvalidState, NotFound, ResourceExhausted, ValidationFailed
from libris.models import Author, Book, Loan
from libris.notifications.dispatcher import NotificationDispatcher, notify
from libris.notifications.jobs import (
    LoanConfirmationData, LoanConfirmationJob, OverdueReminderData, OverdueReminderJob,
    Recipient, ReturnConfirmationData, ReturnConfirmationJob,
)

logger = logging.getLogger(__name__)

def _days_late(due: datetime, at: datetime) -> int:
    if at <= due:
        return 0
    return math.ceil((at - due).total_seconds() / 86400)

def _fine(days: int) -> float | None:
    if days <= 0 or settings.FINE_PER_DAY <= 0:
        return None
    return round(days * settings.FINE_PER_DAY, 2)

async def _book_labels(session: AsyncSession, book_id: int) -> Tuple[str, str]:
    row = (await session.execute(
        select(Book.title, Author.first_name, Author.last_name)
        .join(Author, Author.id == Book.author_id)
        .where(Book.id == book_id)
    )).one_or_none()
    if not row:
        return "", ""
    return row.title, f"{row.first_name} {row.last_name}".strip()

async def _debit(session: AsyncSession, book_id: int, now: datetime) -> None:
    """Descuenta una copia solo si el libro está activo y tiene copias."""
    res = await session.execute(
        update(Book)
        .where(Book.id == book_id, Book.is_active.is_(True), Book.copies_available > 0)
        .values(copies_available=Book.copies_available - 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 1:
        return
    await get_book(session, book_id)
    raise ResourceExhausted("No hay copias disponibles para ese libro.", code="NO_AVAILABLE_COPIES", book_id=book_id)

async def _credit(session: AsyncSession, book_id: int, now: datetime) -> None:
    res = await session.execute(
        update(Book)
        .where(Book.id == book_id, Book.copies_available < Book.total_copies)
        .values(copies_available=Book.copies_available + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        # Solo ocurre si el inventario ya estaba inconsistente; abortar la transacción.
        raise Conflict(
            f"El libro {book_id} ya tiene todas sus copias disponibles.",
            code="INVENTORY_INCONSISTENT", book_id=book_id,
        )

async def get_loan(session: AsyncSession, loan_id: int) -> Loan:
    loan = await session.get(Loan, loan_id, populate_existing=True)
    if not loan or loan.deleted_at is not None:
        raise NotFound(f"No existe el préstamo {loan_id}.", code="LOAN_NOT_FOUND")
    return loan

async def list_loans(session: AsyncSession, *, active: Optional[bool] = None,
                     borrower_email: Optional[str] = None, book_id: Optional[int] = None) -> List[Loan]:
    q = select(Loan).where(Loan.deleted_at.is_(None))
    if active is not None:
        q = q.where(Loan.is_active.is_(active))
    if borrower_email:
        q = q.where(Loan.borrower_email == borrower_email.strip().lower())
    if book_id is not None:
        q = q.where(Loan.book_id == book_id)
    q = q.order_by(Loan.borrowed_at.desc(), Loan.id.desc()).execution_options(populate_existing=True)
    return list((await session.execute(q)).scalars().all())

async def borrow(session: AsyncSession, dispatcher: NotificationDispatcher | None, *, book_id: int,
                 borrower_name: str, borrower_email: str, due_date: Optional[datetime] = None,
                 notes: Optional[str] = None, now: Optional[datetime] = None) -> Loan:
    now = now or utcnow()
    name = (borrower_name or "").strip()
    email = (borrower_email or "").strip().lower()
    if not (name and email):
        raise ValidationFailed("Faltan los datos del solicitante (nombre, email).", code="MISSING_BORROWER")
    due = as_utc(due_date) if due_date else now + timedelta(days=settings.DEFAULT_LOAN_DAYS)
    if due <= now:
        raise ValidationFailed("La fecha de vencimiento debe ser posterior a la actual.", code="INVALID_DUE_DATE")
    async with atomic(session):
        await _debit(session, book_id, now)
        loan = Loan(
            book_id=book_id, borrower_name=name, borrower_email=email,
            borrowed_at=now, due_date=due, returned_at=None, is_active=True, notes=notes,
        )
        session.add(loan)
        await session.flush()
        title, author = await _book_labels(session, book_id)
    logger.info("Préstamo %s creado: libro %s para %s", loan.id, book_id, email)
    await notify(dispatcher, LoanConfirmationJob(
        recipient=Recipient(email=email, name=name),
        data=LoanConfirmationData(
            loan_id=loan.id, book_title=title, author=author,
            borrowed_date=loan.borrowed_at, due_date=loan.due_date, borrower_name=name,
        ),
    ))
    return loan

async def return_book(session: AsyncSession, dispatcher: NotificationDispatcher | None, loan_id: int,
                      *, now: Optional[datetime] = None) -> Loan:
    now = now or utcnow()
    async with atomic(session):
        res = await session.execute(
            update(Loan)
            .where(Loan.id == loan_id, Loan.is_active.is_(True), Loan.deleted_at.is_(None))
            .values(is_active=False, returned_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            await get_loan(session, loan_id)
            raise InvalidState("Este libro ya fue devuelto.", code="LOAN_ALREADY_RETURNED", loan_id=loan_id)
        loan = await get_loan(session, loan_id)
        await _credit(session, loan.book_id, now)
        title, author = await _book_labels(session, loan.book_id)
    days = _days_late(loan.due_date, now)
    logger.info("Préstamo %s devuelto (%s días de atraso)", loan.id, days)
    await notify(dispatcher, ReturnConfirmationJob(
        recipient=Recipient(email=loan.borrower_email, name=loan.borrower_name),
        data=ReturnConfirmationData(
            loan_id=loan.id, book_title=title, author=author, returned_date=now,
            borrower_name=loan.borrower_name, was_overdue=days > 0, fine_amount=_fine(days),
        ),
    ))
    return loan

async def _reassign(session: AsyncSession, loan: Loan, new_book_id: int, now: datetime) -> None:
    if not loan.is_active:
        raise InvalidState("Solo se puede cambiar el libro de un préstamo activo.", code="LOAN_NOT_ACTIVE", loan_id=loan.id)
    old_book_id = loan.book_id
    if new_book_id == old_book_id:
        return
    # Orden: debitar el nuevo, mover el préstamo, acreditar el viejo. Si algo
    # falla, el rollback deshace todo: nunca queda una copia acreditada de más.
    await _debit(session, new_book_id, now)
    res = await session.execute(
        update(Loan)
        .where(Loan.id == loan.id, Loan.is_active.is_(True), Loan.book_id == old_book_id)
        .values(book_id=new_book_id, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise InvalidState("El préstamo cambió durante la reasignación.", code="LOAN_CHANGED", loan_id=loan.id)
    await _credit(session, old_book_id, now)

async def update_loan(session: AsyncSession, loan_id: int, *, due_date: Optional[datetime] = None,
                      notes: Optional[str] = None, book_id: Optional[int] = None,
                      now: Optional[datetime] = None) -> Loan:
    """Edición administrativa. Cambiar ``book_id`` mueve una copia entre libros
    en la misma transacción; la fecha de vencimiento no se recalcula."""
    now = now or utcnow()
    async with atomic(session):
        loan = await get_loan(session, loan_id)
        if due_date is not None:
            due = as_utc(due_date)
            if due <= loan.borrowed_at:
                raise ValidationFailed("La fecha de vencimiento debe ser posterior al préstamo.", code="INVALID_DUE_DATE")
            loan.due_date = due
        if notes is not None:
            loan.notes = notes
        await session.flush()
        if book_id is not None:
            await _reassign(session, loan, book_id, now)
        loan = await get_loan(session, loan_id)
    return loan

async def reassign_book(session: AsyncSession, loan_id: int, new_book_id: int) -> Loan:
    return await update_loan(session, loan_id, book_id=new_book_id)

async def delete_loan(session: AsyncSession, loan_id: int) -> Loan:
    now = utcnow()
    async with atomic(session):
        await get_loan(session, loan_id)
        res = await session.execute(
            update(Loan)
            .where(Loan.id == loan_id, Loan.is_active.is_(False), Loan.deleted_at.is_(None))
            .values(deleted_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise InvalidState("No se puede eliminar un préstamo activo; primero debe devolverse.",
                               code="LOAN_STILL_ACTIVE", loan_id=loan_id)
        loan = await session.get(Loan, loan_id, populate_existing=True)
    return loan

async def deactivate_book(session: AsyncSession, book_id: int, now: datetime) -> Book:
    await get_book(session, book_id)
    active_loan = exists().where(and_(Loan.book_id == book_id, Loan.is_active.is_(True)))
    res = await session.execute(
        update(Book)
        .where(
            Book.id == book_id, Book.is_active.is_(True),
            Book.copies_available == Book.total_copies, ~active_loan,
        )
        .values(is_active=False, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        if await session.scalar(select(active_loan)):
            raise Conflict("No se puede eliminar un libro con préstamos activos.", code="BOOK_HAS_ACTIVE_LOANS", book_id=book_id)
        raise Conflict(
            f"El libro {book_id} no tiene préstamos activos pero le faltan copias disponibles.",
            code="INVENTORY_INCONSISTENT", book_id=book_id,
        )
    return await get_book(session, book_id, active_only=False)

async def remove_book(session: AsyncSession, book_id: int) -> Book:
    """Baja lógica de un libro; falla con ``Conflict`` si tiene préstamos activos."""
    async with atomic(session):
        book = await deactivate_book(session, book_id, utcnow())
    return book

async def send_overdue_reminders(session: AsyncSession, dispatcher: NotificationDispatcher | None,
                                 *, now: Optional[datetime] = None) -> int:
    """Encola un recordatorio por cada préstamo activo vencido. Devuelve cuántos se encolaron."""
    now = now or utcnow()
    rows = (await session.execute(
        select(Loan, Book.title, Author.first_name, Author.last_name)
        .join(Book, Book.id == Loan.book_id)
        .join(Author, Author.id == Book.author_id)
        .where(Loan.is_active.is_(True), Loan.deleted_at.is_(None), Loan.due_date < now)
        .order_by(Loan.due_date)
    )).all()
    sent = 0
    for loan, title, first, last in rows:
        days = _days_late(loan.due_date, now)
        handle = await notify(dispatcher, OverdueReminderJob(
            recipient=Recipient(email=loan.borrower_email, name=loan.borrower_name),
            data=OverdueReminderData(
                loan_id=loan.id, book_title=title, author=f"{first} {last}".strip(),
                due_date=loan.due_date, days_overdue=days, fine_amount=_fine(days),
                borrower_name=loan.borrower_name,
            ),
        ))
        if handle is not None:
            sent += 1
    logger.info("Recordatorios de atraso encolados: %s de %s", sent, len(rows))
    return sent
