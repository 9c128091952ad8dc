import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from libris import catalog, loans
from libris.clock import utcnow
from libris.errors import Conflict, InvalidState, NotFound, ResourceExhausted, ValidationFailed
from libris.models import Book, Loan

pytestmark = pytest.mark.asyncio

async def _book(session, book_id):
    return await session.get(Book, book_id, populate_existing=True)

async def _assert_invariants(session):
    books = (await session.execute(select(Book).execution_options(populate_existing=True))).scalars().all()
    for b in books:
        assert 0 <= b.copies_available <= b.total_copies
    rows = (await session.execute(select(Loan).execution_options(populate_existing=True))).scalars().all()
    for loan in rows:
        assert loan.is_active == (loan.returned_at is None)

async def _borrow(session, dispatcher, book_id, name="Jane", email="jane@x.com", **kw):
    return await loans.borrow(session, dispatcher, book_id=book_id, borrower_name=name, borrower_email=email, **kw)

async def test_borrow_decrements_and_notifies(session, dispatcher, make_book):
    book = await make_book(total_copies=2)
    loan = await _borrow(session, dispatcher, book.id, due_date=utcnow() + timedelta(days=14))
    assert loan.is_active is True
    assert loan.returned_at is None
    assert (await _book(session, book.id)).copies_available == 1
    assert dispatcher.kinds() == ["loan-confirmation"]
    job = dispatcher.sent[0]
    assert job.recipient.email == "jane@x.com"
    assert job.data.book_title == "Cien años de soledad"
    assert job.data.author == "Gabriel García Márquez"

async def test_borrow_default_due_date(session, dispatcher, make_book):
    book = await make_book()
    now = utcnow()
    loan = await _borrow(session, dispatcher, book.id, now=now)
    assert loan.due_date - loan.borrowed_at == timedelta(days=14)

async def test_borrow_n_plus_one_fails(session, dispatcher, make_book):
    book = await make_book(total_copies=3)
    for i in range(3):
        await _borrow(session, dispatcher, book.id, name=f"Lector {i}", email=f"lector{i}@x.com")
    with pytest.raises(ResourceExhausted) as exc:
        await _borrow(session, dispatcher, book.id)
    assert exc.value.code == "NO_AVAILABLE_COPIES"
    assert (await _book(session, book.id)).copies_available == 0
    assert len(await loans.list_loans(session, book_id=book.id)) == 3
    await _assert_invariants(session)

async def test_concurrent_borrows_of_last_copies(session_factory, session, dispatcher, make_book):
    book = await make_book(total_copies=2)

    async def attempt(i):
        async with session_factory() as s:
            try:
                await _borrow(s, dispatcher, book.id, name=f"Lector {i}", email=f"lector{i}@x.com")
                return "ok"
            except ResourceExhausted:
                return "exhausted"

    results = await asyncio.gather(*(attempt(i) for i in range(5)))
    assert results.count("ok") == 2
    assert results.count("exhausted") == 3
    assert (await _book(session, book.id)).copies_available == 0
    assert len(await loans.list_loans(session, book_id=book.id, active=True)) == 2
    await _assert_invariants(session)

async def test_borrow_validations(session, dispatcher, make_book):
    book = await make_book()
    with pytest.raises(NotFound):
        await _borrow(session, dispatcher, 999)
    with pytest.raises(ValidationFailed) as exc:
        await _borrow(session, dispatcher, book.id, due_date=utcnow() - timedelta(days=1))
    assert exc.value.code == "INVALID_DUE_DATE"
    with pytest.raises(ValidationFailed) as exc:
        await _borrow(session, dispatcher, book.id, name="  ")
    assert exc.value.code == "MISSING_BORROWER"
    assert (await _book(session, book.id)).copies_available == 1
    assert dispatcher.sent == []

async def test_return_increments_once(session, dispatcher, make_book):
    book = await make_book(total_copies=2)
    loan = await _borrow(session, dispatcher, book.id)
    returned = await loans.return_book(session, dispatcher, loan.id)
    assert returned.is_active is False
    assert returned.returned_at is not None
    assert (await _book(session, book.id)).copies_available == 2
    with pytest.raises(InvalidState) as exc:
        await loans.return_book(session, dispatcher, loan.id)
    assert exc.value.code == "LOAN_ALREADY_RETURNED"
    assert (await _book(session, book.id)).copies_available == 2
    assert dispatcher.kinds() == ["loan-confirmation", "return-confirmation"]
    await _assert_invariants(session)

async def test_return_unknown_loan(session, dispatcher):
    with pytest.raises(NotFound):
        await loans.return_book(session, dispatcher, 12345)

async def test_late_return_reports_fine(session, dispatcher, make_book):
    book = await make_book()
    start = utcnow() - timedelta(days=20)
    loan = await _borrow(session, dispatcher, book.id, now=start, due_date=start + timedelta(days=14))
    await loans.return_book(session, dispatcher, loan.id, now=start + timedelta(days=17))
    data = dispatcher.sent[-1].data
    assert data.was_overdue is True
    assert data.fine_amount == pytest.approx(1.5)

async def test_reassign_moves_one_copy(session, dispatcher, make_book):
    a = await make_book(title="A", total_copies=2)
    b = await make_book(title="B", total_copies=1)
    loan = await _borrow(session, dispatcher, a.id)
    moved = await loans.reassign_book(session, loan.id, b.id)
    assert moved.book_id == b.id
    assert (await _book(session, a.id)).copies_available == 2
    assert (await _book(session, b.id)).copies_available == 0
    await _assert_invariants(session)

async def test_reassign_to_exhausted_book_changes_nothing(session, dispatcher, make_book):
    a = await make_book(title="A", total_copies=1)
    b = await make_book(title="B", total_copies=1)
    loan = await _borrow(session, dispatcher, a.id)
    await _borrow(session, dispatcher, b.id, name="Otro", email="otro@x.com")
    with pytest.raises(ResourceExhausted):
        await loans.reassign_book(session, loan.id, b.id)
    assert (await _book(session, a.id)).copies_available == 0
    assert (await _book(session, b.id)).copies_available == 0
    assert (await loans.get_loan(session, loan.id)).book_id == a.id

async def test_reassign_returned_loan_fails(session, dispatcher, make_book):
    a = await make_book(title="A")
    b = await make_book(title="B")
    loan = await _borrow(session, dispatcher, a.id)
    await loans.return_book(session, dispatcher, loan.id)
    with pytest.raises(InvalidState) as exc:
        await loans.reassign_book(session, loan.id, b.id)
    assert exc.value.code == "LOAN_NOT_ACTIVE"
    assert (await _book(session, b.id)).copies_available == 1

async def test_update_loan_due_date_and_notes(session, dispatcher, make_book):
    book = await make_book()
    loan = await _borrow(session, dispatcher, book.id)
    new_due = loan.due_date + timedelta(days=7)
    updated = await loans.update_loan(session, loan.id, due_date=new_due, notes="renovado")
    assert updated.due_date == new_due
    assert updated.notes == "renovado"
    with pytest.raises(ValidationFailed):
        await loans.update_loan(session, loan.id, due_date=loan.borrowed_at - timedelta(hours=1))
    assert (await loans.get_loan(session, loan.id)).due_date == new_due

async def test_delete_only_returned_loans(session, dispatcher, make_book):
    book = await make_book()
    loan = await _borrow(session, dispatcher, book.id)
    with pytest.raises(InvalidState) as exc:
        await loans.delete_loan(session, loan.id)
    assert exc.value.code == "LOAN_STILL_ACTIVE"
    await loans.return_book(session, dispatcher, loan.id)
    deleted = await loans.delete_loan(session, loan.id)
    assert deleted.deleted_at is not None
    with pytest.raises(NotFound):
        await loans.get_loan(session, loan.id)
    assert await loans.list_loans(session) == []
    assert (await _book(session, book.id)).copies_available == 1

async def test_remove_book_with_active_loan(session, dispatcher, make_book):
    book = await make_book(total_copies=2)
    loan = await _borrow(session, dispatcher, book.id)
    with pytest.raises(Conflict) as exc:
        await loans.remove_book(session, book.id)
    assert exc.value.code == "BOOK_HAS_ACTIVE_LOANS"
    await loans.return_book(session, dispatcher, loan.id)
    removed = await loans.remove_book(session, book.id)
    assert removed.is_active is False
    with pytest.raises(NotFound):
        await catalog.get_book(session, book.id)
    with pytest.raises(NotFound):
        await _borrow(session, dispatcher, book.id)

async def test_overdue_reminders(session, dispatcher, make_book):
    book = await make_book(total_copies=2)
    start = utcnow() - timedelta(days=30)
    late = await _borrow(session, dispatcher, book.id, now=start, due_date=start + timedelta(days=14))
    await _borrow(session, dispatcher, book.id, name="Puntual", email="puntual@x.com")
    sent = await loans.send_overdue_reminders(session, dispatcher)
    assert sent == 1
    reminder = dispatcher.sent[-1]
    assert reminder.kind == "overdue-reminder"
    assert reminder.data.loan_id == late.id
    assert reminder.data.days_overdue >= 16

async def test_notification_failure_does_not_undo_loan(session, broken_dispatcher, make_book):
    book = await make_book()
    loan = await _borrow(session, broken_dispatcher, book.id)
    assert loan.id is not None
    assert (await _book(session, book.id)).copies_available == 0
    await loans.return_book(session, broken_dispatcher, loan.id)
    assert (await _book(session, book.id)).copies_available == 1

async def test_borrow_return_scenario(session_factory, session, dispatcher, make_book):
    book = await make_book(total_copies=1)
    loan = await _borrow(session, dispatcher, book.id, due_date=utcnow() + timedelta(days=14))
    assert (await _book(session, book.id)).copies_available == 0

    async with session_factory() as other:
        with pytest.raises(ResourceExhausted):
            await _borrow(other, dispatcher, book.id, name="John", email="john@x.com")

    returned = await loans.return_book(session, dispatcher, loan.id)
    assert returned.is_active is False
    assert (await _book(session, book.id)).copies_available == 1
    await _assert_invariants(session)

async def test_reassign_to_missing_or_inactive_book_changes_nothing(session, dispatcher, make_book):
    a = await make_book(title="A", total_copies=2)
    gone = await make_book(title="Retirado", total_copies=1)
    await loans.remove_book(session, gone.id)
    loan = await _borrow(session, dispatcher, a.id)
    for target in (9999, gone.id):
        with pytest.raises(NotFound):
            await loans.reassign_book(session, loan.id, target)
        assert (await _book(session, a.id)).copies_available == 1
        assert (await loans.get_loan(session, loan.id)).book_id == a.id
    assert (await _book(session, gone.id)).copies_available == 1
    await _assert_invariants(session)

async def test_concurrent_returns_of_same_loan(session_factory, session, dispatcher, make_book):
    book = await make_book(total_copies=2)
    loan = await _borrow(session, dispatcher, book.id)

    async def attempt():
        async with session_factory() as s:
            try:
                await loans.return_book(s, dispatcher, loan.id)
                return "ok"
            except InvalidState:
                return "already"

    results = await asyncio.gather(attempt(), attempt())
    assert sorted(results) == ["already", "ok"]
    assert (await _book(session, book.id)).copies_available == 2
    await _assert_invariants(session)

async def test_concurrent_reassigns_to_last_copy(session_factory, session, dispatcher, make_book):
    a1 = await make_book(title="A1")
    a2 = await make_book(title="A2")
    target = await make_book(title="B", total_copies=1)
    first = await _borrow(session, dispatcher, a1.id)
    second = await _borrow(session, dispatcher, a2.id, name="Otro", email="otro@x.com")

    async def attempt(loan_id):
        async with session_factory() as s:
            try:
                await loans.reassign_book(s, loan_id, target.id)
                return "ok"
            except ResourceExhausted:
                return "exhausted"

    results = await asyncio.gather(attempt(first.id), attempt(second.id))
    assert sorted(results) == ["exhausted", "ok"]
    assert (await _book(session, target.id)).copies_available == 0
    counts = [(await _book(session, b.id)).copies_available for b in (a1, a2)]
    assert sorted(counts) == [0, 1]
    await _assert_invariants(session)

async def test_remove_book_with_inconsistent_inventory(session, make_book):
    book = await make_book(total_copies=2)
    await session.execute(update(Book).where(Book.id == book.id).values(copies_available=1))
    await session.commit()
    with pytest.raises(Conflict) as exc:
        await loans.remove_book(session, book.id)
    assert exc.value.code == "INVENTORY_INCONSISTENT"
    assert (await _book(session, book.id)).is_active is True
