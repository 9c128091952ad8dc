from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from libris import approvals, catalog, loans, users
from libris.approvals import Caller
from libris.deps import get_caller, get_dispatcher, get_session, require_admin
from libris.errors import (
    Conflict, Forbidden, InvalidState, LibraryError, NotFound,
    ResourceExhausted, Unauthorized, ValidationFailed,
)
from libris.models import ApprovalStatus
from libris.notifications.dispatcher import JobHandle, NotificationDispatcher
from libris.schemas import (
    ApprovalIn, ApprovalOut, ApprovalPatch, AuthorIn, AuthorOut,
    BookIn, BookOut, BookPatch, CategoryIn, CategoryOut, CleanIn, DecisionIn,
    EnqueueIn, LoanIn, LoanOut, LoanPatch, RegistrationOut, StatusChangeIn, UserIn, UserOut,
)

router = APIRouter()

_STATUS = (
    (NotFound, 404),
    (ResourceExhausted, 409),
    (InvalidState, 409),
    (Conflict, 409),
    (Unauthorized, 401),
    (Forbidden, 403),
    (ValidationFailed, 400),
)

def status_for(exc: LibraryError) -> int:
    for cls, status in _STATUS:
        if isinstance(exc, cls):
            return status
    return 400

async def library_error_handler(request: Request, exc: LibraryError) -> JSONResponse:
    return JSONResponse(
        status_code=status_for(exc),
        content={"detail": exc.message, "code": exc.code, **exc.data},
    )

# Catálogo

@router.get("/books", response_model=list[BookOut])
async def http_list_books(include_inactive: bool = False, session: AsyncSession = Depends(get_session)):
    return await catalog.list_books(session, include_inactive=include_inactive)

@router.get("/books/{book_id}", response_model=BookOut)
async def http_get_book(book_id: int, session: AsyncSession = Depends(get_session)):
    return await catalog.get_book(session, book_id)

@router.post("/books", response_model=BookOut, status_code=201)
async def http_create_book(payload: BookIn, session: AsyncSession = Depends(get_session),
                           _: Caller = Depends(require_admin)):
    return await catalog.create_book(session, **payload.model_dump())

@router.patch("/books/{book_id}", response_model=BookOut)
async def http_update_book(book_id: int, payload: BookPatch, session: AsyncSession = Depends(get_session),
                           _: Caller = Depends(require_admin)):
    return await catalog.update_book(session, book_id, **payload.model_dump(exclude_unset=True))

@router.delete("/books/{book_id}")
async def http_delete_book(book_id: int, session: AsyncSession = Depends(get_session),
                           _: Caller = Depends(require_admin)):
    book = await loans.remove_book(session, book_id)
    return {"detail": "Libro eliminado.", "book_id": book.id}

@router.post("/authors", response_model=AuthorOut, status_code=201)
async def http_create_author(payload: AuthorIn, session: AsyncSession = Depends(get_session),
                             _: Caller = Depends(require_admin)):
    return await catalog.create_author(session, **payload.model_dump())

@router.delete("/authors/{author_id}")
async def http_delete_author(author_id: int, session: AsyncSession = Depends(get_session),
                             _: Caller = Depends(require_admin)):
    await catalog.remove_author(session, author_id)
    return {"detail": "Autor eliminado.", "author_id": author_id}

@router.post("/categories", response_model=CategoryOut, status_code=201)
async def http_create_category(payload: CategoryIn, session: AsyncSession = Depends(get_session),
                               _: Caller = Depends(require_admin)):
    return await catalog.create_category(session, **payload.model_dump())

@router.delete("/categories/{category_id}")
async def http_delete_category(category_id: int, session: AsyncSession = Depends(get_session),
                               _: Caller = Depends(require_admin)):
    await catalog.remove_category(session, category_id)
    return {"detail": "Categoría eliminada.", "category_id": category_id}

# Préstamos

@router.post("/loans", response_model=LoanOut, status_code=201)
async def http_create_loan(payload: LoanIn, session: AsyncSession = Depends(get_session),
                           dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    return await loans.borrow(session, dispatcher, **payload.model_dump())

@router.get("/loans", response_model=list[LoanOut])
async def http_list_loans(active: bool | None = None, borrower_email: str | None = None,
                          book_id: int | None = None, session: AsyncSession = Depends(get_session)):
    return await loans.list_loans(session, active=active, borrower_email=borrower_email, book_id=book_id)

@router.get("/loans/{loan_id}", response_model=LoanOut)
async def http_get_loan(loan_id: int, session: AsyncSession = Depends(get_session)):
    return await loans.get_loan(session, loan_id)

@router.post("/loans/overdue-reminders")
async def http_overdue_reminders(session: AsyncSession = Depends(get_session),
                                 dispatcher: NotificationDispatcher = Depends(get_dispatcher),
                                 _: Caller = Depends(require_admin)):
    sent = await loans.send_overdue_reminders(session, dispatcher)
    return {"detail": f"{sent} recordatorios encolados.", "sent": sent}

@router.post("/loans/{loan_id}/return", response_model=LoanOut)
async def http_return_loan(loan_id: int, session: AsyncSession = Depends(get_session),
                           dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    return await loans.return_book(session, dispatcher, loan_id)

@router.patch("/loans/{loan_id}", response_model=LoanOut)
async def http_update_loan(loan_id: int, payload: LoanPatch, session: AsyncSession = Depends(get_session),
                           _: Caller = Depends(require_admin)):
    return await loans.update_loan(session, loan_id, **payload.model_dump(exclude_unset=True))

@router.delete("/loans/{loan_id}")
async def http_delete_loan(loan_id: int, session: AsyncSession = Depends(get_session),
                           _: Caller = Depends(require_admin)):
    await loans.delete_loan(session, loan_id)
    return {"detail": "Préstamo eliminado.", "loan_id": loan_id}

# Usuarios

@router.post("/users", response_model=RegistrationOut, status_code=201)
async def http_register_user(payload: UserIn, session: AsyncSession = Depends(get_session),
                             dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    user, request = await users.register_user(session, dispatcher, **payload.model_dump())
    return RegistrationOut(
        user=UserOut.model_validate(user),
        approval_request=ApprovalOut.model_validate(request) if request else None,
    )

@router.post("/users/{user_id}/activate", response_model=UserOut)
async def http_activate_user(user_id: int, payload: StatusChangeIn | None = None,
                             session: AsyncSession = Depends(get_session),
                             dispatcher: NotificationDispatcher = Depends(get_dispatcher),
                             _: Caller = Depends(require_admin)):
    payload = payload or StatusChangeIn()
    return await users.activate_user(session, dispatcher, user_id, **payload.model_dump())

@router.post("/users/{user_id}/suspend", response_model=UserOut)
async def http_suspend_user(user_id: int, payload: StatusChangeIn | None = None,
                            session: AsyncSession = Depends(get_session),
                            dispatcher: NotificationDispatcher = Depends(get_dispatcher),
                            _: Caller = Depends(require_admin)):
    payload = payload or StatusChangeIn()
    return await users.suspend_user(session, dispatcher, user_id, **payload.model_dump())

# Solicitudes de aprobación

@router.post("/approval-requests", response_model=ApprovalOut, status_code=201)
async def http_submit_request(payload: ApprovalIn, session: AsyncSession = Depends(get_session),
                              caller: Caller = Depends(get_caller)):
    return await approvals.submit(session, caller, **payload.model_dump())

@router.get("/approval-requests", response_model=list[ApprovalOut])
async def http_list_requests(status: ApprovalStatus | None = None, request_type: str | None = None,
                             user_id: int | None = None, session: AsyncSession = Depends(get_session),
                             caller: Caller = Depends(get_caller)):
    if not caller.is_admin:
        user_id = caller.user_id
    return await approvals.list_requests(session, status=status, request_type=request_type, user_id=user_id)

@router.get("/approval-requests/{request_id}", response_model=ApprovalOut)
async def http_get_request(request_id: int, session: AsyncSession = Depends(get_session),
                           caller: Caller = Depends(get_caller)):
    req = await approvals.get_request(session, request_id)
    if not caller.is_admin and req.user_id != caller.user_id:
        raise Forbidden("Solo el autor de la solicitud o un administrador puede verla.", code="NOT_REQUEST_OWNER")
    return req

@router.patch("/approval-requests/{request_id}", response_model=ApprovalOut)
async def http_update_request(request_id: int, payload: ApprovalPatch, session: AsyncSession = Depends(get_session),
                              caller: Caller = Depends(get_caller)):
    return await approvals.update(session, caller, request_id, **payload.model_dump(exclude_unset=True))

@router.delete("/approval-requests/{request_id}")
async def http_delete_request(request_id: int, session: AsyncSession = Depends(get_session),
                              caller: Caller = Depends(get_caller)):
    await approvals.delete(session, caller, request_id)
    return {"detail": "Solicitud eliminada.", "request_id": request_id}

@router.post("/approval-requests/{request_id}/approve", response_model=ApprovalOut)
async def http_approve_request(request_id: int, payload: DecisionIn | None = None,
                               session: AsyncSession = Depends(get_session),
                               dispatcher: NotificationDispatcher = Depends(get_dispatcher),
                               caller: Caller = Depends(get_caller)):
    notes = payload.notes if payload else None
    return await approvals.approve(session, dispatcher, caller, request_id, notes)

@router.post("/approval-requests/{request_id}/reject", response_model=ApprovalOut)
async def http_reject_request(request_id: int, payload: DecisionIn | None = None,
                              session: AsyncSession = Depends(get_session),
                              dispatcher: NotificationDispatcher = Depends(get_dispatcher),
                              caller: Caller = Depends(get_caller)):
    notes = payload.notes if payload else None
    return await approvals.reject(session, dispatcher, caller, request_id, notes)

# Cola de notificaciones

@router.get("/queue/stats")
async def http_queue_stats(dispatcher: NotificationDispatcher = Depends(get_dispatcher),
                           _: Caller = Depends(require_admin)):
    return await dispatcher.stats()

@router.post("/queue/notifications", response_model=JobHandle, status_code=202)
async def http_enqueue_notification(payload: EnqueueIn,
                                    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
                                    _: Caller = Depends(require_admin)):
    return await dispatcher.enqueue(payload.job)

@router.post("/queue/jobs/{job_id}/retry", response_model=JobHandle)
async def http_retry_job(job_id: str, dispatcher: NotificationDispatcher = Depends(get_dispatcher),
                         _: Caller = Depends(require_admin)):
    return await dispatcher.retry(job_id)

@router.delete("/queue/jobs/{job_id}")
async def http_remove_job(job_id: str, dispatcher: NotificationDispatcher = Depends(get_dispatcher),
                          _: Caller = Depends(require_admin)):
    await dispatcher.remove(job_id)
    return {"detail": "Trabajo eliminado.", "job_id": job_id}

@router.post("/queue/clean")
async def http_clean_queue(payload: CleanIn, dispatcher: NotificationDispatcher = Depends(get_dispatcher),
                           _: Caller = Depends(require_admin)):
    removed = await dispatcher.clean(payload.status, payload.grace_seconds)
    return {"detail": f"{removed} trabajos eliminados.", "removed": removed}
