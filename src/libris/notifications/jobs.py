"""Trabajos de notificación: una variante por tipo, discriminada por ``kind``."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class Recipient(BaseModel):
    email: str
    name: str | None = None


class WelcomeData(BaseModel):
    user_id: int
    first_name: str
    last_name: str
    login_instructions: str = "Tu cuenta quedará activa cuando un administrador apruebe el registro."


class LoanConfirmationData(BaseModel):
    loan_id: int
    book_title: str
    author: str
    borrowed_date: datetime
    due_date: datetime
    borrower_name: str


class OverdueReminderData(BaseModel):
    loan_id: int
    book_title: str
    author: str
    due_date: datetime
    days_overdue: int
    fine_amount: float | None = None
    borrower_name: str


class ReturnConfirmationData(BaseModel):
    loan_id: int
    book_title: str
    author: str
    returned_date: datetime
    borrower_name: str
    was_overdue: bool
    fine_amount: float | None = None


class BookAvailableData(BaseModel):
    user_id: int
    book_id: int
    book_title: str
    author: str
    reserved_date: datetime
    borrower_name: str


class ApprovalDecisionData(BaseModel):
    request_id: int
    request_type: str
    status: Literal["approved", "rejected"]
    admin_notes: str | None = None
    resource_title: str | None = None
    user_id: int


class AccountStatusData(BaseModel):
    user_id: int
    status: Literal["activated", "suspended", "deactivated"]
    reason: str | None = None
    admin_notes: str | None = None


class WelcomeJob(BaseModel):
    kind: Literal["welcome"] = "welcome"
    recipient: Recipient
    data: WelcomeData


class LoanConfirmationJob(BaseModel):
    kind: Literal["loan-confirmation"] = "loan-confirmation"
    recipient: Recipient
    data: LoanConfirmationData


class OverdueReminderJob(BaseModel):
    kind: Literal["overdue-reminder"] = "overdue-reminder"
    recipient: Recipient
    data: OverdueReminderData


class ReturnConfirmationJob(BaseModel):
    kind: Literal["return-confirmation"] = "return-confirmation"
    recipient: Recipient
    data: ReturnConfirmationData


class BookAvailableJob(BaseModel):
    kind: Literal["book-available"] = "book-available"
    recipient: Recipient
    data: BookAvailableData


class ApprovalDecisionJob(BaseModel):
    kind: Literal["approval-decision"] = "approval-decision"
    recipient: Recipient
    data: ApprovalDecisionData


class AccountStatusJob(BaseModel):
    kind: Literal["account-status"] = "account-status"
    recipient: Recipient
    data: AccountStatusData


NotificationJob = Annotated[
    Union[
        WelcomeJob,
        LoanConfirmationJob,
        OverdueReminderJob,
        ReturnConfirmationJob,
        BookAvailableJob,
        ApprovalDecisionJob,
        AccountStatusJob,
    ],
    Field(discriminator="kind"),
]

_adapter = TypeAdapter(NotificationJob)


def parse_job(raw: str | bytes) -> NotificationJob:
    return _adapter.validate_json(raw)


def dump_job(job: NotificationJob) -> str:
    return job.model_dump_json()
