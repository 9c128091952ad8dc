from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from libris.models import ApprovalStatus, JobStatus, UserRole, UserStatus
from libris.notifications.jobs import NotificationJob

class _Out(BaseModel):
    model_config = ConfigDict(from_attributes=True)

class AuthorIn(BaseModel):
    first_name: str
    last_name: str
    email: str
    biography: str | None = None

class AuthorOut(_Out):
    id: int
    first_name: str
    last_name: str
    email: str
    is_active: bool

class CategoryIn(BaseModel):
    name: str
    description: str | None = None

class CategoryOut(_Out):
    id: int
    name: str
    description: str | None
    is_active: bool

class BookIn(BaseModel):
    title: str
    isbn: str
    author_id: int
    category_id: int
    total_copies: int = Field(default=1, ge=0)
    description: str | None = None
    publication_year: int | None = None

class BookPatch(BaseModel):
    title: str | None = None
    isbn: str | None = None
    author_id: int | None = None
    category_id: int | None = None
    total_copies: int | None = Field(default=None, ge=0)
    description: str | None = None
    publication_year: int | None = None

class BookOut(_Out):
    id: int
    title: str
    isbn: str
    author_id: int
    category_id: int
    copies_available: int
    total_copies: int
    is_active: bool

class LoanIn(BaseModel):
    book_id: int
    borrower_name: str
    borrower_email: str
    due_date: datetime | None = None
    notes: str | None = None

class LoanPatch(BaseModel):
    book_id: int | None = None
    due_date: datetime | None = None
    notes: str | None = None

class LoanOut(_Out):
    id: int
    book_id: int
    borrower_name: str
    borrower_email: str
    borrowed_at: datetime
    due_date: datetime
    returned_at: datetime | None
    is_active: bool
    notes: str | None

class UserIn(BaseModel):
    email: str
    first_name: str
    last_name: str

class UserOut(_Out):
    id: int
    email: str
    first_name: str
    last_name: str
    role: UserRole
    status: UserStatus

class StatusChangeIn(BaseModel):
    reason: str | None = None
    admin_notes: str | None = None

class ApprovalIn(BaseModel):
    request_type: str
    resource_id: int | None = None
    request_data: Any = None

class ApprovalPatch(BaseModel):
    request_type: str | None = None
    resource_id: int | None = None
    request_data: Any = None

class DecisionIn(BaseModel):
    notes: str | None = None

class ApprovalOut(_Out):
    id: int
    user_id: int
    request_type: str
    resource_id: int | None
    request_data: str | None
    status: ApprovalStatus
    admin_id: int | None
    admin_notes: str | None
    requested_at: datetime
    processed_at: datetime | None

class RegistrationOut(BaseModel):
    user: UserOut
    approval_request: ApprovalOut | None = None

class CleanIn(BaseModel):
    status: JobStatus = JobStatus.COMPLETED
    grace_seconds: int = Field(default=0, ge=0)

class EnqueueIn(BaseModel):
    job: NotificationJob
