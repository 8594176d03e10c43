"""Request and response models for the HTTP API.

Field names are snake_case in Python and camelCase on the wire; requests
accept either spelling.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator
from pydantic.alias_generators import to_camel
from session_engine.lifecycle.params import (
    DURATION_MAX,
    DURATION_MIN,
    JOB_DESCRIPTION_MAX,
    JOB_TITLE_MAX,
    JOB_TITLE_MIN,
    SessionParams,
)
from session_engine.results import SessionPage, SessionSnapshot
from session_engine.state.tables import (
    CreditPackageTable,
    CreditTransactionTable,
    InterviewMessageTable,
    PaymentTable,
    as_utc,
)

Difficulty = Literal["beginner", "intermediate", "advanced", "easy", "medium", "hard", "expert"]
SessionType = Literal["behavioral", "technical", "mixed"]
JobTitle = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=JOB_TITLE_MIN, max_length=JOB_TITLE_MAX)
]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


# ---------------------------------------------------------------------------
# Session requests
# ---------------------------------------------------------------------------


class CreateSessionRequest(CamelModel):
    """Body for ``POST /sessions``."""

    job_title: JobTitle
    session_name: str | None = Field(default=None, max_length=256)
    job_description: str | None = Field(default=None, max_length=JOB_DESCRIPTION_MAX)
    difficulty: Difficulty = "medium"
    duration: int = Field(default=30, ge=DURATION_MIN, le=DURATION_MAX)
    session_type: SessionType = "mixed"
    resume_id: UUID | None = None

    def to_params(self) -> SessionParams:
        return SessionParams(
            job_title=self.job_title,
            session_name=self.session_name,
            job_description=self.job_description,
            difficulty=self.difficulty,
            duration_minutes=self.duration,
            session_type=self.session_type,
            resume_id=str(self.resume_id) if self.resume_id else None,
        )


class EditSessionRequest(CamelModel):
    """Body for ``PATCH /sessions/{id}/edit``.  Omitted fields are left unchanged."""

    job_title: JobTitle | None = None
    session_name: str | None = Field(default=None, max_length=256)
    job_description: str | None = Field(default=None, max_length=JOB_DESCRIPTION_MAX)
    difficulty: Difficulty | None = None
    duration: int | None = Field(default=None, ge=DURATION_MIN, le=DURATION_MAX)
    session_type: SessionType | None = None

    def to_changes(self) -> dict[str, Any]:
        changes = {
            "job_title": self.job_title,
            "session_name": self.session_name,
            "job_description": self.job_description,
            "difficulty": self.difficulty,
            "duration_minutes": self.duration,
            "session_type": self.session_type,
        }
        return {name: value for name, value in changes.items() if value is not None}


class TransitionRequest(CamelModel):
    status: str
    notes: str | None = Field(default=None, max_length=1000)


class StopRequest(CamelModel):
    reason: str | None = Field(default=None, max_length=500)
    force: bool = False


class CompleteSessionRequest(CamelModel):
    final_duration: int | None = Field(default=None, ge=0)
    session_notes: str | None = Field(default=None, max_length=2000)


class DisconnectRequest(CamelModel):
    reason: str | None = Field(default=None, max_length=500)


class HeartbeatRequest(CamelModel):
    elapsed_minutes: int | None = Field(default=None, ge=0)


class MessageRequest(CamelModel):
    message_type: Literal["question", "answer"]
    content: str = Field(..., min_length=1)
    metadata: dict[str, Any] | None = None


class ConnectWithTempTokenRequest(CamelModel):
    """Body sent by the desktop app.  An empty token is reported as missing."""

    temp_token: str = ""
    desktop_version: str | None = Field(default=None, max_length=64)
    platform: str | None = Field(default=None, max_length=64)


# ---------------------------------------------------------------------------
# Session responses
# ---------------------------------------------------------------------------


class SessionResponse(CamelModel):
    id: str
    user_id: str
    status: str
    job_title: str
    session_name: str | None = None
    job_description: str | None = None
    difficulty: str
    duration: int
    session_type: str
    resume_id: str | None = None
    desktop_connected: bool = False
    notes: str | None = None
    total_duration_minutes: int | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @classmethod
    def from_snapshot(cls, snapshot: SessionSnapshot) -> SessionResponse:
        return cls(
            id=snapshot.id,
            user_id=snapshot.user_id,
            status=snapshot.status,
            job_title=snapshot.job_title,
            session_name=snapshot.session_name,
            job_description=snapshot.job_description,
            difficulty=snapshot.difficulty,
            duration=snapshot.duration_minutes,
            session_type=snapshot.session_type,
            resume_id=snapshot.resume_id,
            desktop_connected=snapshot.desktop_connected,
            notes=snapshot.notes,
            total_duration_minutes=snapshot.total_duration_minutes,
            created_at=snapshot.created_at,
            started_at=snapshot.started_at,
            ended_at=snapshot.ended_at,
        )


class SessionListResponse(CamelModel):
    sessions: list[SessionResponse]
    pagination: Pagination

    @classmethod
    def from_page(cls, page: SessionPage) -> SessionListResponse:
        return cls(
            sessions=[SessionResponse.from_snapshot(s) for s in page.sessions],
            pagination=Pagination(page=page.page, limit=page.limit, total=page.total, total_pages=page.total_pages),
        )


class SessionStatusResponse(CamelModel):
    """Lightweight status probe polled by the web UI and the desktop app."""

    session_id: str
    status: str
    desktop_connected: bool
    active: bool
    stopped_externally: bool
    duration: int | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None


class ActivationResponse(CamelModel):
    status: str
    credits_deducted: int
    remaining_credits: int | None = None
    session: SessionResponse


class DesktopTokenResponse(CamelModel):
    temp_token: str
    session_id: str
    expires_at: datetime
    expires_in: int


class MessageResponse(CamelModel):
    id: int
    message_type: str
    content: str
    metadata: dict[str, Any] | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: InterviewMessageTable) -> MessageResponse:
        return cls(
            id=row.id,
            message_type=row.message_type,
            content=row.content,
            metadata=row.metadata_json,
            created_at=as_utc(row.created_at),
        )


class HistoryResponse(CamelModel):
    session_id: str
    messages: list[MessageResponse]


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class CreditPackageResponse(CamelModel):
    id: str
    name: str
    description: str | None = None
    credits: int
    bonus_credits: int
    total_credits: int
    price_usd: float
    discount_percentage: float
    price_cents: int

    @classmethod
    def from_row(cls, row: CreditPackageTable) -> CreditPackageResponse:
        return cls(
            id=row.id,
            name=row.name,
            description=row.description,
            credits=row.credits_amount,
            bonus_credits=row.bonus_credits or 0,
            total_credits=row.total_credits,
            price_usd=row.price_usd,
            discount_percentage=row.discount_percentage or 0.0,
            price_cents=row.price_cents,
        )


class CreatePaymentIntentRequest(CamelModel):
    package_id: str = Field(..., min_length=1, max_length=64)


class PaymentIntentResponse(CamelModel):
    client_secret: str
    payment_intent_id: str
    amount: int
    currency: str
    credits: int
    package: CreditPackageResponse


class CashfreeOrderRequest(CamelModel):
    package_id: str = Field(..., min_length=1, max_length=64)
    customer_phone: str | None = Field(default=None, max_length=20)


class CashfreeOrderResponse(CamelModel):
    order_id: str
    payment_session_id: str | None = None
    amount: int
    currency: str
    credits: int
    environment: str


class ProcessPaymentRequest(CamelModel):
    """Client-side confirmation after checkout.  Exactly one reference is given."""

    payment_intent_id: str | None = None
    order_id: str | None = None

    @model_validator(mode="after")
    def _exactly_one_reference(self) -> ProcessPaymentRequest:
        if bool(self.payment_intent_id) == bool(self.order_id):
            raise ValueError("Provide exactly one of paymentIntentId or orderId")
        return self


class ProcessPaymentResponse(CamelModel):
    status: str
    already_processed: bool
    payment_id: str | None = None
    credits_added: int = 0
    new_balance: int | None = None


class PaymentResponse(CamelModel):
    id: str
    provider: str
    provider_reference: str
    package_id: str
    credits: int
    amount: int
    currency: str
    status: str
    created_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: PaymentTable) -> PaymentResponse:
        return cls(
            id=row.id,
            provider=row.provider,
            provider_reference=row.provider_reference,
            package_id=row.package_id,
            credits=row.credits,
            amount=row.amount,
            currency=row.currency,
            status=row.status,
            created_at=as_utc(row.created_at),
            completed_at=as_utc(row.completed_at),
        )


class PaymentHistoryResponse(CamelModel):
    payments: list[PaymentResponse]
    pagination: Pagination


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


class BalanceResponse(CamelModel):
    credits: int


class CreditTransactionResponse(CamelModel):
    id: str
    amount: int
    transaction_type: str
    description: str | None = None
    session_id: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: CreditTransactionTable) -> CreditTransactionResponse:
        return cls(
            id=row.id,
            amount=row.amount,
            transaction_type=row.transaction_type,
            description=row.description,
            session_id=row.session_id,
            created_at=as_utc(row.created_at),
        )


class TransactionListResponse(CamelModel):
    transactions: list[CreditTransactionResponse]
    pagination: Pagination
