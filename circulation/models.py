"""
Pydantic models for circulation data validation and serialization.
Covers the remote charge/discharge records and the local book, note and
planned-loan records they are reconciled against.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, field_validator

_DATE_PREFIX = re.compile(r'^(\d{4})[-./](\d{1,2})[-./](\d{1,2})')


def normalize_date_string(value: Optional[str]) -> Optional[str]:
    """
    Normalize a wire date to ``YYYY-MM-DD``.

    The circulation API mixes ``2025-01-10``, ``2025-01-10 00:00:00`` and
    ISO timestamps with offsets; only the calendar date is kept.

    Args:
        value: Raw date string (or None)

    Returns:
        Normalized date string, or the input unchanged if it has no date prefix
    """
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    match = _DATE_PREFIX.match(value)
    if not match:
        return value
    year, month, day = match.groups()
    return f"{year}-{int(month):02d}-{int(day):02d}"


class LoanState(str, Enum):
    """Enum for local loan state."""
    ON_LOAN = "on_loan"
    RETURNED = "returned"


class ReadStatus(str, Enum):
    """Enum for the user's reading progress."""
    UNREAD = "unread"
    FINISHED = "finished"
    ABANDONED = "abandoned"


class SessionState(str, Enum):
    """States of the circulation session."""
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


class LoginCredentials(BaseModel):
    """Credentials posted to the login endpoint."""
    login_id: str = Field(..., min_length=1, description="Library account id")
    password: str = Field(..., min_length=1, description="Library account password")

    def to_payload(self) -> Dict[str, str]:
        return {"loginId": self.login_id, "password": self.password}


class SessionData(BaseModel):
    """Authentication material cached for the duration of one run."""
    access_token: str = Field(..., description="pyxis-auth-token value")
    cookies: str = Field(default="", description="Cookie header value")
    user_name: Optional[str] = Field(default=None)

    def auth_headers(self) -> Dict[str, str]:
        headers = {"pyxis-auth-token": self.access_token}
        if self.cookies:
            headers["Cookie"] = self.cookies
        return headers


class _ChargeBase(BaseModel):
    """Fields shared by active charges and discharge history items."""
    charge_id: str = Field(..., description="External charge identifier")
    barcode: str = Field(default="", description="Volume barcode")
    biblio_id: Optional[int] = Field(default=None, description="External bibliographic record id")
    title: str = Field(..., description="Title statement")
    author: str = Field(default="", description="Author, when the API provides one")
    isbn: str = Field(default="", description="ISBN")
    charge_date: str = Field(..., description="Loan start date (YYYY-MM-DD)")
    due_date: str = Field(..., description="Due date (YYYY-MM-DD)")
    renew_count: int = Field(default=0, ge=0, description="Number of renewals")
    discharge_date: Optional[str] = Field(default=None, description="Return date, if any")

    @field_validator('charge_date', 'due_date', 'discharge_date', mode='before')
    @classmethod
    def normalize_dates(cls, v):
        return normalize_date_string(v)

    @field_validator('charge_id', mode='before')
    @classmethod
    def coerce_charge_id(cls, v):
        """Charge ids arrive as integers on the wire; keys are strings locally."""
        return str(v)

    @classmethod
    def from_api(cls, item: Dict[str, Any]):
        """Map one ``data.list`` entry of a charges or charge-histories response."""
        biblio = item.get("biblio") or {}
        return cls(**{
            "charge_id": item["id"],
            "barcode": item.get("barcode") or "",
            "biblio_id": biblio.get("id"),
            "title": biblio.get("titleStatement") or "",
            "author": biblio.get("author") or "",
            "isbn": biblio.get("isbn") or "",
            "charge_date": item.get("chargeDate"),
            "due_date": item.get("dueDate"),
            "renew_count": item.get("renewCnt") or 0,
            "discharge_date": item.get("dischargeDate"),
        })


class LoanCharge(_ChargeBase):
    """
    One active loan as reported by the circulation system.
    Never mutated locally.
    """


class DischargeRecord(_ChargeBase):
    """One charge-history item; a confirmed return when discharge_date is set."""

    @property
    def is_discharged(self) -> bool:
        return bool(self.discharge_date)


class BookRecord(BaseModel):
    """
    Local, durable view of a loan.
    Created when a charge is first observed and never deleted.
    """
    id: Optional[str] = Field(default=None, description="MongoDB document id")
    charge_id: str = Field(..., description="External charge id (correlation key)")
    barcode: str = Field(default="")
    biblio_id: Optional[int] = Field(default=None)
    isbn: str = Field(default="")
    title: str = Field(...)
    author: str = Field(default="")
    publisher: Optional[str] = Field(default=None)
    cover_url: Optional[str] = Field(default=None)
    description: Optional[str] = Field(default=None)
    charge_date: str = Field(...)
    due_date: str = Field(...)
    renew_count: int = Field(default=0, ge=0)
    read_status: ReadStatus = Field(default=ReadStatus.UNREAD)
    discharge_date: Optional[str] = Field(default=None)
    loan_state: LoanState = Field(default=LoanState.ON_LOAN)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator('charge_date', 'due_date', 'discharge_date', mode='before')
    @classmethod
    def normalize_dates(cls, v):
        return normalize_date_string(v)

    @classmethod
    def from_charge(cls, charge: LoanCharge) -> 'BookRecord':
        """Create a new on-loan record for a charge seen for the first time."""
        return cls(
            charge_id=charge.charge_id,
            barcode=charge.barcode,
            biblio_id=charge.biblio_id,
            isbn=charge.isbn,
            title=charge.title,
            author=charge.author,
            charge_date=charge.charge_date,
            due_date=charge.due_date,
            renew_count=charge.renew_count,
            loan_state=LoanState.ON_LOAN,
        )

    def differs_from(self, charge: LoanCharge) -> bool:
        """True when the fields tracked by sync changed remotely."""
        return self.due_date != charge.due_date or self.renew_count != charge.renew_count

    def with_charge(self, charge: LoanCharge) -> 'BookRecord':
        """Copy carrying the remote loan fields; metadata and read status are kept."""
        return self.model_copy(update={
            "due_date": charge.due_date,
            "renew_count": charge.renew_count,
            "discharge_date": None,
            "loan_state": LoanState.ON_LOAN,
            "updated_at": datetime.utcnow(),
        })

    def to_document(self) -> Dict[str, Any]:
        """Serialize for MongoDB; the document id is managed by the database."""
        doc = self.model_dump(exclude={"id"})
        doc["read_status"] = self.read_status.value
        doc["loan_state"] = self.loan_state.value
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'BookRecord':
        data = dict(doc)
        object_id = data.pop("_id", None)
        if object_id is not None:
            data["id"] = str(object_id)
        return cls(**data)


class NoteRecord(BaseModel):
    """A user note on a page of a book. Never created by sync."""
    id: Optional[str] = Field(default=None)
    book_id: str = Field(..., description="Owning BookRecord id")
    page_number: Optional[int] = Field(default=None, ge=0)
    content: str = Field(default="")
    created_at: Optional[datetime] = Field(default=None)
    updated_at: Optional[datetime] = Field(default=None)


class PlannedLoan(BaseModel):
    """Wishlist entry for a book the user intends to borrow."""
    id: Optional[str] = Field(default=None)
    library_biblio_id: int = Field(...)
    title: str = Field(...)
    author: str = Field(default="")
    isbn: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class NoteCandidate(BaseModel):
    """A note paired with its book and broadcast count, used for digest selection."""
    note: NoteRecord = Field(...)
    book: BookRecord = Field(...)
    send_count: int = Field(default=0, ge=0, description="Times this note was broadcast")
