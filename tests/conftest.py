"""
Pytest configuration and shared fixtures.
"""

import itertools
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx
import pytest
import pytest_asyncio
from pymongo.errors import PyMongoError

from circulation.fetch_client import FetchOptions, ResilientFetchClient
from circulation.models import BookRecord, LoanState, LoginCredentials, NoteCandidate, NoteRecord, PlannedLoan
from circulation.session import SessionManager
from circulation.client import CirculationClient
from utilities.config import BookflowConfig

BASE_URL = "https://lib.example.ac.kr/pyxis-api"


def charge_item(
    charge_id: int,
    title: str = "Clean Code",
    isbn: str = "9780132350884",
    charge_date: str = "2025-01-10",
    due_date: str = "2025-01-24",
    renew_count: int = 0,
    biblio_id: Optional[int] = None,
    discharge_date: Optional[str] = None,
    author: str = "Robert C. Martin",
) -> Dict[str, Any]:
    """Build one ``data.list`` entry as the circulation API serves it."""
    item = {
        "id": charge_id,
        "barcode": f"B{charge_id:06d}",
        "biblio": {
            "id": biblio_id if biblio_id is not None else charge_id + 1000,
            "titleStatement": title,
            "author": author,
            "isbn": isbn,
        },
        "chargeDate": charge_date,
        "dueDate": due_date,
        "renewCnt": renew_count,
    }
    if discharge_date is not None:
        item["dischargeDate"] = discharge_date
    return item


class PyxisStub:
    """
    In-process fake of the circulation API for httpx.MockTransport.

    Status overrides are consumed in order, one per request to that endpoint.
    """

    def __init__(self, charges: Optional[List[Dict]] = None, histories: Optional[List[Dict]] = None):
        self.charges = charges or []
        self.histories = histories or []
        self.login_body: Optional[Dict] = None
        self.login_statuses: List[int] = []
        self.charges_statuses: List[int] = []
        self.history_statuses: List[int] = []
        self.charges_envelope: Optional[Dict] = None
        self.send_total_count = True
        self.requests: List[httpx.Request] = []
        self._tokens = itertools.count(1)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/api/login"):
            if self.login_statuses:
                return httpx.Response(self.login_statuses.pop(0))
            body = self.login_body or {
                "success": True,
                "code": "success.loggedIn",
                "message": "OK",
                "data": {"accessToken": f"token-{next(self._tokens)}", "id": 1, "name": "Reader"},
            }
            return httpx.Response(200, json=body, headers=[("set-cookie", "JSESSIONID=abc123; Path=/; HttpOnly")])

        if path.endswith("/api/charges"):
            if self.charges_statuses:
                return httpx.Response(self.charges_statuses.pop(0))
            if self.charges_envelope is not None:
                return httpx.Response(200, json=self.charges_envelope)
            return self._page(self.charges, request)

        if path.endswith("/api/charge-histories"):
            if self.history_statuses:
                return httpx.Response(self.history_statuses.pop(0))
            return self._page(self.histories, request)

        return httpx.Response(404)

    def _page(self, items: List[Dict], request: httpx.Request) -> httpx.Response:
        size = int(request.url.params["max"])
        offset = int(request.url.params["offset"])
        data = {"list": items[offset:offset + size]}
        if self.send_total_count:
            data["totalCount"] = len(items)
        return httpx.Response(200, json={
            "success": True,
            "code": "success.retrieved",
            "message": "OK",
            "data": data,
        })

    def count(self, suffix: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(suffix))

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class InMemoryBookRepository:
    """BookRepository stand-in keeping state in dicts; rolls back on failure inside transaction()."""

    def __init__(self):
        self.books: Dict[str, BookRecord] = {}
        self.notes: List[NoteRecord] = []
        self.send_counts: Dict[str, int] = {}
        self.planned_loans: Dict[int, PlannedLoan] = {}
        self.fail_writes = False
        self.fail_reads = False
        self.write_count = 0
        self.transactions = 0
        self._ids = itertools.count(1)

    def add_book(self, **fields) -> BookRecord:
        defaults = {
            "charge_id": "1",
            "title": "Clean Code",
            "author": "Robert C. Martin",
            "isbn": "9780132350884",
            "charge_date": "2025-01-10",
            "due_date": "2025-01-24",
        }
        defaults.update(fields)
        record = BookRecord(id=f"book-{next(self._ids)}", **defaults)
        self.books[record.charge_id] = record
        return record

    def add_note(self, book: BookRecord, content: str, page_number: Optional[int] = None, send_count: int = 0) -> NoteRecord:
        note = NoteRecord(id=f"note-{next(self._ids)}", book_id=book.id, page_number=page_number, content=content)
        self.notes.append(note)
        if send_count:
            self.send_counts[note.id] = send_count
        return note

    @asynccontextmanager
    async def transaction(self):
        snapshot = (dict(self.books), dict(self.planned_loans))
        self.transactions += 1
        try:
            yield None
        except Exception:
            self.books, self.planned_loans = snapshot
            raise

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        return None

    async def health_check(self) -> str:
        return "healthy"

    async def get_active_books(self) -> List[BookRecord]:
        if self.fail_reads:
            raise PyMongoError("read failed")
        return [b.model_copy() for b in self.books.values() if b.loan_state == LoanState.ON_LOAN]

    async def get_books_by_charge_ids(self, charge_ids: Iterable[str]) -> List[BookRecord]:
        return [self.books[c].model_copy() for c in charge_ids if c in self.books]

    async def upsert_book(self, record: BookRecord, session=None) -> None:
        self._check_write()
        existing = self.books.get(record.charge_id)
        update = {"updated_at": datetime.utcnow()}
        if existing is not None:
            update.update(id=existing.id, created_at=existing.created_at)
        elif record.id is None:
            update["id"] = f"book-{next(self._ids)}"
        self.books[record.charge_id] = record.model_copy(update=update)

    async def mark_discharged(self, charge_id: str, discharge_date: str, session=None) -> bool:
        self._check_write()
        book = self.books.get(charge_id)
        if book is None or book.loan_state != LoanState.ON_LOAN:
            return False
        self.books[charge_id] = book.model_copy(update={
            "discharge_date": discharge_date,
            "loan_state": LoanState.RETURNED,
        })
        return True

    async def delete_planned_loans_for_biblios(self, biblio_ids: Iterable[int], session=None) -> int:
        self._check_write()
        removed = [i for i in set(biblio_ids) if i in self.planned_loans]
        for biblio_id in removed:
            del self.planned_loans[biblio_id]
        return len(removed)

    async def get_note_candidates(self) -> List[NoteCandidate]:
        if self.fail_reads:
            raise PyMongoError("read failed")
        by_id = {b.id: b for b in self.books.values()}
        return [
            NoteCandidate(note=note, book=by_id[note.book_id], send_count=self.send_counts.get(note.id, 0))
            for note in self.notes
            if note.book_id in by_id
        ]

    async def increment_send_count(self, note_id: str) -> None:
        self.send_counts[note_id] = self.send_counts.get(note_id, 0) + 1

    async def find_due_soon_books(self, from_date: str, to_date: str) -> List[BookRecord]:
        return sorted(
            (b for b in self.books.values()
             if b.loan_state == LoanState.ON_LOAN and from_date <= b.due_date <= to_date),
            key=lambda b: b.due_date,
        )

    def _check_write(self) -> None:
        if self.fail_writes:
            raise PyMongoError("write failed")
        self.write_count += 1


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def pyxis():
    """Circulation API fake with no charges."""
    return PyxisStub()


@pytest.fixture
def repository():
    """Empty in-memory repository."""
    return InMemoryBookRepository()


@pytest.fixture
def test_config():
    """Configuration pointing at the fake services."""
    return BookflowConfig(
        _env_file=None,
        library_base_url=BASE_URL,
        library_user_id="reader",
        library_password="secret",
        telegram_bot_token="123:abc",
        telegram_chat_id="42",
        telegram_api_base="https://telegram.example",
        log_file=None,
    )


@pytest_asyncio.fixture
async def circulation_client(pyxis):
    """CirculationClient wired to the Pyxis stub, retries without waiting."""
    http_client = pyxis.client()
    fetch_client = ResilientFetchClient(
        client=http_client,
        default_options=FetchOptions(timeout_ms=1000, retries=2, retry_backoff_ms=0),
        sleep=no_sleep,
    )
    session_manager = SessionManager(
        fetch_client,
        BASE_URL,
        LoginCredentials(login_id="reader", password="secret"),
        login_options=FetchOptions(timeout_ms=1000, retries=1, retry_backoff_ms=0),
    )
    yield CirculationClient(session_manager, page_size=2)
    await http_client.aclose()
