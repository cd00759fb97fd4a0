"""
Charge reconciliation engine.

This module provides:
- Diffing of remote charges against the local book snapshot
- Classification into added / updated / unchanged / returned
- Return detection from discharge history
- All-or-nothing persistence of one run's changes
"""

import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Set, Tuple

import structlog
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError

from circulation.client import CirculationClient
from circulation.errors import (
    AuthError, BookflowError, CirculationApiError, PartialDataError, TerminalFetchFailure
)
from circulation.models import BookRecord, DischargeRecord, LoanCharge, LoanState
from circulation.repository import BookRepository
from scheduler.models import SyncError, SyncErrorCode, SyncResult, SyncStatus, SyncSummary
from utilities.logger import SyncLogger

logger = structlog.get_logger(__name__)


def classify_sync_error(error: Exception) -> SyncError:
    """
    Map an exception that aborted a sync run to an operator-facing error code.

    Args:
        error: The exception raised during the run

    Returns:
        SyncError with code and message
    """
    if isinstance(error, AuthError):
        code = SyncErrorCode.AUTH_FAILED
    elif isinstance(error, TerminalFetchFailure):
        if error.timed_out:
            code = SyncErrorCode.EXTERNAL_TIMEOUT
        elif error.status_code is None or error.status_code >= 500:
            code = SyncErrorCode.LIBRARY_UNAVAILABLE
        else:
            code = SyncErrorCode.LIBRARY_ERROR
    elif isinstance(error, CirculationApiError):
        if error.status_code is not None and error.status_code >= 500:
            code = SyncErrorCode.LIBRARY_UNAVAILABLE
        else:
            code = SyncErrorCode.LIBRARY_ERROR
    elif isinstance(error, PyMongoError):
        code = SyncErrorCode.PERSISTENCE_FAILED
    else:
        code = SyncErrorCode.UNKNOWN
    return SyncError(code=code, message=str(error) or type(error).__name__)


class ReconciliationPlan(BaseModel):
    """Writes decided during the diff pass, applied together afterwards."""
    upserts: List[BookRecord] = Field(default_factory=list)
    discharges: List[Tuple[str, str]] = Field(default_factory=list, description="(charge_id, discharge_date)")
    borrowed_biblio_ids: List[int] = Field(default_factory=list)
    summary: SyncSummary = Field(default_factory=SyncSummary)

    @property
    def has_writes(self) -> bool:
        return bool(self.upserts or self.discharges or self.borrowed_biblio_ids)


class ChargeReconciler:
    """Aligns local BookRecords with the circulation system's charge state."""

    def __init__(self, circulation_client: CirculationClient, repository: BookRepository):
        """
        Initialize reconciler.

        Args:
            circulation_client: Client for charges and charge history
            repository: Local persistence
        """
        self.circulation_client = circulation_client
        self.repository = repository
        self.logger = logger.bind(component="charge_reconciler")
        self.sync_logger = SyncLogger("charge_reconciler")

    async def reconcile(self) -> SyncResult:
        """
        Run one reconciliation pass.

        Never raises: every terminal condition is reported through the
        returned SyncResult.

        Returns:
            SyncResult with summary, or error when the run was aborted
        """
        run_id = str(uuid.uuid4())
        start_time = datetime.utcnow()
        warnings: List[str] = []
        self.sync_logger.clear_context().bind_context(run_id=run_id)
        self.sync_logger.log_run_start("sync")

        try:
            charges = await self.circulation_client.get_charges()
            plan = await self._build_plan(charges, warnings)
            if plan.has_writes:
                await self._apply(plan)
        except Exception as e:
            error = classify_sync_error(e)
            if isinstance(e, BookflowError):
                self.sync_logger.log_run_failed("sync", error.code.value, error.message)
            else:
                self.logger.exception("Unexpected error during sync", run_id=run_id)
            return SyncResult(
                run_id=run_id,
                run_timestamp=start_time,
                duration_seconds=(datetime.utcnow() - start_time).total_seconds(),
                success=False,
                error=error,
                warnings=warnings,
            )

        duration = (datetime.utcnow() - start_time).total_seconds()
        self.sync_logger.log_run_complete("sync", duration, **plan.summary.model_dump())
        return SyncResult(
            run_id=run_id,
            run_timestamp=start_time,
            duration_seconds=duration,
            success=True,
            summary=plan.summary,
            warnings=warnings,
        )

    async def _build_plan(self, charges: List[LoanCharge], warnings: List[str]) -> ReconciliationPlan:
        """Classify every remote charge and every active local row."""
        plan = ReconciliationPlan()

        remote: Dict[str, LoanCharge] = {}
        for charge in charges:
            remote[charge.charge_id] = charge
        plan.summary.total_charges = len(remote)
        plan.borrowed_biblio_ids = sorted({c.biblio_id for c in remote.values() if c.biblio_id is not None})

        active_books = await self.repository.get_active_books()
        known: Dict[str, BookRecord] = {book.charge_id: book for book in active_books}
        unseen_ids = [charge_id for charge_id in remote if charge_id not in known]
        for book in await self.repository.get_books_by_charge_ids(unseen_ids):
            known[book.charge_id] = book

        for charge_id, charge in remote.items():
            existing = known.get(charge_id)
            if existing is None:
                plan.upserts.append(BookRecord.from_charge(charge))
                status = SyncStatus.ADDED
            elif existing.loan_state != LoanState.ON_LOAN or existing.differs_from(charge):
                # A row closed earlier but charged again is reopened.
                plan.upserts.append(existing.with_charge(charge))
                status = SyncStatus.UPDATED
            else:
                status = SyncStatus.UNCHANGED
            plan.summary.record(status)
            self.sync_logger.log_classification(charge_id, status.value, charge.title)

        missing = [book for book in active_books if book.charge_id not in remote]
        if missing:
            local_charge_ids = set(known)
            discharges = await self._find_discharges(missing, set(remote), local_charge_ids, warnings)
            for book, record in discharges:
                plan.discharges.append((book.charge_id, record.discharge_date))
                plan.summary.record(SyncStatus.RETURNED)
                self.sync_logger.log_classification(book.charge_id, SyncStatus.RETURNED.value, book.title)

        unconfirmed = len(missing) - len(plan.discharges)
        if unconfirmed:
            self.logger.info("Loans missing remotely without a discharge record", count=unconfirmed)

        return plan

    async def _find_discharges(
        self,
        missing: List[BookRecord],
        active_charge_ids: Set[str],
        local_charge_ids: Set[str],
        warnings: List[str],
    ) -> List[Tuple[BookRecord, DischargeRecord]]:
        """
        Look up discharge records for local loans absent from the charge list.

        A history failure is recovered locally: nothing is reclassified and
        the rows are retried next run.
        """
        def all_matched(records: List[DischargeRecord]) -> bool:
            matched = self._match_discharges(missing, records, active_charge_ids, local_charge_ids)
            return len(matched) == len(missing)

        try:
            histories = await self.circulation_client.get_charge_histories(stop_when=all_matched)
        except (TerminalFetchFailure, CirculationApiError) as e:
            partial = PartialDataError(f"Discharge history unavailable: {e}")
            self.logger.warning("Skipping return detection this run", error=str(partial), pending=len(missing))
            warnings.append(str(partial))
            return []

        # History rows of older local loans must not stand in for another book
        candidate_ids = {r.charge_id for r in histories if r.charge_id not in local_charge_ids}
        if candidate_ids:
            older = await self.repository.get_books_by_charge_ids(sorted(candidate_ids))
            local_charge_ids = local_charge_ids | {book.charge_id for book in older}

        return self._match_discharges(missing, histories, active_charge_ids, local_charge_ids)

    @staticmethod
    def _match_discharges(
        missing: Iterable[BookRecord],
        histories: Iterable[DischargeRecord],
        active_charge_ids: Set[str],
        local_charge_ids: Set[str],
    ) -> List[Tuple[BookRecord, DischargeRecord]]:
        """
        Pair each missing loan with its own discharge record.

        Records are matched by charge id first. A record whose charge id is
        unknown locally may then stand in for one loan with the same ISBN and
        charge date. No record is paired twice.
        """
        by_charge_id: Dict[str, DischargeRecord] = {}
        by_isbn_and_date: Dict[Tuple[str, str], List[DischargeRecord]] = {}
        seen: Set[str] = set()
        for record in histories:
            if not record.is_discharged or record.charge_id in active_charge_ids or record.charge_id in seen:
                continue
            seen.add(record.charge_id)
            if record.charge_id in local_charge_ids:
                by_charge_id[record.charge_id] = record
            elif record.isbn:
                by_isbn_and_date.setdefault((record.isbn, record.charge_date), []).append(record)

        matched = []
        unmatched = []
        for book in missing:
            record = by_charge_id.get(book.charge_id)
            if record is not None:
                matched.append((book, record))
            else:
                unmatched.append(book)

        for book in unmatched:
            if not book.isbn:
                continue
            pool = by_isbn_and_date.get((book.isbn, book.charge_date))
            if pool:
                matched.append((book, pool.pop(0)))
        return matched

    async def _apply(self, plan: ReconciliationPlan) -> None:
        """Persist every write of the run inside one transaction."""
        async with self.repository.transaction() as session:
            for record in plan.upserts:
                await self.repository.upsert_book(record, session=session)
            for charge_id, discharge_date in plan.discharges:
                await self.repository.mark_discharged(charge_id, discharge_date, session=session)
            if plan.borrowed_biblio_ids:
                await self.repository.delete_planned_loans_for_biblios(plan.borrowed_biblio_ids, session=session)

        self.logger.debug(
            "Applied sync changes",
            upserts=len(plan.upserts),
            discharges=len(plan.discharges),
        )
