"""
Daily note digest.

This module provides:
- Fair selection of the note to broadcast (least-sent first)
- Plain-text formatting of the note and of the due-soon reminder
- The broadcast flow that ties selection, delivery and send counts together
"""

import random
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

import structlog

from circulation.models import BookRecord, NoteCandidate
from circulation.repository import BookRepository
from scheduler.dispatcher import DeliveryDispatcher
from utilities.config import BookflowConfig

logger = structlog.get_logger(__name__)


def select_note_candidate(
    candidates: List[NoteCandidate],
    random_fn: Callable[[], float] = random.random,
) -> Optional[NoteCandidate]:
    """
    Pick one note among those broadcast the fewest times.

    Args:
        candidates: Every note with its book and send count
        random_fn: Source of floats in [0, 1)

    Returns:
        The chosen candidate, or None when there is nothing to send
    """
    if not candidates:
        return None

    lowest = min(c.send_count for c in candidates)
    tier = [c for c in candidates if c.send_count == lowest]
    index = min(max(int(random_fn() * len(tier)), 0), len(tier) - 1)
    return tier[index]


def format_note_message(candidate: NoteCandidate) -> str:
    page = candidate.note.page_number if candidate.note.page_number is not None else "?"
    return f"{candidate.book.title} - {candidate.book.author}\np.{page}\n{candidate.note.content}"


def format_due_soon_message(books: List[BookRecord], today: date) -> str:
    """Reminder listing on-loan books with their due date and days left."""
    if not books:
        return ""

    lines = ["Due soon"]
    for book in books:
        days_left = (date.fromisoformat(book.due_date) - today).days
        label = f"D-{days_left}" if days_left > 0 else "today"
        lines.append(f"- {book.title} ({book.due_date}, {label})")
    return "\n".join(lines)


async def broadcast_daily_note(
    config: BookflowConfig,
    repository: BookRepository,
    dispatcher: DeliveryDispatcher,
    random_fn: Callable[[], float] = random.random,
    today: Optional[date] = None,
) -> bool:
    """
    Send one note and record the send.

    Args:
        config: Runtime configuration (timezone, due-soon window)
        repository: Source of note candidates and send statistics
        dispatcher: Webhook client
        random_fn: Tie-breaking randomness among least-sent notes
        today: Override for the local calendar date

    Returns:
        bool: True only when a note was delivered and its count incremented
    """
    log = logger.bind(component="note_digest")

    if not dispatcher.configured:
        log.warning("Delivery credentials missing; skipping broadcast")
        return False

    try:
        candidates = await repository.get_note_candidates()
    except Exception as e:
        log.error("Failed to load note candidates", error=str(e))
        return False

    candidate = select_note_candidate(candidates, random_fn)
    if candidate is None:
        log.info("No notes available to send; skipping")
        return False

    if not await dispatcher.deliver(format_note_message(candidate)):
        return False

    if candidate.note.id:
        await repository.increment_send_count(candidate.note.id)
    log.info(
        "Daily note broadcast",
        note_id=candidate.note.id,
        book=candidate.book.title,
        previous_send_count=candidate.send_count,
    )

    await _send_due_soon_reminder(config, repository, dispatcher, today)
    return True


async def _send_due_soon_reminder(
    config: BookflowConfig,
    repository: BookRepository,
    dispatcher: DeliveryDispatcher,
    today: Optional[date],
) -> None:
    """Follow-up reminder; any failure here leaves the broadcast result untouched."""
    if today is None:
        today = datetime.now(ZoneInfo(config.timezone)).date()
    until = today + timedelta(days=config.due_soon_days)

    try:
        books = await repository.find_due_soon_books(today.isoformat(), until.isoformat())
        if books:
            await dispatcher.deliver(format_due_soon_message(books, today))
    except Exception as e:
        logger.error("Failed to send due-soon reminder", error=str(e))
