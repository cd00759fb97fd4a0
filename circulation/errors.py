"""
Error taxonomy for the sync engine.

Transient failures are retried inside the fetch client; everything else is
terminal for the current run and is converted into a result object before it
reaches the scheduler.
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from circulation.fetch_client import FetchFailure


class BookflowError(Exception):
    """Base exception for all sync engine errors."""


class TransientNetworkError(BookflowError):
    """Timeout, connection failure or 5xx on a single attempt."""

    def __init__(self, message: str, status_code: Optional[int] = None, timed_out: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.timed_out = timed_out


class TerminalFetchFailure(BookflowError):
    """Retries exhausted, or a 4xx response that must not be retried."""

    def __init__(self, failure: 'FetchFailure'):
        super().__init__(failure.describe())
        self.failure = failure

    @property
    def status_code(self) -> Optional[int]:
        return self.failure.status_code

    @property
    def timed_out(self) -> bool:
        return self.failure.timed_out


class CirculationApiError(BookflowError):
    """The circulation API answered with ``success: false`` or an unusable body."""

    def __init__(self, message: str, status_code: Optional[int] = None, api_code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.api_code = api_code


class AuthError(BookflowError):
    """Login rejected, or 401/403 persisted after one re-authentication."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PartialDataError(BookflowError):
    """Discharge history could not be fetched; return detection is skipped this run."""


class DeliveryFailure(BookflowError):
    """The messaging webhook did not confirm delivery."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
