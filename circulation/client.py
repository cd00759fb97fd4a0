"""
Circulation API client.

Maps the Pyxis response envelope (``success``, ``code``, ``message``,
``data.list``, ``data.totalCount``) into LoanCharge / DischargeRecord models
at the boundary, so callers never inspect raw wire shapes.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import structlog
from pydantic import ValidationError

from circulation.errors import CirculationApiError
from circulation.fetch_client import FetchOptions
from circulation.models import DischargeRecord, LoanCharge
from circulation.session import SessionManager

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Upper bound on pages per listing; the endpoints are expected to terminate far earlier.
MAX_PAGES = 200


class CirculationClient:
    """Read-only access to the user's charges and charge history."""

    def __init__(
        self,
        session_manager: SessionManager,
        page_size: int = 20,
        homepage_id: int = 8,
        options: Optional[FetchOptions] = None,
    ):
        """
        Initialize circulation client.

        Args:
            session_manager: Authenticated session provider
            page_size: ``max`` query parameter for paginated listings
            homepage_id: Pyxis homepage path segment
            options: Resilience settings for listing requests
        """
        self.session_manager = session_manager
        self.base_url = session_manager.base_url
        self.page_size = page_size
        self.homepage_id = homepage_id
        self.options = options
        self.logger = logger.bind(component="circulation_client")

    async def get_charges(self) -> List[LoanCharge]:
        """
        Get every currently borrowed item.

        Returns:
            List of LoanCharge

        Raises:
            AuthError, TerminalFetchFailure, CirculationApiError
        """
        charges = await self._collect("charges", LoanCharge.from_api)
        self.logger.info("Retrieved charges", count=len(charges))
        return charges

    async def get_charge_histories(
        self,
        stop_when: Optional[Callable[[List[DischargeRecord]], bool]] = None,
    ) -> List[DischargeRecord]:
        """
        Get discharge history, newest first as served by the API.

        Args:
            stop_when: Predicate over the records collected so far; paging stops
                as soon as it returns True

        Returns:
            List of DischargeRecord
        """
        histories = await self._collect("charge-histories", DischargeRecord.from_api, stop_when)
        self.logger.info("Retrieved charge histories", count=len(histories))
        return histories

    async def _collect(
        self,
        resource: str,
        mapper: Callable[[Dict[str, Any]], T],
        stop_when: Optional[Callable[[List[T]], bool]] = None,
    ) -> List[T]:
        """
        Walk ``max``/``offset`` pages until totalCount is reached or a page is empty.

        Without a totalCount, a short page marks the end of the list.
        """
        items: List[T] = []
        offset = 0

        for _ in range(MAX_PAGES):
            page, total = await self._fetch_page(resource, offset)
            try:
                items.extend(mapper(entry) for entry in page)
            except (KeyError, ValidationError) as e:
                raise CirculationApiError(f"Malformed {resource} entry: {e}") from e
            offset += self.page_size

            if not page:
                break
            if total is not None and len(items) >= total:
                break
            if total is None and len(page) < self.page_size:
                break
            if stop_when is not None and stop_when(items):
                self.logger.debug("Stopping pagination early", resource=resource, collected=len(items))
                break
        else:
            self.logger.warning("Pagination limit reached", resource=resource, pages=MAX_PAGES)

        return items

    async def _fetch_page(self, resource: str, offset: int) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        url = f"{self.base_url}/{self.homepage_id}/api/{resource}?max={self.page_size}&offset={offset}"
        result = await self.session_manager.authorized_request(url, options=self.options)

        if not result.ok:
            status = result.failure.status_code
            if status is not None and 400 <= status < 500:
                raise CirculationApiError(f"Failed to fetch {resource} with status {status}", status_code=status)
            result.raise_for_failure()

        try:
            body = result.response.json()
        except ValueError as e:
            raise CirculationApiError(f"Invalid JSON from {resource}: {e}", status_code=result.status_code) from e

        return self._unwrap_envelope(resource, body)

    @staticmethod
    def _unwrap_envelope(resource: str, body: Any) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        if not isinstance(body, dict):
            raise CirculationApiError(f"Unexpected {resource} payload")
        if not body.get("success"):
            raise CirculationApiError(
                f"Failed to fetch {resource}: {body.get('message')}",
                status_code=400,
                api_code=body.get("code"),
            )

        data = body.get("data") or {}
        page = data.get("list") or []
        if not isinstance(page, list):
            raise CirculationApiError(f"Unexpected {resource} list type")
        total = data.get("totalCount")
        if not isinstance(total, int) or isinstance(total, bool):
            total = None
        return page, total
