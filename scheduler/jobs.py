"""
Scheduled job entry points.

Each run builds its own fetch client, session and (unless one is supplied)
repository connection, so no authentication state survives between runs.
Neither entry point raises.
"""

import random
import uuid
from typing import Callable, Optional

import httpx
import structlog

from circulation.client import CirculationClient
from circulation.errors import AuthError
from circulation.fetch_client import FetchOptions, ResilientFetchClient
from circulation.models import LoginCredentials
from circulation.repository import BookRepository
from circulation.session import SessionManager
from scheduler.digest import broadcast_daily_note
from scheduler.dispatcher import DeliveryDispatcher
from scheduler.models import SyncResult
from scheduler.reconciler import ChargeReconciler, classify_sync_error
from utilities.config import BookflowConfig

logger = structlog.get_logger(__name__)


def build_repository(config: BookflowConfig) -> BookRepository:
    return BookRepository(
        config.mongodb_url,
        config.mongodb_database,
        use_transactions=config.mongodb_use_transactions,
    )


async def run_sync_job(
    config: BookflowConfig,
    repository: Optional[BookRepository] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> SyncResult:
    """
    Reconcile local loans with the circulation system once.

    Args:
        config: Runtime configuration
        repository: Connected repository; a private connection is opened when omitted
        http_client: Shared httpx client (tests inject a mock transport here)

    Returns:
        SyncResult for the run
    """
    log = logger.bind(component="sync_job")

    if not config.has_library_credentials():
        error = classify_sync_error(AuthError("Library credentials are not configured"))
        log.error("Sync skipped", error=error.message)
        return SyncResult(run_id=str(uuid.uuid4()), success=False, error=error)

    owns_repository = repository is None
    try:
        if owns_repository:
            repository = build_repository(config)
            await repository.connect()

        options = FetchOptions(
            timeout_ms=config.request_timeout_ms,
            retries=config.retry_attempts,
            retry_backoff_ms=config.retry_backoff_ms,
        )
        login_options = options.model_copy(update={"retries": config.login_retry_attempts})

        async with ResilientFetchClient(
            client=http_client,
            default_options=options,
            headers=config.get_headers(),
        ) as fetch_client:
            session_manager = SessionManager(
                fetch_client,
                config.library_base_url,
                LoginCredentials(login_id=config.library_user_id, password=config.library_password),
                login_options=login_options,
            )
            circulation_client = CirculationClient(session_manager, page_size=config.page_size)
            return await ChargeReconciler(circulation_client, repository).reconcile()

    except Exception as e:
        log.error("Sync job crashed", error=str(e), exc_info=True)
        return SyncResult(run_id=str(uuid.uuid4()), success=False, error=classify_sync_error(e))

    finally:
        if owns_repository and repository is not None:
            await repository.disconnect()


async def run_digest_job(
    config: BookflowConfig,
    repository: Optional[BookRepository] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    random_fn: Callable[[], float] = random.random,
) -> bool:
    """
    Broadcast the daily note once.

    Returns:
        bool: True if a note was delivered
    """
    log = logger.bind(component="digest_job")

    if not config.has_delivery_credentials():
        log.warning("Delivery credentials missing; skipping digest")
        return False

    owns_repository = repository is None
    try:
        if owns_repository:
            repository = build_repository(config)
            await repository.connect()

        async with DeliveryDispatcher.from_config(config, client=http_client) as dispatcher:
            return await broadcast_daily_note(config, repository, dispatcher, random_fn=random_fn)

    except Exception as e:
        log.error("Digest job crashed", error=str(e), exc_info=True)
        return False

    finally:
        if owns_repository and repository is not None:
            await repository.disconnect()
