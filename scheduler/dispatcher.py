"""
Outbound message delivery through the Telegram Bot API.

Delivery is fire-and-report: failures are logged and surfaced as a False
return value, never raised to the caller.
"""

from typing import Optional

import httpx
import structlog

from circulation.errors import DeliveryFailure
from utilities.config import BookflowConfig

logger = structlog.get_logger(__name__)


class DeliveryDispatcher:
    """Sends plain-text messages to a single chat."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        client: Optional[httpx.AsyncClient] = None,
        api_base: str = "https://api.telegram.org",
        timeout_ms: int = 10000,
    ):
        """
        Initialize dispatcher.

        Args:
            bot_token: Bot API token
            chat_id: Destination chat id
            client: Shared HTTP client; one is created (and owned) when omitted
            api_base: Bot API base URL
            timeout_ms: Per-request timeout
        """
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout_ms / 1000
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient()
        self.logger = logger.bind(component="delivery_dispatcher")

    @classmethod
    def from_config(cls, config: BookflowConfig, client: Optional[httpx.AsyncClient] = None) -> "DeliveryDispatcher":
        return cls(
            bot_token=config.telegram_bot_token,
            chat_id=config.telegram_chat_id,
            client=client,
            api_base=config.telegram_api_base,
            timeout_ms=config.delivery_timeout_ms,
        )

    @property
    def configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def __aenter__(self) -> "DeliveryDispatcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def deliver(self, text: str) -> bool:
        """
        Send one message.

        Args:
            text: Message body, sent as plain text

        Returns:
            bool: True only when the webhook acknowledged with a 2xx status
        """
        url = f"{self.api_base}/bot{self.bot_token}/sendMessage"
        payload = {"chat_id": self.chat_id, "text": text, "disable_web_page_preview": True}

        try:
            response = await self.client.post(url, json=payload, timeout=self.timeout)
        except httpx.HTTPError as e:
            reason = str(e).replace(self.bot_token, "***")
            failure = DeliveryFailure(f"Delivery request failed: {type(e).__name__}: {reason}")
            self.logger.error("Message delivery failed", error=str(failure))
            return False

        if not response.is_success:
            failure = DeliveryFailure(
                f"Delivery rejected with status {response.status_code}",
                status_code=response.status_code,
            )
            self.logger.error(
                "Message delivery failed",
                error=str(failure),
                status_code=response.status_code,
                body=response.text[:200],
            )
            return False

        self.logger.info("Message delivered", length=len(text))
        return True
