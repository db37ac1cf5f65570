"""
Supervisory alerts for events a manager should see immediately (deep
discounts). Sent over the Telegram Bot API; disabled when no bot token or chat
id is configured.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from decimal import Decimal
from typing import Protocol

import httpx

from .money import as_json
from .settings import settings

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class AlertChannel(Protocol):
    def discount_alert(
        self,
        order_id: int,
        discount_percent: Decimal,
        discount_amount: Decimal,
        cashier_name: str,
        reason: str | None = None,
        table_name: str | None = None,
    ) -> None: ...

    def close(self) -> None: ...


class TelegramAlerts:
    def __init__(
        self,
        bot_token: str | None = None,
        chat_id: str | None = None,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.bot_token = settings.telegram_bot_token if bot_token is None else bot_token
        self.chat_id = settings.telegram_chat_id if chat_id is None else chat_id
        self.timeout = timeout
        self.transport = transport
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="telegram-alerts")

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def send_message(self, message: str) -> bool:
        if not self.enabled:
            logger.info("Telegram notification disabled or not configured")
            return False

        url = f"{TELEGRAM_API_URL}/bot{self.bot_token}/sendMessage"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(url, json={
                    "chat_id": self.chat_id,
                    "text": message,
                    "parse_mode": "HTML",
                })
            if response.status_code != 200:
                logger.error(f"Telegram send failed: {response.status_code} - {response.text}")
                return False
        except httpx.HTTPError as e:
            logger.error(f"Error sending Telegram message: {e}", exc_info=True)
            return False

        logger.info("Telegram message sent")
        return True

    def discount_alert(
        self,
        order_id: int,
        discount_percent: Decimal,
        discount_amount: Decimal,
        cashier_name: str,
        reason: str | None = None,
        table_name: str | None = None,
    ) -> Future:
        """Queue the alert and return at once; the send happens on a worker thread."""
        message = "\n".join([
            "<b>LARGE DISCOUNT</b>",
            "",
            f"Table: {table_name or 'N/A'}",
            f"Discount: {as_json(discount_percent)}% ({as_json(discount_amount)})",
            f"Cashier: {cashier_name}",
            f"Reason: {reason or 'None given'}",
            f"Order: #{order_id}",
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        ])
        return self._executor.submit(self.send_message, message)

    def close(self) -> None:
        """Wait for queued alerts to go out, then stop the worker thread."""
        self._executor.shutdown(wait=True)
