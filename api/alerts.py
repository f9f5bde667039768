import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp

from api.metrics import metrics
from config import config


logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    """Fire-and-forget delivery of user notifications."""

    @abstractmethod
    async def notify(self, user_id: str, message: str, kind: str, related_id: Optional[str] = None) -> None:
        pass


class WebhookNotificationSink(NotificationSink):
    def __init__(self, webhook_url: Optional[str] = None, timeout_s: float = 5.0):
        url = webhook_url if webhook_url is not None else config.section('monitoring').get('alert_webhook')
        # empty or placeholder URLs disable delivery
        if url and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False
        self.timeout_s = timeout_s

    async def notify(self, user_id: str, message: str, kind: str, related_id: Optional[str] = None) -> None:
        if not self.enabled:
            logger.info("[Notify] %s -> %s: %s (related=%s)", kind, user_id, message, related_id)
            metrics.record_notification(kind)
            return

        payload = {
            'user_id': user_id,
            'type': kind,
            'message': message,
            'related_id': related_id,
            'timestamp': time.time(),
        }
        delivered = False
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s)
                ) as response:
                    if response.status >= 300:
                        logger.error("[Notify] Webhook failed with status %s", response.status)
                    else:
                        delivered = True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("[Notify] Webhook error: %s", e)
        metrics.record_notification(kind, delivered=delivered)
