"""Downstream app-event notifications (best effort, never raises)"""
import os
import logging
import httpx
from typing import Optional, Dict, Any
from pathlib import Path
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

APP_EVENTS_WEBHOOK_URL = os.environ.get('APP_EVENTS_WEBHOOK_URL', '').strip()
APP_EVENTS_TIMEOUT = 30.0

EVENT_TYPE_UPDATED = "updated"


class AppEventNotifier:
    """Posts confirmed contact writes to the platform's app-event webhook."""

    def __init__(self, webhook_url: str = None, http_client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = APP_EVENTS_WEBHOOK_URL if webhook_url is None else webhook_url
        self.http_client = http_client

    async def notify_updated(self, record: Dict[str, Any], customer_id: str) -> bool:
        """Send {type: 'updated', data, customerId}. Returns False on any failure."""
        if not self.webhook_url:
            logger.debug(f"APP_EVENTS_WEBHOOK_URL not set, skipping update event for {record.get('id')}")
            return False

        payload = {
            "type": EVENT_TYPE_UPDATED,
            "data": record,
            "customerId": customer_id,
        }

        try:
            if self.http_client is not None:
                response = await self.http_client.post(self.webhook_url, json=payload, timeout=APP_EVENTS_TIMEOUT)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.webhook_url, json=payload, timeout=APP_EVENTS_TIMEOUT)
            response.raise_for_status()
            logger.info(f"Update event sent for contact {record.get('id')} (customer={customer_id})")
            return True
        except Exception as e:
            logger.error(f"Failed to send update event for contact {record.get('id')} (customer={customer_id}): {str(e)}")
            return False
