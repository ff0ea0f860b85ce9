"""
Webhook Reconciler.
Applies single-record create/update/delete notifications from the integration
platform to the contact store.

Per event, keyed by (customer_id, external_id):
    deleted        → delete (idempotent)            → DELETED | NOT_FOUND
    stored == data → skip write and notification    → UNCHANGED
    otherwise      → replace, stamp updatedTime,
                     notify downstream              → CREATED | UPDATED

The equality check is read-compare-write, not atomic: two concurrent deliveries
for the same key can both write, and the later write wins.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from contact_store import comparable_view
from errors import ValidationError
from record_status import RecordStatus

logger = logging.getLogger(__name__)


def _missing(value: Any) -> bool:
    return value is None or str(value) == ""


class WebhookReconciler:
    """Merges pushed contact changes into the store."""

    def __init__(self, store, notifier):
        self.store = store
        self.notifier = notifier

    async def reconcile(
        self,
        customer_id: Any,
        external_id: Any,
        deleted: bool = False,
        data: Optional[dict] = None,
    ) -> dict:
        if _missing(customer_id) or _missing(external_id):
            raise ValidationError("Missing required fields")
        customer_id = str(customer_id)
        external_id = str(external_id)
        data = data or {}
        if data.get("fields") is not None and not isinstance(data["fields"], dict):
            raise ValidationError("fields must be an object")

        logger.info(
            f"Received contact event {external_id} (customer={customer_id}, deleted={bool(deleted)})"
        )

        if deleted:
            removed = await self.store.delete_one(external_id, customer_id)
            status = RecordStatus.DELETED if removed else RecordStatus.NOT_FOUND
            logger.info(f"Contact deletion {external_id} (customer={customer_id}): {status}")
            return self._response(external_id, customer_id, status, removed)

        existing = await self.store.find_one(external_id, customer_id)
        if existing is not None:
            if comparable_view(existing, external_id, customer_id) == comparable_view(data, external_id, customer_id):
                logger.info(f"Contact unchanged, skipping update: {external_id} (customer={customer_id})")
                return self._response(external_id, customer_id, RecordStatus.UNCHANGED, existing)

        patch = {
            **data,
            "id": external_id,
            "customerId": customer_id,
            "updatedTime": datetime.now(timezone.utc).isoformat(),
        }
        record = await self.store.upsert(external_id, customer_id, patch, replace=True)
        status = RecordStatus.UPDATED if existing is not None else RecordStatus.CREATED
        logger.info(f"Contact {status}: {external_id} (customer={customer_id}, storageId={record.get('storageId')})")

        try:
            await self.notifier.notify_updated(record, customer_id)
        except Exception as e:
            logger.error(f"Downstream notification failed for {external_id} (customer={customer_id}): {e}")

        return self._response(external_id, customer_id, status, record)

    @staticmethod
    def _response(external_id: str, customer_id: str, status: str, record: Optional[dict]) -> dict:
        return {
            "success": True,
            "externalId": external_id,
            "storageId": record.get("storageId") if record else None,
            "customerId": customer_id,
            "status": status,
        }
