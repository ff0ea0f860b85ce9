"""
Contact Import Pipeline.
Drains every page of a platform action's output and upserts the records into the
contact store. Pure ETL: no retries, no scheduling.

Pages and action keys are processed one at a time (each cursor depends on the
previous page). Each page is written as one unit of work; pages already written
stay written if a later page fails.
"""

import logging
from typing import Iterable, Optional

from errors import UpstreamError

logger = logging.getLogger(__name__)

# Per-action error reported to the caller; details stay in the logs
IMPORT_FAILED_MESSAGE = "Failed to import"


class ImportPipeline:
    """Imports contacts for a single customer + connection."""

    def __init__(self, store, gateway, customer_id: str, connection_id: str):
        self.store = store
        self.gateway = gateway
        self.customer_id = customer_id
        self.connection_id = connection_id

    async def import_action(self, action_key: str) -> int:
        """
        Import every page of one action.

        Args:
            action_key: Platform action that lists records (e.g. 'get-contacts')

        Returns:
            Number of records fetched and upserted

        Raises:
            UpstreamError if the platform call fails or the cursor stops advancing;
            store errors propagate unchanged.
        """
        cursor: Optional[str] = None
        total = 0
        page_count = 0

        while True:
            page = await self.gateway.run_action(
                self.customer_id, self.connection_id, action_key, cursor
            )
            page_count += 1

            if page.records:
                records = [{**record, "customerId": self.customer_id} for record in page.records]
                written = await self.store.upsert_many(self.customer_id, records, replace=True)
                total += written
                logger.info(
                    f"Imported page {page_count} of {action_key}: {written} records "
                    f"(customer={self.customer_id}, connection={self.connection_id})"
                )

            if not page.next_cursor:
                break

            # Same cursor twice would loop forever
            if page.next_cursor == cursor:
                raise UpstreamError(
                    f"Cursor did not advance for {action_key} after page {page_count}"
                )

            logger.debug(f"More records available for {action_key}, continuing to page {page_count + 1}")
            cursor = page.next_cursor

        logger.info(
            f"Import complete: {action_key} ({total} records, {page_count} pages) "
            f"for customer {self.customer_id}"
        )
        return total

    async def import_all(self, action_keys: Iterable[str]) -> list[dict]:
        """
        Import every action key in turn. A failing action is reported and skipped;
        it never stops the remaining actions.

        Returns:
            One {"actionKey", "count"} or {"actionKey", "error"} entry per action
        """
        results = []
        for action_key in action_keys:
            try:
                count = await self.import_action(action_key)
                results.append({"actionKey": action_key, "count": count})
            except Exception as e:
                logger.error(
                    f"Import failed for {action_key} (customer={self.customer_id}, "
                    f"connection={self.connection_id}): {e}"
                )
                results.append({"actionKey": action_key, "error": IMPORT_FAILED_MESSAGE})
        return results
