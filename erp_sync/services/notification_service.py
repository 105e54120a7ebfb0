"""
Notification Service Module
===========================
Tells customers about newly seen unpaid invoices.

FLOW:
----
1. Pick first-seen records with amount_remaining > 0 and a customer id
2. Look up first name and email per customer through SuiteQL, in batches
   of 50 ids with the usual short pause between batches
3. POST one JSON payload per invoice to the configured webhook

The step is best effort: lookups or deliveries that fail are logged and
counted, never raised, so a run is never failed by its notifications. With
no webhook configured (or notifications disabled) nothing is sent.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from ..config import config
from ..exceptions import SyncError
from ..utils.helpers import chunk_list, coerce_text, id_list_csv, to_int_or_none, to_num_or_none
from ..utils.logger import logger
from .query_executor import QueryExecutor, query_executor


def select_unpaid(rows: List[Dict[str, Any]], id_column: str) -> List[Dict[str, Any]]:
    """New records that still owe money and belong to a customer"""
    unpaid = []
    for row in rows:
        remaining = to_num_or_none(row.get("amount_remaining")) or 0.0
        customer_id = to_int_or_none(row.get("customer_id"))
        if remaining > 0 and customer_id:
            unpaid.append({
                "record_id": row.get(id_column),
                "customer_id": customer_id,
                "tran_id": row.get("tran_id"),
                "total": to_num_or_none(row.get("total")) or 0.0,
                "amount_remaining": remaining,
            })
    return unpaid


class NotificationService:
    """Webhook notifier for unpaid invoices"""

    def __init__(
        self,
        executor: Optional[QueryExecutor] = None,
        webhook_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.executor = executor or query_executor
        self.webhook_url = webhook_url if webhook_url is not None else config.notifications.webhook_url
        self.timeout = config.notifications.timeout
        self.batch_size = config.notifications.lookup_batch_size
        self._client = client
        self._sleep = sleep

    @property
    def enabled(self) -> bool:
        return bool(config.notifications.enabled and self.webhook_url)

    async def lookup_customers(self, customer_ids: List[int]) -> Dict[int, Dict[str, str]]:
        """First name and email per customer id; incomplete contacts are skipped"""
        contacts: Dict[int, Dict[str, str]] = {}
        for batch in chunk_list(sorted(set(customer_ids)), self.batch_size):
            try:
                rows = await self.executor.execute(
                    f"""
                    SELECT C.id AS id, C.firstname AS firstname, C.email AS email
                    FROM customer C
                    WHERE C.id IN ({id_list_csv(batch)})
                    """,
                    tag="notifications.customers",
                )
            except SyncError as e:
                logger.warning(f"Customer lookup failed for {len(batch)} ids: {e}")
                continue

            for row in rows:
                customer_id = to_int_or_none(row.get("id"))
                first_name = coerce_text(row.get("firstname"))
                email = coerce_text(row.get("email"))
                if customer_id and first_name and email:
                    contacts[customer_id] = {"first_name": first_name, "email": email.lower()}
            await self._sleep(config.sync.query_pause)
        return contacts

    async def _post(self, payload: Dict[str, Any]) -> None:
        if self._client is not None:
            response = await self._client.post(self.webhook_url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=payload)
        response.raise_for_status()

    async def notify_unpaid(self, stream: str, new_rows: List[Dict[str, Any]], id_column: str) -> int:
        """Send one notification per new unpaid record; returns how many were delivered"""
        unpaid = select_unpaid(new_rows, id_column)
        if not unpaid:
            return 0
        if not self.enabled:
            logger.debug(f"[{stream}] notifications disabled, skipping {len(unpaid)} unpaid records")
            return 0

        contacts = await self.lookup_customers([item["customer_id"] for item in unpaid])
        sent = 0
        for item in unpaid:
            contact = contacts.get(item["customer_id"])
            if not contact:
                continue
            payload = {
                "type": "unpaid_invoice",
                "stream": stream,
                "first_name": contact["first_name"],
                "email": contact["email"],
                "invoice": item["tran_id"] or f"INV-{item['record_id']}",
                "total": item["total"],
                "amount_remaining": item["amount_remaining"],
            }
            try:
                await self._post(payload)
                sent += 1
            except httpx.HTTPError as e:
                logger.warning(f"[{stream}] notification for {payload['invoice']} failed: {e}")

        logger.info(f"[{stream}] sent {sent}/{len(unpaid)} unpaid notifications")
        return sent


# Global service instance
notification_service = NotificationService()
