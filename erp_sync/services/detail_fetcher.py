"""
Detail Fetcher Module
=====================
Pulls full fulfillment records from the REST record endpoint to recover
what SuiteQL does not expose: ship status, package tracking numbers and
the shipped lines.

GET {base_url}/record/v1/itemFulfillment/{id}?expandSubResources=true

Requests run with bounded concurrency (asyncio.Semaphore). A record that
cannot be fetched yields None; the caller keeps whatever it already has.

CARRIERS:
--------
Tracking numbers are matched against known formats to pick a carrier and
build a tracking link (UPS 1Z..., USPS 9... / XX123456789US, FedEx 12/15/
20-22 digits, DHL 10 digits / JJD / JVGL, OnTrac C + 12 digits).
"""

import asyncio
import re
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from ..config import config
from ..exceptions import UpstreamQueryFailed
from ..utils.constants import RECORD_PATH, TRACKING_FALLBACK_URL, TRACKING_URLS
from ..utils.helpers import coerce_text, to_int_or_none, to_num_or_none
from ..utils.logger import logger
from .erp_client import ErpClient, erp_client


def infer_carrier(number: str) -> str:
    """Carrier code for a tracking number, or '' when unknown"""
    n = re.sub(r"\s+", "", number or "").upper()
    if re.fullmatch(r"1Z[0-9A-Z]{16}", n):
        return "ups"
    if re.fullmatch(r"[A-Z]{2}\d{9}US", n):
        return "usps"
    if re.fullmatch(r"\d{20,22}", n):
        return "usps" if n.startswith("9") else "fedex"
    if re.fullmatch(r"\d{12}", n) or re.fullmatch(r"\d{15}", n):
        return "fedex"
    if re.fullmatch(r"\d{10}", n) or re.fullmatch(r"JJD\d+", n) or re.fullmatch(r"JVGL\d+", n):
        return "dhl"
    if re.fullmatch(r"C\d{12}", n):
        return "ontrac"
    return ""


def build_tracking_url(carrier: str, number: str) -> str:
    if not number:
        return ""
    template = TRACKING_URLS.get((carrier or "").lower())
    if template:
        return template.format(number=quote(number, safe=""))
    return TRACKING_FALLBACK_URL.format(query=quote(f"{number} tracking", safe=""))


def extract_tracking_numbers(record: Dict[str, Any]) -> List[str]:
    """Package tracking numbers; falls back to any string field named *tracking*"""
    package_list = record.get("packageList")
    if isinstance(package_list, dict):
        packages = package_list.get("packages") or package_list.get("items") or []
    else:
        packages = package_list or record.get("packages") or []
    if isinstance(packages, dict):
        packages = [packages]

    numbers = []
    for package in packages:
        if not isinstance(package, dict):
            continue
        number = (
            package.get("packageTrackingNumber")
            or package.get("trackingNumber")
            or package.get("packageTrackingNo")
        )
        if number:
            numbers.append(str(number).strip())
    if numbers:
        return numbers

    found: List[str] = []

    def walk(node: Any) -> None:
        if isinstance(node, dict):
            for key, value in node.items():
                if "tracking" in key.lower() and isinstance(value, str) and value.strip():
                    if value.strip() not in found:
                        found.append(value.strip())
                elif isinstance(value, (dict, list)):
                    walk(value)
        elif isinstance(node, list):
            for item in node:
                walk(item)

    walk(record)
    return found


def extract_lines(record: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Shipped lines keyed by line number; repeated line numbers are merged"""
    item = record.get("item")
    if isinstance(item, dict) and isinstance(item.get("items"), list):
        rows = item["items"]
    elif isinstance(record.get("itemList"), dict) and isinstance(record["itemList"].get("items"), list):
        rows = record["itemList"]["items"]
    elif isinstance(item, list):
        rows = item
    else:
        rows = []

    merged: Dict[int, Dict[str, Any]] = {}
    for row in rows:
        if not isinstance(row, dict):
            continue
        line_no = to_int_or_none(row.get("line"))
        if line_no is None:
            continue

        item_ref = row.get("item") if isinstance(row.get("item"), dict) else {}
        sku = coerce_text(item_ref.get("refName") or item_ref.get("name") or item_ref.get("text"))
        if sku is None and row.get("itemid") is not None and not str(row["itemid"]).strip().isdigit():
            sku = coerce_text(row.get("itemid"))

        serials = []
        assignment = row.get("inventoryDetail") or row.get("inventoryAssignment") or row.get("inventoryassignment")
        if isinstance(assignment, dict):
            entries = assignment.get("assignments") or assignment.get("assignment") or assignment.get("details") or []
            if isinstance(entries, dict):
                entries = [entries]
            for entry in entries:
                if not isinstance(entry, dict):
                    continue
                serial = (
                    (entry.get("issueinventorynumber") or {}).get("text")
                    or (entry.get("inventorynumber") or {}).get("text")
                    or entry.get("serialnumber")
                    or entry.get("lotnumber")
                )
                if serial:
                    serials.append(str(serial))

        comment = row.get("custcolns_comment") or row.get("comments")
        line = {
            "line_no": line_no,
            "line_id": line_no,
            "item_id": to_int_or_none(item_ref.get("id") or item_ref.get("internalId")),
            "item_sku": sku,
            "item_display_name": coerce_text(row.get("description") or item_ref.get("displayName") or item_ref.get("refName")),
            "quantity": abs(to_num_or_none(row.get("quantity")) or 0.0),
            "serial_numbers": serials or None,
            "comments": [str(comment)] if comment else None,
        }

        existing = merged.get(line_no)
        if existing is None:
            merged[line_no] = line
            continue
        existing["quantity"] += line["quantity"]
        if line["serial_numbers"]:
            existing["serial_numbers"] = (existing["serial_numbers"] or []) + line["serial_numbers"]
        if line["comments"]:
            existing["comments"] = (existing["comments"] or []) + line["comments"]

    return [merged[key] for key in sorted(merged)]


def parse_fulfillment(record: Dict[str, Any]) -> Dict[str, Any]:
    """Enrichment fields plus lines from a full fulfillment record"""
    status = record.get("shipStatus") or record.get("shipstatus") or {}
    ship_status = coerce_text(status.get("refName") or status.get("text")) if isinstance(status, dict) else coerce_text(status)

    details = []
    seen = set()
    for number in extract_tracking_numbers(record):
        carrier = infer_carrier(number)
        detail = {"number": number, "carrier": carrier, "url": build_tracking_url(carrier, number)}
        key = (detail["number"], detail["carrier"], detail["url"])
        if key not in seen:
            seen.add(key)
            details.append(detail)

    return {
        "ship_status": ship_status,
        "tracking": ", ".join(d["number"] for d in details) or None,
        "tracking_urls": [d["url"] for d in details],
        "tracking_details": details,
        "lines": extract_lines(record),
    }


class DetailFetcher:
    """Concurrent record detail fetcher"""

    def __init__(
        self,
        client: Optional[ErpClient] = None,
        base_url: Optional[str] = None,
        concurrency: Optional[int] = None,
    ):
        self.client = client or erp_client
        self.base_url = (base_url or config.erp.get_base_url()).rstrip("/")
        self.concurrency = concurrency or config.sync.detail_concurrency

    async def fetch(self, record_type: str, record_id: int) -> Optional[Dict[str, Any]]:
        """Raw record, or None when the ERP refuses it"""
        response = await self.client.send(
            "GET",
            f"{self.base_url}{RECORD_PATH}/{record_type}/{record_id}",
            tag=f"{record_type}:{record_id}",
            params={"expandSubResources": "true"},
        )
        if not response.is_success:
            logger.warning(f"Detail {record_type}/{record_id} failed: status {response.status_code}")
            return None
        return response.json()

    async def fetch_many(
        self,
        record_type: str,
        record_ids: List[int],
        concurrency: Optional[int] = None,
    ) -> Dict[int, Optional[Dict[str, Any]]]:
        """Parsed details keyed by id; failures map to None"""
        semaphore = asyncio.Semaphore(concurrency or self.concurrency)

        async def one(record_id: int) -> Optional[Dict[str, Any]]:
            async with semaphore:
                try:
                    record = await self.fetch(record_type, record_id)
                except UpstreamQueryFailed as e:
                    logger.warning(f"Detail {record_type}/{record_id} gave up: {e}")
                    return None
                return parse_fulfillment(record) if record else None

        results = await asyncio.gather(*(one(record_id) for record_id in record_ids))
        return dict(zip(record_ids, results))


# Global fetcher instance
detail_fetcher = DetailFetcher()
