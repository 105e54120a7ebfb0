"""
Query Executor Module
Runs SuiteQL statements through the throttle-aware ERP client and
follows hasMore/offset pagination until every row is collected.
"""

import json
from typing import Any, Dict, List, Optional

from ..config import config
from ..exceptions import UpstreamQueryFailed
from ..utils.constants import SUITEQL_PATH
from ..utils.decorators import timed
from ..utils.logger import logger
from .erp_client import ErpClient, erp_client


class QueryExecutor:
    """SuiteQL executor"""

    def __init__(
        self,
        client: Optional[ErpClient] = None,
        base_url: Optional[str] = None,
        page_size: Optional[int] = None,
    ):
        self.client = client or erp_client
        self.base_url = (base_url or config.erp.get_base_url()).rstrip("/")
        self.page_size = page_size or config.erp.query_page_size

    @property
    def url(self) -> str:
        return f"{self.base_url}{SUITEQL_PATH}"

    @timed
    async def execute(self, query: str, tag: str = "") -> List[Dict[str, Any]]:
        """Run a query and return all rows, keys lowercased"""
        rows: List[Dict[str, Any]] = []
        offset = 0

        while True:
            response = await self.client.send(
                "POST",
                self.url,
                tag=tag,
                params={"limit": self.page_size, "offset": offset},
                json={"q": " ".join(query.split())},
            )
            if not response.is_success:
                logger.error(f"[{tag}] query failed with status {response.status_code}")
                raise UpstreamQueryFailed(response.status_code, response.text, tag)

            try:
                payload = response.json()
            except json.JSONDecodeError:
                raise UpstreamQueryFailed(response.status_code, response.text, tag)

            items = payload.get("items") or []
            for item in items:
                rows.append({k.lower(): v for k, v in item.items() if k != "links"})

            if not payload.get("hasMore") or not items:
                break
            offset += len(items)

        logger.debug(f"[{tag}] {len(rows)} rows")
        return rows


# Global executor instance
query_executor = QueryExecutor()
